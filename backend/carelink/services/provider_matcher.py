import logging
import math
from typing import Dict, Iterable, List, Optional, Protocol

from carelink import config
from carelink.errors import GeospatialQueryError, NotFoundError, ValidationError
from carelink.models import EligibleProvider, MatchCandidate, ServiceCategory
from carelink.services.care_store import care_store
from carelink.services.geo_index import GeoIndex, validate_point

logger = logging.getLogger(__name__)


class MatchSource(Protocol):
    geo_index: GeoIndex

    def get_category_by_slug(self, slug: str) -> Optional[ServiceCategory]: ...

    def list_eligible_providers(self, category_id: str, provider_ids: Iterable[str]) -> Dict[str, EligibleProvider]: ...


class ProviderMatcher:
    def __init__(
        self,
        store: MatchSource,
        *,
        default_radius_km: float = config.MATCH_RADIUS_KM,
        max_radius_km: float = config.MATCH_MAX_RADIUS_KM,
        max_results: int = config.MATCH_MAX_RESULTS,
    ) -> None:
        self.store = store
        self.default_radius_km = default_radius_km
        self.max_radius_km = max_radius_km
        self.max_results = max_results

    def _validate(self, lat: float, lng: float, radius_km: float, limit: int) -> None:
        validate_point(lat, lng)
        if not math.isfinite(radius_km) or radius_km <= 0:
            raise ValidationError("Search radius must be a positive number", {"radius_km": radius_km})
        if radius_km > self.max_radius_km:
            raise ValidationError(
                f"Search radius must be at most {self.max_radius_km:g} km",
                {"radius_km": radius_km},
            )
        if limit < 1 or limit > self.max_results:
            raise ValidationError(f"Limit must be between 1 and {self.max_results}", {"limit": limit})

    def find_matches(
        self,
        skill: str,
        lat: float,
        lng: float,
        radius_km: Optional[float] = None,
        limit: Optional[int] = None,
    ) -> List[MatchCandidate]:
        """Verified, available providers for ``skill`` within ``radius_km`` of the point.

        Highest trust first; equal trust is broken by distance. Values are
        rounded to one decimal after ordering.
        """
        radius_km = self.default_radius_km if radius_km is None else radius_km
        limit = self.max_results if limit is None else limit
        self._validate(lat, lng, radius_km, limit)

        category = self.store.get_category_by_slug(skill)
        if not category:
            raise NotFoundError(f"Service category not found with slug: {skill}", {"service_category_slug": skill})
        if not category.is_active:
            raise ValidationError(f"Service category is not active: {skill}", {"service_category_slug": skill})

        try:
            hits = self.store.geo_index.find_within((lat, lng), radius_km * 1000)
        except GeospatialQueryError:
            raise
        except Exception as exc:
            logger.exception("Provider match query failed skill=%s lat=%s lng=%s", skill, lat, lng)
            raise GeospatialQueryError(
                "Failed to execute provider matching query",
                {"lat": lat, "lng": lng, "radius_km": radius_km},
            ) from exc
        if not hits:
            return []

        eligible = self.store.list_eligible_providers(category.id, [provider_id for provider_id, _ in hits])
        ranked = sorted(
            ((eligible[provider_id], meters) for provider_id, meters in hits if provider_id in eligible),
            key=lambda item: (-round(item[0].trust_score, 1), item[1], item[0].provider_id),
        )
        matches = [
            MatchCandidate(
                provider_id=provider.provider_id,
                full_name=provider.full_name,
                trust_score=round(provider.trust_score, 1),
                years_experience=provider.years_experience,
                distance_km=round(meters / 1000, 1),
            )
            for provider, meters in ranked[:limit]
        ]
        logger.info(
            "provider_match skill=%s radius_km=%s candidates=%s matches=%s",
            skill,
            radius_km,
            len(hits),
            len(matches),
        )
        return matches


provider_matcher = ProviderMatcher(care_store)
