from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Query

from carelink.auth import assert_actor_authorized
from carelink.errors import CareLinkError
from carelink.models import (
    MatchCandidate,
    ProviderAvailabilityUpdate,
    ProviderLocationUpdate,
    ProviderProfile,
    SkillApplyRequest,
    TrustScoreBreakdown,
    VerificationDocument,
    VerificationDocumentCreate,
)
from carelink.routers.http_errors import raise_service_http_error
from carelink.services.booking_lifecycle import trust_calculator
from carelink.services.care_store import care_store
from carelink.services.provider_matcher import provider_matcher

router = APIRouter(prefix="/providers", tags=["providers"])


def _assert_self(provider_id: str, actor_user_id: str, authorization: Optional[str]) -> None:
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    if actor_user_id != provider_id:
        raise HTTPException(status_code=403, detail="Providers can only update their own profile")


@router.get("/match", response_model=list[MatchCandidate])
def match_providers(
    skill: str = Query(..., min_length=1, max_length=50, pattern=r"^[a-z0-9-]+$"),
    lat: float = Query(...),
    lng: float = Query(...),
    radius_km: Optional[float] = Query(default=None),
    limit: Optional[int] = Query(default=None),
):
    try:
        return provider_matcher.find_matches(skill, lat, lng, radius_km=radius_km, limit=limit)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/{provider_id}", response_model=ProviderProfile)
def get_provider(provider_id: str):
    provider = care_store.get_provider(provider_id)
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found", headers={"X-Error-Code": "NOT_FOUND"})
    return provider


@router.post("/{provider_id}/location", response_model=ProviderProfile)
def update_location(
    provider_id: str,
    request: ProviderLocationUpdate,
    authorization: Optional[str] = Header(default=None),
):
    _assert_self(provider_id, request.actor_user_id, authorization)
    try:
        return care_store.update_provider_location(provider_id, request.latitude, request.longitude)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{provider_id}/availability", response_model=ProviderProfile)
def update_availability(
    provider_id: str,
    request: ProviderAvailabilityUpdate,
    authorization: Optional[str] = Header(default=None),
):
    _assert_self(provider_id, request.actor_user_id, authorization)
    try:
        return care_store.set_provider_availability(provider_id, request.is_available)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{provider_id}/documents", response_model=VerificationDocument, status_code=201)
def submit_document(
    provider_id: str,
    request: VerificationDocumentCreate,
    authorization: Optional[str] = Header(default=None),
):
    _assert_self(provider_id, request.actor_user_id, authorization)
    try:
        document = care_store.add_verification_document(provider_id, request.document_type, request.storage_key)
        trust_calculator.recompute(provider_id)
        return document
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/{provider_id}/trust-score", response_model=TrustScoreBreakdown)
def explain_trust_score(provider_id: str):
    try:
        return trust_calculator.breakdown(provider_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{provider_id}/skills", response_model=ProviderProfile, status_code=201)
def apply_for_skill(
    provider_id: str,
    request: SkillApplyRequest,
    authorization: Optional[str] = Header(default=None),
):
    _assert_self(provider_id, request.actor_user_id, authorization)
    try:
        return care_store.grant_skill(provider_id, request.service_category_slug, verified=False)
    except CareLinkError as exc:
        raise_service_http_error(exc)
