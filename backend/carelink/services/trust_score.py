"""Composite provider trust score.

The score is a weighted sum of four 0-100 components:

* completion rate (40%): completed / total bookings
* customer rating (30%): average rating on a 0-5 scale, times 20
* verification (20%): approved / submitted verification documents
* responsiveness (10%): step function of the median response time

A provider with no history still gets a defined (low) score: every
zero-denominator component degrades to 0, and an unknown response time
scores a neutral 50. Components are not clamped individually; only the
final score is clamped to [0, 100].
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from carelink.errors import NotFoundError
from carelink.models import TrustScoreBreakdown

logger = logging.getLogger(__name__)

COMPLETION_WEIGHT = 0.4
RATING_WEIGHT = 0.3
VERIFICATION_WEIGHT = 0.2
RESPONSIVENESS_WEIGHT = 0.1

UNKNOWN_RESPONSE_SCORE = 50.0

# (upper bound in minutes, score); anything slower scores SLOW_RESPONSE_SCORE.
RESPONSE_TIME_STEPS = ((15, 100.0), (30, 80.0), (60, 60.0))
SLOW_RESPONSE_SCORE = 40.0

MIN_TRUST_SCORE = 0.0
MAX_TRUST_SCORE = 100.0


@dataclass(frozen=True)
class TrustScoreInputs:
    completed_bookings: int = 0
    total_bookings: int = 0
    average_rating: Optional[float] = None
    approved_documents: int = 0
    total_documents: int = 0
    median_response_minutes: Optional[float] = None


def completion_component(inputs: TrustScoreInputs) -> float:
    if inputs.total_bookings <= 0:
        return 0.0
    return inputs.completed_bookings / inputs.total_bookings * 100


def rating_component(inputs: TrustScoreInputs) -> float:
    if inputs.average_rating is None:
        return 0.0
    return inputs.average_rating * 20


def verification_component(inputs: TrustScoreInputs) -> float:
    if inputs.total_documents <= 0:
        return 0.0
    return inputs.approved_documents / inputs.total_documents * 100


def responsiveness_component(inputs: TrustScoreInputs) -> float:
    minutes = inputs.median_response_minutes
    if minutes is None:
        return UNKNOWN_RESPONSE_SCORE
    for upper_bound, score in RESPONSE_TIME_STEPS:
        if minutes <= upper_bound:
            return score
    return SLOW_RESPONSE_SCORE


def clamp_trust_score(value: float) -> float:
    return max(MIN_TRUST_SCORE, min(MAX_TRUST_SCORE, value))


def calculate_trust_score(inputs: TrustScoreInputs) -> float:
    raw = (
        completion_component(inputs) * COMPLETION_WEIGHT
        + rating_component(inputs) * RATING_WEIGHT
        + verification_component(inputs) * VERIFICATION_WEIGHT
        + responsiveness_component(inputs) * RESPONSIVENESS_WEIGHT
    )
    return clamp_trust_score(raw)


def explain_trust_score(provider_id: str, inputs: TrustScoreInputs) -> TrustScoreBreakdown:
    return TrustScoreBreakdown(
        provider_id=provider_id,
        completion_component=completion_component(inputs),
        rating_component=rating_component(inputs),
        verification_component=verification_component(inputs),
        responsiveness_component=responsiveness_component(inputs),
        trust_score=calculate_trust_score(inputs),
    )


class TrustScoreSource(Protocol):
    def trust_score_inputs(self, provider_id: str) -> Optional[TrustScoreInputs]: ...

    def set_provider_trust_score(self, provider_id: str, trust_score: float) -> None: ...


class TrustScoreCalculator:
    """Recomputes and persists a provider's score from their recorded history."""

    def __init__(self, store: TrustScoreSource) -> None:
        self.store = store

    def breakdown(self, provider_id: str) -> TrustScoreBreakdown:
        inputs = self.store.trust_score_inputs(provider_id)
        if inputs is None:
            raise NotFoundError("Provider not found", {"provider_id": provider_id})
        return explain_trust_score(provider_id, inputs)

    def recompute(self, provider_id: str) -> float:
        inputs = self.store.trust_score_inputs(provider_id)
        if inputs is None:
            raise NotFoundError("Provider not found", {"provider_id": provider_id})
        score = calculate_trust_score(inputs)
        self.store.set_provider_trust_score(provider_id, score)
        logger.info("trust_score provider=%s score=%.2f", provider_id, score)
        return score
