import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from carelink.errors import NotFoundError
from carelink.services.trust_score import (
    COMPLETION_WEIGHT,
    RATING_WEIGHT,
    RESPONSIVENESS_WEIGHT,
    VERIFICATION_WEIGHT,
    TrustScoreInputs,
    calculate_trust_score,
    responsiveness_component,
)


def test_weights_sum_to_one():
    assert COMPLETION_WEIGHT + RATING_WEIGHT + VERIFICATION_WEIGHT + RESPONSIVENESS_WEIGHT == pytest.approx(1.0)


def test_new_provider_gets_only_neutral_responsiveness():
    assert calculate_trust_score(TrustScoreInputs()) == pytest.approx(5.0)


def test_perfect_history_scores_one_hundred():
    inputs = TrustScoreInputs(
        completed_bookings=20,
        total_bookings=20,
        average_rating=5.0,
        approved_documents=3,
        total_documents=3,
        median_response_minutes=10,
    )
    assert calculate_trust_score(inputs) == pytest.approx(100.0)


def test_mixed_history_weighted_sum():
    inputs = TrustScoreInputs(
        completed_bookings=8,
        total_bookings=10,
        average_rating=4.5,
        approved_documents=2,
        total_documents=4,
        median_response_minutes=45,
    )
    # 80*0.4 + 90*0.3 + 50*0.2 + 60*0.1
    assert calculate_trust_score(inputs) == pytest.approx(75.0)


@pytest.mark.parametrize(
    "minutes,expected",
    [(None, 50.0), (0, 100.0), (15, 100.0), (15.5, 80.0), (30, 80.0), (31, 60.0), (60, 60.0), (61, 40.0), (600, 40.0)],
)
def test_responsiveness_steps(minutes, expected):
    assert responsiveness_component(TrustScoreInputs(median_response_minutes=minutes)) == expected


def test_out_of_range_inputs_are_clamped():
    high = TrustScoreInputs(
        completed_bookings=30,
        total_bookings=10,
        average_rating=9.0,
        approved_documents=5,
        total_documents=1,
        median_response_minutes=1,
    )
    assert calculate_trust_score(high) == 100.0

    low = TrustScoreInputs(completed_bookings=-50, total_bookings=1, median_response_minutes=120)
    assert calculate_trust_score(low) == 0.0


def test_recompute_persists_score_on_profile_and_skills(stack):
    provider = stack.provider(trust=0.0)
    booking, customer, _ = stack.booking("COMPLETED", provider=provider)
    stack.lifecycle.add_review(booking.id, customer.id, 4, "Kind and punctual")

    refreshed = stack.store.get_provider(provider.id)
    breakdown = stack.trust.breakdown(provider.id)
    assert breakdown.completion_component == pytest.approx(100.0)
    assert breakdown.rating_component == pytest.approx(80.0)
    assert breakdown.verification_component == 0.0
    assert refreshed.trust_score == pytest.approx(breakdown.trust_score)
    assert all(skill.skill_trust_score == pytest.approx(breakdown.trust_score) for skill in refreshed.skills)


def test_document_decisions_feed_verification_component(stack):
    provider = stack.provider()
    first = stack.store.add_verification_document(provider.id, "NIC_FRONT", "docs/nic-front.jpg")
    stack.store.add_verification_document(provider.id, "POLICE_CLEARANCE", "docs/police.pdf")
    stack.store.review_verification_document(first.id, status="VERIFIED", reviewer_id="admin_demo_1")

    assert stack.trust.breakdown(provider.id).verification_component == pytest.approx(50.0)


def test_unknown_provider_raises_not_found(stack):
    with pytest.raises(NotFoundError):
        stack.trust.recompute("prov_missing")
