from typing import Optional

from fastapi import APIRouter, Header

from carelink.auth import assert_admin
from carelink.errors import CareLinkError, ValidationError
from carelink.models import (
    DocumentReviewRequest,
    IncidentRecord,
    ProviderProfile,
    SkillVerifyRequest,
    VerificationDocument,
)
from carelink.routers.http_errors import raise_service_http_error
from carelink.services.booking_lifecycle import trust_calculator
from carelink.services.care_store import care_store
from carelink.services.notification_store import notification_store

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/documents/{document_id}/review", response_model=VerificationDocument)
def review_document(
    document_id: str,
    request: DocumentReviewRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_admin(request.actor_user_id, authorization)
    try:
        if request.status == "REJECTED" and not (request.rejection_reason or "").strip():
            raise ValidationError("Rejection reason is required when rejecting a document")
        document = care_store.review_verification_document(
            document_id,
            status=request.status,
            reviewer_id=request.actor_user_id,
            rejection_reason=(request.rejection_reason or "").strip() or None,
        )
        trust_calculator.recompute(document.provider_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)

    if document.status == "VERIFIED":
        message = f"Your {document.document_type} document has been verified."
    else:
        message = f"Your {document.document_type} document was rejected: {document.rejection_reason}"
    notification_store.send(document.provider_id, "Document review", message, category="system")
    return document


@router.post("/providers/{provider_id}/skills/{slug}/verify", response_model=ProviderProfile)
def verify_skill(
    provider_id: str,
    slug: str,
    request: SkillVerifyRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_admin(request.actor_user_id, authorization)
    try:
        care_store.verify_skill(provider_id, slug)
        trust_calculator.recompute(provider_id)
        return care_store.get_provider(provider_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/incidents", response_model=list[IncidentRecord])
def list_incidents(
    actor_user_id: str,
    booking_id: Optional[str] = None,
    authorization: Optional[str] = Header(default=None),
):
    assert_admin(actor_user_id, authorization)
    return care_store.list_incidents(booking_id=booking_id)
