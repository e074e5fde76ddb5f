from typing import Optional

from fastapi import APIRouter, Header

from carelink.auth import assert_actor_authorized
from carelink.errors import CareLinkError, ForbiddenError
from carelink.models import EmergencyContact, EmergencyContactUpdate, EmergencyEscalationRequest, EscalationResult
from carelink.routers.http_errors import raise_service_http_error
from carelink.services.emergency_escalation import emergency_protocol

router = APIRouter(prefix="/emergency", tags=["emergency"])


@router.post("/escalate", response_model=EscalationResult)
def escalate(
    request: EmergencyEscalationRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.triggered_by_user_id, authorization=authorization)
    try:
        return emergency_protocol.escalate(
            request.booking_id,
            request.triggered_by,
            request.triggered_by_user_id,
            request.reason,
        )
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/contact/{customer_id}", response_model=EmergencyContact)
def get_emergency_contact(
    customer_id: str,
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    try:
        if actor_user_id != customer_id:
            raise ForbiddenError("Customers can only read their own emergency contact")
        return emergency_protocol.get_emergency_contact(customer_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.put("/contact/{customer_id}", response_model=EmergencyContact)
def update_emergency_contact(
    customer_id: str,
    request: EmergencyContactUpdate,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        if request.actor_user_id != customer_id:
            raise ForbiddenError("Customers can only update their own emergency contact")
        return emergency_protocol.update_emergency_contact(
            customer_id,
            request.emergency_name,
            request.emergency_phone,
            request.emergency_relation,
        )
    except CareLinkError as exc:
        raise_service_http_error(exc)
