import json
import logging
from typing import Optional
from urllib.parse import parse_qs

from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import ValidationError as PydanticValidationError
from starlette.concurrency import run_in_threadpool

from carelink.auth import assert_actor_authorized, assert_admin
from carelink.errors import CareLinkError, ForbiddenError
from carelink.models import (
    CheckoutReference,
    EscrowTransaction,
    PaymentInitiateRequest,
    PaymentNotification,
    PaymentReleaseRequest,
    PaymentSignalOutcome,
    RefundRequest,
)
from carelink.routers.http_errors import raise_service_http_error
from carelink.services.care_store import care_store
from carelink.services.escrow_ledger import escrow_ledger

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def _parse_notification_body(raw: bytes, content_type: str) -> dict:
    """PayHere posts form-urlencoded bodies; JSON is accepted for tooling and tests."""
    text = raw.decode("utf-8")
    if "application/json" in content_type:
        parsed = json.loads(text)
        if not isinstance(parsed, dict):
            raise ValueError("Notification body must be an object")
        return {str(key): str(value) for key, value in parsed.items() if value is not None}
    return {key: values[0] for key, values in parse_qs(text, keep_blank_values=True).items()}


@router.post("/notify", response_model=PaymentSignalOutcome)
async def payment_notification(request: Request):
    raw = await request.body()
    try:
        fields = _parse_notification_body(raw, request.headers.get("content-type", ""))
        notification = PaymentNotification(**fields)
    except (ValueError, PydanticValidationError) as exc:
        logger.warning("Rejected malformed payment notification: %s", exc)
        raise HTTPException(
            status_code=400,
            detail="Malformed payment notification",
            headers={"X-Error-Code": "VALIDATION_ERROR"},
        ) from exc
    try:
        return await run_in_threadpool(escrow_ledger.handle_payment_notification, notification)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/initiate", response_model=CheckoutReference, status_code=201)
def initiate_payment(
    booking_id: str,
    request: PaymentInitiateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return escrow_ledger.initiate_payment(
            booking_id,
            request.actor_user_id,
            request.amount,
            request.currency,
            return_url=request.return_url,
            cancel_url=request.cancel_url,
            notify_url=request.notify_url,
        )
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/{booking_id}", response_model=EscrowTransaction)
def get_escrow(booking_id: str):
    try:
        return escrow_ledger.get_escrow(booking_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/release", response_model=EscrowTransaction)
def release_payment(
    booking_id: str,
    request: PaymentReleaseRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        booking = care_store.get_booking(booking_id)
        actor = care_store.get_user(request.actor_user_id)
        is_customer = booking is not None and booking.customer_id == request.actor_user_id
        if not is_customer and not (actor and actor.role == "admin"):
            raise ForbiddenError("Only the customer or an admin can release escrow", {"booking_id": booking_id})
        return escrow_ledger.release(booking_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/refund", response_model=EscrowTransaction)
def refund_payment(
    booking_id: str,
    request: RefundRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_admin(request.actor_user_id, authorization)
    try:
        return escrow_ledger.refund(booking_id, request.reason)
    except CareLinkError as exc:
        raise_service_http_error(exc)
