from typing import Optional

from fastapi import APIRouter, Header, Query

from carelink.auth import assert_actor_authorized
from carelink.errors import CareLinkError
from carelink.models import (
    Booking,
    BookingAcceptRequest,
    BookingActionRequest,
    BookingCancelRequest,
    BookingMatchRequest,
    BookingMatchResult,
    BookingStatusChange,
    Review,
    ReviewCreateRequest,
)
from carelink.routers.http_errors import raise_service_http_error
from carelink.services.booking_lifecycle import booking_lifecycle

router = APIRouter(prefix="/bookings", tags=["bookings"])


@router.post("/match", response_model=BookingMatchResult, status_code=201)
def create_and_match(
    request: BookingMatchRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return booking_lifecycle.create_booking(request)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("", response_model=list[Booking])
def list_bookings(
    user_id: Optional[str] = Query(default=None),
    role: Optional[str] = Query(default=None),
):
    try:
        return booking_lifecycle.list_bookings(user_id=user_id, role=role)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/{booking_id}", response_model=Booking)
def get_booking(booking_id: str):
    try:
        return booking_lifecycle.get_booking(booking_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.get("/{booking_id}/history", response_model=list[BookingStatusChange])
def booking_history(booking_id: str):
    try:
        return booking_lifecycle.history(booking_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/rematch", response_model=BookingMatchResult)
def rematch(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.rematch(booking_id, actor_user_id=request.actor_user_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/accept", response_model=Booking)
def accept_booking(
    booking_id: str,
    request: BookingAcceptRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.provider_id, authorization=authorization)
    try:
        return booking_lifecycle.accept(booking_id, request.provider_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/start", response_model=Booking)
def start_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.start(booking_id, request.actor_user_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/complete", response_model=Booking)
def complete_booking(
    booking_id: str,
    request: BookingActionRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.complete(booking_id, request.actor_user_id)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/cancel", response_model=Booking)
def cancel_booking(
    booking_id: str,
    request: BookingCancelRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.actor_user_id, authorization=authorization)
    try:
        return booking_lifecycle.cancel(booking_id, request.actor_user_id, request.reason)
    except CareLinkError as exc:
        raise_service_http_error(exc)


@router.post("/{booking_id}/review", response_model=Review, status_code=201)
def review_booking(
    booking_id: str,
    request: ReviewCreateRequest,
    authorization: Optional[str] = Header(default=None),
):
    assert_actor_authorized(actor_user_id=request.customer_id, authorization=authorization)
    try:
        return booking_lifecycle.add_review(booking_id, request.customer_id, request.rating, request.comment)
    except CareLinkError as exc:
        raise_service_http_error(exc)
