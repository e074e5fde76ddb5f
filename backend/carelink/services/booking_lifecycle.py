import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, FrozenSet, List, Optional, Tuple

from carelink import config
from carelink.errors import CareLinkError, ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from carelink.models import (
    Booking,
    BookingMatchRequest,
    BookingMatchResult,
    BookingStatusChange,
    MatchCandidate,
    Review,
)
from carelink.services.care_store import CareStore, care_store
from carelink.services.escrow_ledger import EscrowPaymentLedger, escrow_ledger
from carelink.services.notification_store import NotificationSender, notification_store
from carelink.services.provider_matcher import ProviderMatcher, provider_matcher
from carelink.services.trust_score import TrustScoreCalculator

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "PENDING": frozenset({"MATCHED", "CANCELLED"}),
    "MATCHED": frozenset({"CONFIRMED", "CANCELLED", "DISPUTED"}),
    "CONFIRMED": frozenset({"IN_PROGRESS", "CANCELLED", "DISPUTED"}),
    "IN_PROGRESS": frozenset({"COMPLETED", "CANCELLED", "DISPUTED"}),
    "COMPLETED": frozenset(),
    "CANCELLED": frozenset(),
    "DISPUTED": frozenset(),
}

ESCALATABLE_STATUSES = frozenset({"MATCHED", "CONFIRMED", "IN_PROGRESS"})
REMATCHABLE_STATUSES = frozenset({"PENDING", "MATCHED"})

SCHEDULE_GRACE = timedelta(minutes=1)


def can_transition(from_status: str, to_status: str) -> bool:
    return to_status in TRANSITIONS.get(from_status, frozenset())


def parse_scheduled_date(value: str) -> datetime:
    try:
        scheduled = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError("Invalid date format for scheduledDate", {"scheduled_date": value}) from exc
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    return scheduled


def within_service_area(lat: float, lng: float, bounds: Tuple[float, float, float, float]) -> bool:
    lat_min, lat_max, lng_min, lng_max = bounds
    return lat_min <= lat <= lat_max and lng_min <= lng <= lng_max


class BookingLifecycle:
    """Booking state machine. Every transition is a conditional write on (status, version)."""

    def __init__(
        self,
        store: CareStore,
        matcher: ProviderMatcher,
        trust: TrustScoreCalculator,
        notifier: NotificationSender,
        *,
        ledger: Optional[EscrowPaymentLedger] = None,
        service_area: Tuple[float, float, float, float] = config.SERVICE_AREA_BOUNDS,
    ) -> None:
        self.store = store
        self.matcher = matcher
        self.trust = trust
        self.notifier = notifier
        self.ledger = ledger
        self.service_area = service_area

    def _require_booking(self, booking_id: str) -> Booking:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        return booking

    def _transition(
        self,
        booking: Booking,
        to_status: str,
        *,
        actor_user_id: str,
        note: str = "",
        changes: Optional[dict] = None,
    ) -> Booking:
        if not can_transition(booking.status, to_status):
            raise InvalidStateError(
                f"Invalid status transition: {booking.status} -> {to_status}",
                {"booking_id": booking.id, "current_status": booking.status},
            )
        return self.store.compare_and_set_booking(
            booking.id,
            expected_status=booking.status,
            expected_version=booking.version,
            to_status=to_status,
            actor_user_id=actor_user_id,
            note=note,
            changes=changes,
        )

    def _notify(self, recipient_id: Optional[str], title: str, message: str, booking_id: str) -> None:
        if not recipient_id:
            return
        try:
            self.notifier.send(recipient_id, title, message, category="booking", deep_link=f"booking:{booking_id}")
        except Exception:
            logger.exception("Booking notification failed recipient=%s booking=%s", recipient_id, booking_id)

    def _announce_to_matches(self, booking: Booking, matches: List[MatchCandidate], category_name: str) -> None:
        message = f"A new {category_name} booking is available near you. Tap to view details."
        for match in matches:
            self._notify(match.provider_id, "New booking available", message, booking.id)

    def _match(self, booking: Booking) -> List[MatchCandidate]:
        return self.matcher.find_matches(
            booking.service_category_slug,
            booking.location.lat,
            booking.location.lng,
        )

    def create_booking(self, request: BookingMatchRequest) -> BookingMatchResult:
        customer = self.store.get_user(request.customer_id)
        if not customer or customer.role != "customer":
            raise NotFoundError("Customer not found", {"customer_id": request.customer_id})
        if not customer.is_active:
            raise ForbiddenError("Customer account is inactive", {"customer_id": request.customer_id})

        category = self.store.require_category(request.service_category_slug)
        if not category.is_active:
            raise ValidationError(
                f"Service category is not active: {category.slug}",
                {"service_category_slug": category.slug},
            )
        if not within_service_area(request.location.lat, request.location.lng, self.service_area):
            raise ValidationError(
                "Location is outside the service area",
                {"lat": request.location.lat, "lng": request.location.lng},
            )
        scheduled = parse_scheduled_date(request.scheduled_date)
        if scheduled < datetime.now(timezone.utc) - SCHEDULE_GRACE:
            raise ValidationError("Scheduled date cannot be in the past", {"scheduled_date": request.scheduled_date})

        name = request.care_recipient_name.strip()
        if len(name) < 2:
            raise ValidationError("Care recipient name must be at least 2 characters")

        booking = self.store.insert_booking(
            customer_id=customer.id,
            category=category,
            care_recipient_name=name,
            location=request.location,
            scheduled_date=scheduled.isoformat(),
            notes=request.notes.strip() if request.notes else None,
        )
        matches = self._match(booking)
        if matches:
            booking = self._transition(
                booking,
                "MATCHED",
                actor_user_id="system",
                note=f"{len(matches)} providers matched",
            )
            self._announce_to_matches(booking, matches, category.name)
        logger.info("booking_created id=%s customer=%s matches=%s", booking.id, customer.id, len(matches))
        return BookingMatchResult(booking=booking, matched_providers=matches, total_matches=len(matches))

    def rematch(self, booking_id: str, actor_user_id: Optional[str] = None) -> BookingMatchResult:
        booking = self._require_booking(booking_id)
        if actor_user_id is not None and actor_user_id != booking.customer_id:
            raise ForbiddenError("Only the booking's customer can rematch it", {"booking_id": booking_id})
        if booking.status not in REMATCHABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot rematch a booking in status {booking.status}",
                {"booking_id": booking_id, "current_status": booking.status},
            )
        matches = self._match(booking)
        if matches and booking.status == "PENDING":
            booking = self._transition(
                booking,
                "MATCHED",
                actor_user_id="system",
                note=f"{len(matches)} providers matched",
            )
            category = self.store.require_category(booking.service_category_slug)
            self._announce_to_matches(booking, matches, category.name)
        return BookingMatchResult(booking=booking, matched_providers=matches, total_matches=len(matches))

    def accept(self, booking_id: str, provider_id: str) -> Booking:
        booking = self._require_booking(booking_id)
        provider = self.store.get_provider(provider_id)
        if not provider or not provider.is_active:
            raise ForbiddenError("Provider account is not active", {"provider_id": provider_id})
        if not self.store.is_verified_for_category(provider_id, booking.service_category_id):
            raise ForbiddenError(
                "Provider is not verified for this service category",
                {"provider_id": provider_id, "service_category_slug": booking.service_category_slug},
            )
        confirmed = self._transition(
            booking,
            "CONFIRMED",
            actor_user_id=provider_id,
            note="provider accepted",
            changes={"provider_id": provider_id},
        )

        created_at = datetime.fromisoformat(booking.created_at)
        minutes = (datetime.now(timezone.utc) - created_at).total_seconds() / 60
        self.store.record_response_sample(provider_id, booking_id, minutes)

        self._notify(
            confirmed.customer_id,
            "Booking confirmed",
            f"{provider.full_name} accepted your booking for {confirmed.care_recipient_name}.",
            booking_id,
        )
        return confirmed

    def _require_assigned_provider(self, booking: Booking, actor_user_id: str) -> None:
        if not booking.provider_id or booking.provider_id != actor_user_id:
            raise ForbiddenError("Only the assigned provider can perform this action", {"booking_id": booking.id})

    def start(self, booking_id: str, actor_user_id: str) -> Booking:
        booking = self._require_booking(booking_id)
        self._require_assigned_provider(booking, actor_user_id)
        started = self._transition(booking, "IN_PROGRESS", actor_user_id=actor_user_id, note="service started")
        self._notify(started.customer_id, "Care started", "Your care provider has started the session.", booking_id)
        return started

    def complete(self, booking_id: str, actor_user_id: str) -> Booking:
        booking = self._require_booking(booking_id)
        self._require_assigned_provider(booking, actor_user_id)
        completed = self._transition(booking, "COMPLETED", actor_user_id=actor_user_id, note="service completed")
        self.trust.recompute(actor_user_id)
        if self.ledger is not None:
            escrow = self.store.get_escrow(booking_id)
            if escrow and escrow.state == "HELD_IN_ESCROW":
                self.ledger.release(booking_id)
                completed = self._require_booking(booking_id)
        self._notify(completed.customer_id, "Care completed", "Your booking is complete. Please leave a review.", booking_id)
        return completed

    def cancel(self, booking_id: str, actor_user_id: str, reason: str = "") -> Booking:
        booking = self._require_booking(booking_id)
        if actor_user_id not in {booking.customer_id, booking.provider_id}:
            raise ForbiddenError("Only the customer or assigned provider can cancel", {"booking_id": booking_id})
        cancelled = self._transition(
            booking,
            "CANCELLED",
            actor_user_id=actor_user_id,
            note=reason or "cancelled",
            changes={"cancellation_reason": reason or None},
        )
        if self.ledger is not None:
            escrow = self.store.get_escrow(booking_id)
            if escrow and escrow.state == "HELD_IN_ESCROW":
                try:
                    self.ledger.refund(booking_id, reason or "Booking cancelled")
                except CareLinkError:
                    # Escrow stays HELD; the refund can be retried from the payments API.
                    logger.exception("Automatic refund failed booking=%s", booking_id)
                cancelled = self._require_booking(booking_id)
        other_party = booking.provider_id if actor_user_id == booking.customer_id else booking.customer_id
        self._notify(other_party, "Booking cancelled", reason or "The booking was cancelled.", booking_id)
        return cancelled

    def freeze_for_dispute(self, booking: Booking, *, actor_user_id: str, reason: str) -> Booking:
        """Move an active booking to DISPUTED and flag the incident. Used by emergency escalation only."""
        if booking.status not in ESCALATABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot escalate a booking in status {booking.status}",
                {"booking_id": booking.id, "current_status": booking.status},
            )
        return self._transition(
            booking,
            "DISPUTED",
            actor_user_id=actor_user_id,
            note=reason,
            changes={"cancellation_reason": reason, "incident_reported": True},
        )

    def add_review(self, booking_id: str, customer_id: str, rating: int, comment: str = "") -> Review:
        booking = self._require_booking(booking_id)
        if booking.customer_id != customer_id:
            raise ForbiddenError("Only the booking's customer can review it", {"booking_id": booking_id})
        if booking.status != "COMPLETED" or not booking.provider_id:
            raise InvalidStateError(
                "Only completed bookings can be reviewed",
                {"booking_id": booking_id, "current_status": booking.status},
            )
        if rating < 1 or rating > 5:
            raise ValidationError("Rating must be between 1 and 5", {"rating": rating})
        review = self.store.add_review(booking=booking, rating=rating, comment=comment.strip())
        self.trust.recompute(booking.provider_id)
        return review

    def get_booking(self, booking_id: str) -> Booking:
        return self._require_booking(booking_id)

    def list_bookings(self, user_id: Optional[str] = None, role: Optional[str] = None) -> List[Booking]:
        return self.store.list_bookings(user_id=user_id, role=role)

    def history(self, booking_id: str) -> List[BookingStatusChange]:
        self._require_booking(booking_id)
        return self.store.booking_history(booking_id)


trust_calculator = TrustScoreCalculator(care_store)
booking_lifecycle = BookingLifecycle(
    care_store,
    provider_matcher,
    trust_calculator,
    notification_store,
    ledger=escrow_ledger,
)
