"""Emergency escalation for an active booking.

Escalating freezes the booking (DISPUTED), picks the emergency number for the
booking's location, alerts the customer's emergency contact by SMS and the
other party in-app, then writes an immutable incident record. Only the freeze
can fail the call; every later step is best effort and reported in the
result.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional
from uuid import uuid4

from carelink import config
from carelink.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from carelink.models import Booking, EmergencyContact, EscalationResult, IncidentRecord
from carelink.services.booking_lifecycle import ESCALATABLE_STATUSES, BookingLifecycle, booking_lifecycle
from carelink.services.care_store import CareStore, care_store
from carelink.services.notification_store import NotificationSender, notification_store
from carelink.services.sms_sender import SmsSender, sms_sender

logger = logging.getLogger(__name__)

PARTY_LABELS = {"CUSTOMER": "the customer", "PROVIDER": "the care companion"}


def resolve_emergency_number(
    address: Optional[str],
    facilities: Dict[str, str] = config.EMERGENCY_FACILITY_NUMBERS,
    default_number: str = config.EMERGENCY_DEFAULT_NUMBER,
) -> str:
    """Number of the first facility whose name appears in the address, else the national line."""
    if not address:
        return default_number
    haystack = address.lower()
    for facility, number in facilities.items():
        if facility.lower() in haystack:
            return number
    return default_number


class EmergencyEscalationProtocol:
    def __init__(
        self,
        store: CareStore,
        lifecycle: BookingLifecycle,
        sms: SmsSender,
        notifier: NotificationSender,
        *,
        facilities: Optional[Dict[str, str]] = None,
        default_number: str = config.EMERGENCY_DEFAULT_NUMBER,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle
        self.sms = sms
        self.notifier = notifier
        self.facilities = dict(config.EMERGENCY_FACILITY_NUMBERS if facilities is None else facilities)
        self.default_number = default_number

    def escalate(
        self,
        booking_id: str,
        triggered_by: str,
        triggered_by_user_id: str,
        reason: Optional[str] = None,
    ) -> EscalationResult:
        if triggered_by not in PARTY_LABELS:
            raise ValidationError("triggered_by must be CUSTOMER or PROVIDER", {"triggered_by": triggered_by})
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        if booking.status not in ESCALATABLE_STATUSES:
            raise InvalidStateError(
                f"Cannot escalate emergency for booking in status: {booking.status}",
                {"booking_id": booking_id, "current_status": booking.status},
            )
        party_user_id = booking.customer_id if triggered_by == "CUSTOMER" else booking.provider_id
        if not party_user_id or party_user_id != triggered_by_user_id:
            raise ForbiddenError(
                "Only a party to this booking can escalate it",
                {"booking_id": booking_id, "triggered_by": triggered_by},
            )

        reason_text = (reason or "").strip() or "No reason provided"
        frozen = self.lifecycle.freeze_for_dispute(
            booking,
            actor_user_id=triggered_by_user_id,
            reason=f"Emergency escalation by {triggered_by}: {reason_text}",
        )
        logger.warning("emergency_escalation booking=%s by=%s user=%s", booking_id, triggered_by, triggered_by_user_id)

        emergency_number = resolve_emergency_number(booking.location.address, self.facilities, self.default_number)
        contact_notified = self._alert_emergency_contact(booking, triggered_by, emergency_number)
        party_notified = self._notify_other_party(booking, triggered_by, emergency_number)

        incident = IncidentRecord(
            id=f"inc_{uuid4().hex[:12]}",
            booking_id=booking_id,
            triggered_by=triggered_by,  # type: ignore[arg-type]
            triggered_by_user_id=triggered_by_user_id,
            reason=reason,
            previous_status=booking.status,
            emergency_number=emergency_number,
            contact_notified=contact_notified,
            party_notified=party_notified,
            created_at=datetime.now(timezone.utc).isoformat(),
        )
        incident_recorded = True
        try:
            self.store.insert_incident(incident)
        except Exception:
            incident_recorded = False
            logger.exception("Failed to record incident booking=%s", booking_id)

        return EscalationResult(
            emergency_number=emergency_number,
            booking_frozen=frozen.status == "DISPUTED",
            contact_notified=contact_notified,
            party_notified=party_notified,
            incident_recorded=incident_recorded,
            incident_id=incident.id if incident_recorded else None,
        )

    def _alert_emergency_contact(self, booking: Booking, triggered_by: str, emergency_number: str) -> bool:
        try:
            contact = self.store.get_emergency_contact(booking.customer_id)
            if not contact.emergency_phone:
                logger.info("No emergency contact on file customer=%s", booking.customer_id)
                return False
            customer = self.store.get_user(booking.customer_id)
            customer_name = customer.full_name if customer else "A CareLink customer"
            message = (
                f"CareLink EMERGENCY ALERT: {customer_name} has triggered an emergency for "
                f"{booking.care_recipient_name or 'care recipient'} at {booking.location.address or 'the booked location'}. "
                f"Emergency services contacted: {emergency_number}. "
                f"This was triggered by {PARTY_LABELS[triggered_by]}. Please check immediately. - CareLink"
            )
            return self.sms.send(contact.emergency_phone, message)
        except Exception:
            logger.exception("Emergency contact alert failed booking=%s", booking.id)
            return False

    def _notify_other_party(self, booking: Booking, triggered_by: str, emergency_number: str) -> bool:
        recipient = booking.provider_id if triggered_by == "CUSTOMER" else booking.customer_id
        if not recipient:
            return False
        try:
            return self.notifier.send(
                recipient,
                "Emergency reported",
                f"An emergency was reported by {PARTY_LABELS[triggered_by]}. Emergency number: {emergency_number}.",
                category="emergency",
                deep_link=f"booking:{booking.id}",
            )
        except Exception:
            logger.exception("Emergency notification failed booking=%s", booking.id)
            return False

    def get_emergency_contact(self, customer_id: str) -> EmergencyContact:
        return self.store.get_emergency_contact(customer_id)

    def update_emergency_contact(self, customer_id: str, name: str, phone: str, relation: str = "") -> EmergencyContact:
        if not phone.strip().startswith("+"):
            raise ValidationError("Emergency phone must be in E.164 format (e.g. +94771234567)", {"phone": phone})
        return self.store.update_emergency_contact(customer_id, name, phone, relation)


emergency_protocol = EmergencyEscalationProtocol(care_store, booking_lifecycle, sms_sender, notification_store)
