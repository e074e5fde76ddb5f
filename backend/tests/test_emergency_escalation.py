import os
import sqlite3
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from carelink.errors import ForbiddenError, InvalidStateError, NotFoundError, ValidationError
from carelink.services.emergency_escalation import resolve_emergency_number

FACILITIES = {"Asiri Hospital": "011-4665500", "Nawaloka Hospital": "011-5777777"}


@pytest.mark.parametrize(
    "address,expected",
    [
        ("Ward 4, Asiri Hospital, Kirula Road", "011-4665500"),
        ("near nawaloka hospital, Colombo 02", "011-5777777"),
        ("12 Galle Road, Colombo 03", "1990"),
        ("", "1990"),
        (None, "1990"),
    ],
)
def test_emergency_number_lookup(address, expected):
    assert resolve_emergency_number(address, FACILITIES, "1990") == expected


def test_customer_escalation_freezes_and_alerts(stack):
    booking, customer, provider = stack.booking("IN_PROGRESS", address="Room 12, Asiri Hospital, Colombo 05")

    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id, "Patient collapsed")

    assert result.booking_frozen is True
    assert result.emergency_number == "011-4665500"
    assert result.contact_notified is True
    assert result.party_notified is True
    assert result.incident_recorded is True

    frozen = stack.lifecycle.get_booking(booking.id)
    assert frozen.status == "DISPUTED"
    assert frozen.incident_reported is True
    assert frozen.cancellation_reason == "Emergency escalation by CUSTOMER: Patient collapsed"

    phone, message = stack.sms.sent[-1]
    assert phone == "+94771234567"
    assert "Nimali Perera" in message
    assert "Amma Perera" in message
    assert "Emergency services contacted: 011-4665500" in message
    assert "triggered by the customer" in message

    alert = stack.notifier.to(provider.id)[-1]
    assert alert["category"] == "emergency"
    assert "011-4665500" in alert["message"]


def test_provider_escalation_uses_default_number_and_notifies_customer(stack):
    booking, customer, provider = stack.booking("CONFIRMED")

    result = stack.protocol.escalate(booking.id, "PROVIDER", provider.id)

    assert result.emergency_number == "1990"
    assert stack.lifecycle.get_booking(booking.id).cancellation_reason == (
        "Emergency escalation by PROVIDER: No reason provided"
    )
    assert "triggered by the care companion" in stack.sms.sent[-1][1]
    assert stack.notifier.to(customer.id)[-1]["category"] == "emergency"


def test_incident_record_is_written(stack):
    booking, customer, _ = stack.booking("IN_PROGRESS")

    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id, "fall")

    incidents = stack.store.list_incidents(booking.id)
    assert [incident.id for incident in incidents] == [result.incident_id]
    incident = incidents[0]
    assert incident.previous_status == "IN_PROGRESS"
    assert incident.triggered_by == "CUSTOMER"
    assert incident.triggered_by_user_id == customer.id
    assert incident.reason == "fall"
    assert incident.contact_notified is True


def test_preconditions_are_checked_in_order(stack):
    booking, customer, provider = stack.booking("IN_PROGRESS")

    with pytest.raises(ValidationError):
        stack.protocol.escalate("bk_missing", "NEIGHBOUR", customer.id)
    with pytest.raises(NotFoundError):
        stack.protocol.escalate("bk_missing", "CUSTOMER", customer.id)
    with pytest.raises(ForbiddenError):
        stack.protocol.escalate(booking.id, "CUSTOMER", provider.id)
    with pytest.raises(ForbiddenError):
        stack.protocol.escalate(booking.id, "PROVIDER", customer.id)

    assert stack.lifecycle.get_booking(booking.id).status == "IN_PROGRESS"
    assert stack.sms.sent == []


@pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED", "DISPUTED"])
def test_inactive_bookings_cannot_escalate(stack, status):
    booking, customer, _ = stack.booking(status)
    sms_before = len(stack.sms.sent)

    with pytest.raises(InvalidStateError):
        stack.protocol.escalate(booking.id, "CUSTOMER", customer.id)
    assert len(stack.sms.sent) == sms_before
    assert stack.store.list_incidents(booking.id) == []


def test_matched_booking_without_provider_escalates_for_customer(stack):
    booking, customer, _ = stack.booking("MATCHED")

    with pytest.raises(ForbiddenError):
        stack.protocol.escalate(booking.id, "PROVIDER", customer.id)

    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id)
    assert result.booking_frozen is True
    assert result.party_notified is False


def test_missing_emergency_contact_is_reported(stack):
    customer = stack.customer(emergency_phone=None)
    booking, _, _ = stack.booking("CONFIRMED", customer=customer)

    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id)

    assert result.booking_frozen is True
    assert result.contact_notified is False
    assert stack.sms.sent == []


def test_alert_failures_do_not_undo_the_freeze(stack):
    booking, customer, _ = stack.booking("IN_PROGRESS")
    stack.sms.fail = True
    stack.notifier.fail = True

    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id, "smoke in kitchen")

    assert result.booking_frozen is True
    assert result.contact_notified is False
    assert result.party_notified is False
    assert result.incident_recorded is True
    assert stack.lifecycle.get_booking(booking.id).status == "DISPUTED"


def test_unsent_sms_is_reported(stack):
    booking, customer, _ = stack.booking("IN_PROGRESS")
    stack.sms.result = False

    assert stack.protocol.escalate(booking.id, "CUSTOMER", customer.id).contact_notified is False


def test_incident_write_failure_is_reported(stack, monkeypatch):
    booking, customer, _ = stack.booking("IN_PROGRESS")

    def broken_insert(incident):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(stack.store, "insert_incident", broken_insert)
    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id)

    assert result.booking_frozen is True
    assert result.incident_recorded is False
    assert result.incident_id is None
    assert stack.lifecycle.get_booking(booking.id).status == "DISPUTED"


def test_contact_lookup_failure_still_returns_the_number(stack, monkeypatch):
    booking, customer, _ = stack.booking("IN_PROGRESS", address="Ward 4, Asiri Hospital, Kirula Road")

    def locked(customer_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(stack.store, "get_emergency_contact", locked)
    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id, "fainted")

    assert result.emergency_number == "011-4665500"
    assert result.booking_frozen is True
    assert result.contact_notified is False
    assert result.incident_recorded is True
    assert stack.sms.sent == []
    assert [incident.id for incident in stack.store.list_incidents(booking_id=booking.id)] == [result.incident_id]
    assert stack.lifecycle.get_booking(booking.id).status == "DISPUTED"


def test_unexpected_incident_write_error_is_reported(stack, monkeypatch):
    booking, customer, _ = stack.booking("IN_PROGRESS")

    def broken_insert(incident):
        raise RuntimeError("disk full")

    monkeypatch.setattr(stack.store, "insert_incident", broken_insert)
    result = stack.protocol.escalate(booking.id, "CUSTOMER", customer.id)

    assert result.emergency_number
    assert result.incident_recorded is False


def test_emergency_contact_round_trip(stack):
    customer = stack.customer(emergency_phone=None)
    assert stack.protocol.get_emergency_contact(customer.id).has_emergency_contact is False

    updated = stack.protocol.update_emergency_contact(customer.id, "Sunil Perera", "+94779998877", "Son")
    assert updated.has_emergency_contact is True
    assert updated.emergency_phone == "+94779998877"
    assert stack.protocol.get_emergency_contact(customer.id) == updated


def test_emergency_contact_validation(stack):
    customer = stack.customer()
    provider = stack.provider()

    with pytest.raises(ValidationError):
        stack.protocol.update_emergency_contact(customer.id, "Sunil", "0779998877")
    with pytest.raises(NotFoundError):
        stack.protocol.update_emergency_contact(provider.id, "Sunil", "+94779998877")
    with pytest.raises(NotFoundError):
        stack.protocol.get_emergency_contact("cust_missing")
