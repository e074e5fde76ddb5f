import asyncio
import os
import random
import sys
from urllib.parse import urlencode
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from conftest import future_date, north_of
from carelink.main import app
from carelink.services.care_store import care_store
from carelink.services.escrow_ledger import escrow_ledger
from carelink.services.payhere_gateway import notification_hash, payhere_gateway

client = TestClient(app)


def _uid(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:8]}"


def _place():
    # Somewhere in the hill country, away from the seeded Colombo providers.
    return 7.0 + random.random() * 2.0, 80.3 + random.random() * 1.2


PASSWORD = "kandy-tea-estate-42"


def _login(user_id: str, password: str = PASSWORD) -> str:
    response = client.post("/auth/login", json={"user_id": user_id, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _auth(user_id: str) -> dict:
    return {"Authorization": f"Bearer {_login(user_id)}"}


def _admin():
    return care_store.add_user(user_id=_uid("admin"), role="admin", full_name="CareLink Operations", password=PASSWORD)


def _customer(emergency_phone="+94771234567"):
    return care_store.add_user(
        user_id=_uid("cust"),
        role="customer",
        full_name="Nimali Perera",
        emergency_name="Sunil Perera",
        emergency_phone=emergency_phone,
        emergency_relation="Son",
        password=PASSWORD,
    )


def _provider(point, trust=60.0, verified=True):
    provider = care_store.add_provider(
        provider_id=_uid("prov"),
        full_name="Kamala Silva",
        latitude=point[0],
        longitude=point[1],
        password=PASSWORD,
    )
    care_store.grant_skill(provider.id, "hospital-attendant", verified=verified)
    care_store.set_provider_trust_score(provider.id, trust)
    return provider


def _create_booking(customer_id, point, address="12 Temple Road, Kandy"):
    response = client.post(
        "/bookings/match",
        json={
            "customer_id": customer_id,
            "care_recipient_name": "Amma Perera",
            "service_category_slug": "hospital-attendant",
            "location": {"lat": point[0], "lng": point[1], "address": address},
            "scheduled_date": future_date(),
        },
        headers=_auth(customer_id),
    )
    assert response.status_code == 201, response.text
    return response.json()


def _booking_in(status, address="12 Temple Road, Kandy"):
    point = _place()
    customer = _customer()
    provider = _provider(point)
    booking_id = _create_booking(customer.id, point, address)["booking"]["id"]
    if status != "MATCHED":
        accepted = client.post(f"/bookings/{booking_id}/accept", json={"provider_id": provider.id})
        assert accepted.status_code == 200, accepted.text
    if status == "IN_PROGRESS":
        started = client.post(f"/bookings/{booking_id}/start", json={"actor_user_id": provider.id})
        assert started.status_code == 200, started.text
    return booking_id, customer, provider


def _signed_notification(order_id, amount="1500.00", status_code="2", currency="LKR"):
    merchant_id = payhere_gateway.merchant_id
    return {
        "merchant_id": merchant_id,
        "order_id": order_id,
        "payment_id": "320025071278",
        "payhere_amount": amount,
        "payhere_currency": currency,
        "status_code": status_code,
        "md5sig": notification_hash(merchant_id, order_id, amount, currency, status_code, payhere_gateway.merchant_secret),
    }


def _pay(booking_id, customer_id, amount="1500.00"):
    checkout = client.post(f"/payments/{booking_id}/initiate", json={"actor_user_id": customer_id, "amount": amount})
    assert checkout.status_code == 201, checkout.text
    order_id = checkout.json()["order_id"]
    notified = client.post(
        "/payments/notify",
        content=urlencode(_signed_notification(order_id, amount)),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert notified.status_code == 200, notified.text
    return order_id


@pytest.fixture
def refund_api(monkeypatch):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"status": "success", "refund_id": "RF-api"})

    monkeypatch.setattr(payhere_gateway, "_client", httpx.Client(transport=httpx.MockTransport(handler)))
    return requests


def test_health_and_ready():
    assert client.get("/health").json() == {"status": "ok"}
    ready = client.get("/ready").json()
    assert ready["status"] == "ready"
    assert ready["spatial_index"] is True
    assert ready["payment_mode"] == "sandbox"


def test_auth_login_and_me():
    customer = _customer()
    token = _login(customer.id)
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user_id"] == customer.id

    wrong = client.post("/auth/login", json={"user_id": customer.id, "password": "nope"})
    assert wrong.status_code == 401
    assert client.get("/auth/me", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_login_requires_a_stored_credential():
    unknown = client.post("/auth/login", json={"user_id": _uid("ghost"), "password": PASSWORD})
    assert unknown.status_code == 401

    # Seeded accounts have no password unless CARELINK_DEMO_PASSWORD is set.
    for password in ("carelink-demo", PASSWORD):
        seeded_admin = client.post("/auth/login", json={"user_id": "admin_demo_1", "password": password})
        assert seeded_admin.status_code == 401

    admin = _admin()
    assert client.post("/auth/login", json={"user_id": admin.id, "password": "carelink-demo"}).status_code == 401

    inactive = _customer()
    care_store.set_user_active(inactive.id, False)
    assert client.post("/auth/login", json={"user_id": inactive.id, "password": PASSWORD}).status_code == 401


def test_admin_routes_need_an_admin_token():
    customer = _customer()
    admin = _admin()

    anonymous = client.get("/admin/incidents", params={"actor_user_id": admin.id})
    assert anonymous.status_code == 401

    claimed = client.get("/admin/incidents", params={"actor_user_id": admin.id}, headers=_auth(customer.id))
    assert claimed.status_code == 403

    allowed = client.get("/admin/incidents", params={"actor_user_id": admin.id}, headers=_auth(admin.id))
    assert allowed.status_code == 200


def test_match_endpoint_orders_by_trust_then_distance():
    point = _place()
    low = _provider(north_of(point, 500), trust=55.0)
    far_high = _provider(north_of(point, 6000), trust=88.0)
    near_high = _provider(north_of(point, 2000), trust=88.0)

    response = client.get("/providers/match", params={"skill": "hospital-attendant", "lat": point[0], "lng": point[1]})
    assert response.status_code == 200
    mine = {low.id, far_high.id, near_high.id}
    ordered = [item["provider_id"] for item in response.json() if item["provider_id"] in mine]
    assert ordered == [near_high.id, far_high.id, low.id]


def test_match_endpoint_errors_carry_codes():
    bad_lat = client.get("/providers/match", params={"skill": "hospital-attendant", "lat": 95, "lng": 80})
    assert bad_lat.status_code == 400
    assert bad_lat.headers["X-Error-Code"] == "VALIDATION_ERROR"

    unknown = client.get("/providers/match", params={"skill": "dog-walking", "lat": 7.2, "lng": 80.6})
    assert unknown.status_code == 404
    assert unknown.headers["X-Error-Code"] == "NOT_FOUND"

    malformed = client.get("/providers/match", params={"skill": "Hospital Attendant", "lat": 7.2, "lng": 80.6})
    assert malformed.status_code == 400


def test_booking_lifecycle_over_http():
    point = _place()
    customer = _customer()
    provider = _provider(point)

    created = _create_booking(customer.id, point)
    booking_id = created["booking"]["id"]
    assert created["booking"]["status"] == "MATCHED"
    assert provider.id in [item["provider_id"] for item in created["matched_providers"]]

    provider_headers = _auth(provider.id)
    accepted = client.post(f"/bookings/{booking_id}/accept", json={"provider_id": provider.id}, headers=provider_headers)
    assert accepted.json()["status"] == "CONFIRMED"
    started = client.post(f"/bookings/{booking_id}/start", json={"actor_user_id": provider.id}, headers=provider_headers)
    assert started.json()["status"] == "IN_PROGRESS"
    completed = client.post(f"/bookings/{booking_id}/complete", json={"actor_user_id": provider.id}, headers=provider_headers)
    assert completed.json()["status"] == "COMPLETED"

    review = client.post(
        f"/bookings/{booking_id}/review",
        json={"customer_id": customer.id, "rating": 5, "comment": "Very caring"},
        headers=_auth(customer.id),
    )
    assert review.status_code == 201

    history = client.get(f"/bookings/{booking_id}/history").json()
    assert [item["to_status"] for item in history] == ["PENDING", "MATCHED", "CONFIRMED", "IN_PROGRESS", "COMPLETED"]

    listed = client.get("/bookings", params={"user_id": customer.id, "role": "customer"}).json()
    assert [item["id"] for item in listed] == [booking_id]

    trust = client.get(f"/providers/{provider.id}/trust-score").json()
    assert trust["completion_component"] == 100.0


def test_invalid_transition_is_conflict():
    booking_id, _, provider = _booking_in("CONFIRMED")
    response = client.post(f"/bookings/{booking_id}/complete", json={"actor_user_id": provider.id})
    assert response.status_code == 409
    assert response.headers["X-Error-Code"] == "INVALID_STATE"


def test_token_must_match_actor():
    booking_id, customer, provider = _booking_in("CONFIRMED")
    response = client.post(
        f"/bookings/{booking_id}/start",
        json={"actor_user_id": provider.id},
        headers=_auth(customer.id),
    )
    assert response.status_code == 403


def test_request_validation_is_400():
    response = client.post("/bookings/match", json={"customer_id": "x"})
    assert response.status_code == 400
    assert response.headers["X-Error-Code"] == "VALIDATION_ERROR"

    missing = client.get(f"/bookings/{_uid('bk')}")
    assert missing.status_code == 404


def test_payment_webhook_holds_then_completion_releases():
    booking_id, customer, provider = _booking_in("IN_PROGRESS")
    order_id = _pay(booking_id, customer.id)

    escrow = client.get(f"/payments/{booking_id}").json()
    assert escrow["state"] == "HELD_IN_ESCROW"
    assert escrow["platform_fee"] == "150.00"
    assert escrow["provider_payout"] == "1350.00"

    replay = client.post(
        "/payments/notify",
        content=urlencode(_signed_notification(order_id)),
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert replay.json()["duplicate"] is True

    early = client.post(f"/payments/{booking_id}/release", json={"actor_user_id": customer.id})
    assert early.status_code == 409
    assert early.headers["X-Error-Code"] == "ESCROW_NOT_RELEASABLE"

    client.post(f"/bookings/{booking_id}/complete", json={"actor_user_id": provider.id})
    assert client.get(f"/payments/{booking_id}").json()["state"] == "RELEASED"
    assert client.get(f"/bookings/{booking_id}").json()["payment_status"] == "RELEASED"


def test_payment_webhook_accepts_json_and_rejects_bad_signatures():
    booking_id, customer, _ = _booking_in("CONFIRMED")
    checkout = client.post(f"/payments/{booking_id}/initiate", json={"actor_user_id": customer.id, "amount": "2000.00"})
    order_id = checkout.json()["order_id"]

    forged = _signed_notification(order_id, "2000.00")
    forged["md5sig"] = "F" * 32
    rejected = client.post("/payments/notify", json=forged)
    assert rejected.status_code == 403
    assert rejected.headers["X-Error-Code"] == "SIGNATURE_MISMATCH"
    assert client.get(f"/payments/{booking_id}").json()["state"] == "PENDING"

    accepted = client.post("/payments/notify", json=_signed_notification(order_id, "2000.00"))
    assert accepted.status_code == 200
    assert accepted.json()["escrow"]["state"] == "HELD_IN_ESCROW"


def test_payment_webhook_is_handled_off_the_event_loop(monkeypatch):
    booking_id, customer, _ = _booking_in("CONFIRMED")
    checkout = client.post(f"/payments/{booking_id}/initiate", json={"actor_user_id": customer.id, "amount": "1500.00"})
    handled_on = []
    original = escrow_ledger.handle_payment_notification

    def recording(notification):
        try:
            asyncio.get_running_loop()
            handled_on.append("event loop")
        except RuntimeError:
            handled_on.append("worker thread")
        return original(notification)

    monkeypatch.setattr(escrow_ledger, "handle_payment_notification", recording)
    response = client.post("/payments/notify", json=_signed_notification(checkout.json()["order_id"]))

    assert response.status_code == 200
    assert handled_on == ["worker thread"]


def test_malformed_webhook_body_is_400():
    response = client.post("/payments/notify", content="{not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.headers["X-Error-Code"] == "VALIDATION_ERROR"

    missing_fields = client.post(
        "/payments/notify",
        content="order_id=CL-x-1",
        headers={"Content-Type": "application/x-www-form-urlencoded"},
    )
    assert missing_fields.status_code == 400


def test_payment_initiate_requires_customer():
    booking_id, _, provider = _booking_in("CONFIRMED")
    response = client.post(f"/payments/{booking_id}/initiate", json={"actor_user_id": provider.id, "amount": "10.00"})
    assert response.status_code == 403
    assert response.headers["X-Error-Code"] == "FORBIDDEN"


def test_refund_is_admin_only(refund_api):
    booking_id, customer, _ = _booking_in("IN_PROGRESS")
    _pay(booking_id, customer.id)
    escalated = client.post(
        "/emergency/escalate",
        json={"booking_id": booking_id, "triggered_by": "CUSTOMER", "triggered_by_user_id": customer.id},
    )
    assert escalated.status_code == 200

    denied = client.post(
        f"/payments/{booking_id}/refund",
        json={"actor_user_id": customer.id, "reason": "incident"},
        headers=_auth(customer.id),
    )
    assert denied.status_code == 403

    admin = _admin()
    refunded = client.post(
        f"/payments/{booking_id}/refund",
        json={"actor_user_id": admin.id, "reason": "incident"},
        headers=_auth(admin.id),
    )
    assert refunded.status_code == 200
    assert refunded.json()["state"] == "REFUNDED"
    assert len(refund_api) == 1


def test_cancel_refunds_held_payment(refund_api):
    booking_id, customer, _ = _booking_in("CONFIRMED")
    _pay(booking_id, customer.id)

    cancelled = client.post(f"/bookings/{booking_id}/cancel", json={"actor_user_id": customer.id, "reason": "recovered"})
    assert cancelled.status_code == 200
    assert cancelled.json()["payment_status"] == "REFUNDED"


def test_refund_gateway_outage_is_503(monkeypatch):
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    booking_id, customer, _ = _booking_in("IN_PROGRESS")
    _pay(booking_id, customer.id)
    client.post(
        "/emergency/escalate",
        json={"booking_id": booking_id, "triggered_by": "CUSTOMER", "triggered_by_user_id": customer.id},
    )
    monkeypatch.setattr(payhere_gateway, "_client", httpx.Client(transport=httpx.MockTransport(handler)))

    admin = _admin()
    response = client.post(f"/payments/{booking_id}/refund", json={"actor_user_id": admin.id}, headers=_auth(admin.id))
    assert response.status_code == 503
    assert response.headers["X-Error-Code"] == "UPSTREAM_FAILURE"
    assert client.get(f"/payments/{booking_id}").json()["state"] == "HELD_IN_ESCROW"


def test_emergency_escalation_over_http():
    booking_id, customer, provider = _booking_in("IN_PROGRESS", address="Ward 7, Asiri Hospital, Colombo 05")

    response = client.post(
        "/emergency/escalate",
        json={
            "booking_id": booking_id,
            "triggered_by": "PROVIDER",
            "triggered_by_user_id": provider.id,
            "reason": "Breathing difficulty",
        },
        headers=_auth(provider.id),
    )
    assert response.status_code == 200
    payload = response.json()
    assert payload["emergency_number"] == "011-4665500"
    assert payload["booking_frozen"] is True
    assert payload["incident_recorded"] is True
    # No Twilio credentials in tests.
    assert payload["contact_notified"] is False
    assert payload["party_notified"] is True

    assert client.get(f"/bookings/{booking_id}").json()["status"] == "DISPUTED"
    again = client.post(
        "/emergency/escalate",
        json={"booking_id": booking_id, "triggered_by": "PROVIDER", "triggered_by_user_id": provider.id},
    )
    assert again.status_code == 409

    admin = _admin()
    incidents = client.get(
        "/admin/incidents",
        params={"actor_user_id": admin.id, "booking_id": booking_id},
        headers=_auth(admin.id),
    )
    assert [item["id"] for item in incidents.json()] == [payload["incident_id"]]
    not_admin = client.get("/admin/incidents", params={"actor_user_id": customer.id}, headers=_auth(customer.id))
    assert not_admin.status_code == 403

    inbox = client.get("/notifications", params={"user_id": customer.id, "category": "emergency"}).json()
    assert inbox and inbox[0]["title"] == "Emergency reported"


def test_emergency_contact_endpoints():
    customer = _customer(emergency_phone=None)
    own = client.get(f"/emergency/contact/{customer.id}", params={"actor_user_id": customer.id}, headers=_auth(customer.id))
    assert own.status_code == 200
    assert own.json()["has_emergency_contact"] is False

    updated = client.put(
        f"/emergency/contact/{customer.id}",
        json={"actor_user_id": customer.id, "emergency_name": "Sunil", "emergency_phone": "+94779998877"},
    )
    assert updated.status_code == 200
    assert updated.json()["emergency_phone"] == "+94779998877"

    other = _customer()
    forbidden = client.put(
        f"/emergency/contact/{customer.id}",
        json={"actor_user_id": other.id, "emergency_name": "Sunil", "emergency_phone": "+94779998877"},
    )
    assert forbidden.status_code == 403

    snooped = client.get(f"/emergency/contact/{customer.id}", params={"actor_user_id": other.id}, headers=_auth(other.id))
    assert snooped.status_code == 403
    assert "emergency_phone" not in snooped.json()
    assert client.get(f"/emergency/contact/{customer.id}").status_code == 400

    local = client.put(
        f"/emergency/contact/{customer.id}",
        json={"actor_user_id": customer.id, "emergency_name": "Sunil", "emergency_phone": "0779998877"},
    )
    assert local.status_code == 400


def test_provider_self_service_and_admin_verification():
    point = _place()
    provider = _provider(point, verified=False)
    admin = _admin()
    admin_headers = _auth(admin.id)

    denied = client.post(
        f"/providers/{provider.id}/availability",
        json={"actor_user_id": "cust_demo_1", "is_available": False},
    )
    assert denied.status_code == 403

    moved = client.post(
        f"/providers/{provider.id}/location",
        json={"actor_user_id": provider.id, "latitude": point[0], "longitude": point[1]},
    )
    assert moved.status_code == 200

    applied = client.post(
        f"/providers/{provider.id}/skills",
        json={"actor_user_id": provider.id, "service_category_slug": "elder-care-companion"},
    )
    assert applied.status_code == 201

    document = client.post(
        f"/providers/{provider.id}/documents",
        json={"actor_user_id": provider.id, "document_type": "NIC_FRONT", "storage_key": "docs/nic.jpg"},
    )
    assert document.status_code == 201
    document_id = document.json()["id"]

    no_reason = client.post(
        f"/admin/documents/{document_id}/review",
        json={"actor_user_id": admin.id, "status": "REJECTED"},
        headers=admin_headers,
    )
    assert no_reason.status_code == 400

    verified = client.post(
        f"/admin/documents/{document_id}/review",
        json={"actor_user_id": admin.id, "status": "VERIFIED"},
        headers=admin_headers,
    )
    assert verified.status_code == 200
    assert client.get(f"/providers/{provider.id}/trust-score").json()["verification_component"] == 100.0

    not_admin = client.post(
        f"/admin/providers/{provider.id}/skills/hospital-attendant/verify",
        json={"actor_user_id": provider.id},
        headers=_auth(provider.id),
    )
    assert not_admin.status_code == 403

    before = client.get("/providers/match", params={"skill": "hospital-attendant", "lat": point[0], "lng": point[1]})
    assert provider.id not in [item["provider_id"] for item in before.json()]

    skill = client.post(
        f"/admin/providers/{provider.id}/skills/hospital-attendant/verify",
        json={"actor_user_id": admin.id},
        headers=admin_headers,
    )
    assert skill.status_code == 200

    after = client.get("/providers/match", params={"skill": "hospital-attendant", "lat": point[0], "lng": point[1]})
    assert provider.id in [item["provider_id"] for item in after.json()]

    assert client.get(f"/providers/{_uid('prov')}").status_code == 404


def test_notifications_inbox_and_read():
    booking_id, customer, _ = _booking_in("CONFIRMED")
    inbox = client.get("/notifications", params={"user_id": customer.id})
    assert inbox.status_code == 200
    confirmation = next(item for item in inbox.json() if item["category"] == "booking")

    marked = client.post(f"/notifications/{confirmation['id']}/read", params={"user_id": customer.id})
    assert marked.json()["read"] is True

    missing = client.post("/notifications/ntf_missing/read", params={"user_id": customer.id})
    assert missing.status_code == 404

    registered = client.post("/notifications/register-device", json={"user_id": customer.id, "device_token": "tok"})
    assert registered.json() == {"status": "ok", "push_enabled": False}
    assert booking_id
