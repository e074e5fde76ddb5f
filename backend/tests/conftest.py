import os
import sys
import tempfile
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

# Module-level stores open their database at import; keep test runs off the real data directory.
os.environ.setdefault("CARELINK_DB_PATH", os.path.join(tempfile.mkdtemp(prefix="carelink-tests-"), "carelink.sqlite3"))
os.environ.setdefault("PAYHERE_MERCHANT_ID", "1211149")
os.environ.setdefault("PAYHERE_MERCHANT_SECRET", "test-merchant-secret")
os.environ.setdefault("PASSWORD_HASH_ITERATIONS", "1000")
os.environ.pop("CARELINK_DEMO_PASSWORD", None)

from carelink.models import BookingLocation, BookingMatchRequest, PaymentNotification  # noqa: E402
from carelink.services.booking_lifecycle import BookingLifecycle  # noqa: E402
from carelink.services.care_store import CareStore  # noqa: E402
from carelink.services.emergency_escalation import EmergencyEscalationProtocol  # noqa: E402
from carelink.services.escrow_ledger import EscrowPaymentLedger  # noqa: E402
from carelink.services.payhere_gateway import PayHereGateway, notification_hash  # noqa: E402
from carelink.services.provider_matcher import ProviderMatcher  # noqa: E402
from carelink.services.trust_score import TrustScoreCalculator  # noqa: E402

COLOMBO = (6.9271, 79.8612)
METERS_PER_DEGREE_LAT = 6371000.0 * 3.141592653589793 / 180


def north_of(point, meters):
    return point[0] + meters / METERS_PER_DEGREE_LAT, point[1]


def future_date(days: int = 1) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, recipient_id, title, message, category="system", deep_link=None):
        if self.fail:
            raise RuntimeError("notification backend down")
        self.sent.append({"recipient_id": recipient_id, "title": title, "message": message, "category": category})
        return True

    def to(self, recipient_id):
        return [item for item in self.sent if item["recipient_id"] == recipient_id]


class FakeSms:
    def __init__(self):
        self.sent = []
        self.result = True
        self.fail = False

    def send(self, phone_number, message):
        if self.fail:
            raise RuntimeError("sms gateway down")
        self.sent.append((phone_number, message))
        return self.result


class RefundEndpoint:
    """httpx transport handler standing in for the PayHere refund API."""

    def __init__(self):
        self.requests = []
        self.status_code = 200
        self.payload = {"status": "success", "refund_id": "RF-1"}
        self.raise_timeout = False
        self.delay = 0.0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.delay:
            time.sleep(self.delay)
        if self.raise_timeout:
            raise httpx.ConnectTimeout("timed out", request=request)
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.payload)


class CareLinkStack:
    MERCHANT_ID = "1211149"
    MERCHANT_SECRET = "stack-secret"

    def __init__(self, db_path: str):
        self.store = CareStore(db_path=db_path)
        self.notifier = FakeNotifier()
        self.sms = FakeSms()
        self.refunds = RefundEndpoint()
        self.gateway = PayHereGateway(
            merchant_id=self.MERCHANT_ID,
            merchant_secret=self.MERCHANT_SECRET,
            app_id="app",
            app_secret="app-secret",
            mode="sandbox",
            client=httpx.Client(transport=httpx.MockTransport(self.refunds)),
        )
        self.matcher = ProviderMatcher(self.store)
        self.trust = TrustScoreCalculator(self.store)
        self.ledger = EscrowPaymentLedger(self.store, self.gateway, self.notifier)
        self.lifecycle = BookingLifecycle(self.store, self.matcher, self.trust, self.notifier, ledger=self.ledger)
        self.protocol = EmergencyEscalationProtocol(
            self.store,
            self.lifecycle,
            self.sms,
            self.notifier,
            facilities={"Asiri Hospital": "011-4665500", "Nawaloka Hospital": "011-5777777"},
        )
        self._counter = 0

    def _next_id(self, prefix):
        self._counter += 1
        return f"{prefix}_{self._counter}"

    def customer(self, *, emergency_phone="+94771234567"):
        return self.store.add_user(
            user_id=self._next_id("cust"),
            role="customer",
            full_name="Nimali Perera",
            phone="+94770000001",
            emergency_name="Sunil Perera" if emergency_phone else None,
            emergency_phone=emergency_phone,
            emergency_relation="Son" if emergency_phone else None,
        )

    def provider(self, point=COLOMBO, *, trust=50.0, skill="hospital-attendant", verified=True, years=2):
        profile = self.store.add_provider(
            provider_id=self._next_id("prov"),
            full_name="Kamala Silva",
            latitude=point[0],
            longitude=point[1],
            years_experience=years,
        )
        self.store.grant_skill(profile.id, skill, verified=verified)
        self.store.set_provider_trust_score(profile.id, trust)
        return profile

    def match_request(self, customer_id, *, point=COLOMBO, skill="hospital-attendant", address="12 Galle Road, Colombo 03"):
        return BookingMatchRequest(
            customer_id=customer_id,
            care_recipient_name="Amma Perera",
            service_category_slug=skill,
            location=BookingLocation(lat=point[0], lng=point[1], address=address),
            scheduled_date=future_date(),
        )

    def booking(self, status="MATCHED", *, address="12 Galle Road, Colombo 03", customer=None, provider=None):
        """A booking driven through the lifecycle up to ``status``."""
        customer = customer or self.customer()
        provider = provider or self.provider()
        result = self.lifecycle.create_booking(self.match_request(customer.id, address=address))
        booking = result.booking
        assert booking.status == "MATCHED"
        if status == "MATCHED":
            return booking, customer, provider
        booking = self.lifecycle.accept(booking.id, provider.id)
        if status == "CONFIRMED":
            return booking, customer, provider
        booking = self.lifecycle.start(booking.id, provider.id)
        if status == "IN_PROGRESS":
            return booking, customer, provider
        if status == "COMPLETED":
            return self.lifecycle.complete(booking.id, provider.id), customer, provider
        if status == "CANCELLED":
            return self.lifecycle.cancel(booking.id, customer.id, "plans changed"), customer, provider
        if status == "DISPUTED":
            return self.lifecycle.freeze_for_dispute(booking, actor_user_id=customer.id, reason="test"), customer, provider
        raise ValueError(status)

    def notification(self, order_id, amount="1500.00", currency="LKR", status_code="2", payment_id="320025071278"):
        return PaymentNotification(
            merchant_id=self.MERCHANT_ID,
            order_id=order_id,
            payment_id=payment_id,
            payhere_amount=amount,
            payhere_currency=currency,
            status_code=status_code,
            md5sig=notification_hash(self.MERCHANT_ID, order_id, amount, currency, status_code, self.MERCHANT_SECRET),
        )

    def held_escrow(self, status="IN_PROGRESS", amount=Decimal("1500.00")):
        booking, customer, provider = self.booking(status)
        checkout = self.ledger.initiate_payment(booking.id, customer.id, amount)
        self.ledger.handle_payment_notification(self.notification(checkout.order_id, amount=checkout.amount))
        return booking, customer, provider


@pytest.fixture
def stack(tmp_path):
    return CareLinkStack(str(tmp_path / "carelink.sqlite3"))
