"""PayHere checkout, notification verification and refunds.

Checkout and notification signatures are upper-case MD5 hex digests over the
concatenated fields and the upper-case MD5 of the merchant secret.
"""

import hashlib
import hmac
import logging
import threading
import time
from decimal import Decimal
from typing import Dict, Optional, Protocol
from urllib.parse import urlencode

import httpx

from carelink import config
from carelink.errors import SignatureMismatchError, UpstreamError
from carelink.models import CheckoutReference, GatewayStatus, PaymentNotification

logger = logging.getLogger(__name__)

PAYHERE_ENDPOINTS = {
    "sandbox": {
        "checkout_url": "https://sandbox.payhere.lk/pay/checkout",
        "api_url": "https://sandbox.payhere.lk/pay/v1",
    },
    "production": {
        "checkout_url": "https://www.payhere.lk/pay/checkout",
        "api_url": "https://www.payhere.lk/pay/v1",
    },
}

STATUS_CODES: Dict[str, GatewayStatus] = {
    "2": "SUCCESS",
    "0": "PENDING",
    "-1": "CANCELLED",
    "-2": "FAILED",
    "-3": "CHARGEDBACK",
}


def format_amount(amount: Decimal) -> str:
    return format(amount.quantize(Decimal("0.01")), "f")


def _md5_upper(value: str) -> str:
    return hashlib.md5(value.encode("utf-8")).hexdigest().upper()


def checkout_hash(merchant_id: str, order_id: str, amount: str, currency: str, merchant_secret: str) -> str:
    return _md5_upper(f"{merchant_id}{order_id}{amount}{currency}{_md5_upper(merchant_secret)}")


def notification_hash(
    merchant_id: str,
    order_id: str,
    amount: str,
    currency: str,
    status_code: str,
    merchant_secret: str,
) -> str:
    return _md5_upper(f"{merchant_id}{order_id}{amount}{currency}{status_code}{_md5_upper(merchant_secret)}")


class PaymentGateway(Protocol):
    def initiate_charge(
        self,
        *,
        booking_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        return_url: str = "",
        cancel_url: str = "",
        notify_url: str = "",
    ) -> CheckoutReference: ...

    def verify_notification(self, notification: PaymentNotification) -> GatewayStatus: ...

    def refund(self, payment_id: str, amount: Decimal, reason: str) -> str: ...


class PayHereGateway:
    def __init__(
        self,
        *,
        merchant_id: str = config.PAYHERE_MERCHANT_ID,
        merchant_secret: str = config.PAYHERE_MERCHANT_SECRET,
        app_id: str = config.PAYHERE_APP_ID,
        app_secret: str = config.PAYHERE_APP_SECRET,
        mode: str = config.PAYHERE_MODE,
        timeout: float = config.PAYHERE_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        if mode not in PAYHERE_ENDPOINTS:
            logger.warning("Unknown PAYHERE_MODE=%r, using sandbox", mode)
            mode = "sandbox"
        self.mode = mode
        self.merchant_id = merchant_id
        self.merchant_secret = merchant_secret
        self.app_id = app_id
        self.app_secret = app_secret
        self.timeout = timeout
        self.checkout_url = PAYHERE_ENDPOINTS[mode]["checkout_url"]
        self.api_url = PAYHERE_ENDPOINTS[mode]["api_url"]
        self._client = client
        self._order_lock = threading.Lock()
        self._last_order_ms = 0

    def new_order_id(self, booking_id: str) -> str:
        # Millisecond stamps, bumped so two charges in the same tick never share an order id.
        with self._order_lock:
            stamp = max(int(time.time() * 1000), self._last_order_ms + 1)
            self._last_order_ms = stamp
        return f"CL-{booking_id}-{stamp}"

    def initiate_charge(
        self,
        *,
        booking_id: str,
        amount: Decimal,
        currency: str,
        description: str,
        return_url: str = "",
        cancel_url: str = "",
        notify_url: str = "",
    ) -> CheckoutReference:
        order_id = self.new_order_id(booking_id)
        formatted_amount = format_amount(amount)
        signature = checkout_hash(self.merchant_id, order_id, formatted_amount, currency, self.merchant_secret)
        params = {
            "merchant_id": self.merchant_id,
            "return_url": return_url,
            "cancel_url": cancel_url,
            "notify_url": notify_url,
            "order_id": order_id,
            "items": description,
            "amount": formatted_amount,
            "currency": currency,
            "hash": signature,
            "custom_1": booking_id,
        }
        return CheckoutReference(
            checkout_url=f"{self.checkout_url}?{urlencode(params)}",
            order_id=order_id,
            hash=signature,
            amount=formatted_amount,
            currency=currency,
        )

    def verify_notification(self, notification: PaymentNotification) -> GatewayStatus:
        """Check the md5sig of a notification and map its status code.

        Raises SignatureMismatchError on any mismatch. Unknown status codes
        are treated as FAILED.
        """
        expected = notification_hash(
            notification.merchant_id,
            notification.order_id,
            notification.payhere_amount,
            notification.payhere_currency,
            notification.status_code,
            self.merchant_secret,
        )
        merchant_matches = hmac.compare_digest(notification.merchant_id.encode("utf-8"), self.merchant_id.encode("utf-8"))
        signature_matches = hmac.compare_digest(notification.md5sig.encode("utf-8"), expected.encode("utf-8"))
        if not (merchant_matches and signature_matches):
            raise SignatureMismatchError("Invalid payment notification signature", {"order_id": notification.order_id})
        return STATUS_CODES.get(notification.status_code.strip(), "FAILED")

    def refund(self, payment_id: str, amount: Decimal, reason: str) -> str:
        """Refund a captured payment. Returns the gateway refund id."""
        if not payment_id:
            raise UpstreamError("Payment has no gateway payment id to refund")
        url = f"{self.api_url}/refund"
        body = {"payment_id": payment_id, "amount": format_amount(amount), "reason": reason}
        auth = (self.app_id, self.app_secret)
        try:
            if self._client is not None:
                response = self._client.post(url, json=body, auth=auth, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(url, json=body, auth=auth)
        except httpx.HTTPError as exc:
            logger.exception("PayHere refund request failed payment=%s", payment_id)
            raise UpstreamError("Payment gateway unavailable", {"payment_id": payment_id}) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if response.status_code >= 400 or payload.get("status") != "success":
            logger.warning(
                "PayHere refund rejected payment=%s status=%s message=%s",
                payment_id,
                response.status_code,
                payload.get("message", ""),
            )
            raise UpstreamError(
                payload.get("message") or "Refund failed",
                {"payment_id": payment_id, "status_code": response.status_code},
            )
        return str(payload.get("refund_id", ""))


payhere_gateway = PayHereGateway()
