"""Escrow for booking payments.

Funds move PENDING -> HELD_IN_ESCROW on a verified gateway success, then to
RELEASED once the booking is completed, or to REFUNDED once it is cancelled
or disputed. A failed or cancelled charge moves PENDING -> FAILED; a new
initiation may take a FAILED escrow back to PENDING under a fresh order id.

Amounts are held as integer minor units (cents) so that the platform fee and
the provider payout always add up to the gross amount exactly.
"""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from carelink import config
from carelink.errors import (
    EscrowNotReleasableError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SignatureMismatchError,
    ValidationError,
)
from carelink.models import CheckoutReference, EscrowTransaction, PaymentNotification, PaymentSignalOutcome
from carelink.services.care_store import CareStore, EscrowUpdate, care_store
from carelink.services.notification_store import NotificationSender, notification_store
from carelink.services.payhere_gateway import PaymentGateway, payhere_gateway

logger = logging.getLogger(__name__)

PAYABLE_BOOKING_STATUSES = frozenset({"MATCHED", "CONFIRMED", "IN_PROGRESS"})
REFUNDABLE_BOOKING_STATUSES = frozenset({"CANCELLED", "DISPUTED"})
FAILED_GATEWAY_STATUSES = frozenset({"FAILED", "CANCELLED", "CHARGEDBACK"})

MINOR_UNITS = Decimal(100)


def split_platform_fee(gross_minor: int, fee_percent: int = config.PLATFORM_FEE_PERCENT) -> Tuple[int, int]:
    """Return (platform_fee, provider_payout) in minor units, rounding the fee half-up."""
    if gross_minor < 0:
        raise ValidationError("Gross amount cannot be negative", {"gross_minor": gross_minor})
    if not 0 <= fee_percent <= 100:
        raise ValidationError("Fee percent must be between 0 and 100", {"fee_percent": fee_percent})
    fee = (gross_minor * fee_percent + 50) // 100
    return fee, gross_minor - fee


def to_minor_units(amount: Decimal) -> int:
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero", {"amount": str(amount)})
    if amount.as_tuple().exponent < -2:
        raise ValidationError("Amount must have at most 2 decimal places", {"amount": str(amount)})
    return int(amount * MINOR_UNITS)


def parse_gateway_amount(raw: str) -> Optional[int]:
    try:
        amount = Decimal(raw.strip())
    except (InvalidOperation, AttributeError):
        return None
    if not amount.is_finite():
        return None
    return int((amount * MINOR_UNITS).to_integral_value())


class EscrowPaymentLedger:
    def __init__(
        self,
        store: CareStore,
        gateway: PaymentGateway,
        notifier: NotificationSender,
        *,
        fee_percent: int = config.PLATFORM_FEE_PERCENT,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier
        self.fee_percent = fee_percent

    def _require_escrow(self, booking_id: str) -> EscrowTransaction:
        escrow = self.store.get_escrow(booking_id)
        if not escrow:
            raise NotFoundError("Escrow transaction not found", {"booking_id": booking_id})
        return escrow

    def get_escrow(self, booking_id: str) -> EscrowTransaction:
        return self._require_escrow(booking_id)

    def initiate_payment(
        self,
        booking_id: str,
        actor_user_id: str,
        amount: Decimal,
        currency: str = config.DEFAULT_CURRENCY,
        *,
        return_url: str = "",
        cancel_url: str = "",
        notify_url: str = "",
    ) -> CheckoutReference:
        booking = self.store.get_booking(booking_id)
        if not booking:
            raise NotFoundError("Booking not found", {"booking_id": booking_id})
        if booking.customer_id != actor_user_id:
            raise ForbiddenError("Only the booking's customer can pay for it", {"booking_id": booking_id})
        if booking.status not in PAYABLE_BOOKING_STATUSES:
            raise InvalidStateError(
                f"Cannot take payment for a booking in status {booking.status}",
                {"booking_id": booking_id, "current_status": booking.status},
            )
        gross_minor = to_minor_units(amount)
        currency = currency.strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationError("Currency must be a 3-letter ISO code", {"currency": currency})

        existing = self.store.get_escrow(booking_id)
        if existing and existing.state != "FAILED":
            raise InvalidStateError(
                f"Payment already {existing.state} for booking",
                {"booking_id": booking_id, "current_state": existing.state},
            )

        checkout = self.gateway.initiate_charge(
            booking_id=booking_id,
            amount=amount,
            currency=currency,
            description=f"CareLink booking {booking_id}",
            return_url=return_url,
            cancel_url=cancel_url,
            notify_url=notify_url,
        )
        if existing is None:
            self.store.create_escrow(
                booking_id=booking_id,
                order_id=checkout.order_id,
                currency=currency,
                gross_minor=gross_minor,
            )
        else:
            self.store.compare_and_set_escrow(
                booking_id,
                EscrowUpdate(
                    expected_state="FAILED",
                    expected_version=existing.version,
                    to_state="PENDING",
                    changes={
                        "order_id": checkout.order_id,
                        "payment_id": None,
                        "currency": currency,
                        "gross_minor": gross_minor,
                        "platform_fee_minor": None,
                        "provider_payout_minor": None,
                    },
                ),
            )
        logger.info("payment_initiated booking=%s order=%s amount=%s %s", booking_id, checkout.order_id, checkout.amount, currency)
        return checkout

    def handle_payment_notification(self, notification: PaymentNotification) -> PaymentSignalOutcome:
        try:
            gateway_status = self.gateway.verify_notification(notification)
        except SignatureMismatchError:
            logger.warning("Rejected payment notification with bad signature order=%s", notification.order_id)
            raise

        order_id = notification.order_id
        processed_booking_id = self.store.processed_signal_booking_id(order_id)
        if processed_booking_id:
            logger.info("Duplicate payment notification order=%s", order_id)
            return PaymentSignalOutcome(
                order_id=order_id,
                booking_id=processed_booking_id,
                gateway_status=gateway_status,
                duplicate=True,
                escrow=self._require_escrow(processed_booking_id),
            )

        escrow = self.store.get_escrow_by_order(order_id)
        if not escrow:
            raise NotFoundError("Unknown payment order reference", {"order_id": order_id})

        if gateway_status == "PENDING":
            return PaymentSignalOutcome(
                order_id=order_id,
                booking_id=escrow.booking_id,
                gateway_status=gateway_status,
                escrow=escrow,
            )

        if gateway_status == "SUCCESS":
            gross_minor = self.store.escrow_gross_minor(escrow.booking_id)
            paid_minor = parse_gateway_amount(notification.payhere_amount)
            if paid_minor != gross_minor or notification.payhere_currency.strip().upper() != escrow.currency:
                logger.warning(
                    "Payment amount mismatch order=%s paid=%s %s expected=%s %s",
                    order_id,
                    notification.payhere_amount,
                    notification.payhere_currency,
                    escrow.gross_amount,
                    escrow.currency,
                )
                raise ValidationError(
                    "Paid amount does not match the escrow",
                    {"order_id": order_id, "paid": notification.payhere_amount, "expected": str(escrow.gross_amount)},
                )
            fee_minor, payout_minor = split_platform_fee(gross_minor, self.fee_percent)
            update = EscrowUpdate(
                expected_state="PENDING",
                expected_version=escrow.version,
                to_state="HELD_IN_ESCROW",
                changes={
                    "payment_id": notification.payment_id or None,
                    "platform_fee_minor": fee_minor,
                    "provider_payout_minor": payout_minor,
                },
            )
        else:
            update = EscrowUpdate(
                expected_state="PENDING",
                expected_version=escrow.version,
                to_state="FAILED",
                changes={"payment_id": notification.payment_id or None},
            )

        recorded, escrow = self.store.record_payment_signal(
            order_id=order_id,
            booking_id=escrow.booking_id,
            gateway_status=gateway_status,
            payment_id=notification.payment_id or None,
            update=update,
        )
        if recorded:
            booking = self.store.get_booking(escrow.booking_id)
            if booking:
                if escrow.state == "HELD_IN_ESCROW":
                    title, message = "Payment received", "Your payment is held securely until the service is completed."
                else:
                    title, message = "Payment failed", f"Your payment did not go through ({gateway_status.lower()})."
                self._notify(booking.customer_id, title, message, booking.id)
        return PaymentSignalOutcome(
            order_id=order_id,
            booking_id=escrow.booking_id,
            gateway_status=gateway_status,
            duplicate=not recorded,
            escrow=escrow,
        )

    def release(self, booking_id: str) -> EscrowTransaction:
        escrow = self._require_escrow(booking_id)
        booking = self.store.get_booking(booking_id)
        if not booking or booking.status != "COMPLETED":
            raise EscrowNotReleasableError(
                "Escrow can only be released once the booking is completed",
                {"booking_id": booking_id, "booking_status": booking.status if booking else None},
            )
        if escrow.state != "HELD_IN_ESCROW":
            raise EscrowNotReleasableError(
                f"Escrow is {escrow.state}, not held",
                {"booking_id": booking_id, "current_state": escrow.state},
            )
        released = self.store.compare_and_set_escrow(
            booking_id,
            EscrowUpdate(expected_state="HELD_IN_ESCROW", expected_version=escrow.version, to_state="RELEASED"),
        )
        if booking.provider_id:
            self._notify(
                booking.provider_id,
                "Payout released",
                f"{released.currency} {released.provider_payout} has been released for your completed booking.",
                booking_id,
            )
        return released

    def refund(self, booking_id: str, reason: str = "") -> EscrowTransaction:
        """Refund held funds to the customer.

        The escrow is claimed as REFUNDED before the gateway call; a failed
        call puts it back to HELD_IN_ESCROW.
        """
        escrow = self._require_escrow(booking_id)
        if escrow.state != "HELD_IN_ESCROW":
            raise InvalidStateError(
                f"Escrow is {escrow.state}, not held",
                {"booking_id": booking_id, "current_state": escrow.state},
            )
        booking = self.store.get_booking(booking_id)
        if not booking or booking.status not in REFUNDABLE_BOOKING_STATUSES:
            raise InvalidStateError(
                "Refunds require a cancelled or disputed booking",
                {"booking_id": booking_id, "booking_status": booking.status if booking else None},
            )
        refunded = self.store.compare_and_set_escrow(
            booking_id,
            EscrowUpdate(expected_state="HELD_IN_ESCROW", expected_version=escrow.version, to_state="REFUNDED"),
        )
        try:
            refund_id = self.gateway.refund(escrow.payment_id or "", escrow.gross_amount, reason or "Booking refund")
        except Exception:
            logger.warning("Gateway refund failed booking=%s, returning escrow to held", booking_id)
            self.store.compare_and_set_escrow(
                booking_id,
                EscrowUpdate(expected_state="REFUNDED", expected_version=refunded.version, to_state="HELD_IN_ESCROW"),
            )
            raise
        logger.info("payment_refunded booking=%s refund_id=%s", booking_id, refund_id)
        self._notify(
            booking.customer_id,
            "Payment refunded",
            f"{refunded.currency} {refunded.gross_amount} has been refunded.",
            booking_id,
        )
        return refunded

    def _notify(self, recipient_id: str, title: str, message: str, booking_id: str) -> None:
        try:
            self.notifier.send(recipient_id, title, message, category="payment", deep_link=f"booking:{booking_id}")
        except Exception:
            logger.exception("Payment notification failed recipient=%s booking=%s", recipient_id, booking_id)


escrow_ledger = EscrowPaymentLedger(care_store, payhere_gateway, notification_store)
