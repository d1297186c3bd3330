"""
services/payment/processor.py
Payment processor capability used by the escrow ledger.

Razorpay backs it in production: an order created with manual capture is
the hold, the checkout payment id is the hold reference, Route transfers
pay mentors' linked accounts. Every SDK call goes through call_external()
(circuit breaker + bounded timeout). Only order creation and status fetches
are retried; capture, refunds and transfers are never repeated in-request.
"""

import logging
from decimal import Decimal
from typing import Optional, Protocol
from uuid import UUID

from config.settings import settings
from shared.models.models import User
from shared.utils.resilience import call_external

logger = logging.getLogger(__name__)

SERVICE_NAME = "razorpay"


def to_paise(amount: Decimal) -> int:
    """Razorpay amounts are integers in the smallest currency unit."""
    return int((amount * 100).to_integral_value())


class PaymentProcessor(Protocol):
    async def authorize_hold(self, amount: Decimal, payer_ref: str, booking_ref: str) -> str:
        """Open a hold for `amount`; returns the order id the checkout pays against."""
        ...

    async def capture(self, hold_id: str, amount: Decimal) -> None:
        ...

    async def fetch_payment_status(self, hold_id: str) -> str:
        """Processor-side status of the payment: created, authorized, captured, refunded or failed."""
        ...

    async def refund(self, hold_id: str, amount: Optional[Decimal], booking_ref: str) -> str:
        """Refund `amount` (None = everything captured); returns the refund id."""
        ...

    async def transfer(self, amount: Decimal, destination: str, booking_ref: str) -> str:
        """Pay `amount` to a payee destination; returns the transfer id."""
        ...

    async def get_payee_destination(self, payee: User) -> Optional[str]:
        ...


class RazorpayPaymentProcessor:
    def __init__(self, client=None, timeout: Optional[float] = None):
        self._client = client
        self.timeout = timeout or settings.PAYMENT_PROCESSOR_TIMEOUT_SECONDS
        self.currency = settings.PAYMENT_CURRENCY

    @property
    def client(self):
        if self._client is None:
            import razorpay
            self._client = razorpay.Client(
                auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET)
            )
        return self._client

    async def authorize_hold(self, amount: Decimal, payer_ref: str, booking_ref: str) -> str:
        order = await call_external(
            SERVICE_NAME,
            "order.create",
            self.client.order.create,
            {
                "amount": to_paise(amount),
                "currency": self.currency,
                "receipt": booking_ref,
                "payment_capture": 0,      # manual capture = escrow hold
                "notes": {"booking_id": booking_ref, "payer_id": payer_ref},
            },
            timeout=self.timeout,
            retries=1,
        )
        return order["id"]

    async def capture(self, hold_id: str, amount: Decimal) -> None:
        # Never retried: a timed-out capture may still land, and the caller
        # checks fetch_payment_status() before deciding what happened.
        await call_external(
            SERVICE_NAME,
            "payment.capture",
            self.client.payment.capture,
            hold_id,
            to_paise(amount),
            {"currency": self.currency},
            timeout=self.timeout,
        )

    async def fetch_payment_status(self, hold_id: str) -> str:
        payment = await call_external(
            SERVICE_NAME,
            "payment.fetch",
            self.client.payment.fetch,
            hold_id,
            timeout=self.timeout,
            retries=1,
        )
        return payment["status"]

    async def refund(self, hold_id: str, amount: Optional[Decimal], booking_ref: str) -> str:
        data = {"notes": {"booking_id": booking_ref}}
        if amount is not None:
            data["amount"] = to_paise(amount)
        refund = await call_external(
            SERVICE_NAME,
            "payment.refund",
            self.client.payment.refund,
            hold_id,
            data,
            timeout=self.timeout,
        )
        return refund["id"]

    async def transfer(self, amount: Decimal, destination: str, booking_ref: str) -> str:
        transfer = await call_external(
            SERVICE_NAME,
            "transfer.create",
            self.client.transfer.create,
            {
                "account": destination,
                "amount": to_paise(amount),
                "currency": self.currency,
                "notes": {"booking_id": booking_ref},
            },
            timeout=self.timeout,
        )
        return transfer["id"]

    async def get_payee_destination(self, payee: User) -> Optional[str]:
        return payee.payout_account_id or None


_processor: Optional[PaymentProcessor] = None


def get_payment_processor() -> PaymentProcessor:
    """FastAPI dependency (overridden in tests)."""
    global _processor
    if _processor is None:
        _processor = RazorpayPaymentProcessor()
    return _processor


def booking_ref(booking_id: UUID) -> str:
    return str(booking_id)
