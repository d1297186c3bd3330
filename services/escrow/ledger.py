"""
services/escrow/ledger.py
Escrow ledger: payment state of a booking and its processor references.

    PENDING → HELD → RELEASED | REFUNDED

Every operation re-reads the booking row (FOR UPDATE) right before the
external call and refuses to act unless the payment is in the expected
state, so a sweep and an admin racing on the same booking cannot both
move money. Errors propagate; compensation is the state machine's job.
Booking.status is never touched here.
"""

import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.pricing import quantize
from services.payment.processor import PaymentProcessor, booking_ref
from shared.models.models import Booking, PaymentStatus, User
from shared.models.types import utcnow
from shared.utils.errors import (
    ConflictError,
    EscrowAlreadyResolvedError,
    ExternalDependencyError,
    NotFoundError,
    PayoutDestinationMissingError,
    PreconditionFailedError,
)

logger = logging.getLogger(__name__)


class CaptureOutcome(str, enum.Enum):
    CAPTURED = "captured"
    NOT_CAPTURED = "not_captured"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SplitResult:
    transfer_id: Optional[str]
    refund_id: Optional[str]
    payee_share: Decimal
    refund_share: Decimal


class EscrowLedger:
    def __init__(self, db: AsyncSession, processor: PaymentProcessor):
        self.db = db
        self.processor = processor

    async def lock(self, booking_id: uuid.UUID) -> Booking:
        """Fresh read of the booking row, locked for the rest of the transaction."""
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if not booking:
            raise NotFoundError("Booking not found")
        return booking

    async def _lock_held(self, booking_id: uuid.UUID) -> Booking:
        booking = await self.lock(booking_id)
        if booking.payment_status != PaymentStatus.HELD:
            raise EscrowAlreadyResolvedError(
                f"Payment is {booking.payment_status.value}, not held"
            )
        return booking

    async def _payee_destination(self, booking: Booking) -> str:
        result = await self.db.execute(select(User).where(User.id == booking.payee_id))
        payee = result.scalar_one_or_none()
        destination = await self.processor.get_payee_destination(payee) if payee else None
        if not destination:
            raise PayoutDestinationMissingError("Mentor has no payout account connected")
        return destination

    # ── Hold ──────────────────────────────────────────────────

    async def authorize(self, booking_id: uuid.UUID) -> str:
        """Open the processor order the learner pays against. Idempotent."""
        booking = await self.lock(booking_id)
        if booking.payment_status != PaymentStatus.PENDING:
            raise PreconditionFailedError("Payment has already been completed")
        if booking.payment_order_id:
            return booking.payment_order_id

        order_id = await self.processor.authorize_hold(
            booking.total_amount, str(booking.payer_id), booking_ref(booking.id)
        )
        booking.payment_order_id = order_id
        # lock() reloads with populate_existing; unflushed changes would be lost.
        await self.db.flush()
        logger.info(f"Escrow order {order_id} opened for booking {booking.id}")
        return order_id

    async def capture(self, booking: Booking, hold_reference: str) -> None:
        if booking.payment_status != PaymentStatus.PENDING:
            raise EscrowAlreadyResolvedError(
                f"Payment is {booking.payment_status.value}, cannot capture"
            )
        await self.processor.capture(hold_reference, booking.total_amount)
        logger.info(f"Captured {booking.total_amount} for booking {booking.id} ({hold_reference})")

    async def capture_outcome(
        self, hold_reference: str, error: ExternalDependencyError
    ) -> CaptureOutcome:
        """
        After a capture call failed, ask the processor whether the money moved.
        A timed-out capture that still shows as authorized may land later, so
        it stays UNKNOWN.
        """
        try:
            status = await self.processor.fetch_payment_status(hold_reference)
        except ExternalDependencyError as e:
            logger.error(f"Could not fetch status of payment {hold_reference}: {e.detail}")
            return CaptureOutcome.UNKNOWN

        if status == "captured":
            return CaptureOutcome.CAPTURED
        if status == "failed":
            return CaptureOutcome.NOT_CAPTURED
        if status in ("created", "authorized") and not error.outcome_unknown:
            return CaptureOutcome.NOT_CAPTURED
        logger.warning(f"Payment {hold_reference} is '{status}' after a failed capture")
        return CaptureOutcome.UNKNOWN

    def record_hold(self, booking: Booking, hold_reference: str, now: datetime) -> None:
        """pending → held. The caller moves booking status in the same flush."""
        booking.payment_status = PaymentStatus.HELD
        booking.payment_hold_id = hold_reference
        booking.held_at = now

    # ── Release ───────────────────────────────────────────────

    async def release_to_payee(self, booking_id: uuid.UUID) -> str:
        """
        held → released. Pays the payee_amount fixed at creation; the
        platform keeps the fee.
        """
        booking = await self._lock_held(booking_id)
        if booking.transfer_id:
            raise ConflictError("A transfer has already been made for this booking")

        destination = await self._payee_destination(booking)
        transfer_id = await self.processor.transfer(
            booking.payee_amount, destination, booking_ref(booking.id)
        )

        booking.transfer_id = transfer_id
        booking.payee_paid_amount = booking.payee_amount
        booking.platform_retained_amount = booking.platform_fee
        booking.payment_status = PaymentStatus.RELEASED
        booking.resolved_at = utcnow()
        logger.info(
            f"Released {booking.payee_amount} to payee for booking {booking.id} "
            f"(transfer {transfer_id})"
        )
        return transfer_id

    # ── Refund ────────────────────────────────────────────────

    async def refund_to_payer(self, booking_id: uuid.UUID, amount: Optional[Decimal] = None) -> str:
        """
        held → refunded. Omitted amount refunds the full total; for a
        partial amount the platform retains the remainder.
        """
        booking = await self._lock_held(booking_id)
        if booking.refund_id or booking.transfer_id:
            raise ConflictError("A payout leg has already been made for this booking")

        refund_amount = booking.total_amount if amount is None else quantize(amount)
        if refund_amount <= 0 or refund_amount > booking.total_amount:
            raise PreconditionFailedError("Refund amount must be within the booking total")

        refund_id = await self.processor.refund(
            booking.payment_hold_id,
            None if refund_amount == booking.total_amount else refund_amount,
            booking_ref(booking.id),
        )

        booking.refund_id = refund_id
        booking.refunded_amount = refund_amount
        booking.platform_retained_amount = booking.total_amount - refund_amount
        booking.payment_status = PaymentStatus.REFUNDED
        booking.resolved_at = utcnow()
        logger.info(f"Refunded {refund_amount} to payer for booking {booking.id} (refund {refund_id})")
        return refund_id

    # ── Split ─────────────────────────────────────────────────

    async def split(self, booking_id: uuid.UUID, payee_percentage: Decimal) -> SplitResult:
        """
        Pay the payee payee_percentage% of the total and refund the rest.

        Each completed leg is committed as soon as it succeeds, and a retry
        skips legs that already have a reference. Payment stays HELD until
        both legs are done.
        """
        payee_percentage = Decimal(payee_percentage)
        if payee_percentage < 0 or payee_percentage > 100:
            raise PreconditionFailedError("Mentor percentage must be between 0 and 100")

        booking = await self._lock_held(booking_id)
        total = booking.total_amount
        payee_share = quantize(total * payee_percentage / 100)
        refund_share = total - payee_share

        if booking.transfer_id and booking.payee_paid_amount != payee_share:
            raise ConflictError("A split with a different percentage is already in progress")
        if booking.refund_id and booking.refunded_amount != refund_share:
            raise ConflictError("A split with a different percentage is already in progress")

        if payee_share > 0 and not booking.transfer_id:
            destination = await self._payee_destination(booking)
            booking.transfer_id = await self.processor.transfer(
                payee_share, destination, booking_ref(booking.id)
            )
            booking.payee_paid_amount = payee_share
            await self.db.commit()
            logger.info(
                f"Split leg: transferred {payee_share} for booking {booking.id} "
                f"(transfer {booking.transfer_id})"
            )
            booking = await self._lock_held(booking_id)

        if refund_share > 0 and not booking.refund_id:
            booking.refund_id = await self.processor.refund(
                booking.payment_hold_id, refund_share, booking_ref(booking.id)
            )
            booking.refunded_amount = refund_share
            await self.db.commit()
            logger.info(
                f"Split leg: refunded {refund_share} for booking {booking.id} "
                f"(refund {booking.refund_id})"
            )
            booking = await self._lock_held(booking_id)

        booking.platform_retained_amount = Decimal("0.00")
        booking.payment_status = (
            PaymentStatus.RELEASED if payee_share > 0 else PaymentStatus.REFUNDED
        )
        booking.resolved_at = utcnow()
        return SplitResult(booking.transfer_id, booking.refund_id, payee_share, refund_share)
