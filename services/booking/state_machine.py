"""
services/booking/state_machine.py
Authoritative booking lifecycle. Orchestrates the slot ledger and the
escrow ledger; the only layer that turns a lower-level failure into a
compensating action (slot release, refund) or a manual-review flag.

    PENDING ──pay──▶ CONFIRMED ──complete──▶ COMPLETED
       │               │  │                     │
       │               │  └─suspend─▶ UNDER_REVIEW ◀─low rating─┘
       └─reject/expire─┴─reject──▶ CANCELLED

Every transition:
  1. re-reads the booking row and asks BookingAuthorizer who the caller is,
  2. checks its guard against that fresh read,
  3. commits, and returns the side-effect intents for after-commit dispatch.

A rollback expires every ORM instance in the session, so ids are kept in
locals up front and bookings are reloaded rather than touched afterwards.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.booking.pricing import compute_booking_amounts
from services.booking.side_effects import (
    NotificationTemplate,
    SideEffectIntent,
    notify,
    provision_session,
)
from services.escrow.flags import flag_for_manual_review
from services.escrow.ledger import CaptureOutcome, EscrowLedger
from services.payment.processor import PaymentProcessor, booking_ref
from services.review import policy
from services.slots.ledger import ClaimResult, ReleaseResult, SlotLedger
from shared.middleware.authz import Actor, AdminRegistry, BookingAction, BookingAuthorizer
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    Complaint,
    ComplaintStatus,
    Listing,
    PaymentStatus,
    Review,
    User,
)
from shared.models.types import utcnow
from shared.utils.errors import (
    BookingError,
    ConflictError,
    EscrowAlreadyResolvedError,
    ExternalDependencyError,
    NotFoundError,
    PayoutDestinationMissingError,
    PreconditionFailedError,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Audit reasons; auto-release is logged distinctly from rating-driven release.
REASON_REVIEW_RELEASE = "review_release"
REASON_REVIEW_RELEASE_RETRY = "review_release_retry"
REASON_AUTO_RELEASE = "auto_release_no_review"


@dataclass
class TransitionResult:
    booking: Booking
    intents: List[SideEffectIntent] = field(default_factory=list)
    review: Optional[Review] = None


def _uid(user: Optional[User]) -> Optional[uuid.UUID]:
    return user.id if user else None


class BookingStateMachine:
    def __init__(
        self,
        db: AsyncSession,
        processor: PaymentProcessor,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.processor = processor
        self.clock = clock
        self.slots = SlotLedger(db)
        self.escrow = EscrowLedger(db, processor)
        self.authorizer = BookingAuthorizer(AdminRegistry(db))

    # ── Helpers ───────────────────────────────────────────────

    async def _reload(self, booking_id: uuid.UUID) -> Booking:
        return await self.escrow.lock(booking_id)

    async def _begin(
        self, booking_id: uuid.UUID, user: Optional[User], action: BookingAction
    ) -> tuple[Booking, Actor]:
        booking = await self._reload(booking_id)
        actor = await self.authorizer.require(user, booking, action)
        return booking, actor

    def _audit(
        self,
        booking: Booking,
        from_status: Optional[BookingStatus],
        from_payment: Optional[PaymentStatus],
        actor: Actor,
        user_id: Optional[uuid.UUID],
        reason: str,
        metadata: Optional[dict] = None,
    ) -> None:
        self.db.add(BookingAuditLog(
            booking_id=booking.id,
            from_status=from_status.value if from_status else None,
            to_status=booking.status.value,
            from_payment_status=from_payment.value if from_payment else None,
            to_payment_status=booking.payment_status.value,
            changed_by_id=user_id,
            actor_role=actor.value,
            reason=reason,
            audit_metadata=metadata,
        ))
        logger.info(
            f"Booking {booking.id}: {from_status.value if from_status else '-'} → "
            f"{booking.status.value}, payment "
            f"{from_payment.value if from_payment else '-'} → {booking.payment_status.value} "
            f"by {actor.value} ({reason})"
        )

    async def _flag(self, booking_id: uuid.UUID, reason: str, *, critical: bool = False) -> None:
        try:
            await flag_for_manual_review(self.db, booking_id, reason, critical=critical)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            logger.critical(
                f"Could not record manual-review flag for booking {booking_id}: {reason}",
                exc_info=True,
            )

    async def _close_complaints(self, booking_id: uuid.UUID, admin_id: uuid.UUID, note: str) -> None:
        await self.db.execute(
            update(Complaint)
            .where(
                Complaint.booking_id == booking_id,
                Complaint.status.in_([ComplaintStatus.PENDING, ComplaintStatus.IN_REVIEW]),
            )
            .values(
                status=ComplaintStatus.RESOLVED,
                resolved_at=self.clock(),
                resolved_by_admin_id=admin_id,
                admin_notes=note,
            )
            .execution_options(synchronize_session=False)
        )

    async def _commit_after_money_moved(self, booking_id: uuid.UUID, what: str) -> None:
        """Commit a transition whose external payout already happened."""
        try:
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Booking {booking_id}: {what} succeeded but could not be recorded: {e}")
            await self._flag(
                booking_id, f"{what} succeeded but was not recorded: {e}", critical=True
            )
            raise

    # ── 1. Create ─────────────────────────────────────────────

    async def create(self, payer: User, listing_id: uuid.UUID, slot_id: uuid.UUID) -> TransitionResult:
        """Claim the slot, then insert a PENDING booking bound to it, in one transaction."""
        payer_id = payer.id
        result = await self.db.execute(select(Listing).where(Listing.id == listing_id))
        listing = result.scalar_one_or_none()
        if not listing or not listing.is_active:
            raise NotFoundError("Listing not found")
        if listing.mentor_id == payer_id:
            raise PreconditionFailedError("You cannot book your own listing")

        slot = await self.slots.get(slot_id)
        if not slot or slot.listing_id != listing.id:
            raise NotFoundError("Slot not found")
        if slot.starts_at <= self.clock():
            raise PreconditionFailedError("This slot is in the past")
        session_at = slot.starts_at

        booking_id = uuid.uuid4()
        claim = await self.slots.claim(slot_id, booking_id)
        if claim != ClaimResult.SUCCESS:
            await self.db.rollback()
            if claim == ClaimResult.NOT_FOUND:
                raise NotFoundError("Slot not found")
            raise ConflictError("Slot no longer available", code="slot_unavailable")

        try:
            amounts = await compute_booking_amounts(self.db, listing)
            booking = Booking(
                id=booking_id,
                listing_id=listing.id,
                payer_id=payer_id,
                payee_id=listing.mentor_id,
                slot_id=slot_id,
                session_at=session_at,
                total_amount=amounts.total_amount,
                platform_fee=amounts.platform_fee,
                payee_amount=amounts.payee_amount,
                commission_rate=amounts.commission_rate,
                review_deadline=session_at + timedelta(hours=settings.REVIEW_WINDOW_HOURS),
                status=BookingStatus.PENDING,
                payment_status=PaymentStatus.PENDING,
            )
            self.db.add(booking)
            self._audit(booking, None, None, Actor.PAYER, payer_id, "created")
            await self.db.commit()
        except Exception:
            # Rolls back the claim together with the booking row.
            await self.db.rollback()
            raise

        return TransitionResult(booking)

    # ── 2. Payment ────────────────────────────────────────────

    async def initiate_payment(self, booking_id: uuid.UUID, payer: User) -> tuple[Booking, str]:
        booking, _ = await self._begin(booking_id, payer, BookingAction.PAY)
        if booking.status != BookingStatus.PENDING:
            raise PreconditionFailedError(
                f"Cannot pay for a booking in '{booking.status.value}' state"
            )
        order_id = await self.escrow.authorize(booking_id)
        await self.db.commit()
        return booking, order_id

    async def confirm_payment(
        self,
        booking_id: uuid.UUID,
        hold_reference: str,
        user: Optional[User] = None,
    ) -> TransitionResult:
        """
        (a) make sure the slot is ours and mark the capture as started,
        (b) capture, (c) record HELD/CONFIRMED.
        A capture the processor confirms did not happen releases the slot; one
        whose outcome is unknown keeps the slot and the in-flight marker and
        is flagged. A failure after (b) refunds and flags. Re-delivery of the same confirmation is a no-op.
        """
        user_id = _uid(user)
        booking, actor = await self._begin(booking_id, user, BookingAction.PAY)

        if booking.payment_status == PaymentStatus.HELD:
            if booking.payment_hold_id == hold_reference:
                return TransitionResult(booking)
            raise ConflictError("Booking has already been paid")
        if booking.status != BookingStatus.PENDING or booking.payment_status != PaymentStatus.PENDING:
            raise PreconditionFailedError(
                f"Cannot confirm payment for a booking in '{booking.status.value}' state"
            )
        if booking.payment_hold_id is not None:
            raise ConflictError("Payment confirmation is already in progress", code="capture_in_progress")

        slot_id = booking.slot_id
        payer_id = booking.payer_id
        payee_id = booking.payee_id
        total = booking.total_amount

        # (a) Only one confirmation may proceed to capture.
        marked = await self.db.execute(
            update(Booking)
            .where(
                Booking.id == booking_id,
                Booking.status == BookingStatus.PENDING,
                Booking.payment_status == PaymentStatus.PENDING,
                Booking.payment_hold_id.is_(None),
            )
            .values(payment_hold_id=hold_reference)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            await self.db.rollback()
            raise ConflictError("Payment confirmation is already in progress", code="capture_in_progress")

        claim = await self.slots.claim(slot_id, booking_id)
        if claim != ClaimResult.SUCCESS:
            booking = await self._reload(booking_id)
            booking.payment_hold_id = None
            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = self.clock()
            booking.cancellation_reason = "Slot no longer available at payment time"
            self._audit(booking, BookingStatus.PENDING, PaymentStatus.PENDING, actor, user_id,
                        "slot_lost_before_capture")
            await self.db.commit()
            raise ConflictError("Slot no longer available", code="slot_unavailable")
        await self.db.commit()

        # (b)
        try:
            booking = await self._reload(booking_id)
            await self.escrow.capture(booking, hold_reference)
        except ExternalDependencyError as e:
            await self.db.rollback()
            outcome = await self.escrow.capture_outcome(hold_reference, e)
            if outcome == CaptureOutcome.NOT_CAPTURED:
                logger.warning(f"Capture failed for booking {booking_id}, releasing slot: {e.detail}")
                await self._cancel_after_failed_capture(booking_id, slot_id, actor, user_id, e.detail)
                raise
            if outcome == CaptureOutcome.UNKNOWN:
                logger.error(f"Capture of {hold_reference} for booking {booking_id} has unknown outcome: {e.detail}")
                await self._flag(
                    booking_id,
                    f"Capture of payment {hold_reference} has unknown outcome ({e.detail}); "
                    f"slot kept, reconcile with the processor",
                    critical=True,
                )
                raise
            logger.warning(
                f"Capture call for booking {booking_id} errored but payment {hold_reference} "
                f"is captured: {e.detail}"
            )
        except BookingError as e:
            await self.db.rollback()
            logger.warning(f"Capture failed for booking {booking_id}, releasing slot: {e.detail}")
            await self._cancel_after_failed_capture(booking_id, slot_id, actor, user_id, e.detail)
            raise

        # (c)
        try:
            booking = await self._reload(booking_id)
            self.escrow.record_hold(booking, hold_reference, self.clock())
            booking.status = BookingStatus.CONFIRMED
            self._audit(booking, BookingStatus.PENDING, PaymentStatus.PENDING, actor, user_id,
                        "payment_confirmed", {"hold_reference": hold_reference})
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            logger.error(f"Captured payment for booking {booking_id} could not be recorded: {e}")
            await self._refund_unrecorded_capture(
                booking_id, slot_id, hold_reference, actor, user_id, str(e)
            )
            raise

        return TransitionResult(booking, [
            notify(NotificationTemplate.BOOKING_REQUESTED, booking_id, payee_id),
            notify(NotificationTemplate.PAYMENT_RECEIVED, booking_id, payer_id, amount=total),
        ])

    async def _cancel_after_failed_capture(
        self,
        booking_id: uuid.UUID,
        slot_id: uuid.UUID,
        actor: Actor,
        user_id: Optional[uuid.UUID],
        cause: str,
    ) -> None:
        try:
            booking = await self._reload(booking_id)
            if booking.status != BookingStatus.PENDING or booking.payment_status != PaymentStatus.PENDING:
                return
            await self.slots.release(slot_id, booking_id)
            booking.status = BookingStatus.CANCELLED
            booking.cancelled_at = self.clock()
            booking.cancellation_reason = "Payment capture failed"
            self._audit(booking, BookingStatus.PENDING, PaymentStatus.PENDING, actor, user_id,
                        "capture_failed", {"error": cause})
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            await self._flag(
                booking_id,
                f"Capture failed ({cause}) and releasing the slot also failed: {e}",
                critical=True,
            )

    async def _refund_unrecorded_capture(
        self,
        booking_id: uuid.UUID,
        slot_id: uuid.UUID,
        hold_reference: str,
        actor: Actor,
        user_id: Optional[uuid.UUID],
        cause: str,
    ) -> None:
        """Money was captured but HELD was never recorded: refund, release, flag."""
        try:
            refund_id = await self.processor.refund(hold_reference, None, booking_ref(booking_id))
        except Exception as e:
            await self._flag(
                booking_id,
                f"Payment {hold_reference} captured but not recorded ({cause}); "
                f"automatic refund failed: {e}",
                critical=True,
            )
            return

        try:
            await self.slots.release(slot_id, booking_id)
            booking = await self._reload(booking_id)
            from_status, from_payment = booking.status, booking.payment_status
            booking.refund_id = refund_id
            if booking.status == BookingStatus.PENDING:
                booking.status = BookingStatus.CANCELLED
                booking.cancelled_at = self.clock()
                booking.cancellation_reason = "Payment could not be recorded and was refunded"
            if booking.payment_status == PaymentStatus.PENDING and booking.status == BookingStatus.CANCELLED:
                booking.payment_status = PaymentStatus.REFUNDED
                booking.refunded_amount = booking.total_amount
                booking.resolved_at = self.clock()
            self._audit(booking, from_status, from_payment, actor, user_id,
                        "capture_refunded_after_persist_failure",
                        {"refund_id": refund_id, "error": cause})
            await flag_for_manual_review(
                self.db,
                booking_id,
                f"Payment {hold_reference} captured but not recorded ({cause}); "
                f"refunded as {refund_id}",
            )
            await self.db.commit()
        except Exception as e:
            await self.db.rollback()
            await self._flag(
                booking_id,
                f"Payment {hold_reference} refunded as {refund_id} after a failed save ({cause}), "
                f"but cancelling the booking failed: {e}",
                critical=True,
            )

    async def cancel_unpaid(
        self,
        booking_id: uuid.UUID,
        reason: str,
        user: Optional[User] = None,
        failed_hold_reference: Optional[str] = None,
    ) -> Optional[TransitionResult]:
        """
        PENDING (never paid) → CANCELLED, slot released. None if the booking
        is no longer pending, or a capture is in flight for another payment.
        """
        user_id = _uid(user)
        booking, actor = await self._begin(booking_id, user, BookingAction.PAY)
        if booking.status != BookingStatus.PENDING or booking.payment_status != PaymentStatus.PENDING:
            return None
        if booking.payment_hold_id and booking.payment_hold_id != failed_hold_reference:
            return None

        await self.slots.release(booking.slot_id, booking_id)
        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = self.clock()
        booking.cancellation_reason = reason
        self._audit(booking, BookingStatus.PENDING, PaymentStatus.PENDING, actor, user_id,
                    "cancelled_unpaid", {"reason": reason})
        await self.db.commit()
        return TransitionResult(booking, [
            notify(NotificationTemplate.BOOKING_CANCELLED, booking_id, booking.payer_id, reason=reason),
        ])

    # ── 3. Accept ─────────────────────────────────────────────

    async def accept(self, booking_id: uuid.UUID, payee: User) -> TransitionResult:
        booking, actor = await self._begin(booking_id, payee, BookingAction.ACCEPT)
        if booking.status != BookingStatus.CONFIRMED or booking.payment_status != PaymentStatus.HELD:
            raise PreconditionFailedError("Only confirmed, paid bookings can be accepted")
        if booking.is_accepted:
            raise PreconditionFailedError("Booking has already been accepted")

        booking.accepted_at = self.clock()
        self._audit(booking, booking.status, booking.payment_status, actor, payee.id, "accepted")
        await self.db.commit()

        return TransitionResult(booking, [
            provision_session(booking_id),
            notify(NotificationTemplate.BOOKING_ACCEPTED, booking_id, booking.payer_id),
        ])

    # ── 4. Reject ─────────────────────────────────────────────

    async def reject(self, booking_id: uuid.UUID, payee: User, reason: Optional[str] = None) -> TransitionResult:
        """Only before acceptance. Refund first (if held), then release the slot."""
        booking, actor = await self._begin(booking_id, payee, BookingAction.REJECT)
        pre_acceptance = booking.status == BookingStatus.PENDING or (
            booking.status == BookingStatus.CONFIRMED and not booking.is_accepted
        )
        if not pre_acceptance:
            raise PreconditionFailedError("Booking can only be rejected before it is accepted")
        if booking.payment_status == PaymentStatus.PENDING and booking.payment_hold_id:
            raise ConflictError("Payment confirmation is in progress; try again shortly")
        return await self._cancel_with_refund(
            booking, actor, payee.id, reason or "Rejected by mentor", "rejected",
            NotificationTemplate.BOOKING_REJECTED,
        )

    async def _cancel_with_refund(
        self,
        booking: Booking,
        actor: Actor,
        user_id: uuid.UUID,
        reason: str,
        audit_reason: str,
        template: NotificationTemplate,
    ) -> TransitionResult:
        booking_id = booking.id
        slot_id = booking.slot_id
        from_status, from_payment = booking.status, booking.payment_status

        refund_id = None
        if from_payment == PaymentStatus.HELD:
            try:
                refund_id = await self.escrow.refund_to_payer(booking_id)
            except BookingError:
                await self.db.rollback()
                raise

        released = await self.slots.release(slot_id, booking_id)
        if released == ReleaseResult.NOT_OWNER:
            logger.warning(
                f"Booking {booking_id} cancelled but its slot {slot_id} is owned by another booking"
            )

        booking.status = BookingStatus.CANCELLED
        booking.cancelled_at = self.clock()
        booking.cancellation_reason = reason
        self._audit(booking, from_status, from_payment, actor, user_id, audit_reason,
                    {"reason": reason, "refund_id": refund_id})
        if refund_id:
            await self._commit_after_money_moved(booking_id, f"Refund {refund_id}")
        else:
            await self.db.commit()

        return TransitionResult(booking, [
            notify(template, booking_id, booking.payer_id, reason=reason, refunded=bool(refund_id)),
        ])

    # ── 5. Complete ───────────────────────────────────────────

    async def complete(self, booking_id: uuid.UUID, user: Optional[User] = None) -> Optional[TransitionResult]:
        """
        Accepted CONFIRMED → COMPLETED once the session time has passed.
        Scheduled completion (user=None) waits for the session to end and
        returns None when the booking is not eligible.
        """
        user_id = _uid(user)
        booking, actor = await self._begin(booking_id, user, BookingAction.COMPLETE)
        now = self.clock()
        ends_at = booking.session_at
        if actor == Actor.SYSTEM:
            ends_at += timedelta(minutes=settings.SESSION_DURATION_MINUTES)

        eligible = (
            booking.status == BookingStatus.CONFIRMED
            and booking.payment_status == PaymentStatus.HELD
            and booking.is_accepted
        )
        if not eligible or now < ends_at:
            if actor == Actor.SYSTEM:
                return None
            if not eligible:
                raise PreconditionFailedError("Only accepted, confirmed bookings can be completed")
            raise PreconditionFailedError("The session has not started yet")

        booking.status = BookingStatus.COMPLETED
        booking.completed_at = now
        self._audit(booking, BookingStatus.CONFIRMED, PaymentStatus.HELD, actor, user_id, "completed")
        await self.db.commit()

        return TransitionResult(booking, [
            notify(NotificationTemplate.REVIEW_REQUEST, booking_id, booking.payer_id,
                   review_deadline=booking.review_deadline.isoformat()),
        ])

    # ── 6. Review ─────────────────────────────────────────────

    async def submit_review(
        self,
        booking_id: uuid.UUID,
        payer: User,
        rating: int,
        comment: Optional[str] = None,
    ) -> TransitionResult:
        payer_id = payer.id
        booking, actor = await self._begin(booking_id, payer, BookingAction.REVIEW)
        try:
            outcome = policy.resolve(rating)
        except ValueError as e:
            raise PreconditionFailedError(str(e))

        if booking.status != BookingStatus.COMPLETED:
            raise PreconditionFailedError("You can only review completed sessions")
        if self.clock() > booking.review_deadline:
            raise PreconditionFailedError("The review window for this booking has closed")
        existing = await self.db.execute(select(Review.id).where(Review.booking_id == booking_id))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError("You have already reviewed this booking")

        payee_id = booking.payee_id
        review = Review(
            booking_id=booking_id,
            payer_id=payer_id,
            payee_id=payee_id,
            listing_id=booking.listing_id,
            rating=rating,
            comment=comment,
        )
        self.db.add(review)

        if outcome == policy.ReviewOutcome.ESCALATE:
            booking.status = BookingStatus.UNDER_REVIEW
            self.db.add(Complaint(
                reporter_id=payer_id,
                reported_user_id=payee_id,
                booking_id=booking_id,
                title=f"Low rating ({rating}/{policy.MAX_RATING})",
                description=comment or policy.rationale(rating),
            ))
            self._audit(booking, BookingStatus.COMPLETED, PaymentStatus.HELD, actor, payer_id,
                        "low_rating_escalated", {"rating": rating})
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConflictError("You have already reviewed this booking")

        if outcome == policy.ReviewOutcome.ESCALATE:
            return TransitionResult(booking, [
                notify(NotificationTemplate.REVIEW_ESCALATED, booking_id, payee_id, rating=rating),
            ], review=review)

        intents: List[SideEffectIntent] = []
        try:
            booking = await self._release(booking_id, Actor.PAYER, payer_id, REASON_REVIEW_RELEASE,
                                          {"rating": rating})
            intents.append(notify(NotificationTemplate.PAYMENT_RELEASED, booking_id, payee_id))
        except PayoutDestinationMissingError as e:
            await self.db.rollback()
            await self._flag(booking_id, f"Release after {rating}-star review blocked: {e.detail}")
            booking = await self._reload(booking_id)
            await self.db.refresh(review)
        except BookingError as e:
            # Review stands; pass b of the reconciliation sweep retries the release.
            await self.db.rollback()
            logger.warning(
                f"Immediate release for booking {booking_id} failed, sweep will retry: {e.detail}"
            )
            booking = await self._reload(booking_id)
            await self.db.refresh(review)
        return TransitionResult(booking, intents, review=review)

    # ── 7. Release paths ──────────────────────────────────────

    async def _release(
        self,
        booking_id: uuid.UUID,
        actor: Actor,
        user_id: Optional[uuid.UUID],
        reason: str,
        metadata: Optional[dict] = None,
    ) -> Booking:
        booking = await self._reload(booking_id)
        from_status, from_payment = booking.status, booking.payment_status
        transfer_id = await self.escrow.release_to_payee(booking_id)

        booking.status = BookingStatus.COMPLETED
        if booking.completed_at is None:
            booking.completed_at = self.clock()
        self._audit(booking, from_status, from_payment, actor, user_id, reason,
                    {**(metadata or {}), "transfer_id": transfer_id})
        await self._commit_after_money_moved(booking_id, f"Transfer {transfer_id}")
        return booking

    async def auto_release(self, booking_id: uuid.UUID) -> Optional[TransitionResult]:
        """
        Reconciliation pass a: COMPLETED, HELD, past the review deadline and
        unreviewed → release. None when the booking no longer qualifies.
        """
        booking, actor = await self._begin(booking_id, None, BookingAction.AUTO_RESOLVE)
        if booking.payment_status != PaymentStatus.HELD:
            raise EscrowAlreadyResolvedError("Payment is no longer held")
        reviewed = await self.db.execute(select(Review.id).where(Review.booking_id == booking_id))
        if (
            booking.status != BookingStatus.COMPLETED
            or booking.review_deadline >= self.clock()
            or reviewed.scalar_one_or_none() is not None
        ):
            return None

        booking = await self._release(booking_id, actor, None, REASON_AUTO_RELEASE)
        logger.info(f"Auto-released booking {booking_id}: no review within the window")
        return TransitionResult(booking, [
            notify(NotificationTemplate.PAYMENT_RELEASED, booking_id, booking.payee_id),
        ])

    async def release_for_review(self, booking_id: uuid.UUID) -> Optional[TransitionResult]:
        """Reconciliation pass b: HELD with a review at or above the threshold → release."""
        booking, actor = await self._begin(booking_id, None, BookingAction.AUTO_RESOLVE)
        if booking.payment_status != PaymentStatus.HELD:
            raise EscrowAlreadyResolvedError("Payment is no longer held")
        result = await self.db.execute(select(Review.rating).where(Review.booking_id == booking_id))
        rating = result.scalar_one_or_none()
        if (
            booking.status != BookingStatus.COMPLETED
            or rating is None
            or policy.resolve(rating) != policy.ReviewOutcome.RELEASE
        ):
            return None

        booking = await self._release(booking_id, actor, None, REASON_REVIEW_RELEASE_RETRY,
                                      {"rating": rating})
        return TransitionResult(booking, [
            notify(NotificationTemplate.PAYMENT_RELEASED, booking_id, booking.payee_id),
        ])

    # ── 8. Admin overrides ────────────────────────────────────

    async def _begin_admin(self, booking_id: uuid.UUID, admin: User) -> tuple[Booking, Actor]:
        booking, actor = await self._begin(booking_id, admin, BookingAction.ADMIN_OVERRIDE)
        return booking, actor

    async def admin_release_full(self, booking_id: uuid.UUID, admin: User) -> TransitionResult:
        admin_id = admin.id
        booking, actor = await self._begin_admin(booking_id, admin)
        if booking.payment_status != PaymentStatus.HELD:
            raise EscrowAlreadyResolvedError("Payment is not in escrow")
        try:
            await self._close_complaints(booking_id, admin_id, "Resolved: full release to mentor")
            booking = await self._release(booking_id, actor, admin_id, "admin_release_full")
        except PayoutDestinationMissingError as e:
            await self.db.rollback()
            await self._flag(booking_id, f"Admin full release blocked: {e.detail}")
            raise
        except BookingError:
            await self.db.rollback()
            raise
        return TransitionResult(booking, [
            notify(NotificationTemplate.PAYMENT_RELEASED, booking_id, booking.payee_id),
        ])

    async def admin_release_partial(
        self, booking_id: uuid.UUID, admin: User, payee_percentage: Decimal
    ) -> TransitionResult:
        admin_id = admin.id
        booking, actor = await self._begin_admin(booking_id, admin)
        if booking.payment_status != PaymentStatus.HELD:
            raise EscrowAlreadyResolvedError("Payment is not in escrow")
        from_status, from_payment = booking.status, booking.payment_status

        try:
            split = await self.escrow.split(booking_id, payee_percentage)
        except PayoutDestinationMissingError as e:
            await self.db.rollback()
            await self._flag(booking_id, f"Admin partial release blocked: {e.detail}")
            raise
        except ExternalDependencyError as e:
            await self.db.rollback()
            await self._flag(
                booking_id,
                f"Partial release ({payee_percentage}% to mentor) did not complete: {e.detail}. "
                f"Completed legs are recorded; retry to finish.",
            )
            raise
        except BookingError:
            await self.db.rollback()
            raise

        booking = await self.db.get(Booking, booking_id)
        booking.status = BookingStatus.COMPLETED
        if booking.completed_at is None:
            booking.completed_at = self.clock()
        await self._close_complaints(
            booking_id, admin_id, f"Resolved: {payee_percentage}% to mentor, remainder refunded"
        )
        self._audit(booking, from_status, from_payment, actor, admin_id, "admin_release_partial", {
            "mentor_percentage": str(payee_percentage),
            "payee_share": str(split.payee_share),
            "refund_share": str(split.refund_share),
            "transfer_id": split.transfer_id,
            "refund_id": split.refund_id,
        })
        await self._commit_after_money_moved(booking_id, "Partial release")

        intents = []
        if split.payee_share > 0:
            intents.append(notify(NotificationTemplate.PAYMENT_RELEASED, booking_id, booking.payee_id,
                                  amount=split.payee_share))
        if split.refund_share > 0:
            intents.append(notify(NotificationTemplate.PAYMENT_REFUNDED, booking_id, booking.payer_id,
                                  amount=split.refund_share))
        return TransitionResult(booking, intents)

    async def admin_refund_full(self, booking_id: uuid.UUID, admin: User) -> TransitionResult:
        admin_id = admin.id
        booking, actor = await self._begin_admin(booking_id, admin)
        if booking.payment_status != PaymentStatus.HELD:
            raise EscrowAlreadyResolvedError("Payment is not in escrow")
        from_status, from_payment = booking.status, booking.payment_status
        slot_id = booking.slot_id
        session_happened = booking.completed_at is not None

        try:
            refund_id = await self.escrow.refund_to_payer(booking_id)
        except BookingError:
            await self.db.rollback()
            raise

        if not session_happened:
            await self.slots.release(slot_id, booking_id)
        booking.status = BookingStatus.REFUNDED
        await self._close_complaints(booking_id, admin_id, "Resolved: full refund to learner")
        self._audit(booking, from_status, from_payment, actor, admin_id, "admin_refund_full",
                    {"refund_id": refund_id})
        await self._commit_after_money_moved(booking_id, f"Refund {refund_id}")
        return TransitionResult(booking, [
            notify(NotificationTemplate.PAYMENT_REFUNDED, booking_id, booking.payer_id,
                   amount=booking.total_amount),
        ])

    async def admin_cancel(self, booking_id: uuid.UUID, admin: User, reason: Optional[str] = None) -> TransitionResult:
        admin_id = admin.id
        booking, actor = await self._begin_admin(booking_id, admin)
        if booking.status not in (
            BookingStatus.PENDING, BookingStatus.CONFIRMED, BookingStatus.UNDER_REVIEW
        ) or booking.completed_at is not None:
            raise PreconditionFailedError(
                "Only bookings whose session has not happened can be cancelled; use a refund instead"
            )
        if booking.payment_status not in (PaymentStatus.PENDING, PaymentStatus.HELD):
            raise EscrowAlreadyResolvedError("Payment has already been resolved")
        if booking.payment_status == PaymentStatus.PENDING and booking.payment_hold_id:
            raise ConflictError("Payment confirmation is in progress; try again shortly")
        await self._close_complaints(booking_id, admin_id, "Resolved: booking cancelled")
        return await self._cancel_with_refund(
            booking, actor, admin_id, reason or "Cancelled by admin", "admin_cancel",
            NotificationTemplate.BOOKING_CANCELLED,
        )

    async def suspend(self, booking_id: uuid.UUID, admin: User, reason: Optional[str] = None) -> TransitionResult:
        """Moderation hold: PENDING/CONFIRMED → UNDER_REVIEW. Payment untouched."""
        admin_id = admin.id
        booking, actor = await self._begin_admin(booking_id, admin)
        if booking.status not in (BookingStatus.PENDING, BookingStatus.CONFIRMED):
            raise PreconditionFailedError("Only pending or confirmed bookings can be suspended")

        from_status = booking.status
        booking.suspended_from_status = from_status
        booking.status = BookingStatus.UNDER_REVIEW
        booking.suspended_at = self.clock()
        booking.suspension_reason = reason
        self._audit(booking, from_status, booking.payment_status, actor, admin_id, "suspended",
                    {"reason": reason})
        await self.db.commit()
        return TransitionResult(booking)

    async def unsuspend(self, booking_id: uuid.UUID, admin: User) -> TransitionResult:
        """UNDER_REVIEW → the status it was suspended from (normally CONFIRMED)."""
        admin_id = admin.id
        booking, actor = await self._begin_admin(booking_id, admin)
        if booking.status != BookingStatus.UNDER_REVIEW or booking.suspended_from_status is None:
            raise PreconditionFailedError("Only admin-suspended bookings can be unsuspended")

        booking.status = booking.suspended_from_status
        booking.suspended_from_status = None
        booking.suspended_at = None
        booking.suspension_reason = None
        self._audit(booking, BookingStatus.UNDER_REVIEW, booking.payment_status, actor, admin_id,
                    "unsuspended")
        await self.db.commit()
        return TransitionResult(booking)
