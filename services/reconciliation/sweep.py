"""
services/reconciliation/sweep.py
Periodic escrow reconciliation and booking housekeeping.

run_sweep_once():
    pass a: COMPLETED + HELD + review window closed + no review → auto-release
    pass b: COMPLETED + HELD + review at/above threshold → retry the release
            that did not go through when the review was submitted

Every booking is processed in its own session and transaction; a failure
on one is logged (and flagged) without stopping the rest. Another runner
resolving the booking first counts as skipped. Single-runner exclusion is
the caller's job (Redis job lock in tasks/escrow_tasks.py).
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Awaitable, Callable, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from services.booking.side_effects import SideEffectDispatcher, SideEffectIntent
from services.booking.state_machine import BookingStateMachine, Clock, TransitionResult
from services.escrow.flags import flag_for_manual_review
from services.payment.processor import PaymentProcessor
from services.review.policy import RELEASE_THRESHOLD
from shared.models.models import Booking, BookingStatus, PaymentStatus, Review
from shared.models.types import utcnow
from shared.utils.errors import BookingError, EscrowAlreadyResolvedError

logger = logging.getLogger(__name__)

Step = Callable[[BookingStateMachine, uuid.UUID], Awaitable[Optional[TransitionResult]]]


@dataclass
class SweepReport:
    examined: int = 0
    released: int = 0
    skipped: int = 0
    failed: int = 0
    failed_booking_ids: List[uuid.UUID] = field(default_factory=list)

    def merge(self, other: "SweepReport") -> "SweepReport":
        self.examined += other.examined
        self.released += other.released
        self.skipped += other.skipped
        self.failed += other.failed
        self.failed_booking_ids.extend(other.failed_booking_ids)
        return self

    def as_dict(self) -> dict:
        return {
            "examined": self.examined,
            "released": self.released,
            "skipped": self.skipped,
            "failed": self.failed,
            "failed_booking_ids": [str(i) for i in self.failed_booking_ids],
        }


# ── Candidate queries ─────────────────────────────────────────

async def _unreviewed_past_deadline(db: AsyncSession, now) -> List[uuid.UUID]:
    result = await db.execute(
        select(Booking.id)
        .outerjoin(Review, Review.booking_id == Booking.id)
        .where(
            Booking.status == BookingStatus.COMPLETED,
            Booking.payment_status == PaymentStatus.HELD,
            Booking.review_deadline < now,
            Review.id.is_(None),
        )
        .order_by(Booking.review_deadline)
    )
    return list(result.scalars().all())


async def _reviewed_awaiting_release(db: AsyncSession) -> List[uuid.UUID]:
    result = await db.execute(
        select(Booking.id)
        .join(Review, Review.booking_id == Booking.id)
        .where(
            Booking.status == BookingStatus.COMPLETED,
            Booking.payment_status == PaymentStatus.HELD,
            Review.rating >= RELEASE_THRESHOLD,
        )
        .order_by(Booking.completed_at)
    )
    return list(result.scalars().all())


async def _stale_pending(db: AsyncSession, now) -> List[uuid.UUID]:
    cutoff = now - timedelta(minutes=settings.PENDING_BOOKING_TTL_MINUTES)
    result = await db.execute(
        select(Booking.id).where(
            Booking.status == BookingStatus.PENDING,
            Booking.payment_status == PaymentStatus.PENDING,
            Booking.created_at < cutoff,
        )
    )
    return list(result.scalars().all())


async def _elapsed_sessions(db: AsyncSession, now) -> List[uuid.UUID]:
    cutoff = now - timedelta(minutes=settings.SESSION_DURATION_MINUTES)
    result = await db.execute(
        select(Booking.id).where(
            and_(
                Booking.status == BookingStatus.CONFIRMED,
                Booking.payment_status == PaymentStatus.HELD,
                Booking.accepted_at.is_not(None),
                Booking.session_at <= cutoff,
            )
        )
    )
    return list(result.scalars().all())


# ── Per-booking driver ────────────────────────────────────────

async def _run_each(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    clock: Clock,
    booking_ids: List[uuid.UUID],
    step: Step,
    label: str,
    intents: List[SideEffectIntent],
) -> SweepReport:
    report = SweepReport()
    for booking_id in booking_ids:
        report.examined += 1
        async with session_factory() as db:
            machine = BookingStateMachine(db, processor, clock)
            try:
                result = await step(machine, booking_id)
            except EscrowAlreadyResolvedError:
                await db.rollback()
                report.skipped += 1
                continue
            except Exception as e:
                await db.rollback()
                report.failed += 1
                report.failed_booking_ids.append(booking_id)
                detail = e.detail if isinstance(e, BookingError) else str(e)
                logger.error(f"{label}: booking {booking_id} failed: {detail}", exc_info=True)
                try:
                    await flag_for_manual_review(db, booking_id, f"{label} failed: {detail}")
                    await db.commit()
                except Exception:
                    await db.rollback()
                    logger.critical(f"{label}: could not flag booking {booking_id}", exc_info=True)
                continue

        if result is None:
            report.skipped += 1
        else:
            report.released += 1
            intents.extend(result.intents)
    return report


def _dispatch(dispatcher: Optional[SideEffectDispatcher], intents: List[SideEffectIntent]) -> None:
    if dispatcher is not None and intents:
        dispatcher.dispatch(intents)


# ── Entry points ──────────────────────────────────────────────

async def run_sweep_once(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    clock: Clock = utcnow,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> SweepReport:
    """One reconciliation pass over every held booking that should be released."""
    now = clock()
    async with session_factory() as db:
        auto_ids = await _unreviewed_past_deadline(db, now)
        retry_ids = await _reviewed_awaiting_release(db)

    intents: List[SideEffectIntent] = []
    report = await _run_each(
        session_factory, processor, clock, auto_ids,
        lambda m, bid: m.auto_release(bid), "auto-release", intents,
    )
    report.merge(await _run_each(
        session_factory, processor, clock, retry_ids,
        lambda m, bid: m.release_for_review(bid), "review release retry", intents,
    ))
    _dispatch(dispatcher, intents)

    logger.info(
        f"Reconciliation sweep: examined={report.examined} released={report.released} "
        f"skipped={report.skipped} failed={report.failed}"
    )
    return report


async def expire_pending_bookings_once(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    clock: Clock = utcnow,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> SweepReport:
    """
    Cancel PENDING bookings that were never paid within the TTL and free
    their slots. A booking whose capture was started is flagged instead:
    the processor may have charged the learner.
    """
    async with session_factory() as db:
        stale_ids = await _stale_pending(db, clock())

    async def expire(machine: BookingStateMachine, booking_id: uuid.UUID):
        booking = await machine.escrow.lock(booking_id)
        if booking.payment_hold_id:
            reference = booking.payment_hold_id
            await flag_for_manual_review(
                machine.db, booking_id,
                f"Pending booking expired while capture of {reference} was in progress; "
                f"capture outcome unknown",
            )
            await machine.db.commit()
            return None
        return await machine.cancel_unpaid(booking_id, "Payment not completed in time")

    intents: List[SideEffectIntent] = []
    report = await _run_each(
        session_factory, processor, clock, stale_ids, expire, "pending expiry", intents,
    )
    _dispatch(dispatcher, intents)
    if report.released:
        logger.info(f"Expired {report.released} unpaid bookings")
    return report


async def complete_elapsed_sessions_once(
    session_factory: async_sessionmaker[AsyncSession],
    processor: PaymentProcessor,
    clock: Clock = utcnow,
    dispatcher: Optional[SideEffectDispatcher] = None,
) -> SweepReport:
    """Mark accepted sessions COMPLETED once they have ended; opens the review window."""
    async with session_factory() as db:
        ids = await _elapsed_sessions(db, clock())

    intents: List[SideEffectIntent] = []
    report = await _run_each(
        session_factory, processor, clock, ids,
        lambda m, bid: m.complete(bid), "session completion", intents,
    )
    _dispatch(dispatcher, intents)
    if report.released:
        logger.info(f"Completed {report.released} elapsed sessions")
    return report
