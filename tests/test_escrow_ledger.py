"""
Tests for the escrow ledger: hold, release, refund and split, and the
money-conservation rule payee + refunded + retained == total.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.escrow.ledger import EscrowLedger
from shared.models.models import Booking, BookingStatus, Listing, PaymentStatus, Slot
from shared.utils.errors import (
    EscrowAlreadyResolvedError,
    ExternalDependencyError,
    PayoutDestinationMissingError,
    PreconditionFailedError,
)
from tests.conftest import confirmed_booking


def _accounted(booking: Booking) -> Decimal:
    return booking.payee_paid_amount + booking.refunded_amount + booking.platform_retained_amount


@pytest.fixture
async def held(machine, learner, listing, slot) -> Booking:
    return await confirmed_booking(machine, learner, listing, slot)


@pytest.fixture
async def held_without_payout(db, machine, learner, mentor_without_payout) -> Booking:
    listing = Listing(
        mentor_id=mentor_without_payout.id,
        title="Resume Review",
        category="career",
        price=Decimal("500.00"),
    )
    db.add(listing)
    await db.flush()
    slot = Slot(
        listing_id=listing.id,
        starts_at=(datetime.now(timezone.utc) + timedelta(days=3)).replace(microsecond=0),
    )
    db.add(slot)
    await db.commit()
    return await confirmed_booking(machine, learner, listing, slot, payment_id="pay_nopayout")


# ── Hold ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_confirmed_booking_is_held(held, processor):
    assert held.payment_status == PaymentStatus.HELD
    assert held.payment_hold_id == "pay_test_001"
    assert held.held_at is not None
    assert processor.count("authorize_hold") == 1
    assert processor.count("capture") == 1


@pytest.mark.asyncio
async def test_authorize_is_idempotent(db, machine, learner, listing, slot, processor):
    booking = (await machine.create(learner, listing.id, slot.id)).booking
    ledger = EscrowLedger(db, processor)

    first = await ledger.authorize(booking.id)
    second = await ledger.authorize(booking.id)
    await db.commit()

    assert first == second
    assert processor.count("authorize_hold") == 1


# ── Release ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_release_pays_fixed_payee_amount(db, held, processor):
    transfer_id = await EscrowLedger(db, processor).release_to_payee(held.id)
    held.status = BookingStatus.COMPLETED
    await db.commit()

    assert held.payment_status == PaymentStatus.RELEASED
    assert held.transfer_id == transfer_id
    assert held.payee_paid_amount == Decimal("850.00")
    assert held.platform_retained_amount == Decimal("150.00")
    assert _accounted(held) == held.total_amount
    assert processor.calls[-1] == ("transfer", Decimal("850.00"), "acc_mentor_001", str(held.id))


@pytest.mark.asyncio
async def test_second_release_is_rejected(db, held, processor):
    ledger = EscrowLedger(db, processor)
    await ledger.release_to_payee(held.id)
    held.status = BookingStatus.COMPLETED
    await db.commit()

    with pytest.raises(EscrowAlreadyResolvedError):
        await ledger.release_to_payee(held.id)
    assert processor.count("transfer") == 1


@pytest.mark.asyncio
async def test_release_without_payout_destination(db, held_without_payout, processor):
    with pytest.raises(PayoutDestinationMissingError):
        await EscrowLedger(db, processor).release_to_payee(held_without_payout.id)
    assert processor.count("transfer") == 0


# ── Refund ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_full_refund(db, held, processor):
    refund_id = await EscrowLedger(db, processor).refund_to_payer(held.id)
    held.status = BookingStatus.CANCELLED
    await db.commit()

    assert held.payment_status == PaymentStatus.REFUNDED
    assert held.refund_id == refund_id
    assert held.refunded_amount == Decimal("1000.00")
    assert held.platform_retained_amount == Decimal("0.00")
    # Full refunds let the processor refund everything captured
    assert processor.calls[-1][2] is None


@pytest.mark.asyncio
async def test_partial_refund_platform_retains_remainder(db, held, processor):
    await EscrowLedger(db, processor).refund_to_payer(held.id, Decimal("400"))
    held.status = BookingStatus.CANCELLED
    await db.commit()

    assert held.refunded_amount == Decimal("400.00")
    assert held.platform_retained_amount == Decimal("600.00")
    assert _accounted(held) == held.total_amount


@pytest.mark.asyncio
async def test_refund_above_total_is_rejected(db, held, processor):
    with pytest.raises(PreconditionFailedError):
        await EscrowLedger(db, processor).refund_to_payer(held.id, Decimal("1000.01"))
    assert processor.count("refund") == 0


# ── Split ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_split_sixty_forty(db, held, processor):
    booking_id = held.id
    split = await EscrowLedger(db, processor).split(booking_id, Decimal("60"))
    booking = await db.get(Booking, booking_id)
    booking.status = BookingStatus.COMPLETED
    await db.commit()

    assert split.payee_share == Decimal("600.00")
    assert split.refund_share == Decimal("400.00")
    assert booking.payment_status == PaymentStatus.RELEASED
    assert booking.payee_paid_amount == Decimal("600.00")
    assert booking.refunded_amount == Decimal("400.00")
    assert booking.platform_retained_amount == Decimal("0.00")
    assert _accounted(booking) == booking.total_amount


@pytest.mark.asyncio
async def test_split_zero_percent_is_a_refund(db, held, processor):
    booking_id = held.id
    split = await EscrowLedger(db, processor).split(booking_id, Decimal("0"))
    booking = await db.get(Booking, booking_id)

    assert split.transfer_id is None
    assert booking.payment_status == PaymentStatus.REFUNDED
    assert processor.count("transfer") == 0
    assert processor.count("refund") == 1


@pytest.mark.asyncio
async def test_split_rejects_out_of_range_percentage(db, held, processor):
    with pytest.raises(PreconditionFailedError):
        await EscrowLedger(db, processor).split(held.id, Decimal("100.5"))


@pytest.mark.asyncio
async def test_split_needs_payout_destination_for_payee_share(db, held_without_payout, processor):
    with pytest.raises(PayoutDestinationMissingError):
        await EscrowLedger(db, processor).split(held_without_payout.id, Decimal("50"))
    assert processor.count("transfer") == 0
    assert processor.count("refund") == 0


@pytest.mark.asyncio
async def test_split_retry_skips_completed_leg(db, held, processor):
    booking_id = held.id
    ledger = EscrowLedger(db, processor)
    processor.fail("refund")

    with pytest.raises(ExternalDependencyError):
        await ledger.split(booking_id, Decimal("60"))
    await db.rollback()

    # Transfer leg was committed before the refund failed
    booking = await db.get(Booking, booking_id, populate_existing=True)
    assert booking.transfer_id is not None
    assert booking.payment_status == PaymentStatus.HELD

    split = await ledger.split(booking_id, Decimal("60"))
    assert processor.count("transfer") == 1
    assert processor.count("refund") == 1
    assert split.refund_id is not None
