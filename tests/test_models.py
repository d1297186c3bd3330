"""
Tests for the invariants the Booking model enforces on its own.
"""

from decimal import Decimal

import pytest

from shared.models.models import Booking, PaymentStatus
from shared.utils.errors import BookingInvariantError
from tests.conftest import confirmed_booking, pending_booking


@pytest.mark.asyncio
async def test_amounts_are_write_once(machine, learner, listing, slot):
    booking = await pending_booking(machine, learner, listing, slot)

    booking.payee_amount = Decimal("850.00")  # same value is fine
    with pytest.raises(BookingInvariantError):
        booking.payee_amount = Decimal("900.00")
    with pytest.raises(BookingInvariantError):
        booking.session_at = booking.session_at.replace(year=booking.session_at.year + 1)


@pytest.mark.asyncio
async def test_held_payment_requires_a_live_booking(db, machine, learner, listing, slot):
    booking = await pending_booking(machine, learner, listing, slot)
    booking_id = booking.id

    booking.payment_status = PaymentStatus.HELD
    with pytest.raises(BookingInvariantError):
        await db.flush()
    await db.rollback()

    reloaded = await db.get(Booking, booking_id, populate_existing=True)
    assert reloaded.payment_status == PaymentStatus.PENDING


@pytest.mark.asyncio
async def test_released_payment_requires_a_finished_booking(db, machine, learner, listing, slot):
    booking = await confirmed_booking(machine, learner, listing, slot)

    booking.payment_status = PaymentStatus.RELEASED
    with pytest.raises(BookingInvariantError):
        await db.flush()
    await db.rollback()


@pytest.mark.asyncio
async def test_payouts_cannot_exceed_total(db, machine, learner, listing, slot):
    booking = await confirmed_booking(machine, learner, listing, slot)

    booking.refunded_amount = Decimal("600.00")
    booking.payee_paid_amount = Decimal("600.00")
    with pytest.raises(BookingInvariantError):
        await db.flush()
    await db.rollback()
