"""
Tests for slot ownership: claim exclusivity, owner-only release, slot creation.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from services.slots.ledger import ClaimResult, ReleaseResult, SlotLedger
from shared.models.models import Slot
from shared.utils.errors import ConflictError


# ── Claim ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_claim_free_slot(db, slot):
    booking_id = uuid.uuid4()
    result = await SlotLedger(db).claim(slot.id, booking_id)
    await db.commit()

    assert result == ClaimResult.SUCCESS
    refreshed = await db.get(Slot, slot.id, populate_existing=True)
    assert refreshed.booking_id == booking_id
    assert refreshed.claimed_at is not None


@pytest.mark.asyncio
async def test_claim_already_claimed_slot_loses(db, slot):
    ledger = SlotLedger(db)
    owner = uuid.uuid4()
    assert await ledger.claim(slot.id, owner) == ClaimResult.SUCCESS

    assert await ledger.claim(slot.id, uuid.uuid4()) == ClaimResult.ALREADY_CLAIMED
    refreshed = await db.get(Slot, slot.id, populate_existing=True)
    assert refreshed.booking_id == owner


@pytest.mark.asyncio
async def test_reclaim_by_owner_succeeds(db, slot):
    ledger = SlotLedger(db)
    owner = uuid.uuid4()
    await ledger.claim(slot.id, owner)
    assert await ledger.claim(slot.id, owner) == ClaimResult.SUCCESS


@pytest.mark.asyncio
async def test_claim_unknown_slot(db):
    assert await SlotLedger(db).claim(uuid.uuid4(), uuid.uuid4()) == ClaimResult.NOT_FOUND


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(db, slot, session_factory):
    slot_id = slot.id

    async def claim_in_own_session(booking_id):
        async with session_factory() as session:
            result = await SlotLedger(session).claim(slot_id, booking_id)
            await session.commit()
            return result

    contenders = [uuid.uuid4() for _ in range(5)]
    results = await asyncio.gather(*(claim_in_own_session(b) for b in contenders))

    assert results.count(ClaimResult.SUCCESS) == 1
    assert results.count(ClaimResult.ALREADY_CLAIMED) == 4
    winner = contenders[results.index(ClaimResult.SUCCESS)]
    refreshed = await db.get(Slot, slot_id, populate_existing=True)
    assert refreshed.booking_id == winner


# ── Release ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_release_by_owner_frees_slot(db, slot):
    ledger = SlotLedger(db)
    owner = uuid.uuid4()
    await ledger.claim(slot.id, owner)

    assert await ledger.release(slot.id, owner) == ReleaseResult.SUCCESS
    refreshed = await db.get(Slot, slot.id, populate_existing=True)
    assert refreshed.booking_id is None
    assert refreshed.last_released_by_booking_id == owner


@pytest.mark.asyncio
async def test_release_by_non_owner_is_refused(db, slot):
    ledger = SlotLedger(db)
    owner = uuid.uuid4()
    await ledger.claim(slot.id, owner)

    assert await ledger.release(slot.id, uuid.uuid4()) == ReleaseResult.NOT_OWNER
    refreshed = await db.get(Slot, slot.id, populate_existing=True)
    assert refreshed.booking_id == owner


@pytest.mark.asyncio
async def test_second_release_is_a_no_op(db, slot):
    ledger = SlotLedger(db)
    owner = uuid.uuid4()
    await ledger.claim(slot.id, owner)
    await ledger.release(slot.id, owner)

    assert await ledger.release(slot.id, owner) == ReleaseResult.SUCCESS


@pytest.mark.asyncio
async def test_stale_release_does_not_free_new_owner(db, slot):
    ledger = SlotLedger(db)
    first, second = uuid.uuid4(), uuid.uuid4()
    await ledger.claim(slot.id, first)
    await ledger.release(slot.id, first)
    await ledger.claim(slot.id, second)

    assert await ledger.release(slot.id, first) == ReleaseResult.NOT_OWNER
    refreshed = await db.get(Slot, slot.id, populate_existing=True)
    assert refreshed.booking_id == second


@pytest.mark.asyncio
async def test_release_unknown_slot(db):
    assert await SlotLedger(db).release(uuid.uuid4(), uuid.uuid4()) == ReleaseResult.NOT_FOUND


# ── Slot Creation & Listing ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_duplicate_slot_is_a_conflict(db, slot):
    listing_id, starts_at = slot.listing_id, slot.starts_at
    with pytest.raises(ConflictError):
        await SlotLedger(db).create_slot(listing_id, starts_at)


@pytest.mark.asyncio
async def test_list_free_only_hides_claimed_slots(db, slot):
    ledger = SlotLedger(db)
    later = await ledger.create_slot(slot.listing_id, slot.starts_at + timedelta(hours=2))
    await db.commit()
    await ledger.claim(slot.id, uuid.uuid4())

    all_slots = await ledger.list_for_listing(slot.listing_id)
    free_slots = await ledger.list_for_listing(slot.listing_id, free_only=True)

    assert [s.id for s in all_slots] == [slot.id, later.id]
    assert [s.id for s in free_slots] == [later.id]
