"""
Tests for listing slot endpoints.
"""

from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient

from tests.conftest import auth_headers, pending_booking


def _future(days: int = 3) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).replace(microsecond=0).isoformat()


@pytest.mark.asyncio
async def test_mentor_creates_slot(client: AsyncClient, mentor, listing):
    resp = await client.post(
        f"/listings/{listing.id}/slots", json={"starts_at": _future()}, headers=auth_headers(mentor)
    )
    assert resp.status_code == 201
    assert resp.json()["is_free"] is True
    assert resp.json()["listing_id"] == str(listing.id)


@pytest.mark.asyncio
async def test_duplicate_slot(client: AsyncClient, mentor, listing):
    headers = auth_headers(mentor)
    when = _future()
    await client.post(f"/listings/{listing.id}/slots", json={"starts_at": when}, headers=headers)

    resp = await client.post(f"/listings/{listing.id}/slots", json={"starts_at": when}, headers=headers)
    assert resp.status_code == 409


@pytest.mark.asyncio
async def test_learner_cannot_create_slot(client: AsyncClient, learner, listing):
    resp = await client.post(
        f"/listings/{listing.id}/slots", json={"starts_at": _future()}, headers=auth_headers(learner)
    )
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_slot_in_the_past(client: AsyncClient, mentor, listing):
    resp = await client.post(
        f"/listings/{listing.id}/slots", json={"starts_at": _future(days=-1)}, headers=auth_headers(mentor)
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_list_slots_hides_claimed(client: AsyncClient, machine, mentor, learner, listing, slot):
    await client.post(f"/listings/{listing.id}/slots", json={"starts_at": _future(days=5)},
                      headers=auth_headers(mentor))
    await pending_booking(machine, learner, listing, slot)

    free = await client.get(f"/listings/{listing.id}/slots")
    everything = await client.get(f"/listings/{listing.id}/slots?free_only=false")

    assert len(free.json()) == 1
    assert str(slot.id) not in [s["id"] for s in free.json()]
    assert len(everything.json()) == 2


@pytest.mark.asyncio
async def test_slots_of_unknown_listing(client: AsyncClient):
    resp = await client.get("/listings/00000000-0000-0000-0000-000000000000/slots")
    assert resp.status_code == 404
