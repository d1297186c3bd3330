"""
services/slots/router.py
Bookable slots of a listing. Mentors publish them; learners browse the
free ones. Claiming happens only through booking creation.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.slots.ledger import SlotLedger
from shared.middleware.auth import get_current_user
from shared.middleware.authz import AdminRegistry
from shared.models.models import Listing, User
from shared.schemas.schemas import SlotCreateRequest, SlotResponse
from shared.utils.errors import NotFoundError, PermissionDeniedError

router = APIRouter(prefix="/listings", tags=["Slots"])


async def _get_listing_or_404(listing_id: UUID, db: AsyncSession) -> Listing:
    result = await db.execute(select(Listing).where(Listing.id == listing_id))
    listing = result.scalar_one_or_none()
    if not listing:
        raise NotFoundError("Listing not found")
    return listing


@router.post("/{listing_id}/slots", response_model=SlotResponse, status_code=status.HTTP_201_CREATED)
async def create_slot(
    listing_id: UUID,
    data: SlotCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Listing's mentor or an admin. 409 if the listing already has a slot at that instant."""
    listing = await _get_listing_or_404(listing_id, db)
    if listing.mentor_id != current_user.id and not await AdminRegistry(db).is_authorized_admin(current_user):
        raise PermissionDeniedError("Only the listing's mentor can add slots")

    slot = await SlotLedger(db).create_slot(listing.id, data.starts_at)
    await db.commit()
    return SlotResponse.model_validate(slot)


@router.get("/{listing_id}/slots", response_model=List[SlotResponse])
async def list_slots(
    listing_id: UUID,
    free_only: bool = Query(True),
    db: AsyncSession = Depends(get_db),
):
    await _get_listing_or_404(listing_id, db)
    slots = await SlotLedger(db).list_for_listing(listing_id, free_only=free_only)
    return [SlotResponse.model_validate(s) for s in slots]
