"""
services/slots/ledger.py
Slot ownership: exactly one booking may hold a slot at a time.

claim() and release() are single conditional UPDATEs; the database row
is the lock. There is no read-then-write anywhere in this module.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Slot
from shared.models.types import utcnow
from shared.utils.errors import ConflictError

logger = logging.getLogger(__name__)


class ClaimResult(str, Enum):
    SUCCESS = "success"
    ALREADY_CLAIMED = "already_claimed"
    NOT_FOUND = "not_found"


class ReleaseResult(str, Enum):
    SUCCESS = "success"
    NOT_OWNER = "not_owner"
    NOT_FOUND = "not_found"


class SlotLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_slot(self, listing_id: uuid.UUID, starts_at: datetime) -> Slot:
        slot = Slot(listing_id=listing_id, starts_at=starts_at)
        try:
            async with self.db.begin_nested():
                self.db.add(slot)
        except IntegrityError:
            raise ConflictError("A slot already exists for this listing at that time")
        return slot

    async def get(self, slot_id: uuid.UUID) -> Optional[Slot]:
        result = await self.db.execute(select(Slot).where(Slot.id == slot_id))
        return result.scalar_one_or_none()

    async def list_for_listing(self, listing_id: uuid.UUID, free_only: bool = False) -> List[Slot]:
        query = select(Slot).where(Slot.listing_id == listing_id)
        if free_only:
            query = query.where(Slot.booking_id.is_(None))
        result = await self.db.execute(query.order_by(Slot.starts_at))
        return list(result.scalars().all())

    async def claim(self, slot_id: uuid.UUID, booking_id: uuid.UUID) -> ClaimResult:
        """
        free → claimed-by:booking_id. Exactly one concurrent caller wins.
        Re-claiming a slot this booking already owns succeeds.
        """
        result = await self.db.execute(
            update(Slot)
            .where(
                Slot.id == slot_id,
                or_(Slot.booking_id.is_(None), Slot.booking_id == booking_id),
            )
            .values(booking_id=booking_id, claimed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Slot {slot_id} claimed by booking {booking_id}")
            return ClaimResult.SUCCESS

        if await self._exists(slot_id):
            logger.info(f"Slot {slot_id} claim by booking {booking_id} lost: already claimed")
            return ClaimResult.ALREADY_CLAIMED
        return ClaimResult.NOT_FOUND

    async def release(self, slot_id: uuid.UUID, booking_id: uuid.UUID) -> ReleaseResult:
        """
        claimed-by:booking_id → free. Never frees another booking's claim.
        Releasing again after our own release is a no-op success.
        """
        result = await self.db.execute(
            update(Slot)
            .where(Slot.id == slot_id, Slot.booking_id == booking_id)
            .values(
                booking_id=None,
                claimed_at=None,
                last_released_by_booking_id=booking_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info(f"Slot {slot_id} released by booking {booking_id}")
            return ReleaseResult.SUCCESS

        already_released = await self.db.execute(
            select(Slot.id).where(
                and_(
                    Slot.id == slot_id,
                    Slot.booking_id.is_(None),
                    Slot.last_released_by_booking_id == booking_id,
                )
            )
        )
        if already_released.scalar_one_or_none() is not None:
            return ReleaseResult.SUCCESS

        if await self._exists(slot_id):
            logger.warning(f"Slot {slot_id} release refused: booking {booking_id} is not the owner")
            return ReleaseResult.NOT_OWNER
        return ReleaseResult.NOT_FOUND

    async def _exists(self, slot_id: uuid.UUID) -> bool:
        result = await self.db.execute(select(Slot.id).where(Slot.id == slot_id))
        return result.scalar_one_or_none() is not None
