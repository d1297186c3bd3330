"""
services/escrow/flags.py
Manual-review flags: the operator work queue for bookings whose
automatic cleanup or release could not finish.
"""

import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import ManualReviewFlag
from shared.models.types import utcnow

logger = logging.getLogger(__name__)

CRITICAL_PREFIX = "Critical: "


async def flag_for_manual_review(
    db: AsyncSession,
    booking_id: uuid.UUID,
    reason: str,
    *,
    critical: bool = False,
) -> ManualReviewFlag:
    """
    Open (or refresh) the booking's flag. Flushes only; the caller commits.
    A critical flag stays critical even if later refreshed with a milder reason.
    """
    if critical and not reason.startswith(CRITICAL_PREFIX):
        reason = CRITICAL_PREFIX + reason

    result = await db.execute(
        select(ManualReviewFlag).where(
            ManualReviewFlag.booking_id == booking_id,
            ManualReviewFlag.resolved_at.is_(None),
        )
    )
    flag = result.scalar_one_or_none()
    if flag:
        flag.reason = reason
        flag.is_critical = flag.is_critical or critical
        flag.occurrences = (flag.occurrences or 1) + 1
    else:
        flag = ManualReviewFlag(booking_id=booking_id, reason=reason, is_critical=critical)
        db.add(flag)
    await db.flush()

    logger.error(f"Booking {booking_id} flagged for manual review: {reason}")
    return flag


async def resolve_flag(
    db: AsyncSession,
    flag_id: uuid.UUID,
    resolved_by_id: uuid.UUID,
    notes: Optional[str] = None,
) -> Optional[ManualReviewFlag]:
    result = await db.execute(select(ManualReviewFlag).where(ManualReviewFlag.id == flag_id))
    flag = result.scalar_one_or_none()
    if flag and flag.resolved_at is None:
        flag.resolved_at = utcnow()
        flag.resolved_by_id = resolved_by_id
        flag.resolution_notes = notes
        await db.flush()
    return flag
