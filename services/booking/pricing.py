"""
services/booking/pricing.py
Commission lookup and the one-time split of a booking total.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.models.models import CommissionRule, CommissionRuleType, Listing

CENT = Decimal("0.01")


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class BookingAmounts:
    total_amount: Decimal
    platform_fee: Decimal
    payee_amount: Decimal
    commission_rate: Decimal


def split_total(total: Decimal, commission_rate: Decimal) -> BookingAmounts:
    """payee_amount is total - fee so the two always add up exactly."""
    total = quantize(total)
    fee = quantize(total * Decimal(commission_rate) / 100)
    return BookingAmounts(
        total_amount=total,
        platform_fee=fee,
        payee_amount=total - fee,
        commission_rate=Decimal(commission_rate).quantize(CENT),
    )


async def _active_rate(
    db: AsyncSession, rule_type: CommissionRuleType, target_id: Optional[str]
) -> Optional[Decimal]:
    query = select(CommissionRule.commission_rate).where(
        CommissionRule.rule_type == rule_type,
        CommissionRule.is_active.is_(True),
    )
    if target_id is not None:
        query = query.where(CommissionRule.target_id == target_id)
    result = await db.execute(query.order_by(CommissionRule.created_at.desc()).limit(1))
    return result.scalar_one_or_none()


async def get_commission_rate(db: AsyncSession, listing: Listing) -> Decimal:
    """Mentor-specific > category-specific > global rule > DEFAULT_COMMISSION_PERCENT."""
    for rule_type, target in (
        (CommissionRuleType.MENTOR, str(listing.mentor_id)),
        (CommissionRuleType.CATEGORY, listing.category),
        (CommissionRuleType.GLOBAL, None),
    ):
        rate = await _active_rate(db, rule_type, target)
        if rate is not None:
            return Decimal(rate)
    return Decimal(str(settings.DEFAULT_COMMISSION_PERCENT))


async def compute_booking_amounts(db: AsyncSession, listing: Listing) -> BookingAmounts:
    rate = await get_commission_rate(db, listing)
    return split_total(Decimal(listing.price), rate)
