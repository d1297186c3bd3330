"""
Unit tests for commission pricing and the review policy.
"""

from decimal import Decimal

import pytest

from services.booking.pricing import compute_booking_amounts, get_commission_rate, split_total
from services.review import policy
from services.review.policy import ReviewOutcome
from shared.models.models import CommissionRule, CommissionRuleType


# ── Split ──────────────────────────────────────────────────────────────────────

def test_split_adds_up_after_rounding():
    amounts = split_total(Decimal("999.99"), Decimal("12.5"))
    assert amounts.platform_fee == Decimal("125.00")
    assert amounts.payee_amount == Decimal("874.99")
    assert amounts.platform_fee + amounts.payee_amount == amounts.total_amount


def test_zero_commission():
    amounts = split_total(Decimal("500"), Decimal("0"))
    assert amounts.platform_fee == Decimal("0.00")
    assert amounts.payee_amount == Decimal("500.00")


# ── Commission Rules ───────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_default_commission(db, listing):
    assert await get_commission_rate(db, listing) == Decimal("15")


@pytest.mark.asyncio
async def test_mentor_rule_beats_category_and_global(db, listing):
    db.add_all([
        CommissionRule(rule_type=CommissionRuleType.GLOBAL, commission_rate=Decimal("20")),
        CommissionRule(rule_type=CommissionRuleType.CATEGORY, target_id="career", commission_rate=Decimal("12")),
        CommissionRule(rule_type=CommissionRuleType.MENTOR, target_id=str(listing.mentor_id),
                       commission_rate=Decimal("8")),
    ])
    await db.commit()

    amounts = await compute_booking_amounts(db, listing)
    assert amounts.commission_rate == Decimal("8.00")
    assert amounts.payee_amount == Decimal("920.00")


@pytest.mark.asyncio
async def test_category_rule_beats_global(db, listing):
    db.add_all([
        CommissionRule(rule_type=CommissionRuleType.GLOBAL, commission_rate=Decimal("20")),
        CommissionRule(rule_type=CommissionRuleType.CATEGORY, target_id="career", commission_rate=Decimal("12")),
        CommissionRule(rule_type=CommissionRuleType.CATEGORY, target_id="design", commission_rate=Decimal("5")),
    ])
    await db.commit()

    assert await get_commission_rate(db, listing) == Decimal("12")


@pytest.mark.asyncio
async def test_inactive_rule_is_ignored(db, listing):
    db.add(CommissionRule(rule_type=CommissionRuleType.GLOBAL, commission_rate=Decimal("30"), is_active=False))
    await db.commit()

    assert await get_commission_rate(db, listing) == Decimal("15")


# ── Review Policy ──────────────────────────────────────────────────────────────

@pytest.mark.parametrize("rating,outcome", [
    (1, ReviewOutcome.ESCALATE),
    (2, ReviewOutcome.ESCALATE),
    (3, ReviewOutcome.RELEASE),
    (5, ReviewOutcome.RELEASE),
])
def test_resolve(rating, outcome):
    assert policy.resolve(rating) == outcome


@pytest.mark.parametrize("rating", [0, 6, -1])
def test_resolve_rejects_out_of_range(rating):
    with pytest.raises(ValueError):
        policy.resolve(rating)


def test_rationale_names_the_threshold():
    assert "at or above the release threshold of 3" in policy.rationale(4)
    assert "below the release threshold of 3" in policy.rationale(2)
