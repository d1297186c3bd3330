"""
services/admin/router.py
Admin-only endpoints: escrow overrides, moderation holds, the manual-review
queue, complaints, commission rules, the admin allowlist and revenue.

ALL mutations are logged to AdminAuditLog before returning.
"""

import uuid
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.database import get_db, get_session_factory
from config.redis_client import RedisCache, get_redis
from services.admin.gate import AdminOverrideGate, log_admin_action
from services.booking.side_effects import SideEffectDispatcher, get_dispatcher
from services.booking.state_machine import TransitionResult
from services.escrow.flags import resolve_flag
from services.payment.processor import PaymentProcessor, get_payment_processor
from services.reconciliation.sweep import run_sweep_once
from shared.middleware.auth import require_admin
from shared.middleware.authz import AdminRegistry
from shared.models.models import (
    Booking,
    BookingStatus,
    CommissionRule,
    CommissionRuleType,
    Complaint,
    ComplaintStatus,
    ManualReviewFlag,
    PaymentStatus,
    User,
)
from shared.models.types import utcnow
from shared.schemas.schemas import (
    AdminBookingResponse,
    AdminEmailRequest,
    AdminEmailResponse,
    AdminPartialReleaseRequest,
    AdminReasonRequest,
    CommissionRuleCreate,
    CommissionRuleResponse,
    CommissionRuleUpdate,
    ComplaintResponse,
    ComplaintUpdateRequest,
    FlagResolveRequest,
    ManualReviewFlagResponse,
    MessageResponse,
    RevenueResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"])

SWEEP_JOB_NAME = "reconciliation_sweep"


# ── Helpers ────────────────────────────────────────────────────────────────────

def _ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def get_gate(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> AdminOverrideGate:
    return AdminOverrideGate(db, processor)


def _respond(
    result: TransitionResult,
    background_tasks: BackgroundTasks,
    dispatcher: SideEffectDispatcher,
) -> AdminBookingResponse:
    background_tasks.add_task(dispatcher.dispatch, result.intents)
    return AdminBookingResponse.model_validate(result.booking)


# ── Escrow Overrides ───────────────────────────────────────────────────────────

@router.post("/bookings/{booking_id}/release-full", response_model=AdminBookingResponse)
async def release_full(
    booking_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    gate: AdminOverrideGate = Depends(get_gate),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """Release the held payment to the mentor (minus platform fee)."""
    result = await gate.release_full(booking_id, current_user, _ip(request))
    return _respond(result, background_tasks, dispatcher)


@router.post("/bookings/{booking_id}/release-partial", response_model=AdminBookingResponse)
async def release_partial(
    booking_id: UUID,
    data: AdminPartialReleaseRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    gate: AdminOverrideGate = Depends(get_gate),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """
    Pay the mentor mentor_percentage% of the total and refund the rest
    to the learner. Safe to retry after a partial failure.
    """
    result = await gate.release_partial(
        booking_id, current_user, data.mentor_percentage, _ip(request)
    )
    return _respond(result, background_tasks, dispatcher)


@router.post("/bookings/{booking_id}/refund-full", response_model=AdminBookingResponse)
async def refund_full(
    booking_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    gate: AdminOverrideGate = Depends(get_gate),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    result = await gate.refund_full(booking_id, current_user, _ip(request))
    return _respond(result, background_tasks, dispatcher)


@router.post("/bookings/{booking_id}/cancel", response_model=AdminBookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: AdminReasonRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    gate: AdminOverrideGate = Depends(get_gate),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """Cancel a booking whose session has not happened. Refunds if paid."""
    result = await gate.cancel(booking_id, current_user, data.reason, _ip(request))
    return _respond(result, background_tasks, dispatcher)


@router.post("/bookings/{booking_id}/suspend", response_model=AdminBookingResponse)
async def suspend_booking(
    booking_id: UUID,
    data: AdminReasonRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    gate: AdminOverrideGate = Depends(get_gate),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """Moderation hold. Payment is not touched."""
    result = await gate.suspend(booking_id, current_user, data.reason, _ip(request))
    return _respond(result, background_tasks, dispatcher)


@router.post("/bookings/{booking_id}/unsuspend", response_model=AdminBookingResponse)
async def unsuspend_booking(
    booking_id: UUID,
    request: Request,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_admin),
    gate: AdminOverrideGate = Depends(get_gate),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    result = await gate.unsuspend(booking_id, current_user, _ip(request))
    return _respond(result, background_tasks, dispatcher)


@router.get("/bookings")
async def list_bookings(
    status: Optional[BookingStatus] = Query(None),
    payment_status: Optional[PaymentStatus] = Query(None),
    flagged: Optional[bool] = Query(None, description="Only bookings with an open manual-review flag"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Booking)
    if status:
        query = query.where(Booking.status == status)
    if payment_status:
        query = query.where(Booking.payment_status == payment_status)
    if flagged is not None:
        open_flags = select(ManualReviewFlag.booking_id).where(ManualReviewFlag.resolved_at.is_(None))
        query = query.where(
            Booking.id.in_(open_flags) if flagged else Booking.id.not_in(open_flags)
        )

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    )
    return {
        "items": [AdminBookingResponse.model_validate(b) for b in result.scalars().all()],
        "total": total,
        "page": page,
        "page_size": page_size,
        "pages": -(-total // page_size),  # ceiling division
    }


# ── Manual Review Queue ────────────────────────────────────────────────────────

@router.get("/manual-review-flags", response_model=List[ManualReviewFlagResponse])
async def list_flags(
    include_resolved: bool = Query(False),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Critical flags first, then oldest first."""
    query = select(ManualReviewFlag)
    if not include_resolved:
        query = query.where(ManualReviewFlag.resolved_at.is_(None))
    result = await db.execute(
        query.order_by(ManualReviewFlag.is_critical.desc(), ManualReviewFlag.created_at.asc())
    )
    return result.scalars().all()


@router.post("/manual-review-flags/{flag_id}/resolve", response_model=ManualReviewFlagResponse)
async def resolve_manual_review_flag(
    flag_id: UUID,
    data: FlagResolveRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    flag = await resolve_flag(db, flag_id, current_user.id, data.notes)
    if not flag:
        raise HTTPException(status_code=404, detail="Flag not found")

    await log_admin_action(db, current_user.id, "RESOLVE_FLAG", "ManualReviewFlag", str(flag_id),
                           {"booking_id": str(flag.booking_id), "notes": data.notes}, _ip(request))
    await db.commit()
    return flag


# ── Complaints ─────────────────────────────────────────────────────────────────

@router.get("/complaints", response_model=List[ComplaintResponse])
async def list_complaints(
    status: Optional[ComplaintStatus] = Query(None),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    query = select(Complaint)
    if status:
        query = query.where(Complaint.status == status)
    result = await db.execute(query.order_by(Complaint.created_at.asc()))
    return result.scalars().all()


@router.patch("/complaints/{complaint_id}", response_model=ComplaintResponse)
async def update_complaint(
    complaint_id: UUID,
    data: ComplaintUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Notes and status only. Money moves through the booking override endpoints."""
    result = await db.execute(select(Complaint).where(Complaint.id == complaint_id))
    complaint = result.scalar_one_or_none()
    if not complaint:
        raise HTTPException(status_code=404, detail="Complaint not found")

    if data.admin_notes is not None:
        complaint.admin_notes = data.admin_notes
    if data.status:
        complaint.status = ComplaintStatus(data.status)
        if complaint.status in (ComplaintStatus.RESOLVED, ComplaintStatus.CLOSED):
            complaint.resolved_at = utcnow()
            complaint.resolved_by_admin_id = current_user.id

    await log_admin_action(db, current_user.id, "UPDATE_COMPLAINT", "Complaint", str(complaint_id),
                           data.model_dump(exclude_none=True), _ip(request))
    await db.commit()
    return complaint


# ── Commission Rules ───────────────────────────────────────────────────────────

@router.get("/commission-rules", response_model=List[CommissionRuleResponse])
async def list_commission_rules(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(CommissionRule).order_by(CommissionRule.rule_type, CommissionRule.created_at.desc())
    )
    return result.scalars().all()


@router.post("/commission-rules", response_model=CommissionRuleResponse, status_code=201)
async def create_commission_rule(
    data: CommissionRuleCreate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Only affects bookings created afterwards; existing splits are fixed."""
    rule_type = CommissionRuleType(data.rule_type)
    if rule_type == CommissionRuleType.GLOBAL and data.target_id:
        raise HTTPException(status_code=400, detail="Global rules take no target")
    if rule_type != CommissionRuleType.GLOBAL and not data.target_id:
        raise HTTPException(status_code=400, detail=f"{rule_type.value} rules need a target_id")
    if rule_type == CommissionRuleType.MENTOR:
        try:
            uuid.UUID(data.target_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="MENTOR target_id must be a user id")

    rule = CommissionRule(
        rule_type=rule_type,
        target_id=data.target_id,
        commission_rate=data.commission_rate,
        created_by_id=current_user.id,
    )
    db.add(rule)
    await db.flush()
    await log_admin_action(db, current_user.id, "CREATE_COMMISSION_RULE", "CommissionRule",
                           str(rule.id), {"rule_type": rule_type.value, "target_id": data.target_id,
                                          "commission_rate": str(data.commission_rate)}, _ip(request))
    await db.commit()
    return rule


@router.patch("/commission-rules/{rule_id}", response_model=CommissionRuleResponse)
async def update_commission_rule(
    rule_id: UUID,
    data: CommissionRuleUpdate,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(select(CommissionRule).where(CommissionRule.id == rule_id))
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Commission rule not found")

    if data.commission_rate is not None:
        rule.commission_rate = data.commission_rate
    if data.is_active is not None:
        rule.is_active = data.is_active

    await log_admin_action(db, current_user.id, "UPDATE_COMMISSION_RULE", "CommissionRule",
                           str(rule_id), data.model_dump(mode="json", exclude_none=True), _ip(request))
    await db.commit()
    return rule


@router.delete("/commission-rules/{rule_id}", response_model=MessageResponse)
async def delete_commission_rule(
    rule_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Deactivates; rules are kept for the record."""
    result = await db.execute(select(CommissionRule).where(CommissionRule.id == rule_id))
    rule = result.scalar_one_or_none()
    if not rule:
        raise HTTPException(status_code=404, detail="Commission rule not found")

    rule.is_active = False
    await log_admin_action(db, current_user.id, "DEACTIVATE_COMMISSION_RULE", "CommissionRule",
                           str(rule_id), None, _ip(request))
    await db.commit()
    return MessageResponse(message="Commission rule deactivated")


# ── Admin Allowlist ────────────────────────────────────────────────────────────

@router.get("/admin-emails", response_model=List[AdminEmailResponse])
async def list_admin_emails(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await AdminRegistry(db).list()


@router.post("/admin-emails", response_model=AdminEmailResponse, status_code=201)
async def add_admin_email(
    data: AdminEmailRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    entry = await AdminRegistry(db).add(data.email, current_user.id)
    await log_admin_action(db, current_user.id, "ADD_ADMIN_EMAIL", "AdminEmail", entry.email,
                           None, _ip(request))
    await db.commit()
    return entry


@router.delete("/admin-emails/{email}", response_model=MessageResponse)
async def remove_admin_email(
    email: str,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    if email.strip().lower() == current_user.email.lower():
        raise HTTPException(status_code=400, detail="You cannot remove your own admin access")
    if not await AdminRegistry(db).remove(email):
        raise HTTPException(status_code=404, detail="Email is not on the admin list")

    await log_admin_action(db, current_user.id, "REMOVE_ADMIN_EMAIL", "AdminEmail", email,
                           None, _ip(request))
    await db.commit()
    return MessageResponse(message="Admin email removed")


# ── Reconciliation & Revenue ───────────────────────────────────────────────────

@router.post("/reconciliation/run")
async def run_reconciliation(
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    processor: PaymentProcessor = Depends(get_payment_processor),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
    redis=Depends(get_redis),
):
    """Run one reconciliation sweep now. 409 if a sweep is already running."""
    admin_id = current_user.id
    cache = RedisCache(redis)
    owner = f"admin:{admin_id}:{uuid.uuid4()}"
    if not await cache.acquire_job_lock(SWEEP_JOB_NAME, owner):
        raise HTTPException(status_code=409, detail="A reconciliation sweep is already running")
    # The sweep opens its own sessions; this request must not hold row locks meanwhile.
    await db.commit()
    try:
        report = await run_sweep_once(session_factory, processor, dispatcher=dispatcher)
    finally:
        await cache.release_job_lock(SWEEP_JOB_NAME, owner)

    await log_admin_action(db, admin_id, "RUN_RECONCILIATION", "Reconciliation", None,
                           report.as_dict(), _ip(request))
    await db.commit()
    return report.as_dict()


@router.get("/revenue", response_model=RevenueResponse)
async def revenue(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Escrow totals across all bookings."""
    zero = Decimal("0.00")
    held = await db.scalar(
        select(func.coalesce(func.sum(Booking.total_amount), 0))
        .where(Booking.payment_status == PaymentStatus.HELD)
    )
    totals = (await db.execute(
        select(
            func.coalesce(func.sum(Booking.payee_paid_amount), 0),
            func.coalesce(func.sum(Booking.refunded_amount), 0),
            func.coalesce(func.sum(Booking.platform_retained_amount), 0),
        )
    )).one()
    counts = await db.execute(
        select(Booking.payment_status, func.count()).group_by(Booking.payment_status)
    )
    by_status = {
        (s.value if isinstance(s, PaymentStatus) else str(s)): n for s, n in counts.all()
    }

    return RevenueResponse(
        total_bookings=sum(by_status.values()),
        held_amount=Decimal(held or zero),
        released_to_mentors=Decimal(totals[0] or zero),
        refunded_to_learners=Decimal(totals[1] or zero),
        platform_revenue=Decimal(totals[2] or zero),
        by_payment_status=by_status,
    )
