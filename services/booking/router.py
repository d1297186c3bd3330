"""
services/booking/router.py
Booking lifecycle endpoints. Every mutation goes through BookingStateMachine:
    PENDING → CONFIRMED → COMPLETED | CANCELLED | UNDER_REVIEW
Side effects are dispatched in the background after the transition commits.
"""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.side_effects import SideEffectDispatcher, get_dispatcher
from services.booking.state_machine import BookingStateMachine, TransitionResult
from services.payment.processor import PaymentProcessor, get_payment_processor
from shared.middleware.auth import get_current_user, require_mentor
from shared.middleware.authz import AdminRegistry, BookingAction, BookingAuthorizer
from shared.models.models import Booking, BookingStatus, User
from shared.schemas.schemas import BookingCreateRequest, BookingRejectRequest, BookingResponse
from shared.utils.errors import NotFoundError

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

def get_state_machine(
    db: AsyncSession = Depends(get_db),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> BookingStateMachine:
    return BookingStateMachine(db, processor)


def _respond(
    result: TransitionResult,
    background_tasks: BackgroundTasks,
    dispatcher: SideEffectDispatcher,
) -> BookingResponse:
    background_tasks.add_task(dispatcher.dispatch, result.intents)
    return BookingResponse.model_validate(result.booking)


# ── Create ────────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """
    Claim the slot and create a PENDING booking.
    409 if another booking got the slot first; client initiates payment next.
    """
    result = await machine.create(current_user, data.listing_id, data.slot_id)
    return _respond(result, background_tasks, dispatcher)


# ── Mentor Actions ────────────────────────────────────────────

@router.post("/{booking_id}/accept", response_model=BookingResponse)
async def accept_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_mentor),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """Mentor accepts a paid booking. Opens the session channel."""
    result = await machine.accept(booking_id, current_user)
    return _respond(result, background_tasks, dispatcher)


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: UUID,
    data: BookingRejectRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(require_mentor),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """Mentor rejects before accepting. Learner is refunded in full; slot is freed."""
    result = await machine.reject(booking_id, current_user, data.reason)
    return _respond(result, background_tasks, dispatcher)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: UUID,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """Mentor (or admin) marks the session done once it has started."""
    result = await machine.complete(booking_id, current_user)
    return _respond(result, background_tasks, dispatcher)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Learner and mentor see their own bookings, admins see all."""
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")

    await BookingAuthorizer(AdminRegistry(db)).require(current_user, booking, BookingAction.VIEW)
    return BookingResponse.model_validate(booking)


@router.get("", response_model=list[BookingResponse])
async def list_my_bookings(
    status_filter: str = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings where the current user is the learner or the mentor."""
    query = select(Booking).where(
        or_(Booking.payer_id == current_user.id, Booking.payee_id == current_user.id)
    )
    if status_filter:
        try:
            query = query.where(Booking.status == BookingStatus(status_filter))
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid status: {status_filter}")

    query = query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)
    result = await db.execute(query)
    return [BookingResponse.model_validate(b) for b in result.scalars().all()]
