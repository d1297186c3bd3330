"""
services/review/router.py
Post-session reviews. Submitting a review resolves the escrow:
rating >= 3 releases the payment to the mentor, lower ratings send the
booking to admin review with the payment still held.
"""

from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking.router import get_state_machine
from services.booking.side_effects import SideEffectDispatcher, get_dispatcher
from services.booking.state_machine import BookingStateMachine
from services.review import policy
from shared.middleware.auth import get_current_user
from shared.middleware.authz import AdminRegistry, BookingAction, BookingAuthorizer
from shared.models.models import Booking, Review, User
from shared.schemas.schemas import ReviewCreateRequest, ReviewResponse, ReviewSubmitResponse
from shared.utils.errors import NotFoundError

router = APIRouter(prefix="/reviews", tags=["Reviews"])


@router.post("", response_model=ReviewSubmitResponse, status_code=status.HTTP_201_CREATED)
async def submit_review(
    data: ReviewCreateRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """
    Learner reviews a completed session within the review window.
    One review per booking.
    """
    result = await machine.submit_review(
        data.booking_id, current_user, data.rating, data.comment
    )
    background_tasks.add_task(dispatcher.dispatch, result.intents)

    return ReviewSubmitResponse(
        review=ReviewResponse.model_validate(result.review),
        booking_status=result.booking.status.value,
        payment_status=result.booking.payment_status.value,
        outcome=policy.resolve(data.rating).value,
        rationale=policy.rationale(data.rating),
    )


@router.get("/booking/{booking_id}", response_model=ReviewResponse)
async def get_booking_review(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Visible to both parties and admins."""
    booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
    if not booking:
        raise NotFoundError("Booking not found")
    await BookingAuthorizer(AdminRegistry(db)).require(current_user, booking, BookingAction.VIEW)

    review = (await db.execute(select(Review).where(Review.booking_id == booking_id))).scalar_one_or_none()
    if not review:
        raise NotFoundError("This booking has not been reviewed")
    return review
