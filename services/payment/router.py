"""
services/payment/router.py
Razorpay payment integration: escrow order creation, checkout
verification and webhook handling. Money only moves through the
booking state machine.
"""

import json
import logging
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.booking.side_effects import SideEffectDispatcher, get_dispatcher
from services.booking.router import get_state_machine
from services.booking.state_machine import BookingStateMachine
from services.payment.processor import to_paise
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, User
from shared.schemas.schemas import (
    BookingResponse,
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentVerifyRequest,
)
from shared.utils.errors import BookingError
from shared.utils.security import verify_razorpay_signature, verify_razorpay_webhook_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


# ── Initiate Payment ──────────────────────────────────────────

@router.post("/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(
    data: PaymentInitiateRequest,
    current_user: User = Depends(get_current_user),
    machine: BookingStateMachine = Depends(get_state_machine),
):
    """
    Open the manual-capture Razorpay order (the escrow hold) for a booking.
    Client uses order_id + key_id to open Razorpay checkout.
    """
    booking, order_id = await machine.initiate_payment(data.booking_id, current_user)
    return PaymentInitiateResponse(
        razorpay_order_id=order_id,
        razorpay_key_id=settings.RAZORPAY_KEY_ID,
        amount=to_paise(booking.total_amount),
        currency=settings.PAYMENT_CURRENCY,
        booking_id=str(booking.id),
    )


# ── Confirm Payment (called from client after checkout) ───────

@router.post("/confirm", response_model=BookingResponse)
async def confirm_payment(
    data: PaymentVerifyRequest,
    background_tasks: BackgroundTasks,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """
    Verify the checkout signature, capture the authorized payment and
    move the booking to CONFIRMED with payment HELD.
    """
    if not verify_razorpay_signature(
        data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature
    ):
        raise HTTPException(status_code=400, detail="Invalid payment signature")

    result = await db.execute(select(Booking.payment_order_id).where(Booking.id == data.booking_id))
    order_id = result.scalar_one_or_none()
    if order_id != data.razorpay_order_id:
        raise HTTPException(status_code=400, detail="Payment does not belong to this booking")

    transition = await machine.confirm_payment(
        data.booking_id, data.razorpay_payment_id, current_user
    )
    background_tasks.add_task(dispatcher.dispatch, transition.intents)
    return BookingResponse.model_validate(transition.booking)


# ── Razorpay Webhook ──────────────────────────────────────────

@router.post("/webhook", include_in_schema=False)
async def razorpay_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    machine: BookingStateMachine = Depends(get_state_machine),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
):
    """
    Razorpay webhook handler. Validates HMAC signature.
    Handles: payment.authorized, payment.failed, refund.processed.
    Processing errors are logged and acknowledged; Razorpay would
    otherwise keep redelivering an event that cannot succeed.
    """
    body = await request.body()
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not verify_razorpay_webhook_signature(body, signature):
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    payload = json.loads(body)
    event = payload.get("event")

    if event == "refund.processed":
        refund = payload.get("payload", {}).get("refund", {}).get("entity", {})
        logger.info(f"Razorpay refund {refund.get('id')} processed for payment {refund.get('payment_id')}")
        return {"status": "ok"}

    entity = payload.get("payload", {}).get("payment", {}).get("entity", {})
    rzp_order_id = entity.get("order_id")
    rzp_payment_id = entity.get("id")
    if not rzp_order_id or not rzp_payment_id:
        return {"status": "ignored"}

    result = await db.execute(select(Booking.id).where(Booking.payment_order_id == rzp_order_id))
    booking_id: UUID = result.scalar_one_or_none()
    if not booking_id:
        return {"status": "not_found"}

    try:
        if event == "payment.authorized":
            transition = await machine.confirm_payment(booking_id, rzp_payment_id)
        elif event == "payment.failed":
            transition = await machine.cancel_unpaid(
                booking_id, "Payment failed", failed_hold_reference=rzp_payment_id
            )
        else:
            return {"status": "ignored"}
    except BookingError as e:
        logger.warning(f"Webhook {event} for booking {booking_id} not applied: {e.detail}")
        return {"status": "not_applied", "code": e.code}

    if transition is not None:
        background_tasks.add_task(dispatcher.dispatch, transition.intents)
    return {"status": "ok"}
