"""
tasks/notification_tasks.py
Celery tasks for booking side effects: transactional email and the
payer/payee session channel.

Enqueued by SideEffectDispatcher after a booking transition commits.
All tasks are idempotent — safe to run twice. A failure here never
touches the booking or its escrow.

Usage:
    send_booking_notification.delay(booking_id=..., recipient_id=...,
                                    template="PAYMENT_RELEASED", payload={})
"""

import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import create_task_session_factory
from config.settings import settings
from shared.models.models import Booking, Conversation, Listing, Message, User
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Email Delivery ─────────────────────────────────────────────────────────────

def _send_email(to_email: str, subject: str, html_body: str) -> bool:
    """Send transactional email via Resend. Returns True on success."""
    try:
        import resend
        resend.api_key = settings.RESEND_API_KEY
        resend.Emails.send({
            "from": f"{settings.EMAIL_FROM_NAME} <{settings.EMAIL_FROM}>",
            "to": to_email,
            "subject": subject,
            "html": html_body,
        })
        return True
    except Exception as e:
        logger.warning(f"Email send failed: {e}")
        return False


# ── Notification Templates ─────────────────────────────────────────────────────

TEMPLATES = {
    "BOOKING_REQUESTED": {
        "subject": "New paid booking – {listing}",
        "body": "{name}, you have a new paid booking for {listing} on {session_at}. "
                "Please accept or reject it.",
    },
    "PAYMENT_RECEIVED": {
        "subject": "Payment received – {listing}",
        "body": "{name}, we received ₹{amount} for {listing}. It is held safely until your session is done.",
    },
    "BOOKING_ACCEPTED": {
        "subject": "Booking accepted – {listing}",
        "body": "{name}, your mentor accepted the session on {session_at}. Your meeting link is in your messages.",
    },
    "BOOKING_REJECTED": {
        "subject": "Booking not accepted – {listing}",
        "body": "{name}, the mentor could not take this session ({reason}). A full refund has been initiated.",
    },
    "BOOKING_CANCELLED": {
        "subject": "Booking cancelled – {listing}",
        "body": "{name}, your booking for {listing} was cancelled ({reason}).",
    },
    "REVIEW_REQUEST": {
        "subject": "How was your session? – {listing}",
        "body": "{name}, please rate your session before {review_deadline}.",
    },
    "PAYMENT_RELEASED": {
        "subject": "Payout released – {listing}",
        "body": "{name}, the payment for your session on {session_at} has been released to your account.",
    },
    "PAYMENT_REFUNDED": {
        "subject": "Refund issued – {listing}",
        "body": "{name}, a refund of ₹{amount} for {listing} has been issued (3-5 business days).",
    },
    "REVIEW_ESCALATED": {
        "subject": "Session under review – {listing}",
        "body": "{name}, your session on {session_at} received a {rating}-star rating and is being "
                "reviewed by our team. Your payout is on hold until then.",
    },
}


def _render(template: str, **kwargs) -> str:
    """Simple string template renderer."""
    for key, value in kwargs.items():
        template = template.replace(f"{{{key}}}", str(value))
    return template


async def build_notification(
    db: AsyncSession,
    booking_id: uuid.UUID,
    recipient_id: uuid.UUID,
    template: str,
    payload: Optional[dict] = None,
) -> Optional[tuple[str, str, str]]:
    """(to_email, subject, html) for a booking notification, or None if it cannot be sent."""
    tmpl = TEMPLATES.get(template)
    if not tmpl:
        logger.error(f"Unknown notification template {template}")
        return None

    booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
    user = (await db.execute(select(User).where(User.id == recipient_id))).scalar_one_or_none()
    if not booking or not user:
        logger.error(f"Notification {template}: booking {booking_id} or user {recipient_id} not found")
        return None
    listing = (await db.execute(select(Listing).where(Listing.id == booking.listing_id))).scalar_one()

    variables = {
        "name": user.name,
        "listing": listing.title,
        "session_at": booking.session_at.strftime("%d %b %Y %H:%M UTC"),
        "amount": booking.total_amount,
        "reason": booking.cancellation_reason or "no reason given",
        **(payload or {}),
    }
    subject = _render(tmpl["subject"], **variables)
    return user.email, subject, f"<p>{_render(tmpl['body'], **variables)}</p>"


async def _notify(booking_id: str, recipient_id: str, template: str, payload: dict) -> bool:
    session_factory = create_task_session_factory()
    async with session_factory() as db:
        message = await build_notification(
            db, uuid.UUID(booking_id), uuid.UUID(recipient_id), template, payload
        )
    if message is None:
        return True
    return _send_email(*message)


@celery_app.task(bind=True, max_retries=3, default_retry_delay=60)
def send_booking_notification(self, booking_id: str, recipient_id: str, template: str, payload: dict = None):
    """Email one party about a booking transition. Retries with backoff on delivery failure."""
    success = asyncio.run(_notify(booking_id, recipient_id, template, payload or {}))
    if not success:
        raise self.retry(countdown=60 * (2 ** self.request.retries))


# ── Session Channel ────────────────────────────────────────────────────────────

def meeting_link_for(booking_id: uuid.UUID) -> str:
    return f"{settings.MEETING_LINK_BASE_URL.rstrip('/')}/mentor-session-{booking_id.hex}"


async def open_session_channel(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Conversation]:
    """Create the payer/payee conversation with the meeting link. Idempotent."""
    existing = await db.execute(select(Conversation).where(Conversation.booking_id == booking_id))
    conversation = existing.scalar_one_or_none()
    if conversation:
        return conversation

    booking = (await db.execute(select(Booking).where(Booking.id == booking_id))).scalar_one_or_none()
    if not booking:
        logger.error(f"provision_session_channel: booking {booking_id} not found")
        return None

    conversation = Conversation(
        booking_id=booking.id,
        payer_id=booking.payer_id,
        payee_id=booking.payee_id,
        meeting_link=meeting_link_for(booking.id),
    )
    db.add(conversation)
    await db.flush()
    db.add(Message(
        conversation_id=conversation.id,
        sender_id=booking.payee_id,
        content=f"Your session is confirmed for "
                f"{booking.session_at.strftime('%d %b %Y %H:%M UTC')}. "
                f"Join here: {conversation.meeting_link}",
        message_type="system",
    ))
    await db.commit()
    logger.info(f"Session channel {conversation.id} opened for booking {booking_id}")
    return conversation


async def _provision(booking_id: str) -> None:
    session_factory = create_task_session_factory()
    async with session_factory() as db:
        await open_session_channel(db, uuid.UUID(booking_id))


@celery_app.task(bind=True, max_retries=3)
def provision_session_channel(self, booking_id: str):
    try:
        asyncio.run(_provision(booking_id))
    except Exception as e:
        logger.exception(f"provision_session_channel failed: {e}")
        raise self.retry(exc=e, countdown=60)
