"""
services/booking/side_effects.py
Side-effect intents emitted by booking transitions.

Transitions commit first and then hand back a list of intents; the
dispatcher enqueues them as Celery tasks. A failure to enqueue is logged
and never touches the already-committed booking.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class SideEffectKind(str, Enum):
    NOTIFY = "notify"
    PROVISION_SESSION = "provision_session"


class NotificationTemplate(str, Enum):
    BOOKING_REQUESTED = "BOOKING_REQUESTED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    BOOKING_ACCEPTED = "BOOKING_ACCEPTED"
    BOOKING_REJECTED = "BOOKING_REJECTED"
    BOOKING_CANCELLED = "BOOKING_CANCELLED"
    REVIEW_REQUEST = "REVIEW_REQUEST"
    PAYMENT_RELEASED = "PAYMENT_RELEASED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    REVIEW_ESCALATED = "REVIEW_ESCALATED"


@dataclass(frozen=True)
class SideEffectIntent:
    kind: SideEffectKind
    booking_id: uuid.UUID
    recipient_id: Optional[uuid.UUID] = None
    template: Optional[NotificationTemplate] = None
    payload: dict = field(default_factory=dict)


def notify(
    template: NotificationTemplate,
    booking_id: uuid.UUID,
    recipient_id: uuid.UUID,
    **payload,
) -> SideEffectIntent:
    return SideEffectIntent(
        kind=SideEffectKind.NOTIFY,
        booking_id=booking_id,
        recipient_id=recipient_id,
        template=template,
        payload={k: str(v) for k, v in payload.items()},
    )


def provision_session(booking_id: uuid.UUID) -> SideEffectIntent:
    """Meeting link + payer/payee conversation channel."""
    return SideEffectIntent(kind=SideEffectKind.PROVISION_SESSION, booking_id=booking_id)


class SideEffectDispatcher:
    def dispatch(self, intents: Iterable[SideEffectIntent]) -> None:
        for intent in intents:
            try:
                self._enqueue(intent)
            except Exception as e:
                logger.error(
                    f"Failed to enqueue {intent.kind.value} side effect for "
                    f"booking {intent.booking_id}: {e}"
                )

    def _enqueue(self, intent: SideEffectIntent) -> None:
        from tasks.notification_tasks import provision_session_channel, send_booking_notification

        if intent.kind == SideEffectKind.PROVISION_SESSION:
            provision_session_channel.delay(booking_id=str(intent.booking_id))
        elif intent.kind == SideEffectKind.NOTIFY:
            send_booking_notification.delay(
                booking_id=str(intent.booking_id),
                recipient_id=str(intent.recipient_id),
                template=intent.template.value,
                payload=intent.payload,
            )


_dispatcher = SideEffectDispatcher()


def get_dispatcher() -> SideEffectDispatcher:
    """FastAPI dependency (overridden in tests)."""
    return _dispatcher
