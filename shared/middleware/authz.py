"""
shared/middleware/authz.py
Authorization for booking transitions.

BookingAuthorizer is consulted once at the top of every state-machine
transition and answers allow/deny plus the caller's role on that booking.
AdminRegistry is the admin allowlist key-store.
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import AdminEmail, Booking, User, UserRole
from shared.utils.errors import ConflictError, PermissionDeniedError

logger = logging.getLogger(__name__)


class Actor(str, Enum):
    PAYER = "payer"
    PAYEE = "payee"
    ADMIN = "admin"
    SYSTEM = "system"     # sweep, webhooks, scheduled jobs


class BookingAction(str, Enum):
    VIEW = "view"
    PAY = "pay"
    ACCEPT = "accept"
    REJECT = "reject"
    COMPLETE = "complete"
    REVIEW = "review"
    AUTO_RESOLVE = "auto_resolve"
    ADMIN_OVERRIDE = "admin_override"


_ALLOWED: dict[BookingAction, frozenset[Actor]] = {
    BookingAction.VIEW: frozenset({Actor.PAYER, Actor.PAYEE, Actor.ADMIN}),
    BookingAction.PAY: frozenset({Actor.PAYER, Actor.SYSTEM}),
    BookingAction.ACCEPT: frozenset({Actor.PAYEE}),
    BookingAction.REJECT: frozenset({Actor.PAYEE}),
    BookingAction.COMPLETE: frozenset({Actor.PAYEE, Actor.ADMIN, Actor.SYSTEM}),
    BookingAction.REVIEW: frozenset({Actor.PAYER}),
    BookingAction.AUTO_RESOLVE: frozenset({Actor.SYSTEM}),
    BookingAction.ADMIN_OVERRIDE: frozenset({Actor.ADMIN}),
}


@dataclass(frozen=True)
class AuthzDecision:
    allowed: bool
    actor: Optional[Actor]
    reason: str = ""


class AdminRegistry:
    """DB-backed admin email allowlist."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def _normalize(email: str) -> str:
        return email.strip().lower()

    async def contains(self, email: str) -> bool:
        result = await self.db.execute(
            select(AdminEmail.id).where(AdminEmail.email == self._normalize(email))
        )
        return result.scalar_one_or_none() is not None

    async def add(self, email: str, added_by_id: Optional[uuid.UUID] = None) -> AdminEmail:
        if await self.contains(email):
            raise ConflictError("Email is already on the admin list")
        entry = AdminEmail(email=self._normalize(email), added_by_id=added_by_id)
        self.db.add(entry)
        await self.db.flush()
        logger.info(f"Admin email added: {entry.email}")
        return entry

    async def remove(self, email: str) -> bool:
        result = await self.db.execute(
            delete(AdminEmail).where(AdminEmail.email == self._normalize(email))
        )
        removed = result.rowcount > 0
        if removed:
            logger.info(f"Admin email removed: {self._normalize(email)}")
        return removed

    async def list(self) -> List[AdminEmail]:
        result = await self.db.execute(select(AdminEmail).order_by(AdminEmail.email))
        return list(result.scalars().all())

    async def is_authorized_admin(self, user: Optional[User]) -> bool:
        if user is None or not user.is_active:
            return False
        if user.role == UserRole.ADMIN:
            return True
        return await self.contains(user.email)


class BookingAuthorizer:
    def __init__(self, registry: AdminRegistry):
        self.registry = registry

    async def resolve_actor(
        self, user: Optional[User], booking: Booking, action: BookingAction
    ) -> Optional[Actor]:
        if user is None:
            return Actor.SYSTEM
        # Admin overrides act as admin even on their own bookings.
        if action == BookingAction.ADMIN_OVERRIDE:
            return Actor.ADMIN if await self.registry.is_authorized_admin(user) else None
        if user.id == booking.payer_id:
            return Actor.PAYER
        if user.id == booking.payee_id:
            return Actor.PAYEE
        if await self.registry.is_authorized_admin(user):
            return Actor.ADMIN
        return None

    async def authorize(
        self, user: Optional[User], booking: Booking, action: BookingAction
    ) -> AuthzDecision:
        actor = await self.resolve_actor(user, booking, action)
        if actor is None:
            return AuthzDecision(False, None, "not a party to this booking")
        if actor not in _ALLOWED[action]:
            return AuthzDecision(False, actor, f"{actor.value} may not {action.value}")
        return AuthzDecision(True, actor)

    async def require(
        self, user: Optional[User], booking: Booking, action: BookingAction
    ) -> Actor:
        decision = await self.authorize(user, booking, action)
        if not decision.allowed:
            logger.warning(
                f"Denied {action.value} on booking {booking.id} "
                f"for user {user.id if user else 'system'}: {decision.reason}"
            )
            raise PermissionDeniedError(_denial_message(action))
        return decision.actor


def _denial_message(action: BookingAction) -> str:
    return {
        BookingAction.ACCEPT: "Only the mentor can accept this booking",
        BookingAction.REJECT: "Only the mentor can reject this booking",
        BookingAction.REVIEW: "Only the learner who made this booking can review it",
        BookingAction.PAY: "Only the learner who made this booking can pay for it",
        BookingAction.ADMIN_OVERRIDE: "Admin access required",
    }.get(action, "Access denied")
