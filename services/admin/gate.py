"""
services/admin/gate.py
Admin Override Gate: manual escrow resolution and moderation holds.

Adds nothing to the booking lifecycle itself. Every action is checked
against the admin registry, run through the same BookingStateMachine
transition (which re-reads payment status right before moving money),
and recorded in AdminAuditLog once it has committed.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.state_machine import BookingStateMachine, TransitionResult
from services.payment.processor import PaymentProcessor
from shared.middleware.authz import AdminRegistry
from shared.models.models import AdminAuditLog, User
from shared.models.types import utcnow
from shared.utils.errors import PermissionDeniedError, PreconditionFailedError

logger = logging.getLogger(__name__)


async def log_admin_action(
    db: AsyncSession,
    admin_id: uuid.UUID,
    action: str,
    entity_type: str,
    entity_id: str,
    payload: Optional[dict] = None,
    ip_address: Optional[str] = None,
) -> None:
    """Append an immutable record to AdminAuditLog. The caller commits."""
    db.add(AdminAuditLog(
        admin_id=admin_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        payload=payload or {},
        ip_address=ip_address,
    ))


class AdminOverrideGate:
    def __init__(self, db: AsyncSession, processor: PaymentProcessor, clock=utcnow):
        self.db = db
        self.registry = AdminRegistry(db)
        self.machine = BookingStateMachine(db, processor, clock)

    async def _require_admin(self, admin: User) -> uuid.UUID:
        if not await self.registry.is_authorized_admin(admin):
            raise PermissionDeniedError("Admin access required")
        return admin.id

    async def _record(
        self,
        admin_id: uuid.UUID,
        action: str,
        booking_id: uuid.UUID,
        payload: Optional[dict],
        ip_address: Optional[str],
    ) -> None:
        await log_admin_action(
            self.db, admin_id, action, "Booking", str(booking_id), payload, ip_address
        )
        await self.db.commit()
        logger.info(f"Admin {admin_id} performed {action} on booking {booking_id}")

    async def release_full(
        self, booking_id: uuid.UUID, admin: User, ip_address: Optional[str] = None
    ) -> TransitionResult:
        admin_id = await self._require_admin(admin)
        result = await self.machine.admin_release_full(booking_id, admin)
        await self._record(admin_id, "RELEASE_FULL", booking_id,
                           {"transfer_id": result.booking.transfer_id}, ip_address)
        return result

    async def release_partial(
        self,
        booking_id: uuid.UUID,
        admin: User,
        mentor_percentage: Decimal,
        ip_address: Optional[str] = None,
    ) -> TransitionResult:
        admin_id = await self._require_admin(admin)
        if mentor_percentage < 0 or mentor_percentage > 100:
            raise PreconditionFailedError("Mentor percentage must be between 0 and 100")
        result = await self.machine.admin_release_partial(booking_id, admin, mentor_percentage)
        await self._record(admin_id, "RELEASE_PARTIAL", booking_id, {
            "mentor_percentage": str(mentor_percentage),
            "transfer_id": result.booking.transfer_id,
            "refund_id": result.booking.refund_id,
        }, ip_address)
        return result

    async def refund_full(
        self, booking_id: uuid.UUID, admin: User, ip_address: Optional[str] = None
    ) -> TransitionResult:
        admin_id = await self._require_admin(admin)
        result = await self.machine.admin_refund_full(booking_id, admin)
        await self._record(admin_id, "REFUND_FULL", booking_id,
                           {"refund_id": result.booking.refund_id}, ip_address)
        return result

    async def cancel(
        self,
        booking_id: uuid.UUID,
        admin: User,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TransitionResult:
        admin_id = await self._require_admin(admin)
        result = await self.machine.admin_cancel(booking_id, admin, reason)
        await self._record(admin_id, "CANCEL_BOOKING", booking_id, {
            "reason": reason,
            "refund_id": result.booking.refund_id,
        }, ip_address)
        return result

    async def suspend(
        self,
        booking_id: uuid.UUID,
        admin: User,
        reason: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TransitionResult:
        admin_id = await self._require_admin(admin)
        result = await self.machine.suspend(booking_id, admin, reason)
        await self._record(admin_id, "SUSPEND_BOOKING", booking_id, {"reason": reason}, ip_address)
        return result

    async def unsuspend(
        self, booking_id: uuid.UUID, admin: User, ip_address: Optional[str] = None
    ) -> TransitionResult:
        admin_id = await self._require_admin(admin)
        result = await self.machine.unsuspend(booking_id, admin)
        await self._record(admin_id, "UNSUSPEND_BOOKING", booking_id, None, ip_address)
        return result
