"""
shared/models/models.py
All SQLAlchemy ORM models for the mentorship booking/escrow service.
UUID primary keys throughout; column types are portable so the same
models run on PostgreSQL (production) and SQLite (tests).
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    event,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from config.database import Base
from shared.models.types import JSONType, UTCDateTime, utcnow
from shared.utils.errors import BookingInvariantError


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    LEARNER = "LEARNER"
    MENTOR = "MENTOR"
    ADMIN = "ADMIN"


class BookingStatus(str, PyEnum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    UNDER_REVIEW = "UNDER_REVIEW"


class PaymentStatus(str, PyEnum):
    PENDING = "PENDING"
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class ComplaintStatus(str, PyEnum):
    PENDING = "PENDING"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"


class CommissionRuleType(str, PyEnum):
    GLOBAL = "GLOBAL"
    CATEGORY = "CATEGORY"
    MENTOR = "MENTOR"


# Payment may only be HELD once the booking is confirmed or later.
HELD_BOOKING_STATUSES = frozenset({
    BookingStatus.CONFIRMED,
    BookingStatus.COMPLETED,
    BookingStatus.UNDER_REVIEW,
})

# Payment may only be RELEASED/REFUNDED on terminal or review-triggering statuses.
RESOLVED_BOOKING_STATUSES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.REFUNDED,
    BookingStatus.UNDER_REVIEW,
})


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class User(TimestampMixin, Base):
    """
    Platform account. Identity itself lives with the external auth
    provider; this row carries the role and the payee payout destination.
    """
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.LEARNER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Razorpay Route linked account id ("acc_...")
    payout_account_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    __table_args__ = (Index("ix_users_role", "role"),)


class AdminEmail(Base):
    """Admin allowlist. Holders are treated as admins regardless of role."""
    __tablename__ = "admin_emails"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    added_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)


class Listing(TimestampMixin, Base):
    """A mentor's bookable offering."""
    __tablename__ = "listings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    mentor_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (Index("ix_listings_mentor_id", "mentor_id"),)


class Slot(TimestampMixin, Base):
    """
    One bookable instant for a listing.
    booking_id NULL means free; otherwise it is the claim owner. No FK:
    the claim is taken before the booking row is inserted.
    """
    __tablename__ = "slots"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    starts_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_released_by_booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, nullable=True
    )

    @property
    def is_free(self) -> bool:
        return self.booking_id is None

    __table_args__ = (
        UniqueConstraint("listing_id", "starts_at", name="uq_slot_listing_starts_at"),
        Index("ix_slots_booking_id", "booking_id"),
    )


class CommissionRule(TimestampMixin, Base):
    """
    Platform commission. Lookup priority: MENTOR > CATEGORY > GLOBAL.
    target_id holds the mentor uuid (MENTOR) or category name (CATEGORY).
    """
    __tablename__ = "commission_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    rule_type: Mapped[CommissionRuleType] = mapped_column(
        Enum(CommissionRuleType), nullable=False
    )
    target_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 100",
            name="ck_commission_rate_range",
        ),
        Index("ix_commission_rules_type_target", "rule_type", "target_id"),
    )


class Booking(TimestampMixin, Base):
    """
    Core booking aggregate. Mutated only through BookingStateMachine.

    Status:  PENDING → CONFIRMED → COMPLETED | CANCELLED | UNDER_REVIEW
             UNDER_REVIEW → CONFIRMED | COMPLETED | REFUNDED
    Payment: PENDING → HELD → RELEASED | REFUNDED
    """
    __tablename__ = "bookings"

    # Fixed at creation, never recomputed.
    WRITE_ONCE_FIELDS = (
        "session_at",
        "total_amount",
        "platform_fee",
        "payee_amount",
        "commission_rate",
        "review_deadline",
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    payee_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    slot_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("slots.id"), nullable=False)
    session_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Pricing
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    payee_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.PENDING
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    suspension_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Status to restore on unsuspend; NULL unless an admin suspended the booking.
    suspended_from_status: Mapped[Optional[BookingStatus]] = mapped_column(
        Enum(BookingStatus, name="suspendedfromstatus"), nullable=True
    )

    # Escrow: processor references
    payment_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payment_hold_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    refund_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Escrow: resolution amounts (sum to total_amount once resolved)
    payee_paid_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    refunded_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    platform_retained_amount: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0.00")
    )

    # Timestamps
    review_deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    held_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    suspended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)

    @validates(*WRITE_ONCE_FIELDS)
    def _validate_write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise BookingInvariantError(f"{key} is immutable once set")
        return value

    @property
    def is_accepted(self) -> bool:
        return self.accepted_at is not None

    __table_args__ = (
        Index("ix_bookings_payer_id", "payer_id"),
        Index("ix_bookings_payee_id", "payee_id"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_payment_status", "payment_status"),
        Index("ix_bookings_review_deadline", "review_deadline"),
    )


def _check_escrow_consistency(mapper, connection, target: Booking) -> None:
    if (
        target.payment_status == PaymentStatus.HELD
        and target.status not in HELD_BOOKING_STATUSES
    ):
        raise BookingInvariantError(
            f"payment HELD is not allowed with booking status {target.status}"
        )
    if (
        target.payment_status in (PaymentStatus.RELEASED, PaymentStatus.REFUNDED)
        and target.status not in RESOLVED_BOOKING_STATUSES
    ):
        raise BookingInvariantError(
            f"payment {target.payment_status} is not allowed with booking status {target.status}"
        )
    paid = (
        (target.payee_paid_amount or 0)
        + (target.refunded_amount or 0)
        + (target.platform_retained_amount or 0)
    )
    if paid > target.total_amount:
        raise BookingInvariantError("escrow payouts exceed the booking total")


event.listen(Booking, "before_insert", _check_escrow_consistency)
event.listen(Booking, "before_update", _check_escrow_consistency)


class BookingAuditLog(Base):
    """Immutable log of all booking and escrow transitions."""
    __tablename__ = "booking_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    from_payment_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_payment_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (Index("ix_booking_audit_booking_id", "booking_id"),)


class Review(TimestampMixin, Base):
    """Post-session review. One per booking (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    payee_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_payee_id", "payee_id"),
    )


class Complaint(TimestampMixin, Base):
    """Opened automatically on a low rating, or by a user. Resolved by admins."""
    __tablename__ = "complaints"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reporter_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    reported_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[ComplaintStatus] = mapped_column(
        Enum(ComplaintStatus), nullable=False, default=ComplaintStatus.PENDING
    )
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    resolved_by_admin_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    __table_args__ = (
        Index("ix_complaints_booking_id", "booking_id"),
        Index("ix_complaints_status", "status"),
    )


class ManualReviewFlag(Base):
    """
    Operator work item for a booking whose automatic cleanup or release
    failed. At most one open flag per booking.
    """
    __tablename__ = "manual_review_flags"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    is_critical: Mapped[bool] = mapped_column(Boolean, default=False)
    occurrences: Mapped[int] = mapped_column(SmallInteger, default=1)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime)
    resolved_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_manual_review_flag_open",
            "booking_id",
            unique=True,
            postgresql_where=text("resolved_at IS NULL"),
            sqlite_where=text("resolved_at IS NULL"),
        ),
    )


class Conversation(TimestampMixin, Base):
    """Payer/payee channel opened once a mentor accepts a booking."""
    __tablename__ = "conversations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    payer_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    payee_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    meeting_link: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class Message(Base):
    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    conversation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(20), default="text")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (Index("ix_messages_conversation_id", "conversation_id"),)


class AdminAuditLog(Base):
    """Immutable log of all admin actions."""
    __tablename__ = "admin_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    admin_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    action: Mapped[str] = mapped_column(String(100), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow)

    __table_args__ = (
        Index("ix_admin_audit_admin_id", "admin_id"),
        Index("ix_admin_audit_created_at", "created_at"),
    )
