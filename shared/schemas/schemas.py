"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from services.review.policy import MAX_RATING, MIN_RATING


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class PaginatedResponse(BaseSchema):
    items: List[Any]
    total: int
    page: int
    page_size: int
    pages: int


# ── Slots ─────────────────────────────────────────────────────

class SlotCreateRequest(BaseSchema):
    starts_at: datetime

    @field_validator("starts_at")
    @classmethod
    def validate_starts_at(cls, v: datetime) -> datetime:
        from datetime import timezone
        if v.tzinfo is None:
            raise ValueError("starts_at must include a timezone")
        if v <= datetime.now(timezone.utc):
            raise ValueError("Slot time must be in the future")
        return v


class SlotResponse(BaseSchema):
    id: uuid.UUID
    listing_id: uuid.UUID
    starts_at: datetime
    is_free: bool


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    listing_id: uuid.UUID
    slot_id: uuid.UUID


class BookingResponse(BaseSchema):
    id: uuid.UUID
    listing_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID
    slot_id: uuid.UUID
    session_at: datetime
    status: str
    payment_status: str
    total_amount: Decimal
    platform_fee: Decimal
    payee_amount: Decimal
    commission_rate: Decimal
    review_deadline: datetime
    accepted_at: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    created_at: datetime


class AdminBookingResponse(BookingResponse):
    payment_order_id: Optional[str]
    payment_hold_id: Optional[str]
    transfer_id: Optional[str]
    refund_id: Optional[str]
    payee_paid_amount: Decimal
    refunded_amount: Decimal
    platform_retained_amount: Decimal
    suspension_reason: Optional[str]
    suspended_at: Optional[datetime]
    resolved_at: Optional[datetime]


class BookingRejectRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


# ── Payment ───────────────────────────────────────────────────

class PaymentInitiateRequest(BaseSchema):
    booking_id: uuid.UUID


class PaymentInitiateResponse(BaseSchema):
    razorpay_order_id: str
    razorpay_key_id: str
    amount: int          # in paise
    currency: str
    booking_id: str


class PaymentVerifyRequest(BaseSchema):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    booking_id: uuid.UUID


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=MIN_RATING, le=MAX_RATING)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID
    rating: int
    comment: Optional[str]
    created_at: datetime


class ReviewSubmitResponse(BaseSchema):
    review: ReviewResponse
    booking_status: str
    payment_status: str
    outcome: str
    rationale: str


# ── Admin ─────────────────────────────────────────────────────

class AdminReasonRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class AdminPartialReleaseRequest(BaseSchema):
    mentor_percentage: Decimal = Field(..., ge=0, le=100, decimal_places=2)


class ManualReviewFlagResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    reason: str
    is_critical: bool
    occurrences: int
    created_at: datetime
    resolved_at: Optional[datetime]
    resolution_notes: Optional[str]


class FlagResolveRequest(BaseSchema):
    notes: Optional[str] = Field(None, max_length=1000)


class ComplaintResponse(BaseSchema):
    id: uuid.UUID
    booking_id: Optional[uuid.UUID]
    reporter_id: uuid.UUID
    reported_user_id: Optional[uuid.UUID]
    title: str
    description: str
    status: str
    admin_notes: Optional[str]
    resolved_at: Optional[datetime]
    created_at: datetime


class ComplaintUpdateRequest(BaseSchema):
    status: Optional[str] = Field(None, pattern=r"^(PENDING|IN_REVIEW|RESOLVED|CLOSED)$")
    admin_notes: Optional[str] = Field(None, max_length=2000)


class CommissionRuleCreate(BaseSchema):
    rule_type: str = Field(..., pattern=r"^(GLOBAL|CATEGORY|MENTOR)$")
    target_id: Optional[str] = Field(None, max_length=100)
    commission_rate: Decimal = Field(..., ge=0, le=100, decimal_places=2)

    @field_validator("target_id")
    @classmethod
    def strip_target(cls, v: Optional[str]) -> Optional[str]:
        return v.strip() if v else v


class CommissionRuleUpdate(BaseSchema):
    commission_rate: Optional[Decimal] = Field(None, ge=0, le=100, decimal_places=2)
    is_active: Optional[bool] = None


class CommissionRuleResponse(BaseSchema):
    id: uuid.UUID
    rule_type: str
    target_id: Optional[str]
    commission_rate: Decimal
    is_active: bool
    created_at: datetime


class AdminEmailRequest(BaseSchema):
    email: EmailStr


class AdminEmailResponse(BaseSchema):
    id: uuid.UUID
    email: str
    created_at: datetime


class RevenueResponse(BaseSchema):
    total_bookings: int
    held_amount: Decimal
    released_to_mentors: Decimal
    refunded_to_learners: Decimal
    platform_revenue: Decimal
    by_payment_status: Dict[str, int]


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
