"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
Field names are camelCase on the wire; snake_case is accepted on input.
"""

import datetime as dt
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel

from shared.models.models import (
    AchievementType,
    BookingStatus,
    PackageType,
    PaymentStatus,
    ScheduleStatus,
)
from shared.utils.timeslots import derive_slot_status


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(
        from_attributes=True,
        use_enum_values=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── Auth ──────────────────────────────────────────────────────

class RegisterRequest(BaseSchema):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    full_name: str = Field(..., min_length=2, max_length=255)
    role: Literal["student", "ustaadh"] = "student"
    phone_number: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=2000)
    experience: Optional[str] = Field(None, max_length=2000)
    specialties: Optional[List[str]] = None


class LoginRequest(BaseSchema):
    email: EmailStr
    password: str


# ── User ──────────────────────────────────────────────────────

class UserResponse(BaseSchema):
    id: uuid.UUID
    email: EmailStr
    full_name: str
    role: str
    status: str
    is_approved: bool
    phone_number: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    bio: Optional[str] = None
    experience: Optional[str] = None
    specialties: Optional[List[str]] = None
    avatar_url: Optional[str] = None
    rating: float = 0
    review_count: int = 0
    created_at: datetime


class UstaadhSummary(BaseSchema):
    id: uuid.UUID
    full_name: str
    country: Optional[str] = None
    city: Optional[str] = None
    bio: Optional[str] = None
    experience: Optional[str] = None
    specialties: Optional[List[str]] = None
    avatar_url: Optional[str] = None
    rating: float = 0
    review_count: int = 0


class UserUpdateRequest(BaseSchema):
    full_name: Optional[str] = Field(None, min_length=2, max_length=255)
    phone_number: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=2000)
    experience: Optional[str] = Field(None, max_length=2000)
    specialties: Optional[List[str]] = None
    avatar_url: Optional[str] = None


class TokenResponse(BaseSchema):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user: UserResponse


# ── Availability ──────────────────────────────────────────────
# Times are plain strings here; format and ordering are checked by the
# availability service so that malformed input yields a 400.

class AvailabilitySlotInput(BaseSchema):
    day_of_week: int
    start_time: str
    end_time: str
    is_available: bool = True


class AvailabilitySlotUpdate(BaseSchema):
    day_of_week: Optional[int] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    is_available: Optional[bool] = None


class AvailabilitySlotResponse(BaseSchema):
    id: uuid.UUID
    ustaadh_id: uuid.UUID
    day_of_week: int
    start_time: str
    end_time: str
    is_available: bool


class TimeWindow(BaseSchema):
    start_time: str
    end_time: str


class BookedWindow(TimeWindow):
    booking_id: Optional[uuid.UUID] = None
    reserved: bool = False


class SlotCheckResponse(BaseSchema):
    available: bool


class ReservationCreateRequest(BaseSchema):
    ustaadh_id: uuid.UUID
    date: dt.date
    start_time: str
    end_time: str


class ReservationResponse(BaseSchema):
    id: uuid.UUID
    ustaadh_id: uuid.UUID
    student_id: uuid.UUID
    date: dt.date
    start_time: str
    end_time: str
    booking_id: Optional[uuid.UUID] = None
    reserved_until: datetime


# ── Booking ───────────────────────────────────────────────────

class ScheduleSlotInput(BaseSchema):
    date: dt.date
    start_time: str
    end_time: str
    meeting_link: Optional[str] = None


class BookingCreateRequest(BaseSchema):
    ustaadh_id: uuid.UUID
    student_id: Optional[uuid.UUID] = None  # admin booking on a student's behalf
    package_type: PackageType
    hours_per_day: Decimal = Field(..., gt=0, le=8)
    days_per_week: int = Field(..., ge=1, le=7)
    subscription_months: int = Field(..., ge=1, le=12)
    start_date: dt.date
    end_date: dt.date
    schedule: List[ScheduleSlotInput] = Field(..., min_length=1)


class ScheduleSlotPatch(BaseSchema):
    id: uuid.UUID
    date: Optional[dt.date] = None
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    status: Optional[ScheduleStatus] = None
    meeting_link: Optional[str] = None


class BookingUpdateRequest(BaseSchema):
    status: Optional[BookingStatus] = None
    payment_status: Optional[PaymentStatus] = None
    payment_reference: Optional[str] = Field(None, max_length=255)
    cancellation_reason: Optional[str] = Field(None, max_length=500)
    schedule: Optional[List[ScheduleSlotPatch]] = None


class BookingCancelRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class ScheduleSlotResponse(BaseSchema):
    id: uuid.UUID
    position: int
    date: dt.date
    day_of_week: int
    start_time: str
    end_time: str
    status: str
    effective_status: Optional[str] = None
    meeting_link: Optional[str] = None

    @model_validator(mode="after")
    def _fill_effective_status(self) -> "ScheduleSlotResponse":
        self.effective_status = derive_slot_status(self.status, self.date, self.end_time)
        return self


class BookingResponse(BaseSchema):
    id: uuid.UUID
    student_id: uuid.UUID
    ustaadh_id: uuid.UUID
    package_type: str
    hours_per_day: Decimal
    days_per_week: int
    subscription_months: int
    total_amount: Decimal
    platform_fee: Decimal
    ustaadh_earning: Decimal
    status: str
    payment_status: str
    payment_reference: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None
    start_date: dt.date
    end_date: dt.date
    schedule: List[ScheduleSlotResponse] = []
    confirmed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime


class BookingListResponse(BaseSchema):
    items: List[BookingResponse]
    total: int
    page: int
    page_size: int


class UpcomingLessonResponse(BaseSchema):
    booking_id: uuid.UUID
    slot_id: uuid.UUID
    student_id: uuid.UUID
    ustaadh_id: uuid.UUID
    package_type: str
    date: dt.date
    start_time: str
    end_time: str
    meeting_link: Optional[str] = None


class BookingStatsResponse(BaseSchema):
    total: int
    pending: int
    confirmed: int
    completed: int
    cancelled: int
    total_revenue: Decimal
    platform_revenue: Decimal


# ── Achievement ───────────────────────────────────────────────

class AchievementCreateRequest(BaseSchema):
    user_id: uuid.UUID
    type: AchievementType
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(None, max_length=1000)
    metadata: Optional[Dict[str, Any]] = None


class AchievementResponse(BaseSchema):
    id: uuid.UUID
    user_id: uuid.UUID
    type: str
    title: str
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    earned_at: datetime

    @classmethod
    def from_model(cls, achievement) -> "AchievementResponse":
        return cls(
            id=achievement.id,
            user_id=achievement.user_id,
            type=achievement.type,
            title=achievement.title,
            description=achievement.description,
            metadata=achievement.achievement_metadata,
            earned_at=achievement.earned_at,
        )


# ── Review ────────────────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    booking_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    student_id: uuid.UUID
    ustaadh_id: uuid.UUID
    student_name: Optional[str] = None
    ustaadh_name: Optional[str] = None
    rating: int
    comment: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_model(cls, review) -> "ReviewResponse":
        return cls(
            id=review.id,
            booking_id=review.booking_id,
            student_id=review.student_id,
            ustaadh_id=review.ustaadh_id,
            student_name=review.student.full_name if review.student else None,
            ustaadh_name=review.ustaadh.full_name if review.ustaadh else None,
            rating=review.rating,
            comment=review.comment,
            created_at=review.created_at,
        )


class ReviewStatsResponse(BaseSchema):
    average_rating: float
    total_reviews: int
    rating_distribution: Dict[int, int]


# ── Messaging ─────────────────────────────────────────────────

class DirectMessageCreate(BaseSchema):
    receiver_id: uuid.UUID
    content: str = Field(..., min_length=1, max_length=5000)
    booking_id: Optional[uuid.UUID] = None


class DirectMessageResponse(BaseSchema):
    id: uuid.UUID
    sender_id: uuid.UUID
    receiver_id: uuid.UUID
    booking_id: Optional[uuid.UUID] = None
    content: str
    is_read: bool
    timestamp: datetime


class ConversationSummary(BaseSchema):
    partner_id: uuid.UUID
    partner_name: Optional[str] = None
    last_message: DirectMessageResponse
    unread_count: int


class UnreadCountResponse(BaseSchema):
    count: int


# ── Notification ──────────────────────────────────────────────

class NotificationResponse(BaseSchema):
    id: uuid.UUID
    type: str
    title: str
    body: str
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime
    booking_id: Optional[uuid.UUID] = None


class NotificationListResponse(BaseSchema):
    items: List[NotificationResponse]
    total: int
    page: int
    page_size: int


# ── Admin ─────────────────────────────────────────────────────

class AdminSuspendRequest(BaseSchema):
    reason: str = Field(..., min_length=5, max_length=500)


class AdminAuditLogResponse(BaseSchema):
    id: uuid.UUID
    admin_id: uuid.UUID
    action: str
    entity_type: str
    entity_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime


class AdminAuditLogListResponse(BaseSchema):
    items: List[AdminAuditLogResponse]
    total: int
    page: int
    page_size: int


class AdminAnalyticsResponse(BaseSchema):
    total_users: int
    total_students: int
    total_ustaadhs: int
    approved_ustaadhs: int
    pending_approval: int
    suspended_users: int
    total_bookings: int
    active_bookings: int
    bookings_today: int
    total_revenue: Decimal
    platform_revenue: Decimal


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
