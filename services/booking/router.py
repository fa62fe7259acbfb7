"""
services/booking/router.py
Booking lifecycle endpoints. States: PENDING → CONFIRMED → COMPLETED,
with CANCELLED reachable from PENDING or CONFIRMED.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.booking import service
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import BookingStatus, User
from shared.schemas.schemas import (
    BookingCancelRequest,
    BookingCreateRequest,
    BookingListResponse,
    BookingResponse,
    BookingStatsResponse,
    BookingUpdateRequest,
    UpcomingLessonResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Book an approved ustaadh. Steps:
    1. Validate the subscription period and every requested lesson window
    2. Under the ustaadh's schedule lock, check each lesson against free windows
    3. Persist the booking as pending and consume the student's holds
    A single unavailable lesson rejects the whole booking.
    """
    return await service.create_booking(db, RedisCache(redis), current_user, data)


@router.get("/mine", response_model=List[BookingResponse])
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Bookings where the caller is the student (or the ustaadh, for ustaadh accounts)."""
    return await service.list_my_bookings(db, current_user, status_filter)


@router.get("/upcoming-lessons", response_model=List[UpcomingLessonResponse])
async def get_upcoming_lessons(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await service.get_upcoming_lessons(db, current_user)


@router.get("/stats", response_model=BookingStatsResponse)
async def get_booking_stats(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await service.get_booking_stats(db)


@router.get("", response_model=BookingListResponse)
async def list_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    ustaadh_id: Optional[UUID] = Query(None, alias="ustaadhId"),
    student_id: Optional[UUID] = Query(None, alias="studentId"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    items, total = await service.list_bookings(
        db, status_filter, ustaadh_id, student_id, page, page_size
    )
    return BookingListResponse(
        items=[BookingResponse.model_validate(b) for b in items],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await service.get_booking(db, current_user, booking_id)


@router.patch("/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: UUID,
    data: BookingUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Status, payment status and per-lesson edits (reschedule, meeting link,
    lesson status). Transitions only move forward.
    """
    return await service.update_booking(db, RedisCache(redis), current_user, booking_id, data)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: UUID,
    data: Optional[BookingCancelRequest] = None,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    reason = data.reason if data else None
    return await service.cancel_booking(db, current_user, booking_id, reason)
