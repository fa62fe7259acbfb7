"""
services/availability/router.py
Ustaadh weekly availability, date-specific free windows and reservation holds.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.availability import service
from shared.middleware.auth import get_current_user, require_admin, require_student, require_ustaadh
from shared.models.models import User
from shared.schemas.schemas import (
    AvailabilitySlotInput,
    AvailabilitySlotResponse,
    AvailabilitySlotUpdate,
    BookedWindow,
    MessageResponse,
    ReservationCreateRequest,
    ReservationResponse,
    SlotCheckResponse,
    TimeWindow,
)

router = APIRouter(prefix="/availability", tags=["Availability"])


# ── Weekly Template ───────────────────────────────────────────

@router.get("", response_model=List[AvailabilitySlotResponse])
async def get_availability(
    ustaadh_id: UUID = Query(..., alias="ustaadhId"),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Full weekly template of an ustaadh, sorted by day then start time."""
    return await service.get_availability(db, RedisCache(redis), ustaadh_id)


@router.get("/me", response_model=List[AvailabilitySlotResponse])
async def get_my_availability(
    current_user: User = Depends(require_ustaadh),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    return await service.get_availability(db, RedisCache(redis), current_user.id)


@router.post("", response_model=List[AvailabilitySlotResponse])
@router.put("", response_model=List[AvailabilitySlotResponse])
async def set_availability(
    slots: List[AvailabilitySlotInput],
    current_user: User = Depends(require_ustaadh),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Replace the caller's whole weekly template.
    Any malformed or overlapping slot rejects the batch and leaves the
    existing template unchanged.
    """
    return await service.set_availability(db, RedisCache(redis), current_user.id, slots)


@router.patch("/{slot_id}", response_model=AvailabilitySlotResponse)
async def update_availability_slot(
    slot_id: UUID,
    data: AvailabilitySlotUpdate,
    current_user: User = Depends(require_ustaadh),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    return await service.update_availability_slot(
        db, RedisCache(redis), current_user.id, slot_id, data
    )


@router.delete("/{slot_id}", response_model=MessageResponse)
async def delete_availability_slot(
    slot_id: UUID,
    current_user: User = Depends(require_ustaadh),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    await service.delete_availability_slot(db, RedisCache(redis), current_user.id, slot_id)
    return MessageResponse(message="Availability slot deleted")


# ── Date-specific Views ───────────────────────────────────────

@router.get("/slots", response_model=List[TimeWindow])
async def get_available_time_slots(
    ustaadh_id: UUID = Query(..., alias="ustaadhId"),
    on_date: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
):
    """Free windows for one date: template minus booked lessons minus active holds."""
    windows = await service.get_available_time_slots(db, ustaadh_id, on_date)
    return service.windows_to_times(windows)


@router.get("/booked", response_model=List[BookedWindow])
async def get_booked_slots(
    ustaadh_id: UUID = Query(..., alias="ustaadhId"),
    on_date: date = Query(..., alias="date"),
    db: AsyncSession = Depends(get_db),
):
    return await service.get_booked_slots(db, ustaadh_id, on_date)


@router.get("/check", response_model=SlotCheckResponse)
async def check_slot_availability(
    ustaadh_id: UUID = Query(..., alias="ustaadhId"),
    on_date: date = Query(..., alias="date"),
    start_time: str = Query(..., alias="startTime"),
    end_time: str = Query(..., alias="endTime"),
    db: AsyncSession = Depends(get_db),
):
    await service.get_ustaadh_or_404(db, ustaadh_id)
    available = await service.check_slot_availability(
        db, ustaadh_id, on_date, start_time, end_time
    )
    return SlotCheckResponse(available=available)


# ── Reservations ──────────────────────────────────────────────

@router.post(
    "/reservations",
    response_model=ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_reservation(
    data: ReservationCreateRequest,
    current_user: User = Depends(require_student),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Hold a lesson window for a few minutes while the student completes checkout."""
    return await service.create_reservation(db, RedisCache(redis), current_user, data)


@router.get("/reservations", response_model=List[ReservationResponse])
async def list_reservations(
    ustaadh_id: Optional[UUID] = Query(None, alias="ustaadhId"),
    active_only: bool = Query(False, alias="activeOnly"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    return await service.list_reservations(db, ustaadh_id, active_only)


@router.delete("/reservations/{reservation_id}", response_model=MessageResponse)
async def delete_reservation(
    reservation_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await service.delete_reservation(db, current_user, reservation_id)
    return MessageResponse(message="Reservation released")
