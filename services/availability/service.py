"""
services/availability/service.py
Weekly availability templates, date-specific free windows and short
reservation holds for ustaadhs.

Free windows for a date = template windows for that weekday
                          - booked lesson windows on that date
                          - active holds placed by other students.

Every write that depends on that derivation runs under the per-ustaadh
Redis lock and commits before the lock is released.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import LockUnavailable, RedisCache
from config.settings import settings
from shared.models.models import (
    AvailabilitySlot,
    Booking,
    BookingStatus,
    Reservation,
    ScheduleSlot,
    ScheduleStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    AvailabilitySlotInput,
    AvailabilitySlotResponse,
    AvailabilitySlotUpdate,
    BookedWindow,
    ReservationCreateRequest,
)
from shared.utils.timeslots import (
    TimeSlotError,
    Window,
    day_of_week,
    is_window_free,
    minutes_to_time,
    normalize_time,
    parse_window,
    subtract_windows,
    time_to_minutes,
    validate_weekly_template,
)

logger = logging.getLogger(__name__)

# Booking statuses whose lessons still occupy the ustaadh's calendar
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)
OCCUPYING_SLOT_STATUSES = (ScheduleStatus.SCHEDULED, ScheduleStatus.COMPLETED)


def _cache_key(ustaadh_id: uuid.UUID) -> str:
    return f"availability:{ustaadh_id}"


def _bad_request(exc: Exception) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def parse_window_or_400(start_time: str, end_time: str) -> Window:
    try:
        return parse_window(start_time, end_time)
    except TimeSlotError as exc:
        raise _bad_request(exc)


# ── Locking ───────────────────────────────────────────────────

@asynccontextmanager
async def ustaadh_lock(cache: RedisCache, ustaadh_id: uuid.UUID) -> AsyncIterator[None]:
    """Serialize schedule-changing writes for one ustaadh across all API instances."""
    key = f"ustaadh:{ustaadh_id}"
    token = uuid.uuid4().hex
    try:
        await cache.acquire_lock_with_retry(key, token)
    except LockUnavailable:
        logger.warning(f"Schedule lock contention for ustaadh {ustaadh_id}")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This ustaadh's schedule is being updated. Please try again.",
        )
    try:
        yield
    finally:
        await cache.release_lock(key, token)


# ── Lookups ───────────────────────────────────────────────────

async def get_ustaadh_or_404(db: AsyncSession, ustaadh_id: uuid.UUID) -> User:
    result = await db.execute(
        select(User).where(User.id == ustaadh_id, User.role == UserRole.USTAADH)
    )
    ustaadh = result.scalar_one_or_none()
    if not ustaadh:
        raise HTTPException(status_code=404, detail="Ustaadh not found")
    return ustaadh


async def _load_template(
    db: AsyncSession, ustaadh_id: uuid.UUID, fresh: bool = False
) -> List[AvailabilitySlot]:
    query = (
        select(AvailabilitySlot)
        .where(AvailabilitySlot.ustaadh_id == ustaadh_id)
        .order_by(AvailabilitySlot.day_of_week, AvailabilitySlot.start_time)
    )
    if fresh:
        query = query.execution_options(populate_existing=True)
    result = await db.execute(query)
    return list(result.scalars().all())


def _as_template_entries(slots) -> List[dict]:
    return [
        {
            "day_of_week": s.day_of_week,
            "start_time": s.start_time,
            "end_time": s.end_time,
        }
        for s in slots
    ]


# ── Weekly Template ───────────────────────────────────────────

async def get_availability(
    db: AsyncSession, cache: RedisCache, ustaadh_id: uuid.UUID
) -> List[AvailabilitySlotResponse]:
    cached = await cache.get(_cache_key(ustaadh_id))
    if cached is not None:
        return [AvailabilitySlotResponse.model_validate(item) for item in cached]

    await get_ustaadh_or_404(db, ustaadh_id)
    slots = [AvailabilitySlotResponse.model_validate(s) for s in await _load_template(db, ustaadh_id)]
    await cache.set(_cache_key(ustaadh_id), [s.model_dump(mode="json") for s in slots])
    return slots


async def set_availability(
    db: AsyncSession,
    cache: RedisCache,
    ustaadh_id: uuid.UUID,
    slots: List[AvailabilitySlotInput],
) -> List[AvailabilitySlotResponse]:
    """
    Replace the whole weekly template.
    The batch is validated before anything is written, so a rejected
    batch leaves the previous template untouched.
    """
    entries = [s.model_dump() for s in slots]
    try:
        validate_weekly_template(entries)
        for entry in entries:
            entry["start_time"] = normalize_time(entry["start_time"])
            entry["end_time"] = normalize_time(entry["end_time"])
    except TimeSlotError as exc:
        raise _bad_request(exc)

    await get_ustaadh_or_404(db, ustaadh_id)

    async with ustaadh_lock(cache, ustaadh_id):
        await db.execute(
            delete(AvailabilitySlot).where(AvailabilitySlot.ustaadh_id == ustaadh_id)
        )
        for entry in entries:
            db.add(AvailabilitySlot(ustaadh_id=ustaadh_id, **entry))
        await db.commit()
        await cache.delete(_cache_key(ustaadh_id))

    logger.info(f"Availability replaced for ustaadh {ustaadh_id}: {len(entries)} slots")
    return [AvailabilitySlotResponse.model_validate(s) for s in await _load_template(db, ustaadh_id)]


async def update_availability_slot(
    db: AsyncSession,
    cache: RedisCache,
    ustaadh_id: uuid.UUID,
    slot_id: uuid.UUID,
    patch: AvailabilitySlotUpdate,
) -> AvailabilitySlotResponse:
    """Edit one template slot; the rest of that day is re-read and re-checked under the lock."""
    changes = patch.model_dump(exclude_unset=True)

    async with ustaadh_lock(cache, ustaadh_id):
        template = await _load_template(db, ustaadh_id, fresh=True)
        slot = next((s for s in template if s.id == slot_id), None)
        if not slot:
            raise HTTPException(status_code=404, detail="Availability slot not found")

        merged = {
            field: changes[field] if changes.get(field) is not None else getattr(slot, field)
            for field in ("day_of_week", "start_time", "end_time")
        }
        siblings = [
            s for s in template
            if s.id != slot.id and s.day_of_week == merged["day_of_week"]
        ]
        try:
            validate_weekly_template(_as_template_entries(siblings) + [merged])
            merged["start_time"] = normalize_time(merged["start_time"])
            merged["end_time"] = normalize_time(merged["end_time"])
        except TimeSlotError as exc:
            raise _bad_request(exc)

        for field, value in merged.items():
            setattr(slot, field, value)
        if changes.get("is_available") is not None:
            slot.is_available = changes["is_available"]
        await db.commit()
        await cache.delete(_cache_key(ustaadh_id))

    return AvailabilitySlotResponse.model_validate(slot)


async def delete_availability_slot(
    db: AsyncSession, cache: RedisCache, ustaadh_id: uuid.UUID, slot_id: uuid.UUID
) -> None:
    result = await db.execute(
        select(AvailabilitySlot).where(
            AvailabilitySlot.id == slot_id,
            AvailabilitySlot.ustaadh_id == ustaadh_id,
        )
    )
    slot = result.scalar_one_or_none()
    if not slot:
        raise HTTPException(status_code=404, detail="Availability slot not found")

    async with ustaadh_lock(cache, ustaadh_id):
        await db.delete(slot)
        await db.commit()
        await cache.delete(_cache_key(ustaadh_id))


# ── Date-specific Derivation ──────────────────────────────────

async def _booked_lessons(
    db: AsyncSession,
    ustaadh_id: uuid.UUID,
    on_date: date,
    exclude_slot_id: Optional[uuid.UUID] = None,
) -> List[ScheduleSlot]:
    query = (
        select(ScheduleSlot)
        .join(Booking, ScheduleSlot.booking_id == Booking.id)
        .where(
            Booking.ustaadh_id == ustaadh_id,
            Booking.status.in_(ACTIVE_BOOKING_STATUSES),
            ScheduleSlot.date == on_date,
            ScheduleSlot.status.in_(OCCUPYING_SLOT_STATUSES),
        )
    )
    if exclude_slot_id is not None:
        query = query.where(ScheduleSlot.id != exclude_slot_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def _active_holds(
    db: AsyncSession,
    ustaadh_id: uuid.UUID,
    on_date: date,
    now: datetime,
    exclude_student_id: Optional[uuid.UUID] = None,
) -> List[Reservation]:
    query = select(Reservation).where(
        Reservation.ustaadh_id == ustaadh_id,
        Reservation.date == on_date,
        Reservation.booking_id.is_(None),
        Reservation.reserved_until > now,
    )
    if exclude_student_id is not None:
        query = query.where(Reservation.student_id != exclude_student_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def free_windows(
    db: AsyncSession,
    ustaadh_id: uuid.UUID,
    on_date: date,
    now: Optional[datetime] = None,
    student_id: Optional[uuid.UUID] = None,
    exclude_slot_id: Optional[uuid.UUID] = None,
) -> List[Window]:
    """
    Free windows for one concrete date, ascending and merged.
    `student_id` excludes that student's own holds; `exclude_slot_id`
    ignores one booked lesson (used when rescheduling it).
    """
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(AvailabilitySlot).where(
            AvailabilitySlot.ustaadh_id == ustaadh_id,
            AvailabilitySlot.day_of_week == day_of_week(on_date),
            AvailabilitySlot.is_available.is_(True),
        )
    )
    template = [
        (time_to_minutes(s.start_time), time_to_minutes(s.end_time))
        for s in result.scalars().all()
    ]
    busy = [
        (time_to_minutes(s.start_time), time_to_minutes(s.end_time))
        for s in await _booked_lessons(db, ustaadh_id, on_date, exclude_slot_id)
    ]
    busy += [
        (time_to_minutes(r.start_time), time_to_minutes(r.end_time))
        for r in await _active_holds(db, ustaadh_id, on_date, now, student_id)
    ]
    return subtract_windows(template, busy)


async def get_available_time_slots(
    db: AsyncSession,
    ustaadh_id: uuid.UUID,
    on_date: date,
    student_id: Optional[uuid.UUID] = None,
) -> List[Window]:
    await get_ustaadh_or_404(db, ustaadh_id)
    return await free_windows(db, ustaadh_id, on_date, student_id=student_id)


async def check_slot_availability(
    db: AsyncSession,
    ustaadh_id: uuid.UUID,
    on_date: date,
    start_time: str,
    end_time: str,
    student_id: Optional[uuid.UUID] = None,
    exclude_slot_id: Optional[uuid.UUID] = None,
) -> bool:
    """True iff [start, end) fits entirely inside one free window on that date."""
    window = parse_window_or_400(start_time, end_time)
    free = await free_windows(
        db, ustaadh_id, on_date, student_id=student_id, exclude_slot_id=exclude_slot_id
    )
    return is_window_free(window, free)


async def get_booked_slots(
    db: AsyncSession, ustaadh_id: uuid.UUID, on_date: date
) -> List[BookedWindow]:
    await get_ustaadh_or_404(db, ustaadh_id)
    now = datetime.now(timezone.utc)
    booked = [
        BookedWindow(start_time=s.start_time, end_time=s.end_time, booking_id=s.booking_id)
        for s in await _booked_lessons(db, ustaadh_id, on_date)
    ]
    booked += [
        BookedWindow(start_time=r.start_time, end_time=r.end_time, reserved=True)
        for r in await _active_holds(db, ustaadh_id, on_date, now)
    ]
    return sorted(booked, key=lambda w: time_to_minutes(w.start_time))


def windows_to_times(windows: List[Window]) -> List[dict]:
    return [
        {"start_time": minutes_to_time(start), "end_time": minutes_to_time(end)}
        for start, end in windows
    ]


# ── Reservation Holds ─────────────────────────────────────────

async def create_reservation(
    db: AsyncSession,
    cache: RedisCache,
    student: User,
    data: ReservationCreateRequest,
) -> Reservation:
    """Hold a concrete window for RESERVATION_HOLD_MINUTES while the student checks out."""
    parse_window_or_400(data.start_time, data.end_time)
    start_time = normalize_time(data.start_time)
    end_time = normalize_time(data.end_time)

    ustaadh = await get_ustaadh_or_404(db, data.ustaadh_id)
    if not ustaadh.is_bookable:
        raise HTTPException(status_code=400, detail="Ustaadh is not accepting bookings")

    now = datetime.now(timezone.utc)
    reserved_until = now + timedelta(minutes=settings.RESERVATION_HOLD_MINUTES)

    async with ustaadh_lock(cache, ustaadh.id):
        result = await db.execute(
            select(Reservation).where(
                Reservation.ustaadh_id == ustaadh.id,
                Reservation.date == data.date,
                Reservation.start_time == start_time,
                Reservation.end_time == end_time,
            )
        )
        existing = result.scalar_one_or_none()

        if not await check_slot_availability(
            db, ustaadh.id, data.date, start_time, end_time, student_id=student.id
        ):
            raise HTTPException(
                status_code=400,
                detail=f"Slot {data.date} {start_time}-{end_time} is not available",
            )

        if existing and existing.student_id == student.id and existing.booking_id is None:
            existing.reserved_until = reserved_until
            await db.commit()
            return existing

        # Expired or consumed holds for the same window no longer count
        if existing:
            await db.delete(existing)
            await db.flush()

        reservation = Reservation(
            ustaadh_id=ustaadh.id,
            student_id=student.id,
            date=data.date,
            start_time=start_time,
            end_time=end_time,
            reserved_until=reserved_until,
        )
        db.add(reservation)
        await db.commit()

    logger.info(
        f"Reservation {reservation.id} held by {student.id} for ustaadh {ustaadh.id} "
        f"on {data.date} {start_time}-{end_time}"
    )
    return reservation


async def list_reservations(
    db: AsyncSession,
    ustaadh_id: Optional[uuid.UUID] = None,
    active_only: bool = False,
) -> List[Reservation]:
    query = select(Reservation).order_by(Reservation.date, Reservation.start_time)
    if ustaadh_id:
        query = query.where(Reservation.ustaadh_id == ustaadh_id)
    if active_only:
        query = query.where(
            Reservation.booking_id.is_(None),
            Reservation.reserved_until > datetime.now(timezone.utc),
        )
    result = await db.execute(query)
    return list(result.scalars().all())


async def delete_reservation(db: AsyncSession, user: User, reservation_id: uuid.UUID) -> None:
    result = await db.execute(select(Reservation).where(Reservation.id == reservation_id))
    reservation = result.scalar_one_or_none()
    if not reservation:
        raise HTTPException(status_code=404, detail="Reservation not found")
    if user.role != UserRole.ADMIN and reservation.student_id != user.id:
        raise HTTPException(status_code=403, detail="Not your reservation")
    await db.delete(reservation)
    await db.commit()
