"""
services/booking/service.py
Booking lifecycle for tutoring subscriptions.

Booking.status:        PENDING → CONFIRMED → COMPLETED
                       PENDING | CONFIRMED → CANCELLED
Booking.payment_status PENDING → PAID | FAILED, FAILED → PENDING | PAID, PAID → REFUNDED
ScheduleSlot.status:   SCHEDULED → COMPLETED | CANCELLED | MISSED

Creation is all-or-nothing: every requested lesson is checked against the
ustaadh's free windows under the per-ustaadh lock before anything is written.
"""

import logging
import uuid
from contextlib import nullcontext
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config.redis_client import RedisCache
from config.settings import settings
from services.achievement.service import (
    award_for_completed_booking,
    award_for_completed_lessons,
)
from services.availability.service import (
    check_slot_availability,
    get_ustaadh_or_404,
    parse_window_or_400,
    ustaadh_lock,
)
from services.notification.service import dispatch_notification
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    NotificationType,
    PackageType,
    PaymentStatus,
    Reservation,
    ScheduleSlot,
    ScheduleStatus,
    User,
    UserRole,
)
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingUpdateRequest,
    ScheduleSlotPatch,
)
from shared.utils.timeslots import (
    day_of_week,
    normalize_time,
    overlaps,
    slot_end,
    slot_start,
)

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")

BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED, BookingStatus.CANCELLED},
    BookingStatus.CONFIRMED: {BookingStatus.COMPLETED, BookingStatus.CANCELLED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.PAID, PaymentStatus.FAILED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING, PaymentStatus.PAID},
    PaymentStatus.PAID: {PaymentStatus.REFUNDED},
    PaymentStatus.REFUNDED: set(),
}

SLOT_TRANSITIONS = {
    ScheduleStatus.SCHEDULED: {
        ScheduleStatus.COMPLETED,
        ScheduleStatus.CANCELLED,
        ScheduleStatus.MISSED,
    },
    ScheduleStatus.COMPLETED: set(),
    ScheduleStatus.CANCELLED: set(),
    ScheduleStatus.MISSED: set(),
}


# ── Pricing ───────────────────────────────────────────────────

def calculate_pricing(
    package_type: PackageType,
    hours_per_day: Decimal,
    days_per_week: int,
    subscription_months: int,
) -> tuple[Decimal, Decimal, Decimal]:
    """Returns (total_amount, platform_fee, ustaadh_earning)."""
    rate = Decimal(str(settings.package_rates[PackageType(package_type).value]))
    total = (
        rate
        * Decimal(str(hours_per_day))
        * days_per_week
        * settings.WEEKS_PER_MONTH
        * subscription_months
    ).quantize(CENTS, rounding=ROUND_HALF_UP)
    fee = (total * Decimal(str(settings.PLATFORM_FEE_PERCENT)) / 100).quantize(
        CENTS, rounding=ROUND_HALF_UP
    )
    return total, fee, total - fee


# ── Helpers ───────────────────────────────────────────────────

async def get_booking_or_404(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise HTTPException(status_code=404, detail="Booking not found")
    return booking


def _is_admin(user: User) -> bool:
    return user.role == UserRole.ADMIN


def _ensure_party(booking: Booking, user: User) -> None:
    if not (_is_admin(user) or user.id in (booking.student_id, booking.ustaadh_id)):
        raise HTTPException(status_code=403, detail="Not authorized to access this booking")


def _log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[str],
    to_status: str,
    changed_by: User,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(
        BookingAuditLog(
            booking_id=booking.id,
            from_status=from_status,
            to_status=to_status,
            changed_by_id=changed_by.id,
            reason=reason,
            audit_metadata=metadata,
        )
    )


def _describe(slot_date: date, start_time: str, end_time: str) -> str:
    return f"{slot_date.isoformat()} {start_time}-{end_time}"


async def _resolve_student(db: AsyncSession, current_user: User, data: BookingCreateRequest) -> User:
    if current_user.role == UserRole.USTAADH:
        raise HTTPException(status_code=403, detail="Ustaadhs cannot book lessons")
    if current_user.role == UserRole.STUDENT:
        if data.student_id and data.student_id != current_user.id:
            raise HTTPException(status_code=403, detail="Students can only book for themselves")
        return current_user

    if not data.student_id:
        raise HTTPException(status_code=400, detail="studentId is required when booking as admin")
    result = await db.execute(
        select(User).where(User.id == data.student_id, User.role == UserRole.STUDENT)
    )
    student = result.scalar_one_or_none()
    if not student:
        raise HTTPException(status_code=404, detail="Student not found")
    return student


# ── Create ────────────────────────────────────────────────────

async def create_booking(
    db: AsyncSession,
    cache: RedisCache,
    current_user: User,
    data: BookingCreateRequest,
) -> Booking:
    student = await _resolve_student(db, current_user, data)

    ustaadh = await get_ustaadh_or_404(db, data.ustaadh_id)
    if not ustaadh.is_bookable:
        raise HTTPException(status_code=400, detail="Ustaadh is not accepting bookings")

    if data.start_date > data.end_date:
        raise HTTPException(status_code=400, detail="startDate must not be after endDate")

    lessons = []
    for requested in data.schedule:
        window = parse_window_or_400(requested.start_time, requested.end_time)
        label = _describe(requested.date, requested.start_time, requested.end_time)
        if not data.start_date <= requested.date <= data.end_date:
            raise HTTPException(
                status_code=400,
                detail=f"Slot {label} is outside the subscription period",
            )
        lessons.append((requested, window, label))

    lessons.sort(key=lambda item: (item[0].date, item[1]))
    for (prev, prev_window, prev_label), (cur, cur_window, cur_label) in zip(lessons, lessons[1:]):
        if prev.date == cur.date and overlaps(prev_window, cur_window):
            raise HTTPException(
                status_code=400,
                detail=f"Requested slots overlap: {prev_label} and {cur_label}",
            )

    total, fee, earning = calculate_pricing(
        data.package_type, data.hours_per_day, data.days_per_week, data.subscription_months
    )

    async with ustaadh_lock(cache, ustaadh.id):
        for requested, _, label in lessons:
            available = await check_slot_availability(
                db,
                ustaadh.id,
                requested.date,
                requested.start_time,
                requested.end_time,
                student_id=student.id,
            )
            if not available:
                raise HTTPException(
                    status_code=400,
                    detail=f"Slot {label} is not available",
                )

        booking = Booking(
            student_id=student.id,
            ustaadh_id=ustaadh.id,
            package_type=PackageType(data.package_type),
            hours_per_day=data.hours_per_day,
            days_per_week=data.days_per_week,
            subscription_months=data.subscription_months,
            total_amount=total,
            platform_fee=fee,
            ustaadh_earning=earning,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PENDING,
            start_date=data.start_date,
            end_date=data.end_date,
            schedule=[
                ScheduleSlot(
                    position=position,
                    date=requested.date,
                    day_of_week=day_of_week(requested.date),
                    start_time=normalize_time(requested.start_time),
                    end_time=normalize_time(requested.end_time),
                    status=ScheduleStatus.SCHEDULED,
                    meeting_link=requested.meeting_link,
                )
                for position, (requested, _, _) in enumerate(lessons)
            ],
        )
        db.add(booking)
        await db.flush()

        for slot in booking.schedule:
            await db.execute(
                update(Reservation)
                .where(
                    Reservation.student_id == student.id,
                    Reservation.ustaadh_id == ustaadh.id,
                    Reservation.date == slot.date,
                    Reservation.start_time == slot.start_time,
                    Reservation.end_time == slot.end_time,
                    Reservation.booking_id.is_(None),
                )
                .values(booking_id=booking.id)
            )

        _log_status_change(db, booking, None, BookingStatus.PENDING.value, current_user)
        dispatch_notification(
            db,
            ustaadh.id,
            NotificationType.BOOKING_CREATED,
            {
                "student_name": student.full_name,
                "package_type": booking.package_type.value,
                "start_date": booking.start_date.isoformat(),
            },
            booking_id=booking.id,
        )
        await db.commit()

    logger.info(
        f"Booking {booking.id} created: student={student.id} ustaadh={ustaadh.id} "
        f"lessons={len(booking.schedule)} total={total}"
    )
    return booking


# ── Status Changes ────────────────────────────────────────────

def _apply_cancellation(
    db: AsyncSession, booking: Booking, user: User, reason: Optional[str]
) -> None:
    current = BookingStatus(booking.status)
    if BookingStatus.CANCELLED not in BOOKING_TRANSITIONS[current]:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot cancel a booking in '{current.value}' status",
        )
    booking.status = BookingStatus.CANCELLED
    booking.cancelled_at = datetime.now(timezone.utc)
    booking.cancellation_reason = reason
    booking.cancelled_by = UserRole(user.role).value
    for slot in booking.schedule:
        if slot.status == ScheduleStatus.SCHEDULED:
            slot.status = ScheduleStatus.CANCELLED
    _log_status_change(db, booking, current.value, BookingStatus.CANCELLED.value, user, reason)

    recipients = {booking.student_id, booking.ustaadh_id} - {user.id}
    for recipient in recipients:
        dispatch_notification(
            db,
            recipient,
            NotificationType.BOOKING_CANCELLED,
            {"start_date": booking.start_date.isoformat(), "reason": reason or "not given"},
            booking_id=booking.id,
        )


async def _apply_status(
    db: AsyncSession, booking: Booking, user: User, new_status: BookingStatus, reason: Optional[str]
) -> None:
    current = BookingStatus(booking.status)
    if new_status == current and BOOKING_TRANSITIONS[current]:
        return
    if new_status not in BOOKING_TRANSITIONS[current]:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot change booking status from '{current.value}' to '{new_status.value}'",
        )

    if new_status == BookingStatus.CANCELLED:
        _apply_cancellation(db, booking, user, reason)
        return

    if not (_is_admin(user) or user.id == booking.ustaadh_id):
        raise HTTPException(
            status_code=403,
            detail="Only the booking's ustaadh or an admin can confirm or complete it",
        )

    booking.status = new_status
    now = datetime.now(timezone.utc)
    if new_status == BookingStatus.CONFIRMED:
        booking.confirmed_at = now
        ustaadh = await db.get(User, booking.ustaadh_id)
        dispatch_notification(
            db,
            booking.student_id,
            NotificationType.BOOKING_CONFIRMED,
            {
                "ustaadh_name": ustaadh.full_name if ustaadh else "your ustaadh",
                "start_date": booking.start_date.isoformat(),
            },
            booking_id=booking.id,
        )
    elif new_status == BookingStatus.COMPLETED:
        booking.completed_at = now
        dispatch_notification(
            db,
            booking.student_id,
            NotificationType.BOOKING_COMPLETED,
            {"start_date": booking.start_date.isoformat()},
            booking_id=booking.id,
        )
        await award_for_completed_booking(db, booking)

    _log_status_change(db, booking, current.value, new_status.value, user, reason)


def _apply_payment_status(
    db: AsyncSession,
    booking: Booking,
    user: User,
    new_status: PaymentStatus,
    reference: Optional[str],
) -> None:
    if not (_is_admin(user) or user.id == booking.student_id):
        raise HTTPException(
            status_code=403,
            detail="Only the booking's student or an admin can update payment status",
        )
    current = PaymentStatus(booking.payment_status)
    if new_status != current:
        if new_status not in PAYMENT_TRANSITIONS[current]:
            raise HTTPException(
                status_code=400,
                detail=f"Cannot change payment status from '{current.value}' to '{new_status.value}'",
            )
        booking.payment_status = new_status
        _log_status_change(
            db, booking, f"payment:{current.value}", f"payment:{new_status.value}", user
        )
    if reference:
        booking.payment_reference = reference


# ── Per-lesson Edits ──────────────────────────────────────────

def _needs_reschedule(patch: ScheduleSlotPatch) -> bool:
    return any(v is not None for v in (patch.date, patch.start_time, patch.end_time))


def _ensure_lesson_finished(booking: Booking, slot: ScheduleSlot, target: ScheduleStatus) -> None:
    """Completed or missed only applies to a confirmed booking's lesson whose end has passed."""
    if BookingStatus(booking.status) != BookingStatus.CONFIRMED:
        raise HTTPException(
            status_code=400,
            detail=f"Lessons can only be marked '{target.value}' on a confirmed booking",
        )
    if slot_end(slot.date, slot.end_time) > datetime.now(timezone.utc):
        raise HTTPException(
            status_code=400,
            detail=f"Lesson {_describe(slot.date, slot.start_time, slot.end_time)} has not ended yet",
        )


async def _apply_slot_patch(
    db: AsyncSession, booking: Booking, patch: ScheduleSlotPatch
) -> bool:
    """Apply one lesson edit. Returns True when the lesson was marked completed."""
    slot = next((s for s in booking.schedule if s.id == patch.id), None)
    if slot is None:
        raise HTTPException(status_code=404, detail="Schedule slot not found")

    if _needs_reschedule(patch):
        if slot.status != ScheduleStatus.SCHEDULED:
            raise HTTPException(
                status_code=400,
                detail=f"Only scheduled lessons can be rescheduled (lesson is '{ScheduleStatus(slot.status).value}')",
            )
        await db.flush()
        new_date = patch.date or slot.date
        new_start = patch.start_time or slot.start_time
        new_end = patch.end_time or slot.end_time
        parse_window_or_400(new_start, new_end)
        label = _describe(new_date, new_start, new_end)
        if not booking.start_date <= new_date <= booking.end_date:
            raise HTTPException(
                status_code=400,
                detail=f"Slot {label} is outside the subscription period",
            )
        available = await check_slot_availability(
            db,
            booking.ustaadh_id,
            new_date,
            new_start,
            new_end,
            student_id=booking.student_id,
            exclude_slot_id=slot.id,
        )
        if not available:
            raise HTTPException(status_code=400, detail=f"Slot {label} is not available")
        slot.date = new_date
        slot.day_of_week = day_of_week(new_date)
        slot.start_time = normalize_time(new_start)
        slot.end_time = normalize_time(new_end)

    if patch.meeting_link is not None:
        slot.meeting_link = patch.meeting_link

    if patch.status is not None:
        current = ScheduleStatus(slot.status)
        target = ScheduleStatus(patch.status)
        if target != current:
            if target not in SLOT_TRANSITIONS[current]:
                raise HTTPException(
                    status_code=400,
                    detail=f"Cannot change lesson status from '{current.value}' to '{target.value}'",
                )
            if target in (ScheduleStatus.COMPLETED, ScheduleStatus.MISSED):
                _ensure_lesson_finished(booking, slot, target)
            slot.status = target
            return target == ScheduleStatus.COMPLETED
    return False


# ── Update / Cancel ───────────────────────────────────────────

async def update_booking(
    db: AsyncSession,
    cache: RedisCache,
    user: User,
    booking_id: uuid.UUID,
    patch: BookingUpdateRequest,
) -> Booking:
    booking = await get_booking_or_404(db, booking_id)
    _ensure_party(booking, user)

    slot_patches = patch.schedule or []
    if slot_patches and BookingStatus(booking.status) == BookingStatus.CANCELLED:
        raise HTTPException(status_code=400, detail="Cannot modify lessons of a cancelled booking")

    reschedules = any(_needs_reschedule(p) for p in slot_patches)
    lock = ustaadh_lock(cache, booking.ustaadh_id) if reschedules else nullcontext()

    async with lock:
        lesson_completed = False
        for slot_patch in slot_patches:
            lesson_completed |= await _apply_slot_patch(db, booking, slot_patch)

        if patch.payment_status is not None:
            _apply_payment_status(
                db, booking, user, PaymentStatus(patch.payment_status), patch.payment_reference
            )
        elif patch.payment_reference is not None:
            _apply_payment_status(
                db, booking, user, PaymentStatus(booking.payment_status), patch.payment_reference
            )

        if patch.status is not None:
            await _apply_status(
                db, booking, user, BookingStatus(patch.status), patch.cancellation_reason
            )

        if lesson_completed:
            await award_for_completed_lessons(db, booking.student_id)

        await db.commit()

    logger.info(f"Booking {booking.id} updated by {user.id}")
    return booking


async def cancel_booking(
    db: AsyncSession, user: User, booking_id: uuid.UUID, reason: Optional[str]
) -> Booking:
    booking = await get_booking_or_404(db, booking_id)
    _ensure_party(booking, user)
    _apply_cancellation(db, booking, user, reason)
    await db.commit()
    logger.info(f"Booking {booking.id} cancelled by {user.id}")
    return booking


# ── Reads ─────────────────────────────────────────────────────

async def get_booking(db: AsyncSession, user: User, booking_id: uuid.UUID) -> Booking:
    booking = await get_booking_or_404(db, booking_id)
    _ensure_party(booking, user)
    return booking


async def list_my_bookings(
    db: AsyncSession, user: User, status_filter: Optional[BookingStatus] = None
) -> List[Booking]:
    query = select(Booking).order_by(Booking.created_at.desc())
    if user.role == UserRole.STUDENT:
        query = query.where(Booking.student_id == user.id)
    elif user.role == UserRole.USTAADH:
        query = query.where(Booking.ustaadh_id == user.id)
    if status_filter:
        query = query.where(Booking.status == BookingStatus(status_filter))
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_bookings(
    db: AsyncSession,
    status_filter: Optional[BookingStatus] = None,
    ustaadh_id: Optional[uuid.UUID] = None,
    student_id: Optional[uuid.UUID] = None,
    page: int = 1,
    page_size: int = 20,
) -> tuple[List[Booking], int]:
    query = select(Booking)
    if status_filter:
        query = query.where(Booking.status == BookingStatus(status_filter))
    if ustaadh_id:
        query = query.where(Booking.ustaadh_id == ustaadh_id)
    if student_id:
        query = query.where(Booking.student_id == student_id)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(Booking.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total or 0


async def get_upcoming_lessons(
    db: AsyncSession, user: User, now: Optional[datetime] = None
) -> List[dict]:
    """Scheduled lessons of confirmed bookings starting at or after `now`, soonest first."""
    now = now or datetime.now(timezone.utc)
    query = (
        select(ScheduleSlot, Booking)
        .join(Booking, ScheduleSlot.booking_id == Booking.id)
        .where(
            Booking.status == BookingStatus.CONFIRMED,
            ScheduleSlot.status == ScheduleStatus.SCHEDULED,
            ScheduleSlot.date >= now.date(),
        )
    )
    if user.role == UserRole.STUDENT:
        query = query.where(Booking.student_id == user.id)
    elif user.role == UserRole.USTAADH:
        query = query.where(Booking.ustaadh_id == user.id)

    result = await db.execute(query)
    lessons = [
        {
            "booking_id": booking.id,
            "slot_id": slot.id,
            "student_id": booking.student_id,
            "ustaadh_id": booking.ustaadh_id,
            "package_type": booking.package_type,
            "date": slot.date,
            "start_time": slot.start_time,
            "end_time": slot.end_time,
            "meeting_link": slot.meeting_link,
        }
        for slot, booking in result.all()
        if slot_start(slot.date, slot.start_time) >= now
    ]
    return sorted(lessons, key=lambda lesson: (lesson["date"], lesson["start_time"]))


async def get_booking_stats(db: AsyncSession) -> dict:
    rows = await db.execute(
        select(Booking.status, func.count(Booking.id)).group_by(Booking.status)
    )
    counts = {BookingStatus(s).value: c for s, c in rows.all()}
    revenue = await db.execute(
        select(
            func.coalesce(func.sum(Booking.total_amount), 0),
            func.coalesce(func.sum(Booking.platform_fee), 0),
        ).where(Booking.payment_status == PaymentStatus.PAID)
    )
    total_revenue, platform_revenue = revenue.one()
    return {
        "total": sum(counts.values()),
        "pending": counts.get("pending", 0),
        "confirmed": counts.get("confirmed", 0),
        "completed": counts.get("completed", 0),
        "cancelled": counts.get("cancelled", 0),
        "total_revenue": Decimal(str(total_revenue)).quantize(CENTS),
        "platform_revenue": Decimal(str(platform_revenue)).quantize(CENTS),
    }
