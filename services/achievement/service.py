"""
services/achievement/service.py
Achievement awards, idempotent on (user_id, type, title).
"""

import logging
import uuid
from typing import List, Optional

from fastapi import HTTPException
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.service import dispatch_notification
from shared.models.models import (
    Achievement,
    AchievementType,
    Booking,
    BookingStatus,
    NotificationType,
    PackageType,
    ScheduleSlot,
    ScheduleStatus,
)

logger = logging.getLogger(__name__)

LESSONS_FOR_PROGRESS_BADGE = 10
SUBSCRIPTION_MILESTONE_TITLE = "First Subscription Completed"
PROGRESS_TITLE = f"{LESSONS_FOR_PROGRESS_BADGE} Lessons Completed"
REVIEWER_TITLE = "First Review"


async def _find(
    db: AsyncSession, user_id: uuid.UUID, type_: AchievementType, title: str
) -> Optional[Achievement]:
    result = await db.execute(
        select(Achievement).where(
            Achievement.user_id == user_id,
            Achievement.type == type_,
            Achievement.title == title,
        )
    )
    return result.scalar_one_or_none()


async def create_achievement(
    db: AsyncSession,
    user_id: uuid.UUID,
    type_: AchievementType,
    title: str,
    description: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> tuple[Achievement, bool]:
    """
    Award an achievement once.
    Returns (achievement, created). A concurrent insert of the same
    (user, type, title) loses on the unique constraint and the existing
    row is returned instead.
    """
    type_ = AchievementType(type_)
    existing = await _find(db, user_id, type_, title)
    if existing:
        return existing, False

    achievement = Achievement(
        user_id=user_id,
        type=type_,
        title=title,
        description=description,
        achievement_metadata=metadata,
    )
    try:
        async with db.begin_nested():
            db.add(achievement)
    except IntegrityError:
        existing = await _find(db, user_id, type_, title)
        if existing is None:
            raise
        return existing, False

    dispatch_notification(
        db,
        user_id,
        NotificationType.ACHIEVEMENT_EARNED,
        {"title": title},
    )
    logger.info(f"Achievement '{title}' ({type_.value}) awarded to {user_id}")
    return achievement, True


async def list_user_achievements(db: AsyncSession, user_id: uuid.UUID) -> List[Achievement]:
    result = await db.execute(
        select(Achievement)
        .where(Achievement.user_id == user_id)
        .order_by(Achievement.earned_at.desc())
    )
    return list(result.scalars().all())


async def delete_achievement(db: AsyncSession, achievement_id: uuid.UUID) -> None:
    result = await db.execute(select(Achievement).where(Achievement.id == achievement_id))
    achievement = result.scalar_one_or_none()
    if not achievement:
        raise HTTPException(status_code=404, detail="Achievement not found")
    await db.delete(achievement)


# ── Automatic Awards ──────────────────────────────────────────

async def award_for_completed_booking(db: AsyncSession, booking: Booking) -> None:
    await create_achievement(
        db,
        booking.student_id,
        AchievementType.MILESTONE,
        SUBSCRIPTION_MILESTONE_TITLE,
        "Completed a full subscription",
        {"bookingId": str(booking.id), "packageType": PackageType(booking.package_type).value},
    )


async def award_for_completed_lessons(db: AsyncSession, student_id: uuid.UUID) -> None:
    await db.flush()
    completed = await db.scalar(
        select(func.count(ScheduleSlot.id))
        .join(Booking, ScheduleSlot.booking_id == Booking.id)
        .where(
            Booking.student_id == student_id,
            Booking.status != BookingStatus.CANCELLED,
            ScheduleSlot.status == ScheduleStatus.COMPLETED,
        )
    )
    if (completed or 0) >= LESSONS_FOR_PROGRESS_BADGE:
        await create_achievement(
            db,
            student_id,
            AchievementType.PROGRESS,
            PROGRESS_TITLE,
            f"Completed {LESSONS_FOR_PROGRESS_BADGE} lessons",
            {"completedLessons": completed},
        )


async def award_for_review(db: AsyncSession, student_id: uuid.UUID, ustaadh_id: uuid.UUID) -> None:
    await create_achievement(
        db,
        student_id,
        AchievementType.REVIEWER,
        REVIEWER_TITLE,
        "Reviewed an ustaadh",
        {"ustaadhId": str(ustaadh_id)},
    )
