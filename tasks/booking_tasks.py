"""
tasks/booking_tasks.py
Periodic maintenance for bookings and checkout holds:
- Delete reservations whose hold expired without being consumed by a booking
- Store in-app reminders for confirmed lessons starting in the next day

Both tasks are idempotent. The work lives in plain functions taking a
session and a clock so it can run against any database.
"""

import logging
from datetime import datetime, timedelta, timezone
from functools import lru_cache

from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from services.notification.service import render
from shared.models.models import (
    Booking,
    BookingStatus,
    Notification,
    NotificationType,
    Reservation,
    ScheduleSlot,
    ScheduleStatus,
)
from shared.utils.timeslots import slot_start
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


# ── Helpers ────────────────────────────────────────────────────────────────────

@lru_cache(maxsize=1)
def _sync_session_factory() -> sessionmaker:
    """One engine and pool per worker process, built on first use."""
    sync_url = settings.DATABASE_URL.replace("+asyncpg", "+psycopg2")
    engine = create_engine(sync_url, pool_pre_ping=True)
    return sessionmaker(bind=engine)


def _get_sync_session() -> Session:
    """Synchronous SQLAlchemy session (Celery runs sync by default)."""
    return _sync_session_factory()()


def _release_expired_reservations(db: Session, now: datetime) -> int:
    result = db.execute(
        delete(Reservation).where(
            Reservation.booking_id.is_(None),
            Reservation.reserved_until <= now,
        )
    )
    db.commit()
    return result.rowcount or 0


def _send_lesson_reminders(db: Session, now: datetime) -> int:
    """
    Remind students of scheduled lessons in confirmed bookings that start
    between REMINDER_HOURS and REMINDER_HOURS + 1 from now. The beat runs
    hourly so each lesson falls into exactly one run's window.
    """
    window_start = now + timedelta(hours=settings.LESSON_REMINDER_HOURS)
    window_end = window_start + timedelta(hours=1)

    rows = db.execute(
        select(ScheduleSlot, Booking)
        .join(Booking, ScheduleSlot.booking_id == Booking.id)
        .where(
            Booking.status == BookingStatus.CONFIRMED,
            ScheduleSlot.status == ScheduleStatus.SCHEDULED,
            ScheduleSlot.date >= window_start.date(),
            ScheduleSlot.date <= window_end.date(),
        )
    ).all()

    sent = 0
    for slot, booking in rows:
        starts_at = slot_start(slot.date, slot.start_time)
        if not (window_start <= starts_at < window_end):
            continue
        title, body = render(
            NotificationType.LESSON_REMINDER,
            {"date": slot.date.isoformat(), "start_time": slot.start_time},
        )
        db.add(Notification(
            user_id=booking.student_id,
            booking_id=booking.id,
            type=NotificationType.LESSON_REMINDER,
            title=title,
            body=body,
            data={"slotId": str(slot.id), "meetingLink": slot.meeting_link},
        ))
        sent += 1

    db.commit()
    return sent


# ── Periodic Tasks ─────────────────────────────────────────────────────────────

@celery_app.task
def release_expired_reservations():
    """Beat task: runs every 5 minutes."""
    db = _get_sync_session()
    try:
        released = _release_expired_reservations(db, datetime.now(timezone.utc))
        logger.info(f"Released {released} expired reservations")
    except Exception as e:
        db.rollback()
        logger.exception(f"release_expired_reservations failed: {e}")
        raise
    finally:
        db.close()


@celery_app.task
def send_lesson_reminders():
    """Beat task: runs every hour."""
    db = _get_sync_session()
    try:
        sent = _send_lesson_reminders(db, datetime.now(timezone.utc))
        logger.info(f"Sent {sent} lesson reminders")
    except Exception as e:
        db.rollback()
        logger.exception(f"send_lesson_reminders failed: {e}")
        raise
    finally:
        db.close()
