"""
services/notification/service.py
In-app notification records. Push/SMS/email delivery is not part of
this service; every notification is a stored row the user polls.
"""

import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationType

# ── Notification Templates ────────────────────────────────────

TEMPLATES = {
    NotificationType.BOOKING_CREATED: {
        "title": "New Booking Request",
        "body": "{student_name} booked a {package_type} package starting {start_date}.",
    },
    NotificationType.BOOKING_CONFIRMED: {
        "title": "Booking Confirmed",
        "body": "Your booking with {ustaadh_name} starting {start_date} has been confirmed.",
    },
    NotificationType.BOOKING_CANCELLED: {
        "title": "Booking Cancelled",
        "body": "The booking starting {start_date} was cancelled. Reason: {reason}",
    },
    NotificationType.BOOKING_COMPLETED: {
        "title": "Subscription Completed",
        "body": "Your subscription starting {start_date} is complete. Barakallahu feek!",
    },
    NotificationType.LESSON_REMINDER: {
        "title": "Upcoming Lesson",
        "body": "You have a lesson on {date} at {start_time}.",
    },
    NotificationType.ACCOUNT_APPROVED: {
        "title": "Account Approved",
        "body": "Your ustaadh profile has been approved. Students can now book you.",
    },
    NotificationType.ACCOUNT_SUSPENDED: {
        "title": "Account Suspended",
        "body": "Your account has been suspended. Reason: {reason}",
    },
    NotificationType.ACHIEVEMENT_EARNED: {
        "title": "Achievement Unlocked",
        "body": "You earned: {title}",
    },
}


def render(notification_type: NotificationType, template_vars: Optional[dict] = None) -> tuple[str, str]:
    template = TEMPLATES[notification_type]
    vars_ = template_vars or {}
    return template["title"].format(**vars_), template["body"].format(**vars_)


def dispatch_notification(
    db: AsyncSession,
    user_id: uuid.UUID,
    notification_type: NotificationType,
    template_vars: Optional[dict] = None,
    booking_id: Optional[uuid.UUID] = None,
    data: Optional[dict] = None,
) -> Notification:
    """Stage an in-app notification on the caller's session; committed with the caller's work."""
    title, body = render(notification_type, template_vars)
    notification = Notification(
        user_id=user_id,
        booking_id=booking_id,
        type=notification_type,
        title=title,
        body=body,
        data=data,
    )
    db.add(notification)
    return notification
