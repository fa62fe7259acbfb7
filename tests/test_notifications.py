"""
tests/test_notifications.py
Tests for in-app notifications: listing, unread count, read receipts.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.notification.service import dispatch_notification, render
from shared.models.models import NotificationType, User
from tests.conftest import auth_headers


async def _notify(db: AsyncSession, user: User, notification_type: NotificationType, **template_vars):
    notification = dispatch_notification(db, user.id, notification_type, template_vars)
    await db.commit()
    return notification


def test_render_fills_template():
    title, body = render(NotificationType.ACHIEVEMENT_EARNED, {"title": "Hifz Juz 30"})
    assert title == "Achievement Unlocked"
    assert body == "You earned: Hifz Juz 30"


@pytest.mark.asyncio
async def test_list_notifications(client: AsyncClient, db: AsyncSession, ustaadh: User):
    await _notify(db, ustaadh, NotificationType.ACCOUNT_APPROVED)
    await _notify(db, ustaadh, NotificationType.LESSON_REMINDER, date="2030-01-06", start_time="09:00")

    response = await client.get("/notifications", headers=auth_headers(ustaadh))
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 2
    assert data["pageSize"] == 20
    assert [n["type"] for n in data["items"]] == ["lesson_reminder", "account_approved"]
    assert data["items"][0]["body"] == "You have a lesson on 2030-01-06 at 09:00."
    assert data["items"][0]["isRead"] is False


@pytest.mark.asyncio
async def test_unread_count_and_mark_read(client: AsyncClient, db: AsyncSession, student: User):
    first = await _notify(db, student, NotificationType.ACHIEVEMENT_EARNED, title="First Lesson")
    await _notify(db, student, NotificationType.ACHIEVEMENT_EARNED, title="Second Lesson")

    response = await client.get("/notifications/unread-count", headers=auth_headers(student))
    assert response.json() == {"count": 2}

    response = await client.patch(f"/notifications/{first.id}/read", headers=auth_headers(student))
    assert response.status_code == 200

    response = await client.get("/notifications/unread-count", headers=auth_headers(student))
    assert response.json() == {"count": 1}

    response = await client.get(
        "/notifications", headers=auth_headers(student), params={"unreadOnly": "true"}
    )
    items = response.json()["items"]
    assert len(items) == 1
    assert items[0]["body"] == "You earned: Second Lesson"


@pytest.mark.asyncio
async def test_mark_all_read(client: AsyncClient, db: AsyncSession, student: User):
    for title in ("One", "Two", "Three"):
        await _notify(db, student, NotificationType.ACHIEVEMENT_EARNED, title=title)

    response = await client.post("/notifications/read-all", headers=auth_headers(student))
    assert response.status_code == 200

    response = await client.get("/notifications/unread-count", headers=auth_headers(student))
    assert response.json() == {"count": 0}

    response = await client.get("/notifications", headers=auth_headers(student))
    assert all(n["isRead"] for n in response.json()["items"])


@pytest.mark.asyncio
async def test_cannot_read_other_users_notification(
    client: AsyncClient, db: AsyncSession, student: User, other_student: User
):
    notification = await _notify(db, student, NotificationType.ACHIEVEMENT_EARNED, title="Mine")

    response = await client.patch(
        f"/notifications/{notification.id}/read", headers=auth_headers(other_student)
    )
    assert response.status_code == 404

    response = await client.patch(
        f"/notifications/{uuid.uuid4()}/read", headers=auth_headers(student)
    )
    assert response.status_code == 404

    response = await client.get("/notifications/unread-count", headers=auth_headers(student))
    assert response.json() == {"count": 1}


@pytest.mark.asyncio
async def test_notifications_require_auth(client: AsyncClient):
    response = await client.get("/notifications")
    assert response.status_code == 401
