"""
tests/test_achievements.py
Tests for achievement listing, idempotent awards and automatic badges.
"""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.achievement.service import create_achievement
from shared.models.models import (
    Achievement,
    AchievementType,
    Notification,
    NotificationType,
    User,
)
from tests.conftest import auth_headers, booking_payload, past_weekday, set_template


@pytest.mark.asyncio
async def test_my_achievements_empty(client: AsyncClient, student: User):
    response = await client.get("/achievements/my-achievements", headers=auth_headers(student))
    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_create_achievement_is_idempotent(db: AsyncSession, student: User):
    first, created = await create_achievement(
        db, student.id, AchievementType.STREAK, "7-Day Streak", "Seven days in a row"
    )
    await db.commit()
    assert created is True

    second, created = await create_achievement(
        db, student.id, AchievementType.STREAK, "7-Day Streak", "Seven days in a row"
    )
    await db.commit()
    assert created is False
    assert second.id == first.id

    count = await db.scalar(select(func.count(Achievement.id)).where(Achievement.user_id == student.id))
    assert count == 1
    notified = await db.scalar(
        select(func.count(Notification.id)).where(
            Notification.user_id == student.id,
            Notification.type == NotificationType.ACHIEVEMENT_EARNED,
        )
    )
    assert notified == 1


@pytest.mark.asyncio
async def test_same_title_different_type_is_separate(db: AsyncSession, student: User):
    await create_achievement(db, student.id, AchievementType.STREAK, "Consistency")
    _, created = await create_achievement(db, student.id, AchievementType.LOYALTY, "Consistency")
    await db.commit()
    assert created is True


@pytest.mark.asyncio
async def test_listing_newest_first(client: AsyncClient, db: AsyncSession, student: User):
    await create_achievement(db, student.id, AchievementType.MILESTONE, "First Lesson")
    await db.commit()
    await create_achievement(
        db, student.id, AchievementType.PROGRESS, "Juz Amma", metadata={"juz": 30}
    )
    await db.commit()

    response = await client.get("/achievements/my-achievements", headers=auth_headers(student))
    data = response.json()
    assert [a["title"] for a in data] == ["Juz Amma", "First Lesson"]
    assert data[0]["metadata"] == {"juz": 30}
    assert data[0]["type"] == "progress"


@pytest.mark.asyncio
async def test_admin_awards_achievement(
    client: AsyncClient, admin_user: User, student: User
):
    payload = {
        "userId": str(student.id),
        "type": "milestone",
        "title": "Completed Tajweed Level 1",
    }
    response = await client.post("/achievements", headers=auth_headers(admin_user), json=payload)
    assert response.status_code == 201
    achievement_id = response.json()["id"]

    response = await client.post("/achievements", headers=auth_headers(admin_user), json=payload)
    assert response.status_code == 200
    assert response.json()["id"] == achievement_id

    response = await client.get("/admin/audit-logs", headers=auth_headers(admin_user),
                                params={"action": "award_achievement"})
    assert response.json()["total"] == 1


@pytest.mark.asyncio
async def test_award_requires_admin_and_known_user(
    client: AsyncClient, admin_user: User, student: User
):
    payload = {"userId": str(student.id), "type": "milestone", "title": "Self-awarded"}
    response = await client.post("/achievements", headers=auth_headers(student), json=payload)
    assert response.status_code == 403

    payload["userId"] = str(uuid.uuid4())
    response = await client.post("/achievements", headers=auth_headers(admin_user), json=payload)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_admin_deletes_achievement(
    client: AsyncClient, db: AsyncSession, admin_user: User, student: User
):
    achievement, _ = await create_achievement(db, student.id, AchievementType.STREAK, "Streak")
    await db.commit()

    response = await client.delete(f"/achievements/{achievement.id}", headers=auth_headers(admin_user))
    assert response.status_code == 200

    response = await client.delete(f"/achievements/{achievement.id}", headers=auth_headers(admin_user))
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_tenth_completed_lesson_awards_progress_badge(
    client: AsyncClient, student: User, ustaadh: User
):
    await set_template(client, ustaadh, [
        {"dayOfWeek": day, "startTime": "08:00", "endTime": "10:00"} for day in range(7)
    ])
    first = past_weekday(0, weeks_back=3)
    lessons = [(first + timedelta(days=i), "08:00", "09:00") for i in range(10)]
    response = await client.post(
        "/bookings",
        headers=auth_headers(student),
        json=booking_payload(ustaadh, lessons, daysPerWeek=7),
    )
    assert response.status_code == 201
    booking = response.json()
    url = f"/bookings/{booking['id']}"
    await client.patch(url, headers=auth_headers(ustaadh), json={"status": "confirmed"})

    for slot in booking["schedule"][:9]:
        response = await client.patch(
            url, headers=auth_headers(ustaadh),
            json={"schedule": [{"id": slot["id"], "status": "completed"}]},
        )
        assert response.status_code == 200
    response = await client.get("/achievements/my-achievements", headers=auth_headers(student))
    assert response.json() == []

    await client.patch(
        url, headers=auth_headers(ustaadh),
        json={"schedule": [{"id": booking["schedule"][9]["id"], "status": "completed"}]},
    )
    response = await client.get("/achievements/my-achievements", headers=auth_headers(student))
    assert [a["title"] for a in response.json()] == ["10 Lessons Completed"]
