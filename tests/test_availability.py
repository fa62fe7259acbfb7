"""
tests/test_availability.py
Tests for weekly templates, date-specific free windows and reservation holds.
"""

import asyncio
import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Reservation, User
from tests.conftest import (
    FakeRedis,
    auth_headers,
    booking_payload,
    next_weekday,
    set_template,
)

MONDAY_MORNING = [{"dayOfWeek": 1, "startTime": "09:00", "endTime": "12:00"}]


# ── Weekly Template ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_set_and_get_template(client: AsyncClient, ustaadh: User):
    slots = [
        {"dayOfWeek": 3, "startTime": "14:00", "endTime": "16:00"},
        {"dayOfWeek": 1, "startTime": "9:00", "endTime": "12:00"},
        {"dayOfWeek": 1, "startTime": "12:00", "endTime": "13:00", "isAvailable": False},
    ]
    response = await set_template(client, ustaadh, slots)
    assert response.status_code == 200

    response = await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    assert response.status_code == 200
    data = response.json()
    assert [(s["dayOfWeek"], s["startTime"], s["endTime"]) for s in data] == [
        (1, "09:00", "12:00"),
        (1, "12:00", "13:00"),
        (3, "14:00", "16:00"),
    ]
    assert data[1]["isAvailable"] is False


@pytest.mark.asyncio
async def test_save_replaces_whole_template(client: AsyncClient, ustaadh: User):
    await set_template(client, ustaadh, MONDAY_MORNING)
    # Populate the cache, then replace
    await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    await set_template(client, ustaadh, [{"dayOfWeek": 5, "startTime": "18:00", "endTime": "20:00"}])

    response = await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    data = response.json()
    assert len(data) == 1
    assert data[0]["dayOfWeek"] == 5


@pytest.mark.asyncio
async def test_start_not_before_end_rejected(client: AsyncClient, ustaadh: User):
    await set_template(client, ustaadh, MONDAY_MORNING)

    response = await set_template(
        client, ustaadh, [{"dayOfWeek": 2, "startTime": "10:00", "endTime": "10:00"}]
    )
    assert response.status_code == 400
    assert "must be before" in response.json()["detail"]

    # Prior template is untouched
    response = await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    assert [(s["dayOfWeek"], s["startTime"]) for s in response.json()] == [(1, "09:00")]


@pytest.mark.asyncio
async def test_overlap_rejects_whole_batch(client: AsyncClient, ustaadh: User):
    await set_template(client, ustaadh, MONDAY_MORNING)

    response = await set_template(client, ustaadh, [
        {"dayOfWeek": 2, "startTime": "08:00", "endTime": "09:00"},
        {"dayOfWeek": 1, "startTime": "09:00", "endTime": "10:00"},
        {"dayOfWeek": 1, "startTime": "09:30", "endTime": "11:00"},
    ])
    assert response.status_code == 400
    assert response.json()["detail"] == (
        "Overlapping availability on Monday: 09:00-10:00 overlaps 09:30-11:00"
    )

    response = await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    assert len(response.json()) == 1


@pytest.mark.asyncio
async def test_touching_slots_allowed(client: AsyncClient, ustaadh: User):
    response = await set_template(client, ustaadh, [
        {"dayOfWeek": 1, "startTime": "09:00", "endTime": "10:00"},
        {"dayOfWeek": 1, "startTime": "10:00", "endTime": "11:00"},
    ])
    assert response.status_code == 200
    assert len(response.json()) == 2


@pytest.mark.asyncio
async def test_malformed_time_and_day_rejected(client: AsyncClient, ustaadh: User):
    response = await set_template(
        client, ustaadh, [{"dayOfWeek": 1, "startTime": "25:00", "endTime": "26:00"}]
    )
    assert response.status_code == 400

    response = await set_template(
        client, ustaadh, [{"dayOfWeek": 7, "startTime": "09:00", "endTime": "10:00"}]
    )
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_student_cannot_set_availability(client: AsyncClient, student: User):
    response = await client.put(
        "/availability", headers=auth_headers(student), json=MONDAY_MORNING
    )
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unknown_ustaadh_returns_404(client: AsyncClient):
    response = await client.get("/availability", params={"ustaadhId": str(uuid.uuid4())})
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_update_single_slot_revalidated(client: AsyncClient, ustaadh: User):
    response = await set_template(client, ustaadh, [
        {"dayOfWeek": 1, "startTime": "09:00", "endTime": "10:00"},
        {"dayOfWeek": 1, "startTime": "11:00", "endTime": "12:00"},
    ])
    first_id = response.json()[0]["id"]

    response = await client.patch(
        f"/availability/{first_id}",
        headers=auth_headers(ustaadh),
        json={"endTime": "11:30"},
    )
    assert response.status_code == 400
    assert "Overlapping availability on Monday" in response.json()["detail"]

    response = await client.patch(
        f"/availability/{first_id}",
        headers=auth_headers(ustaadh),
        json={"endTime": "11:00"},
    )
    assert response.status_code == 200
    assert response.json()["endTime"] == "11:00"


@pytest.mark.asyncio
async def test_concurrent_slot_updates_cannot_overlap(client: AsyncClient, ustaadh: User):
    response = await set_template(client, ustaadh, [
        {"dayOfWeek": 1, "startTime": "08:00", "endTime": "09:00"},
        {"dayOfWeek": 1, "startTime": "12:00", "endTime": "13:00"},
    ])
    early_id, late_id = (s["id"] for s in response.json())

    first, second = await asyncio.gather(
        client.patch(
            f"/availability/{early_id}",
            headers=auth_headers(ustaadh),
            json={"startTime": "09:00", "endTime": "11:00"},
        ),
        client.patch(
            f"/availability/{late_id}",
            headers=auth_headers(ustaadh),
            json={"startTime": "10:00", "endTime": "12:00"},
        ),
    )
    codes = sorted([first.status_code, second.status_code])
    assert codes[0] == 200
    assert codes[1] in (400, 409)

    response = await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    windows = [(s["startTime"], s["endTime"]) for s in response.json()]
    assert len(windows) == 2
    (_, first_end), (second_start, _) = windows
    assert first_end <= second_start


@pytest.mark.asyncio
async def test_delete_single_slot(client: AsyncClient, ustaadh: User):
    response = await set_template(client, ustaadh, MONDAY_MORNING)
    slot_id = response.json()[0]["id"]

    response = await client.delete(f"/availability/{slot_id}", headers=auth_headers(ustaadh))
    assert response.status_code == 200

    response = await client.get("/availability", params={"ustaadhId": str(ustaadh.id)})
    assert response.json() == []


@pytest.mark.asyncio
async def test_schedule_lock_contention_returns_409(
    client: AsyncClient, ustaadh: User, redis: FakeRedis
):
    await redis.set(f"lock:ustaadh:{ustaadh.id}", "someone-else", ex=30)
    response = await set_template(client, ustaadh, MONDAY_MORNING)
    assert response.status_code == 409


# ── Free Windows ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_free_windows_for_date(client: AsyncClient, ustaadh: User):
    await set_template(client, ustaadh, [
        {"dayOfWeek": 1, "startTime": "14:00", "endTime": "15:00"},
        {"dayOfWeek": 1, "startTime": "09:00", "endTime": "12:00"},
        {"dayOfWeek": 1, "startTime": "16:00", "endTime": "17:00", "isAvailable": False},
        {"dayOfWeek": 2, "startTime": "09:00", "endTime": "12:00"},
    ])
    monday = next_weekday(1)
    response = await client.get(
        "/availability/slots",
        params={"ustaadhId": str(ustaadh.id), "date": monday.isoformat()},
    )
    assert response.status_code == 200
    assert response.json() == [
        {"startTime": "09:00", "endTime": "12:00"},
        {"startTime": "14:00", "endTime": "15:00"},
    ]


@pytest.mark.asyncio
async def test_monday_booking_splits_free_window(
    client: AsyncClient, ustaadh: User, student: User, other_student: User
):
    """Booking 10:00-11:00 leaves 09:00-10:00 and 11:00-12:00; 10:30-11:30 is then rejected."""
    await set_template(client, ustaadh, MONDAY_MORNING)
    monday = next_weekday(1)

    response = await client.post(
        "/bookings",
        headers=auth_headers(student),
        json=booking_payload(ustaadh, [(monday, "10:00", "11:00")]),
    )
    assert response.status_code == 201

    params = {"ustaadhId": str(ustaadh.id), "date": monday.isoformat()}
    response = await client.get("/availability/slots", params=params)
    assert response.json() == [
        {"startTime": "09:00", "endTime": "10:00"},
        {"startTime": "11:00", "endTime": "12:00"},
    ]

    response = await client.get(
        "/availability/check", params={**params, "startTime": "10:30", "endTime": "11:30"}
    )
    assert response.json() == {"available": False}

    response = await client.get(
        "/availability/check", params={**params, "startTime": "11:00", "endTime": "12:00"}
    )
    assert response.json() == {"available": True}

    response = await client.post(
        "/bookings",
        headers=auth_headers(other_student),
        json=booking_payload(ustaadh, [(monday, "10:30", "11:30")]),
    )
    assert response.status_code == 400
    assert "is not available" in response.json()["detail"]


@pytest.mark.asyncio
async def test_check_rejects_malformed_window(client: AsyncClient, ustaadh: User):
    await set_template(client, ustaadh, MONDAY_MORNING)
    params = {
        "ustaadhId": str(ustaadh.id),
        "date": next_weekday(1).isoformat(),
        "startTime": "11:00",
        "endTime": "10:00",
    }
    response = await client.get("/availability/check", params=params)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_check_outside_template_is_unavailable(client: AsyncClient, ustaadh: User):
    await set_template(client, ustaadh, MONDAY_MORNING)
    params = {
        "ustaadhId": str(ustaadh.id),
        "date": next_weekday(2).isoformat(),
        "startTime": "09:00",
        "endTime": "10:00",
    }
    response = await client.get("/availability/check", params=params)
    assert response.json() == {"available": False}


@pytest.mark.asyncio
async def test_booked_slots_lists_lessons_and_holds(
    client: AsyncClient, ustaadh: User, student: User, other_student: User
):
    await set_template(client, ustaadh, MONDAY_MORNING)
    monday = next_weekday(1)
    await client.post(
        "/bookings",
        headers=auth_headers(student),
        json=booking_payload(ustaadh, [(monday, "09:00", "10:00")]),
    )
    await client.post(
        "/availability/reservations",
        headers=auth_headers(other_student),
        json={
            "ustaadhId": str(ustaadh.id),
            "date": monday.isoformat(),
            "startTime": "11:00",
            "endTime": "12:00",
        },
    )

    response = await client.get(
        "/availability/booked",
        params={"ustaadhId": str(ustaadh.id), "date": monday.isoformat()},
    )
    data = response.json()
    assert [(w["startTime"], w["reserved"]) for w in data] == [("09:00", False), ("11:00", True)]
    assert data[0]["bookingId"] is not None


# ── Reservation Holds ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hold_blocks_other_students_only(
    client: AsyncClient,
    db: AsyncSession,
    ustaadh: User,
    student: User,
    other_student: User,
):
    await set_template(client, ustaadh, MONDAY_MORNING)
    monday = next_weekday(1)
    hold = {
        "ustaadhId": str(ustaadh.id),
        "date": monday.isoformat(),
        "startTime": "10:00",
        "endTime": "11:00",
    }

    response = await client.post(
        "/availability/reservations", headers=auth_headers(student), json=hold
    )
    assert response.status_code == 201
    reservation_id = response.json()["id"]

    # Another student cannot hold or book the same window
    response = await client.post(
        "/availability/reservations", headers=auth_headers(other_student), json=hold
    )
    assert response.status_code == 400
    response = await client.post(
        "/bookings",
        headers=auth_headers(other_student),
        json=booking_payload(ustaadh, [(monday, "10:00", "11:00")]),
    )
    assert response.status_code == 400

    # Renewing one's own hold is allowed
    response = await client.post(
        "/availability/reservations", headers=auth_headers(student), json=hold
    )
    assert response.status_code == 201
    assert response.json()["id"] == reservation_id

    # The holder books and the hold is consumed
    response = await client.post(
        "/bookings",
        headers=auth_headers(student),
        json=booking_payload(ustaadh, [(monday, "10:00", "11:00")]),
    )
    assert response.status_code == 201
    booking_id = response.json()["id"]

    result = await db.execute(
        select(Reservation.booking_id).where(Reservation.id == uuid.UUID(reservation_id))
    )
    assert str(result.scalar_one()) == booking_id


@pytest.mark.asyncio
async def test_release_reservation(
    client: AsyncClient, ustaadh: User, student: User, other_student: User
):
    await set_template(client, ustaadh, MONDAY_MORNING)
    response = await client.post(
        "/availability/reservations",
        headers=auth_headers(student),
        json={
            "ustaadhId": str(ustaadh.id),
            "date": next_weekday(1).isoformat(),
            "startTime": "09:00",
            "endTime": "10:00",
        },
    )
    reservation_id = response.json()["id"]

    response = await client.delete(
        f"/availability/reservations/{reservation_id}", headers=auth_headers(other_student)
    )
    assert response.status_code == 403

    response = await client.delete(
        f"/availability/reservations/{reservation_id}", headers=auth_headers(student)
    )
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_admin_lists_reservations(
    client: AsyncClient, ustaadh: User, student: User, admin_user: User
):
    await set_template(client, ustaadh, MONDAY_MORNING)
    await client.post(
        "/availability/reservations",
        headers=auth_headers(student),
        json={
            "ustaadhId": str(ustaadh.id),
            "date": next_weekday(1).isoformat(),
            "startTime": "09:00",
            "endTime": "10:00",
        },
    )

    response = await client.get("/availability/reservations", headers=auth_headers(student))
    assert response.status_code == 403

    response = await client.get(
        "/availability/reservations",
        headers=auth_headers(admin_user),
        params={"activeOnly": "true"},
    )
    assert response.status_code == 200
    assert len(response.json()) == 1
