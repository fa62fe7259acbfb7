"""
tests/test_reviews.py
Tests for reviews: who may review, one review per booking, rating
aggregation and the reviewer badge.
"""

import uuid

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Review, User
from tests.conftest import auth_headers, booking_payload, next_weekday, set_template


async def _completed_booking(client, student, ustaadh, day=1, start="09:00", end="10:00"):
    await set_template(client, ustaadh, [
        {"dayOfWeek": 1, "startTime": "09:00", "endTime": "12:00"},
        {"dayOfWeek": 3, "startTime": "09:00", "endTime": "12:00"},
    ])
    response = await client.post(
        "/bookings",
        headers=auth_headers(student),
        json=booking_payload(ustaadh, [(next_weekday(day), start, end)]),
    )
    assert response.status_code == 201
    url = f"/bookings/{response.json()['id']}"
    await client.patch(url, headers=auth_headers(ustaadh), json={"status": "confirmed"})
    response = await client.patch(url, headers=auth_headers(ustaadh), json={"status": "completed"})
    assert response.status_code == 200
    return response.json()


async def _review(client, student, booking, rating, comment=None):
    return await client.post(
        "/reviews",
        headers=auth_headers(student),
        json={"bookingId": booking["id"], "rating": rating, "comment": comment},
    )


@pytest.mark.asyncio
async def test_student_reviews_completed_booking(
    client: AsyncClient, student: User, ustaadh: User
):
    booking = await _completed_booking(client, student, ustaadh)

    response = await _review(client, student, booking, 5, "Beautiful tajweed")
    assert response.status_code == 201
    review = response.json()
    assert review["rating"] == 5
    assert review["comment"] == "Beautiful tajweed"
    assert review["ustaadhId"] == str(ustaadh.id)
    assert review["studentName"] == "Yusuf Student"
    assert review["ustaadhName"] == "Ahmed Al-Hafiz"

    me = await client.get("/auth/me", headers=auth_headers(ustaadh))
    assert me.json()["rating"] == 5
    assert me.json()["reviewCount"] == 1

    response = await client.get("/achievements/my-achievements", headers=auth_headers(student))
    titles = [a["title"] for a in response.json()]
    assert "First Review" in titles


@pytest.mark.asyncio
async def test_one_review_per_booking(
    client: AsyncClient, db: AsyncSession, student: User, ustaadh: User
):
    booking = await _completed_booking(client, student, ustaadh)
    assert (await _review(client, student, booking, 4)).status_code == 201

    response = await _review(client, student, booking, 1)
    assert response.status_code == 400
    assert response.json()["detail"] == "You have already reviewed this ustaadh for this booking"

    assert await db.scalar(select(func.count(Review.id))) == 1


@pytest.mark.asyncio
async def test_only_completed_bookings_can_be_reviewed(
    client: AsyncClient, student: User, ustaadh: User
):
    await set_template(client, ustaadh, [{"dayOfWeek": 1, "startTime": "09:00", "endTime": "12:00"}])
    response = await client.post(
        "/bookings",
        headers=auth_headers(student),
        json=booking_payload(ustaadh, [(next_weekday(1), "09:00", "10:00")]),
    )
    booking = response.json()

    response = await _review(client, student, booking, 5)
    assert response.status_code == 400
    assert response.json()["detail"] == "Booking must be completed before reviewing"


@pytest.mark.asyncio
async def test_only_the_bookings_student_can_review(
    client: AsyncClient, student: User, other_student: User, ustaadh: User
):
    booking = await _completed_booking(client, student, ustaadh)

    assert (await _review(client, other_student, booking, 1)).status_code == 403
    assert (await _review(client, ustaadh, booking, 5)).status_code == 403

    response = await client.post(
        "/reviews",
        headers=auth_headers(student),
        json={"bookingId": str(uuid.uuid4()), "rating": 5},
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_rating_out_of_range_rejected(client: AsyncClient, student: User, ustaadh: User):
    booking = await _completed_booking(client, student, ustaadh)
    assert (await _review(client, student, booking, 0)).status_code == 422
    assert (await _review(client, student, booking, 6)).status_code == 422


@pytest.mark.asyncio
async def test_rating_is_recomputed_and_listed(
    client: AsyncClient, student: User, other_student: User, ustaadh: User
):
    first = await _completed_booking(client, student, ustaadh)
    second = await _completed_booking(client, other_student, ustaadh, day=3)
    await _review(client, student, first, 5)
    await _review(client, other_student, second, 2)

    me = await client.get("/auth/me", headers=auth_headers(ustaadh))
    assert me.json()["rating"] == 3.5
    assert me.json()["reviewCount"] == 2

    response = await client.get(f"/reviews/ustaadh/{ustaadh.id}")
    assert response.status_code == 200
    assert sorted(r["rating"] for r in response.json()) == [2, 5]

    response = await client.get(f"/reviews/ustaadh/{ustaadh.id}/stats")
    assert response.json() == {
        "averageRating": 3.5,
        "totalReviews": 2,
        "ratingDistribution": {"1": 0, "2": 1, "3": 0, "4": 0, "5": 1},
    }

    response = await client.get("/reviews/my-reviews", headers=auth_headers(other_student))
    assert [r["rating"] for r in response.json()] == [2]


@pytest.mark.asyncio
async def test_stats_for_unreviewed_ustaadh(client: AsyncClient, ustaadh: User):
    response = await client.get(f"/reviews/ustaadh/{ustaadh.id}/stats")
    assert response.status_code == 200
    assert response.json()["totalReviews"] == 0
    assert response.json()["averageRating"] == 0
