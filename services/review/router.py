"""
services/review/router.py
Ratings and reviews of ustaadhs by their students.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.achievement.service import award_for_review
from services.booking.service import get_booking_or_404
from shared.middleware.auth import get_current_user
from shared.models.models import BookingStatus, Review, User
from shared.schemas.schemas import ReviewCreateRequest, ReviewResponse, ReviewStatsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["Reviews"])


async def _refresh_rating(db: AsyncSession, ustaadh_id: UUID) -> None:
    avg, count = (await db.execute(
        select(func.avg(Review.rating), func.count(Review.id))
        .where(Review.ustaadh_id == ustaadh_id)
    )).one()
    await db.execute(
        update(User)
        .where(User.id == ustaadh_id)
        .values(rating=round(float(avg or 0), 2), review_count=count)
    )


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Review the ustaadh of a completed booking.
    - Only the booking's student can review it
    - One review per student per booking
    - The ustaadh's rating and review count are recomputed from all reviews
    - The student's first review earns the reviewer badge
    """
    booking = await get_booking_or_404(db, data.booking_id)
    if booking.student_id != current_user.id:
        raise HTTPException(status_code=403, detail="You can only review your own bookings")
    if BookingStatus(booking.status) != BookingStatus.COMPLETED:
        raise HTTPException(status_code=400, detail="Booking must be completed before reviewing")

    duplicate = HTTPException(
        status_code=400, detail="You have already reviewed this ustaadh for this booking"
    )
    existing = await db.scalar(
        select(Review.id).where(
            Review.student_id == current_user.id, Review.booking_id == booking.id
        )
    )
    if existing:
        raise duplicate

    review = Review(
        booking_id=booking.id,
        student_id=current_user.id,
        ustaadh_id=booking.ustaadh_id,
        rating=data.rating,
        comment=data.comment,
    )
    try:
        async with db.begin_nested():
            db.add(review)
    except IntegrityError:
        raise duplicate

    await _refresh_rating(db, booking.ustaadh_id)
    await award_for_review(db, current_user.id, booking.ustaadh_id)
    await db.commit()
    review = (await db.execute(
        select(Review).where(Review.id == review.id).execution_options(populate_existing=True)
    )).scalar_one()

    logger.info(f"Review {review.id} ({data.rating}/5) by {current_user.id} for ustaadh {booking.ustaadh_id}")
    return ReviewResponse.from_model(review)


@router.get("/my-reviews", response_model=List[ReviewResponse])
async def get_my_reviews(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Review)
        .where(Review.student_id == current_user.id)
        .order_by(Review.created_at.desc())
    )
    return [ReviewResponse.from_model(r) for r in result.scalars()]


@router.get("/ustaadh/{ustaadh_id}", response_model=List[ReviewResponse])
async def get_ustaadh_reviews(
    ustaadh_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: an ustaadh's reviews, newest first."""
    result = await db.execute(
        select(Review)
        .where(Review.ustaadh_id == ustaadh_id)
        .order_by(Review.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [ReviewResponse.from_model(r) for r in result.scalars()]


@router.get("/ustaadh/{ustaadh_id}/stats", response_model=ReviewStatsResponse)
async def get_review_stats(ustaadh_id: UUID, db: AsyncSession = Depends(get_db)):
    rows = (await db.execute(
        select(Review.rating, func.count(Review.id))
        .where(Review.ustaadh_id == ustaadh_id)
        .group_by(Review.rating)
    )).all()

    distribution = {stars: 0 for stars in range(1, 6)}
    for stars, count in rows:
        distribution[stars] = count
    total = sum(distribution.values())
    average = sum(stars * count for stars, count in distribution.items()) / total if total else 0

    return ReviewStatsResponse(
        average_rating=round(average, 1),
        total_reviews=total,
        rating_distribution=distribution,
    )
