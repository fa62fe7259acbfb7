"""
services/user/router.py
User profile management and the public directory of bookable ustaadhs.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import ensure_owner_or_admin, get_current_user
from shared.models.models import User, UserRole, UserStatus
from shared.schemas.schemas import UserResponse, UserUpdateRequest, UstaadhSummary

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("/me", response_model=UserResponse)
async def get_my_profile(current_user: User = Depends(get_current_user)):
    return current_user


@router.put("/me", response_model=UserResponse)
async def update_my_profile(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    update_data = data.model_dump(exclude_unset=True, exclude_none=True)
    for field, value in update_data.items():
        setattr(current_user, field, value)
    await db.commit()
    return current_user


@router.get("/ustaadhs", response_model=List[UstaadhSummary])
async def list_ustaadhs(
    specialty: Optional[str] = Query(None),
    q: Optional[str] = Query(None, min_length=2, max_length=100),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50, alias="pageSize"),
    db: AsyncSession = Depends(get_db),
):
    """Approved, active ustaadhs ordered by rating."""
    query = select(User).where(
        User.role == UserRole.USTAADH,
        User.is_approved.is_(True),
        User.status == UserStatus.ACTIVE,
    )
    if q:
        pattern = f"%{q}%"
        query = query.where(or_(User.full_name.ilike(pattern), User.bio.ilike(pattern)))
    query = query.order_by(User.rating.desc(), User.full_name)

    result = await db.execute(query)
    ustaadhs = list(result.scalars().all())
    if specialty:
        needle = specialty.lower()
        ustaadhs = [
            u for u in ustaadhs
            if any(needle in s.lower() for s in (u.specialties or []))
        ]
    start = (page - 1) * page_size
    return ustaadhs[start:start + page_size]


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(
    user_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    ensure_owner_or_admin(current_user, user_id)
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user
