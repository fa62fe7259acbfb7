"""
services/achievement/router.py
Student achievements: own listing plus admin awards and removal.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.achievement import service
from services.admin.audit import log_admin_action
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import User
from shared.schemas.schemas import (
    AchievementCreateRequest,
    AchievementResponse,
    MessageResponse,
)

router = APIRouter(prefix="/achievements", tags=["Achievements"])


@router.get("/my-achievements", response_model=List[AchievementResponse])
async def get_my_achievements(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Caller's achievements, most recent first."""
    achievements = await service.list_user_achievements(db, current_user.id)
    return [AchievementResponse.from_model(a) for a in achievements]


@router.post("", response_model=AchievementResponse)
async def award_achievement(
    data: AchievementCreateRequest,
    request: Request,
    response: Response,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Award an achievement. Awarding the same (user, type, title) twice returns the existing one."""
    if not await db.get(User, data.user_id):
        raise HTTPException(status_code=404, detail="User not found")

    achievement, created = await service.create_achievement(
        db, data.user_id, data.type, data.title, data.description, data.metadata
    )
    if created:
        await log_admin_action(
            db, current_user, "AWARD_ACHIEVEMENT", "Achievement", str(achievement.id),
            {"user_id": str(data.user_id), "type": str(data.type), "title": data.title},
            request,
        )
        response.status_code = status.HTTP_201_CREATED
    await db.commit()
    return AchievementResponse.from_model(achievement)


@router.delete("/{achievement_id}", response_model=MessageResponse)
async def delete_achievement(
    achievement_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    await service.delete_achievement(db, achievement_id)
    await log_admin_action(db, current_user, "DELETE_ACHIEVEMENT", "Achievement", str(achievement_id), request=request)
    await db.commit()
    return MessageResponse(message="Achievement deleted")
