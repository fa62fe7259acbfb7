"""
services/auth/router.py
Email/password authentication.
Flow: register or login → JWT access token (Bearer) → logout deny-lists the jti.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from shared.middleware.auth import Principal, get_current_user, get_principal
from shared.models.models import User, UserRole, UserStatus
from shared.schemas.schemas import (
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from shared.utils.security import (
    create_access_token,
    get_token_remaining_ttl,
    hash_password,
    verify_password,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _issue_token(user: User) -> TokenResponse:
    access_token, _ = create_access_token(
        user_id=str(user.id),
        role=UserRole(user.role).value,
        email=user.email,
    )
    return TokenResponse(
        access_token=access_token,
        expires_in=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=UserResponse.model_validate(user),
    )


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a student or ustaadh",
)
async def register(data: RegisterRequest, db: AsyncSession = Depends(get_db)):
    """
    Students are active immediately. Ustaadh accounts are created
    unapproved and only become bookable after admin approval.
    """
    email = data.email.lower()
    existing = await db.scalar(select(func.count(User.id)).where(User.email == email))
    if existing:
        raise HTTPException(status_code=400, detail="An account with this email already exists")

    user = User(
        email=email,
        password_hash=hash_password(data.password),
        full_name=data.full_name.strip(),
        role=UserRole(data.role),
        status=UserStatus.ACTIVE,
        is_approved=data.role == UserRole.STUDENT.value,
        phone_number=data.phone_number,
        country=data.country,
        city=data.city,
        bio=data.bio,
        experience=data.experience,
        specialties=data.specialties,
    )
    db.add(user)
    await db.commit()
    logger.info(f"Registered {user.role.value} {user.id}")
    return _issue_token(user)


@router.post("/login", response_model=TokenResponse, summary="Login with email and password")
async def login(data: LoginRequest, db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(User).where(User.email == data.email.lower()))
    user = result.scalar_one_or_none()
    if not user or not verify_password(data.password, user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
        )
    if user.status == UserStatus.SUSPENDED:
        raise HTTPException(status_code=403, detail="Your account has been suspended")
    if user.status != UserStatus.ACTIVE:
        raise HTTPException(status_code=403, detail="User account is inactive")
    return _issue_token(user)


@router.post("/logout", response_model=MessageResponse, summary="Logout user")
async def logout(
    principal: Principal = Depends(get_principal),
    redis=Depends(get_redis),
):
    """Add the current access token's jti to the Redis deny-list until it expires."""
    ttl = get_token_remaining_ttl({"exp": principal.exp})
    if ttl > 0:
        await RedisCache(redis).revoke_token(principal.jti, ttl)
    return MessageResponse(message="Logged out successfully")


@router.get("/me", response_model=UserResponse, summary="Get current user")
async def get_me(current_user: User = Depends(get_current_user)):
    return current_user
