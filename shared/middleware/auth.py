"""
shared/middleware/auth.py
FastAPI dependency functions for authentication and authorization.
The JWT is validated once here and turned into a Principal; routers
receive either the Principal or the loaded User.
"""

import uuid
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.models.models import User, UserRole, UserStatus
from shared.utils.security import verify_access_token

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    id: uuid.UUID
    role: UserRole
    email: str
    jti: str
    exp: int = 0

    @classmethod
    def from_payload(cls, payload: dict) -> "Principal":
        try:
            return cls(
                id=uuid.UUID(payload["sub"]),
                role=UserRole(payload["role"]),
                email=payload["email"],
                jti=payload["jti"],
                exp=int(payload.get("exp", 0)),
            )
        except (KeyError, ValueError) as exc:
            raise JWTError("Malformed token claims") from exc

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


async def get_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    redis=Depends(get_redis),
) -> Principal:
    """
    Extract and validate JWT from Authorization header.
    Checks deny-list in Redis to handle revoked tokens (logout).
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        principal = Principal.from_payload(verify_access_token(credentials.credentials))
    except JWTError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if await RedisCache(redis).is_token_revoked(principal.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    return principal


async def get_current_user(
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Load full User object from database using JWT sub claim."""
    result = await db.execute(select(User).where(User.id == principal.id))
    user = result.scalar_one_or_none()

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    if user.status == UserStatus.SUSPENDED:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Your account has been suspended",
        )
    if user.status != UserStatus.ACTIVE:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive",
        )
    return user


class RoleRequired:
    """Dependency factory for role-based access control."""

    def __init__(self, *roles: UserRole):
        self.roles = roles

    async def __call__(
        self,
        current_user: User = Depends(get_current_user),
    ) -> User:
        if current_user.role not in self.roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Required role: {[r.value for r in self.roles]}",
            )
        return current_user


# Convenience role dependencies
require_student = RoleRequired(UserRole.STUDENT, UserRole.ADMIN)
require_ustaadh = RoleRequired(UserRole.USTAADH)
require_admin = RoleRequired(UserRole.ADMIN)


def ensure_owner_or_admin(user: User, owner_id: uuid.UUID) -> None:
    """Ownership guard: only the owning user or an admin may proceed."""
    if user.role != UserRole.ADMIN and user.id != owner_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to access this resource",
        )
