"""
services/admin/router.py
Admin-only endpoints: ustaadh approval, user moderation,
platform analytics, and immutable audit log.

ALL mutations are logged to AdminAuditLog before returning.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.admin.audit import log_admin_action
from services.notification.service import dispatch_notification
from shared.middleware.auth import require_admin
from shared.models.models import (
    AdminAuditLog,
    Booking,
    BookingStatus,
    NotificationType,
    PaymentStatus,
    User,
    UserRole,
    UserStatus,
)
from shared.schemas.schemas import (
    AdminAnalyticsResponse,
    AdminAuditLogListResponse,
    AdminAuditLogResponse,
    AdminSuspendRequest,
    MessageResponse,
    UserResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"])


async def _get_user_or_404(db: AsyncSession, user_id: UUID) -> User:
    result = await db.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


# ── Ustaadh Approval Queue ────────────────────────────────────

@router.get("/ustaadhs/pending")
async def get_pending_ustaadhs(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50, alias="pageSize"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Ustaadhs awaiting approval, oldest first (FIFO queue)."""
    query = (
        select(User)
        .where(User.role == UserRole.USTAADH, User.is_approved.is_(False))
        .order_by(User.created_at.asc())
    )
    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))

    return {
        "items": [
            UserResponse.model_validate(u).model_dump(mode="json", by_alias=True)
            for u in result.scalars()
        ],
        "total": total,
        "page": page,
        "pageSize": page_size,
        "totalPages": -(-total // page_size),  # ceiling division
    }


@router.post("/ustaadhs/{user_id}/approve", response_model=MessageResponse)
async def approve_ustaadh(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Approve an ustaadh so students can see and book them."""
    user = await _get_user_or_404(db, user_id)
    if user.role != UserRole.USTAADH:
        raise HTTPException(status_code=400, detail="User is not an ustaadh")
    if user.is_approved:
        raise HTTPException(status_code=409, detail="Ustaadh is already approved")

    user.is_approved = True
    dispatch_notification(db, user.id, NotificationType.ACCOUNT_APPROVED)
    await log_admin_action(db, current_user, "APPROVE_USTAADH", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="Ustaadh approved")


# ── User Moderation ───────────────────────────────────────────

@router.post("/users/{user_id}/suspend", response_model=MessageResponse)
async def suspend_user(
    user_id: UUID,
    data: AdminSuspendRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Suspend a user account. Admins cannot be suspended."""
    user = await _get_user_or_404(db, user_id)
    if user.role == UserRole.ADMIN:
        raise HTTPException(status_code=403, detail="Cannot suspend admin users")
    if user.status == UserStatus.SUSPENDED:
        raise HTTPException(status_code=409, detail="User is already suspended")

    user.status = UserStatus.SUSPENDED
    user.suspension_reason = data.reason
    dispatch_notification(
        db, user.id, NotificationType.ACCOUNT_SUSPENDED, {"reason": data.reason}
    )
    await log_admin_action(db, current_user, "SUSPEND_USER", "User", str(user_id),
                           {"reason": data.reason}, request)
    await db.commit()
    return MessageResponse(message="User suspended")


@router.post("/users/{user_id}/reactivate", response_model=MessageResponse)
async def reactivate_user(
    user_id: UUID,
    request: Request,
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Re-activate a suspended or inactive user account."""
    user = await _get_user_or_404(db, user_id)
    if user.status == UserStatus.ACTIVE:
        raise HTTPException(status_code=400, detail="User is already active")

    user.status = UserStatus.ACTIVE
    user.suspension_reason = None
    await log_admin_action(db, current_user, "REACTIVATE_USER", "User", str(user_id), {}, request)
    await db.commit()
    return MessageResponse(message="User reactivated")


# ── Analytics ─────────────────────────────────────────────────

@router.get("/analytics", response_model=AdminAnalyticsResponse)
async def get_analytics(
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Platform-wide metrics dashboard."""
    today_start = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)

    role_counts = dict(
        (await db.execute(select(User.role, func.count(User.id)).group_by(User.role))).all()
    )
    approved_ustaadhs = await db.scalar(
        select(func.count(User.id)).where(
            User.role == UserRole.USTAADH, User.is_approved.is_(True)
        )
    )
    suspended_users = await db.scalar(
        select(func.count(User.id)).where(User.status == UserStatus.SUSPENDED)
    )
    total_bookings = await db.scalar(select(func.count(Booking.id)))
    active_bookings = await db.scalar(
        select(func.count(Booking.id)).where(
            Booking.status.in_([BookingStatus.PENDING, BookingStatus.CONFIRMED])
        )
    )
    bookings_today = await db.scalar(
        select(func.count(Booking.id)).where(Booking.created_at >= today_start)
    )
    total_revenue = await db.scalar(
        select(func.sum(Booking.total_amount)).where(Booking.payment_status == PaymentStatus.PAID)
    )
    platform_revenue = await db.scalar(
        select(func.sum(Booking.platform_fee)).where(Booking.payment_status == PaymentStatus.PAID)
    )

    total_ustaadhs = role_counts.get(UserRole.USTAADH, 0)
    return AdminAnalyticsResponse(
        total_users=sum(role_counts.values()),
        total_students=role_counts.get(UserRole.STUDENT, 0),
        total_ustaadhs=total_ustaadhs,
        approved_ustaadhs=approved_ustaadhs or 0,
        pending_approval=total_ustaadhs - (approved_ustaadhs or 0),
        suspended_users=suspended_users or 0,
        total_bookings=total_bookings or 0,
        active_bookings=active_bookings or 0,
        bookings_today=bookings_today or 0,
        total_revenue=Decimal(str(total_revenue or 0)),
        platform_revenue=Decimal(str(platform_revenue or 0)),
    )


# ── Audit Log ─────────────────────────────────────────────────

@router.get("/audit-logs", response_model=AdminAuditLogListResponse)
async def get_audit_logs(
    action: Optional[str] = Query(None, description="Filter by action type e.g. APPROVE_USTAADH"),
    entity_type: Optional[str] = Query(None, alias="entityType"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=100, alias="pageSize"),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Immutable admin audit log, newest first."""
    query = select(AdminAuditLog)
    if action:
        query = query.where(AdminAuditLog.action == action.upper())
    if entity_type:
        query = query.where(AdminAuditLog.entity_type == entity_type)

    total = await db.scalar(select(func.count()).select_from(query.subquery()))
    result = await db.execute(
        query.order_by(AdminAuditLog.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return AdminAuditLogListResponse(
        items=[AdminAuditLogResponse.model_validate(log) for log in result.scalars()],
        total=total or 0,
        page=page,
        page_size=page_size,
    )
