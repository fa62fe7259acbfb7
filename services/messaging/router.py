"""
services/messaging/router.py
Direct messages between users. Persistence only; clients poll.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, Message, User
from shared.schemas.schemas import (
    ConversationSummary,
    DirectMessageCreate,
    DirectMessageResponse,
    UnreadCountResponse,
)

router = APIRouter(prefix="/messages", tags=["Messages"])


@router.post("", response_model=DirectMessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message(
    data: DirectMessageCreate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if data.receiver_id == current_user.id:
        raise HTTPException(status_code=400, detail="You cannot message yourself")
    if not await db.get(User, data.receiver_id):
        raise HTTPException(status_code=404, detail="Recipient not found")

    if data.booking_id:
        booking = await db.get(Booking, data.booking_id)
        if not booking:
            raise HTTPException(status_code=404, detail="Booking not found")
        if {current_user.id, data.receiver_id} != {booking.student_id, booking.ustaadh_id}:
            raise HTTPException(
                status_code=400,
                detail="Messages about a booking must be between its student and ustaadh",
            )

    message = Message(
        sender_id=current_user.id,
        receiver_id=data.receiver_id,
        booking_id=data.booking_id,
        content=data.content.strip(),
    )
    db.add(message)
    await db.commit()
    return message


@router.get("/conversations", response_model=List[ConversationSummary])
async def get_conversations(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """One entry per conversation partner: latest message and unread count, newest first."""
    result = await db.execute(
        select(Message)
        .where(or_(Message.sender_id == current_user.id, Message.receiver_id == current_user.id))
        .order_by(Message.timestamp.desc())
    )
    latest: dict = {}
    for message in result.scalars():
        partner_id = message.receiver_id if message.sender_id == current_user.id else message.sender_id
        latest.setdefault(partner_id, message)

    if not latest:
        return []

    unread_rows = await db.execute(
        select(Message.sender_id, func.count(Message.id))
        .where(Message.receiver_id == current_user.id, Message.is_read.is_(False))
        .group_by(Message.sender_id)
    )
    unread = dict(unread_rows.all())

    partners = await db.execute(select(User.id, User.full_name).where(User.id.in_(list(latest))))
    names = dict(partners.all())

    return [
        ConversationSummary(
            partner_id=partner_id,
            partner_name=names.get(partner_id),
            last_message=DirectMessageResponse.model_validate(message),
            unread_count=unread.get(partner_id, 0),
        )
        for partner_id, message in latest.items()
    ]


@router.get("/conversation/{partner_id}", response_model=List[DirectMessageResponse])
async def get_conversation(
    partner_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Messages exchanged with one partner, oldest first."""
    result = await db.execute(
        select(Message)
        .where(
            or_(
                and_(Message.sender_id == current_user.id, Message.receiver_id == partner_id),
                and_(Message.sender_id == partner_id, Message.receiver_id == current_user.id),
            )
        )
        .order_by(Message.timestamp.asc())
    )
    return list(result.scalars().all())


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    count = await db.scalar(
        select(func.count(Message.id)).where(
            Message.receiver_id == current_user.id,
            Message.is_read.is_(False),
        )
    )
    return UnreadCountResponse(count=count or 0)


@router.patch("/{message_id}/read", response_model=DirectMessageResponse)
async def mark_as_read(
    message_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    message = await db.get(Message, message_id)
    if not message:
        raise HTTPException(status_code=404, detail="Message not found")
    if message.receiver_id != current_user.id:
        raise HTTPException(status_code=403, detail="Only the recipient can mark a message as read")
    message.is_read = True
    await db.commit()
    return message
