"""Notification inbox routes."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker.api.deps import current_user_id, get_database
from resale_tracker.db.models import Notification
from resale_tracker.utils.clock import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


class NotificationResponse(BaseModel):
    id: int
    price_alert_id: int | None
    type: str
    title: str
    message: str
    data: dict | None
    read: bool
    read_at: datetime | None
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationListResponse(BaseModel):
    notifications: List[NotificationResponse]
    unread_count: int
    total: int
    limit: int
    offset: int
    has_more: bool


class MarkReadRequest(BaseModel):
    notification_ids: List[int] | None = None
    mark_all_as_read: bool = False


class MarkReadResponse(BaseModel):
    success: bool
    updated: int
    unread_count: int


class DeleteResponse(BaseModel):
    success: bool
    deleted: int


async def _unread_count(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(
        select(func.count(Notification.id)).where(
            Notification.user_id == user_id, Notification.read.is_(False)
        )
    )
    return result.scalar_one()


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread: bool = Query(False),
    notification_type: Optional[str] = Query(None, alias="type"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """List the caller's notifications, newest first."""
    filters = [Notification.user_id == user_id]
    if unread:
        filters.append(Notification.read.is_(False))
    if notification_type:
        filters.append(Notification.type == notification_type)

    total = (await db.execute(select(func.count(Notification.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(Notification)
        .where(*filters)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .limit(limit)
        .offset(offset)
    )

    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in result.scalars().all()],
        unread_count=await _unread_count(db, user_id),
        total=total,
        limit=limit,
        offset=offset,
        has_more=offset + limit < total,
    )


@router.put("", response_model=MarkReadResponse)
async def mark_notifications_read(
    request: MarkReadRequest,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """Mark the given notifications, or all of them, as read."""
    stmt = (
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True, read_at=utcnow())
    )
    if not request.mark_all_as_read:
        if not request.notification_ids:
            raise HTTPException(
                status_code=400, detail="Provide notification_ids or mark_all_as_read"
            )
        stmt = stmt.where(Notification.id.in_(request.notification_ids))

    result = await db.execute(stmt)
    await db.commit()

    return MarkReadResponse(
        success=True,
        updated=result.rowcount,
        unread_count=await _unread_count(db, user_id),
    )


@router.delete("", response_model=DeleteResponse)
async def delete_notifications(
    notification_id: Optional[int] = Query(None, alias="id"),
    all_read: bool = Query(False, alias="all"),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_database),
):
    """Delete one notification, or every read notification with all=true."""
    if notification_id is not None:
        notification = await db.get(Notification, notification_id)
        if notification is None or notification.user_id != user_id:
            raise HTTPException(status_code=404, detail="Notification not found")
        await db.delete(notification)
        await db.commit()
        return DeleteResponse(success=True, deleted=1)

    if not all_read:
        raise HTTPException(status_code=400, detail="Provide id or all=true")

    result = await db.execute(
        delete(Notification).where(
            Notification.user_id == user_id, Notification.read.is_(True)
        )
    )
    await db.commit()
    logger.info(f"Deleted {result.rowcount} read notifications for user {user_id}")
    return DeleteResponse(success=True, deleted=result.rowcount)
