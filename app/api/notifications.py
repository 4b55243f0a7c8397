import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.security import get_current_user
from app.db.session import get_db
from app.schemas.auth import CurrentUser
from app.schemas.notifications import NotificationListResponse, NotificationResponse, ReadAllResponse
from app.services import notifications

router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    unread_only: bool = False,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    items = await notifications.list_notifications(db, current_user.user_id, unread_only=unread_only)
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in items],
        unread=sum(1 for n in items if not n.read),
    )


@router.put("/read-all", response_model=ReadAllResponse)
async def mark_all_read(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await notifications.mark_all_as_read(db, current_user.user_id)
    return ReadAllResponse(updated=updated)


@router.put("/{notification_id}/read", status_code=204)
async def mark_read(
    notification_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await notifications.mark_as_read(db, notification_id, current_user.user_id)
