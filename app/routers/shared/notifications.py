from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import User
from app.db.session import get_async_session
from app.middlewares.auth_middleware import (
    AuthState,
    get_current_user,
    require_administrator,
)
from app.schemas.notification_schemas import (
    NotificationCreate,
    NotificationItem,
    NotificationListResponse,
)
from app.services.notifications import NotificationService
from app.utils.errors import NotFoundError
from app.utils.logging import get_logger
from app.utils.responses import ResponseBuilder

notifications_router = APIRouter()
logger = get_logger()


@notifications_router.get("")
async def get_notifications(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
    limit: int = Query(
        default=50,
        ge=1,
        le=100,
        description="Maximum number of notifications to return",
    ),
    offset: int = Query(default=0, ge=0, description="Offset for pagination"),
    unread_only: bool = Query(default=False, alias="unreadOnly"),
):
    """Notifications of the current user, newest first."""
    service = NotificationService(db)
    notifications, total = await service.get_user_notifications(
        user_id=current_user.user_id,
        limit=limit,
        offset=offset,
        unread_only=unread_only,
    )
    unread_count = await service.get_unread_count(current_user.user_id)

    response = NotificationListResponse(
        notifications=[NotificationItem.from_model(n) for n in notifications],
        unread_count=unread_count,
    )
    return ResponseBuilder.paginated(
        request=request,
        data=response.model_dump(by_alias=True),
        limit=limit,
        offset=offset,
        total=total,
        returned=len(notifications),
        message=f"Retrieved {len(notifications)} notifications",
    )


@notifications_router.patch("/read-all")
async def mark_all_notifications_as_read(
    request: Request,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
):
    service = NotificationService(db)
    updated_count = await service.mark_all_as_read(current_user.user_id)

    return ResponseBuilder.success(
        request=request,
        data={"allAsReadCount": updated_count},
        message=f"Marked {updated_count} notifications as read",
    )


@notifications_router.patch("/{notification_id}/read")
async def mark_notification_as_read(
    request: Request,
    notification_id: str,
    current_user: Annotated[AuthState, Depends(get_current_user)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
):
    """
    Mark a specific notification as read.

    Responds 404 when the notification does not exist or belongs to someone else.
    """
    service = NotificationService(db)
    await service.mark_read(notification_id, current_user.user_id)
    unread_count = await service.get_unread_count(current_user.user_id)

    return ResponseBuilder.success(
        request=request,
        data={"unreadCount": unread_count},
        message="Notification marked as read",
    )


@notifications_router.post("")
async def create_notification(
    request: Request,
    body: NotificationCreate,
    current_user: Annotated[AuthState, Depends(require_administrator)],
    db: Annotated[AsyncSession, Depends(get_async_session)],
):
    """Ad-hoc notification from an administrator; delivered by the next flush."""
    if not await db.get(User, body.user_id):
        raise NotFoundError("Recipient not found", "USER_NOT_FOUND")

    service = NotificationService(db)
    notification = await service.create_notification(body)
    await db.commit()

    logger.info(
        f"Administrator {current_user.user_id} created notification {notification.id}"
    )
    return ResponseBuilder.success(
        request=request,
        data=NotificationItem.from_model(notification).model_dump(by_alias=True),
        message="Notification created",
        status_code=status.HTTP_201_CREATED,
    )
