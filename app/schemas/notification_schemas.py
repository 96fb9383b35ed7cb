from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import Field, field_validator

from app.db.models import Notification, NotificationType
from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from app.utils.datetime_utils import to_naive_utc


class NotificationCreate(BaseModel):
    user_id: str = Field(..., description="Recipient user ID")
    type: NotificationType = Field(..., description="Notification type")
    title: str = Field(..., min_length=1, max_length=500)
    message: str = Field(..., min_length=1)
    scheduled_for: Optional[datetime] = Field(
        None, description="Earliest dispatch time (UTC); immediate when omitted"
    )
    metadata: Optional[Dict[str, Any]] = Field(
        None, description="Structured context, e.g. academicYearId, escalationLevel"
    )

    @field_validator("scheduled_for")
    def strip_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v else v


class NotificationItem(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    scheduled_for: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    sent_at: Optional[datetime] = None
    is_read: bool

    @classmethod
    def from_model(cls, notification: Notification) -> "NotificationItem":
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            type=notification.type,
            title=notification.title,
            message=notification.message,
            scheduled_for=notification.scheduled_for,
            metadata=notification.notification_metadata,
            created_at=notification.created_at,
            sent_at=notification.sent_at,
            is_read=notification.is_read,
        )


class NotificationListResponse(BaseModel):
    notifications: List[NotificationItem]
    unread_count: int = Field(..., description="Unread notifications of the user, any page")
