import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, desc, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models import Notification, NotificationType, User
from app.schemas.notification_schemas import NotificationCreate
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import NotFoundError
from app.utils.logging import get_logger

from .channels import (
    EMAIL_CHANNEL,
    PUSH_CHANNEL,
    ChannelResult,
    NotificationChannel,
)

logger = get_logger()


@dataclass
class DispatchResult:
    notification_id: str
    channels: List[ChannelResult] = field(default_factory=list)
    sent_at: Optional[datetime] = None
    already_sent: bool = False
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.sent_at is not None

    @property
    def delivered_channels(self) -> List[str]:
        return [result.channel for result in self.channels if result.success]


class NotificationService:
    """
    Persistence and delivery of engine notifications.

    Writes are flushed, not committed: callers own the transaction so that a
    notification and the state change that caused it land together. The
    exceptions are `dispatch` and the user-facing read operations, which are
    complete units of work on their own.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        channels: Optional[Dict[str, NotificationChannel]] = None,
        clock: Callable[[], datetime] = naive_utc_now,
        channel_timeout: float = 10.0,
    ):
        self.db = db_session
        self.channels = channels or {}
        self.clock = clock
        self.channel_timeout = channel_timeout

    async def create_notification(
        self, data: NotificationCreate, dedup_key: Optional[str] = None
    ) -> Notification:
        notification = Notification(
            user_id=data.user_id,
            type=data.type,
            title=data.title,
            message=data.message,
            scheduled_for=data.scheduled_for,
            notification_metadata=data.metadata,
            created_at=self.clock(),
            dedup_key=dedup_key,
        )
        self.db.add(notification)
        await self.db.flush()

        logger.info(
            f"Created {data.type.value} notification {notification.id} for user {data.user_id}"
        )
        return notification

    async def create_unique(
        self, data: NotificationCreate, dedup_key: str
    ) -> Optional[Notification]:
        """
        Create a notification guarded by the unique `dedup_key` index.

        The insert runs in a savepoint, so losing the race to another writer
        only discards this row. Returns None when the key was already issued.
        """
        try:
            async with self.db.begin_nested():
                return await self.create_notification(data, dedup_key=dedup_key)
        except IntegrityError:
            logger.info(
                f"Skipped duplicate {data.type.value} notification for user {data.user_id} ({dedup_key})"
            )
            return None

    async def find_recent(
        self,
        user_id: str,
        notification_type: NotificationType,
        academic_year_id: str,
        since: datetime,
    ) -> Sequence[Notification]:
        """Notifications of one kind for (user, academic year) created at or after `since`, newest first."""
        result = await self.db.execute(
            select(Notification)
            .where(
                and_(
                    Notification.user_id == user_id,
                    Notification.type == notification_type,
                    Notification.notification_metadata["academicYearId"].as_string()
                    == academic_year_id,
                    Notification.created_at >= since,
                )
            )
            .order_by(desc(Notification.created_at))
        )
        return result.scalars().all()

    async def get_pending(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> Sequence[Notification]:
        now = now or self.clock()
        query = (
            select(Notification)
            .where(
                and_(
                    Notification.sent_at.is_(None),
                    or_(
                        Notification.scheduled_for.is_(None),
                        Notification.scheduled_for <= now,
                    ),
                )
            )
            .order_by(Notification.created_at, Notification.id)
        )
        if limit:
            query = query.limit(limit)

        result = await self.db.execute(query)
        return result.scalars().all()

    async def dispatch(self, notification_id: str) -> DispatchResult:
        """
        Deliver a notification on every channel the recipient has enabled.

        Channels are attempted concurrently, each bounded by `channel_timeout`.
        A failing channel is recorded in the result and never prevents the
        others from being attempted or `sent_at` from being set.
        """
        notification = await self.db.get(Notification, notification_id)
        if not notification:
            logger.warning(f"Notification {notification_id} not found for dispatch")
            return DispatchResult(
                notification_id=notification_id, error="notification not found"
            )

        if notification.sent_at is not None:
            return DispatchResult(
                notification_id=notification_id,
                sent_at=notification.sent_at,
                already_sent=True,
            )

        user = await self.db.get(User, notification.user_id)
        if not user:
            logger.error(
                f"Recipient {notification.user_id} of notification {notification_id} does not exist, skipping"
            )
            return DispatchResult(
                notification_id=notification_id, error="recipient not found"
            )

        requested = []
        if user.email_enabled:
            requested.append(EMAIL_CHANNEL)
        if user.push_enabled:
            requested.append(PUSH_CHANNEL)

        results = await asyncio.gather(
            *(self._attempt(name, user, notification) for name in requested)
        )

        sent_at = await self._mark_sent(notification)

        failed = [r.channel for r in results if not r.success and not r.skipped]
        if failed:
            logger.warning(
                f"Notification {notification_id} sent with failed channels: {', '.join(failed)}"
            )
        else:
            logger.info(f"Notification {notification_id} sent to user {user.id}")

        return DispatchResult(
            notification_id=notification_id, channels=list(results), sent_at=sent_at
        )

    async def _attempt(
        self, channel_name: str, user: User, notification: Notification
    ) -> ChannelResult:
        channel = self.channels.get(channel_name)
        if not channel:
            logger.warning(
                f"User {user.id} has {channel_name} enabled but the channel is not configured"
            )
            return ChannelResult.not_configured(channel_name)

        try:
            provider_id = await asyncio.wait_for(
                channel.send(user, notification), timeout=self.channel_timeout
            )
            return ChannelResult(
                channel=channel_name, success=True, provider_id=provider_id
            )
        except asyncio.TimeoutError:
            logger.error(
                f"{channel_name} delivery of notification {notification.id} timed out"
            )
            return ChannelResult(channel=channel_name, success=False, error="timeout")
        except Exception as e:
            logger.opt(exception=e).error(
                f"{channel_name} delivery of notification {notification.id} failed: {e}"
            )
            return ChannelResult(channel=channel_name, success=False, error=str(e))

    async def _mark_sent(self, notification: Notification) -> Optional[datetime]:
        # Conditional write: a concurrent dispatcher that got there first wins
        now = self.clock()
        await self.db.execute(
            update(Notification)
            .where(
                and_(Notification.id == notification.id, Notification.sent_at.is_(None))
            )
            .values(sent_at=now)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self.db.refresh(notification)
        return notification.sent_at

    async def mark_read(self, notification_id: str, user_id: str) -> Notification:
        result = await self.db.execute(
            select(Notification).where(
                and_(Notification.id == notification_id, Notification.user_id == user_id)
            )
        )
        notification = result.scalar_one_or_none()

        if not notification:
            logger.warning(
                f"Notification {notification_id} not found for user {user_id}"
            )
            raise NotFoundError("Notification not found", "NOTIFICATION_NOT_FOUND")

        if not notification.is_read:
            notification.is_read = True
            await self.db.commit()
            logger.info(f"Marked notification {notification_id} as read for user {user_id}")

        return notification

    async def mark_all_as_read(self, user_id: str) -> int:
        result = await self.db.execute(
            update(Notification)
            .where(and_(Notification.user_id == user_id, Notification.is_read.is_(False)))
            .values(is_read=True)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        updated_count = result.rowcount or 0
        logger.info(f"Marked {updated_count} notifications as read for user {user_id}")
        return updated_count

    async def get_user_notifications(
        self,
        user_id: str,
        limit: int = 50,
        offset: int = 0,
        unread_only: bool = False,
    ) -> Tuple[Sequence[Notification], int]:
        conditions = [Notification.user_id == user_id]
        if unread_only:
            conditions.append(Notification.is_read.is_(False))

        total = await self.db.scalar(
            select(func.count(Notification.id)).where(and_(*conditions))
        )
        result = await self.db.execute(
            select(Notification)
            .where(and_(*conditions))
            .order_by(desc(Notification.created_at))
            .limit(limit)
            .offset(offset)
        )
        return result.scalars().all(), total or 0

    async def get_unread_count(self, user_id: str) -> int:
        count = await self.db.scalar(
            select(func.count(Notification.id)).where(
                and_(Notification.user_id == user_id, Notification.is_read.is_(False))
            )
        )
        return count or 0

    async def cleanup_read_notifications(self, older_than: datetime) -> int:
        """Delete read notifications created before `older_than`."""
        result = await self.db.execute(
            delete(Notification)
            .where(
                and_(Notification.is_read.is_(True), Notification.created_at < older_than)
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        deleted_count = result.rowcount or 0
        logger.info(f"Deleted {deleted_count} read notifications older than {older_than}")
        return deleted_count
