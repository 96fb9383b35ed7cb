import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import pytest

from app.db.models import Notification, NotificationType, User, UserRole
from app.schemas.notification_schemas import NotificationCreate
from app.services.notifications import NotificationChannel, NotificationService
from app.services.notifications.channels import EMAIL_CHANNEL, PUSH_CHANNEL
from app.utils.errors import ChannelDeliveryError, NotFoundError


class RecordingChannel(NotificationChannel):
    """In-memory channel that records deliveries and can be told to misbehave."""

    def __init__(self, name: str, fail: bool = False, delay: float = 0):
        super().__init__()
        self.name = name
        self.fail = fail
        self.delay = delay
        self.sent = []

    def render(self, notification: Notification) -> Dict[str, Any]:
        return {"title": notification.title}

    async def send(self, user: User, notification: Notification) -> Optional[str]:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise ChannelDeliveryError("provider rejected message", channel=self.name)
        self.sent.append((user.id, notification.id))
        return f"{self.name}-id"


def _payload(user: User, **overrides) -> NotificationCreate:
    data = {
        "user_id": user.id,
        "type": NotificationType.SYSTEM_ALERT,
        "title": "Maintenance window",
        "message": "The portal will be read-only tonight.",
    }
    data.update(overrides)
    return NotificationCreate(**data)


class TestPendingNotifications:
    """Selection of due, unsent notifications."""

    @pytest.mark.asyncio
    async def test_only_due_unsent_in_creation_order(
        self, db_session, clock, make_user
    ):
        user = await make_user(UserRole.SUBMITTER)
        service = NotificationService(db_session, clock=clock)

        immediate = await service.create_notification(_payload(user, title="first"))
        clock.advance(minutes=1)
        past = await service.create_notification(
            _payload(user, title="second", scheduled_for=clock.now - timedelta(hours=1))
        )
        clock.advance(minutes=1)
        await service.create_notification(
            _payload(user, title="future", scheduled_for=clock.now + timedelta(hours=1))
        )
        clock.advance(minutes=1)
        sent = await service.create_notification(_payload(user, title="sent"))
        sent.sent_at = clock.now
        await db_session.commit()

        pending = await service.get_pending()

        assert [n.id for n in pending] == [immediate.id, past.id]
        assert [n.id for n in await service.get_pending(limit=1)] == [immediate.id]

    @pytest.mark.asyncio
    async def test_timezone_aware_schedule_is_normalised(
        self, db_session, clock, make_user
    ):
        user = await make_user(UserRole.SUBMITTER)
        service = NotificationService(db_session, clock=clock)

        notification = await service.create_notification(
            _payload(user, scheduled_for="2025-01-26T19:00:00+07:00")
        )

        assert notification.scheduled_for == datetime(2025, 1, 26, 12, 0, 0)


class TestDispatch:
    """Multi-channel delivery of a single notification."""

    @pytest.mark.asyncio
    async def test_failing_channel_does_not_block_others(
        self, db_session, clock, make_user
    ):
        user = await make_user(
            UserRole.INTERNAL_REVIEWER, email_enabled=True, push_enabled=True
        )
        email = RecordingChannel(EMAIL_CHANNEL, fail=True)
        push = RecordingChannel(PUSH_CHANNEL)
        service = NotificationService(
            db_session, channels={EMAIL_CHANNEL: email, PUSH_CHANNEL: push}, clock=clock
        )
        notification = await service.create_notification(_payload(user))
        await db_session.commit()

        result = await service.dispatch(notification.id)
        by_channel = {r.channel: r for r in result.channels}

        assert result.completed is True
        assert result.sent_at == clock.now
        assert result.delivered_channels == [PUSH_CHANNEL]
        assert by_channel[EMAIL_CHANNEL].success is False
        assert "provider rejected" in by_channel[EMAIL_CHANNEL].error
        assert push.sent == [(user.id, notification.id)]

    @pytest.mark.asyncio
    async def test_slow_channel_times_out(self, db_session, clock, make_user):
        user = await make_user(UserRole.SUBMITTER)
        email = RecordingChannel(EMAIL_CHANNEL, delay=5)
        service = NotificationService(
            db_session, channels={EMAIL_CHANNEL: email}, clock=clock, channel_timeout=0.05
        )
        notification = await service.create_notification(_payload(user))
        await db_session.commit()

        result = await service.dispatch(notification.id)

        assert result.completed is True
        assert result.channels[0].error == "timeout"

    @pytest.mark.asyncio
    async def test_unconfigured_channel_is_skipped(self, db_session, clock, make_user):
        user = await make_user(UserRole.SUBMITTER, push_enabled=True)
        service = NotificationService(db_session, channels={}, clock=clock)
        notification = await service.create_notification(_payload(user))
        await db_session.commit()

        result = await service.dispatch(notification.id)

        assert result.completed is True
        assert {r.channel for r in result.channels} == {EMAIL_CHANNEL, PUSH_CHANNEL}
        assert all(r.skipped for r in result.channels)

    @pytest.mark.asyncio
    async def test_dispatch_is_idempotent(self, db_session, clock, make_user):
        user = await make_user(UserRole.SUBMITTER)
        email = RecordingChannel(EMAIL_CHANNEL)
        service = NotificationService(
            db_session, channels={EMAIL_CHANNEL: email}, clock=clock
        )
        notification = await service.create_notification(_payload(user))
        await db_session.commit()

        first = await service.dispatch(notification.id)
        clock.advance(minutes=5)
        second = await service.dispatch(notification.id)

        assert second.already_sent is True
        assert second.sent_at == first.sent_at
        assert len(email.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_notification(self, db_session, clock):
        service = NotificationService(db_session, clock=clock)

        result = await service.dispatch("missing")

        assert result.completed is False
        assert result.error == "notification not found"


class TestReadState:
    """Read flags and retention cleanup."""

    @pytest.mark.asyncio
    async def test_mark_read_is_scoped_to_recipient(
        self, db_session, clock, make_user
    ):
        owner = await make_user(UserRole.SUBMITTER)
        stranger = await make_user(UserRole.SUBMITTER)
        service = NotificationService(db_session, clock=clock)
        notification = await service.create_notification(_payload(owner))
        await db_session.commit()

        with pytest.raises(NotFoundError):
            await service.mark_read(notification.id, stranger.id)

        marked = await service.mark_read(notification.id, owner.id)
        assert marked.is_read is True
        assert await service.get_unread_count(owner.id) == 0

    @pytest.mark.asyncio
    async def test_mark_all_and_list(self, db_session, clock, make_user):
        user = await make_user(UserRole.SUBMITTER)
        service = NotificationService(db_session, clock=clock)
        for index in range(3):
            await service.create_notification(_payload(user, title=f"n{index}"))
            clock.advance(minutes=1)
        await db_session.commit()

        items, total = await service.get_user_notifications(user.id, limit=2)
        assert total == 3
        assert [n.title for n in items] == ["n2", "n1"]

        assert await service.mark_all_as_read(user.id) == 3
        _, unread_total = await service.get_user_notifications(
            user.id, unread_only=True
        )
        assert unread_total == 0

    @pytest.mark.asyncio
    async def test_cleanup_keeps_unread_and_recent(
        self, db_session, clock, make_user
    ):
        user = await make_user(UserRole.SUBMITTER)
        service = NotificationService(db_session, clock=clock)

        old_read = await service.create_notification(_payload(user, title="old read"))
        old_read.is_read = True
        await service.create_notification(_payload(user, title="old unread"))
        clock.advance(days=40)
        recent_read = await service.create_notification(_payload(user, title="new read"))
        recent_read.is_read = True
        await db_session.commit()

        deleted = await service.cleanup_read_notifications(
            clock.now - timedelta(days=30)
        )
        remaining, _ = await service.get_user_notifications(user.id)

        assert deleted == 1
        assert sorted(n.title for n in remaining) == ["new read", "old unread"]
