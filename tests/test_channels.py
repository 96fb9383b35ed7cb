import json
from urllib.parse import parse_qs

import httpx
import pytest

from app.config.settings import Settings
from app.db.models import Notification, NotificationType, User, UserRole
from app.services.notifications.channels import (
    EMAIL_CHANNEL,
    PUSH_CHANNEL,
    EmailChannel,
    PushChannel,
    build_channels,
)
from app.utils.errors import ChannelDeliveryError


def _user() -> User:
    return User(
        id="user-1",
        email="ploy@example.com",
        name="Ploy",
        role=UserRole.INTERNAL_REVIEWER,
    )


def _notification(**metadata) -> Notification:
    return Notification(
        id="notif-1",
        user_id="user-1",
        type=NotificationType.OVERDUE_ESCALATION,
        title="[URGENT] Overdue Evaluations - Level 3",
        message="You have 2 overdue evaluation(s) <for> 2024/2025.",
        notification_metadata=metadata or None,
    )


class TestEmailChannel:
    """Resend HTTP email delivery."""

    @pytest.mark.asyncio
    async def test_posts_rendered_message(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "email-123"})

        channel = EmailChannel(
            api_key="re_test",
            from_address="noreply@example.com",
            transport=httpx.MockTransport(handler),
        )

        provider_id = await channel.send(
            _user(), _notification(actionUrl="https://qa.example.com/evaluate")
        )
        body = captured["body"]

        assert provider_id == "email-123"
        assert captured["url"] == "https://api.resend.com/emails"
        assert captured["auth"] == "Bearer re_test"
        assert body["to"] == ["ploy@example.com"]
        assert body["from"] == "noreply@example.com"
        assert body["subject"] == "[URGENT] Overdue Evaluations - Level 3"
        assert "&lt;for&gt;" in body["html"]
        assert "https://qa.example.com/evaluate" in body["html"]

    @pytest.mark.asyncio
    async def test_provider_error_raises(self):
        channel = EmailChannel(
            api_key="re_test",
            from_address="noreply@example.com",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(422, json={"message": "invalid"})
            ),
        )

        with pytest.raises(ChannelDeliveryError) as exc_info:
            await channel.send(_user(), _notification())

        assert exc_info.value.channel == EMAIL_CHANNEL


class TestPushChannel:
    """LINE Notify style push delivery."""

    @pytest.mark.asyncio
    async def test_posts_flattened_text(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["auth"] = request.headers["Authorization"]
            captured["form"] = parse_qs(request.content.decode())
            return httpx.Response(200, json={"status": 200})

        channel = PushChannel(token="line-token", transport=httpx.MockTransport(handler))

        await channel.send(_user(), _notification())

        assert captured["auth"] == "Bearer line-token"
        assert captured["form"]["message"] == [
            "[URGENT] Overdue Evaluations - Level 3\n\n"
            "You have 2 overdue evaluation(s) <for> 2024/2025."
        ]


class TestBuildChannels:
    """Only configured channels are instantiated."""

    def test_unconfigured_channels_are_left_out(self):
        channels = build_channels(
            Settings(RESEND_API_KEY=None, LINE_NOTIFY_TOKEN="line-token")
        )

        assert set(channels) == {PUSH_CHANNEL}

    def test_all_channels(self):
        channels = build_channels(
            Settings(RESEND_API_KEY="re_test", LINE_NOTIFY_TOKEN="line-token")
        )

        assert set(channels) == {EMAIL_CHANNEL, PUSH_CHANNEL}
        assert isinstance(channels[EMAIL_CHANNEL], EmailChannel)
