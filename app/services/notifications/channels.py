import html
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from app.config.settings import Settings
from app.db.models import Notification, User
from app.templates.notification_email_template import (
    action_button_template,
    notification_email_template,
)
from app.utils.errors import ChannelDeliveryError
from app.utils.logging import get_logger

logger = get_logger()

EMAIL_CHANNEL = "email"
PUSH_CHANNEL = "push"


@dataclass
class ChannelResult:
    """Outcome of one delivery attempt on one channel."""

    channel: str
    success: bool
    skipped: bool = False
    provider_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def not_configured(cls, channel: str) -> "ChannelResult":
        return cls(channel=channel, success=False, skipped=True, error="not configured")


class NotificationChannel(ABC):
    """A delivery provider. `send` raises ChannelDeliveryError on rejection."""

    name: str

    def __init__(
        self,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @abstractmethod
    def render(self, notification: Notification) -> Dict[str, Any]: ...

    @abstractmethod
    async def send(self, user: User, notification: Notification) -> Optional[str]: ...


class EmailChannel(NotificationChannel):
    name = EMAIL_CHANNEL

    def __init__(
        self,
        api_key: str,
        from_address: str,
        api_url: str = "https://api.resend.com/emails",
        app_name: str = "QA Deadline Engine",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.from_address = from_address
        self.api_url = api_url
        self.app_name = app_name

    def render(self, notification: Notification) -> Dict[str, Any]:
        action_url = notification.metadata_dict.get("actionUrl")
        action = (
            action_button_template.substitute(action_url=html.escape(action_url))
            if action_url
            else ""
        )
        body = notification_email_template.substitute(
            subject=html.escape(notification.title),
            app_name=html.escape(self.app_name),
            message=html.escape(notification.message).replace("\n", "<br>"),
            action=action,
        )
        return {"subject": notification.title, "html": body}

    async def send(self, user: User, notification: Notification) -> Optional[str]:
        payload = self.render(notification)
        async with self._client() as client:
            response = await client.post(
                self.api_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                json={"from": self.from_address, "to": [user.email], **payload},
            )

        if response.status_code >= 400:
            raise ChannelDeliveryError(
                f"Email provider returned {response.status_code}: {response.text}",
                channel=self.name,
            )

        try:
            return response.json().get("id")
        except ValueError:
            return None


class PushChannel(NotificationChannel):
    """LINE Notify style push: one flattened text message per notification."""

    name = PUSH_CHANNEL

    def __init__(
        self,
        token: str,
        api_url: str = "https://notify-api.line.me/api/notify",
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.token = token
        self.api_url = api_url

    def render(self, notification: Notification) -> Dict[str, Any]:
        return {"message": f"{notification.title}\n\n{notification.message}"}

    async def send(self, user: User, notification: Notification) -> Optional[str]:
        async with self._client() as client:
            response = await client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.token}"},
                data=self.render(notification),
            )

        if response.status_code >= 400:
            raise ChannelDeliveryError(
                f"Push provider returned {response.status_code}: {response.text}",
                channel=self.name,
            )
        return str(response.status_code)


def build_channels(
    settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[str, NotificationChannel]:
    """Instantiate only the channels whose credentials are configured."""
    channels: Dict[str, NotificationChannel] = {}

    if settings.RESEND_API_KEY:
        channels[EMAIL_CHANNEL] = EmailChannel(
            api_key=settings.RESEND_API_KEY,
            from_address=settings.FROM_EMAIL,
            api_url=settings.RESEND_API_URL,
            app_name=settings.NAME,
            timeout=settings.CHANNEL_TIMEOUT_SECONDS,
            transport=transport,
        )
    else:
        logger.warning("RESEND_API_KEY not set, email channel disabled")

    if settings.LINE_NOTIFY_TOKEN:
        channels[PUSH_CHANNEL] = PushChannel(
            token=settings.LINE_NOTIFY_TOKEN,
            api_url=settings.LINE_NOTIFY_URL,
            timeout=settings.CHANNEL_TIMEOUT_SECONDS,
            transport=transport,
        )
    else:
        logger.warning("LINE_NOTIFY_TOKEN not set, push channel disabled")

    return channels
