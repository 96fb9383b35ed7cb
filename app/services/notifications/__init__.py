from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import settings
from app.utils.datetime_utils import naive_utc_now

from .channels import ChannelResult, NotificationChannel, build_channels
from .deadline_monitor_service import DeadlineMonitorService, FlushSummary, SweepSummary
from .escalation_service import EscalationService
from .notification_service import DispatchResult, NotificationService


def build_deadline_monitor(
    db_session: AsyncSession,
    channels: Optional[Dict[str, NotificationChannel]] = None,
    clock: Callable[[], datetime] = naive_utc_now,
) -> DeadlineMonitorService:
    """Wire the monitor, escalation engine and dispatcher around one session."""
    notification_service = NotificationService(
        db_session,
        channels=build_channels(settings) if channels is None else channels,
        clock=clock,
        channel_timeout=settings.CHANNEL_TIMEOUT_SECONDS,
    )
    escalation_service = EscalationService(db_session, notification_service, clock)
    return DeadlineMonitorService(
        db_session, notification_service, escalation_service, clock
    )


__all__ = [
    "ChannelResult",
    "DeadlineMonitorService",
    "DispatchResult",
    "EscalationService",
    "FlushSummary",
    "NotificationChannel",
    "NotificationService",
    "SweepSummary",
    "build_channels",
    "build_deadline_monitor",
]
