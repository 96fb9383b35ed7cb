import asyncio
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.celery import celery
from app.config.settings import settings
from app.db.session import session_scope
from app.services.notifications import NotificationService
from app.utils.datetime_utils import naive_utc_now
from app.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def daily_cleanup_task(self, request_id: str):
    """
    Delete read notifications older than NOTIFICATION_RETENTION_DAYS.

    Unread notifications are kept regardless of age. Settings validation
    guarantees the retention window outlives the escalation cool-down.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(run_daily_cleanup(request_id))


async def run_daily_cleanup(
    request_id: str,
    session_factory: Optional[async_sessionmaker] = None,
    clock: Callable[[], datetime] = naive_utc_now,
    retention_days: int = settings.NOTIFICATION_RETENTION_DAYS,
) -> Dict[str, Any]:
    logger = get_logger().bind(request_id=request_id)

    async with session_scope(session_factory) as db_session:
        try:
            cutoff = clock() - timedelta(days=retention_days)
            service = NotificationService(db_session, clock=clock)
            deleted_count = await service.cleanup_read_notifications(cutoff)

            return {
                "success": True,
                "message": f"Deleted {deleted_count} read notification(s)",
                "deleted_count": deleted_count,
                "cutoff": cutoff.isoformat(),
                "request_id": request_id,
            }

        except Exception as e:
            logger.opt(exception=e).error(f"Daily cleanup task exception: {e}")
            return {"success": False, "error": str(e), "request_id": request_id}
