import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.celery import celery
from app.db.session import session_scope
from app.services.notifications import build_deadline_monitor
from app.utils.datetime_utils import naive_utc_now
from app.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def notification_flush_task(self, request_id: str):
    """
    Dispatch every due, unsent notification in creation order.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(run_notification_flush(request_id))


async def run_notification_flush(
    request_id: str,
    session_factory: Optional[async_sessionmaker] = None,
    clock: Callable[[], datetime] = naive_utc_now,
    channels=None,
) -> Dict[str, Any]:
    logger = get_logger().bind(request_id=request_id)

    async with session_scope(session_factory) as db_session:
        try:
            monitor = build_deadline_monitor(db_session, channels=channels, clock=clock)
            summary = await monitor.process_pending_notifications()

            return {
                "success": True,
                "message": summary.describe(),
                "processed_count": summary.processed,
                "sent_count": summary.sent,
                "failed_count": summary.failed,
                "request_id": request_id,
            }

        except Exception as e:
            logger.opt(exception=e).error(f"Notification flush task exception: {e}")
            return {"success": False, "error": str(e), "request_id": request_id}
