import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.celery import celery
from app.db.session import session_scope
from app.services.notifications import build_deadline_monitor
from app.utils.datetime_utils import naive_utc_now
from app.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def weekly_reminders_task(self, request_id: str):
    """
    Weekly reminder sweep. Runs only the upload/evaluation reminder steps;
    the 24h reminder dedup keeps it from doubling up with the hourly sweep.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(run_weekly_reminders(request_id))


async def run_weekly_reminders(
    request_id: str,
    session_factory: Optional[async_sessionmaker] = None,
    clock: Callable[[], datetime] = naive_utc_now,
) -> Dict[str, Any]:
    logger = get_logger().bind(request_id=request_id)

    async with session_scope(session_factory) as db_session:
        try:
            monitor = build_deadline_monitor(db_session, channels={}, clock=clock)
            summary = await monitor.run_reminder_checks()

            return {
                "success": True,
                "message": summary.describe(),
                "notifications_created": summary.notifications_created,
                "request_id": request_id,
            }

        except Exception as e:
            logger.opt(exception=e).error(f"Weekly reminders task exception: {e}")
            return {"success": False, "error": str(e), "request_id": request_id}
