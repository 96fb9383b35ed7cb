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
def deadline_sweep_task(self, request_id: str):
    """
    Hourly sweep over every active academic year: deadline reminders, window
    opening/closing transitions and overdue-evaluation escalation.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    return asyncio.run(run_deadline_sweep(request_id))


async def run_deadline_sweep(
    request_id: str,
    session_factory: Optional[async_sessionmaker] = None,
    clock: Callable[[], datetime] = naive_utc_now,
) -> Dict[str, Any]:
    logger = get_logger().bind(request_id=request_id)

    async with session_scope(session_factory) as db_session:
        try:
            # The sweep only creates notifications; delivery is the flush job's concern
            monitor = build_deadline_monitor(db_session, channels={}, clock=clock)
            summary = await monitor.run_all_checks()

            return {
                "success": True,
                "message": summary.describe(),
                "years_processed": summary.years_processed,
                "years_failed": summary.years_failed,
                "notifications_created": summary.notifications_created,
                "request_id": request_id,
            }

        except Exception as e:
            logger.opt(exception=e).error(f"Deadline sweep task exception: {e}")
            return {"success": False, "error": str(e), "request_id": request_id}
