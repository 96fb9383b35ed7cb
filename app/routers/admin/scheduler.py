from typing import Annotated

from fastapi import APIRouter, Depends, Request, status

from app.middlewares.auth_middleware import AuthState, require_administrator
from app.schemas.scheduler_schemas import SchedulerAction, SchedulerActionRequest
from app.services.scheduler_service import (
    DEADLINE_SWEEP_JOB,
    NOTIFICATION_FLUSH_JOB,
    JobScheduler,
    build_default_jobs,
)
from app.utils.errors import BusinessLogicError
from app.utils.logging import get_logger
from app.utils.responses import ResponseBuilder

scheduler_router = APIRouter()
logger = get_logger()

TRIGGERABLE = {
    SchedulerAction.TRIGGER_DEADLINE_CHECKS: (DEADLINE_SWEEP_JOB, "Deadline checks"),
    SchedulerAction.TRIGGER_NOTIFICATIONS: (
        NOTIFICATION_FLUSH_JOB,
        "Notification processing",
    ),
}


def get_scheduler(request: Request) -> JobScheduler:
    return request.app.state.scheduler


@scheduler_router.get("")
async def get_scheduler_status(
    request: Request,
    current_user: Annotated[AuthState, Depends(require_administrator)],
    scheduler: Annotated[JobScheduler, Depends(get_scheduler)],
):
    """Registered jobs with their running state and last run."""
    return ResponseBuilder.success(
        request=request,
        data=scheduler.get_status(),
        message="Scheduler status retrieved",
    )


@scheduler_router.post("")
async def control_scheduler(
    request: Request,
    body: SchedulerActionRequest,
    current_user: Annotated[AuthState, Depends(require_administrator)],
    scheduler: Annotated[JobScheduler, Depends(get_scheduler)],
):
    """
    Manual control surface for the in-process scheduler.

    `initialize`/`start` (re)start every job trigger, `stop` stops them all
    while leaving the jobs registered, and the two `trigger-*` actions run a
    job once right now and report how it went.
    """
    try:
        action = SchedulerAction(body.action)
    except ValueError:
        raise BusinessLogicError(
            f"Invalid action '{body.action}'. Expected one of: "
            + ", ".join(a.value for a in SchedulerAction),
            "INVALID_ACTION",
        )

    logger.info(f"Scheduler action '{action.value}' requested by {current_user.user_id}")

    if action in (SchedulerAction.INITIALIZE, SchedulerAction.START):
        if not scheduler.get_status()["total_jobs"]:
            scheduler.initialize(build_default_jobs())
        else:
            scheduler.start_all()
        return ResponseBuilder.success(
            request=request,
            data=scheduler.get_status(),
            message="Scheduler initialized successfully",
        )

    if action == SchedulerAction.STOP:
        stopped = scheduler.stop_all_jobs()
        return ResponseBuilder.success(
            request=request,
            data=scheduler.get_status(),
            message=f"Stopped {stopped} scheduled job(s)",
        )

    job_name, label = TRIGGERABLE[action]
    run = await scheduler.trigger_now(job_name)
    run_data = {
        "job": run.name,
        "startedAt": run.started_at.isoformat(),
        "finishedAt": run.finished_at.isoformat(),
    }

    if not run.success:
        return ResponseBuilder.error(
            request=request,
            message=f"{label} failed: {run.error}",
            error_code="JOB_RUN_FAILED",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            data=run_data,
        )

    summary = run.result.get("message") if isinstance(run.result, dict) else None
    return ResponseBuilder.success(
        request=request,
        data=run_data,
        message=f"{label} completed" + (f": {summary}" if summary else ""),
    )
