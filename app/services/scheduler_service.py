import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set

from app.config.settings import settings
from app.utils.context import get_request_id, reset_request_id, set_request_id
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import JobNotFoundError
from app.utils.logging import get_logger

logger = get_logger()

JobTask = Callable[[], Awaitable[Any]]
Sleep = Callable[[float], Awaitable[Any]]

DEADLINE_SWEEP_JOB = "deadline-sweep"
NOTIFICATION_FLUSH_JOB = "notification-flush"
DAILY_CLEANUP_JOB = "daily-cleanup"
WEEKLY_REMINDERS_JOB = "weekly-reminders"


@dataclass
class JobDefinition:
    name: str
    interval_seconds: float
    task: JobTask


@dataclass
class JobRunResult:
    name: str
    success: bool
    started_at: datetime
    finished_at: datetime
    error: Optional[str] = None
    result: Any = None


@dataclass
class ScheduledJob:
    name: str
    interval_seconds: float
    task: JobTask
    handle: Optional[asyncio.Task] = None
    run_count: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.handle is not None and not self.handle.done()


class JobScheduler:
    """
    Process-local registry of named recurring jobs.

    Every job owns one asyncio task that sleeps for its interval and then
    spawns an execution. Executions are separate tasks, so a slow job never
    delays another job and stopping a job never cancels a run in progress.
    """

    def __init__(
        self,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], datetime] = naive_utc_now,
    ):
        self._sleep = sleep
        self._clock = clock
        self._jobs: Dict[str, ScheduledJob] = {}
        self._in_flight: Set[asyncio.Task] = set()
        self.initialized = False

    def schedule_job(
        self,
        name: str,
        interval_seconds: float,
        task: JobTask,
        start: bool = True,
    ) -> ScheduledJob:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        if name in self._jobs:
            self.stop_job(name)
            logger.info(f"Replacing scheduled job '{name}'")

        job = ScheduledJob(name=name, interval_seconds=interval_seconds, task=task)
        self._jobs[name] = job
        if start:
            self._start(job)

        logger.info(f"Scheduled job '{name}' every {interval_seconds}s")
        return job

    def initialize(self, definitions: Iterable[JobDefinition], start: bool = True) -> None:
        """Register the given jobs; with `start=False` they only run when triggered."""
        for definition in definitions:
            self.schedule_job(
                definition.name, definition.interval_seconds, definition.task, start
            )
        self.initialized = start
        logger.info(
            f"Job scheduler registered {len(self._jobs)} job(s), triggers {'started' if start else 'idle'}"
        )

    def start_all(self) -> int:
        started = 0
        for job in self._jobs.values():
            if not job.is_running:
                self._start(job)
                started += 1
        self.initialized = True
        return started

    def stop_job(self, name: str) -> bool:
        job = self._jobs.get(name)
        if not job or not job.is_running:
            return False

        job.handle.cancel()
        job.handle = None
        logger.info(f"Stopped job '{name}'")
        return True

    def stop_all_jobs(self) -> int:
        return sum(1 for name in list(self._jobs) if self.stop_job(name))

    async def trigger_now(self, name: str) -> JobRunResult:
        """Run a job once, out of band. The schedule is left untouched."""
        job = self._jobs.get(name)
        if not job:
            raise JobNotFoundError(name)
        return await self._execute(job)

    def get_status(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "total_jobs": len(self._jobs),
            "jobs": [
                {
                    "name": job.name,
                    "interval_seconds": job.interval_seconds,
                    "is_running": job.is_running,
                    "run_count": job.run_count,
                    "last_run_at": (
                        job.last_run_at.isoformat() if job.last_run_at else None
                    ),
                    "last_error": job.last_error,
                }
                for job in self._jobs.values()
            ],
        }

    def get_job(self, name: str) -> Optional[ScheduledJob]:
        return self._jobs.get(name)

    async def shutdown(self) -> None:
        """Stop every trigger and wait for in-flight executions to finish."""
        self.stop_all_jobs()
        if self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    def _start(self, job: ScheduledJob) -> None:
        job.handle = asyncio.get_running_loop().create_task(
            self._run_forever(job), name=f"job:{job.name}"
        )

    async def _run_forever(self, job: ScheduledJob) -> None:
        while True:
            await self._sleep(job.interval_seconds)
            execution = asyncio.get_running_loop().create_task(
                self._execute(job), name=f"run:{job.name}"
            )
            self._in_flight.add(execution)
            execution.add_done_callback(self._in_flight.discard)

    async def _execute(self, job: ScheduledJob) -> JobRunResult:
        token = set_request_id(f"{job.name}-{uuid.uuid4().hex[:8]}")
        job_logger = get_logger()
        started_at = self._clock()
        error = None
        result = None

        try:
            result = await job.task()
            # Job runners report handled failures instead of raising
            if isinstance(result, dict) and result.get("success") is False:
                error = str(result.get("error") or "job reported failure")
                job_logger.error(f"Job '{job.name}' failed: {error}")
        except Exception as e:
            error = str(e) or e.__class__.__name__
            job_logger.opt(exception=e).error(f"Job '{job.name}' raised: {error}")
        finally:
            job.run_count += 1
            job.last_run_at = started_at
            job.last_error = error
            reset_request_id(token)

        return JobRunResult(
            name=job.name,
            success=error is None,
            started_at=started_at,
            finished_at=self._clock(),
            error=error,
            result=result,
        )


def build_default_jobs(session_factory=None) -> List[JobDefinition]:
    """The four recurring engine jobs, wired to the same runners the Celery tasks use."""
    from app.db.session import AsyncSessionLocal
    from app.tasks.cron.daily_cleanup import run_daily_cleanup
    from app.tasks.cron.deadline_sweep import run_deadline_sweep
    from app.tasks.cron.notification_flush import run_notification_flush
    from app.tasks.cron.weekly_reminders import run_weekly_reminders

    factory = session_factory or AsyncSessionLocal

    def bind(runner) -> JobTask:
        return lambda: runner(get_request_id() or "scheduler", factory)

    return [
        JobDefinition(
            DEADLINE_SWEEP_JOB,
            settings.DEADLINE_SWEEP_INTERVAL_SECONDS,
            bind(run_deadline_sweep),
        ),
        JobDefinition(
            NOTIFICATION_FLUSH_JOB,
            settings.NOTIFICATION_FLUSH_INTERVAL_SECONDS,
            bind(run_notification_flush),
        ),
        JobDefinition(
            DAILY_CLEANUP_JOB,
            settings.DAILY_CLEANUP_INTERVAL_SECONDS,
            bind(run_daily_cleanup),
        ),
        JobDefinition(
            WEEKLY_REMINDERS_JOB,
            settings.WEEKLY_REMINDER_INTERVAL_SECONDS,
            bind(run_weekly_reminders),
        ),
    ]
