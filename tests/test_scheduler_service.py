import asyncio

import pytest

from app.services.scheduler_service import (
    DAILY_CLEANUP_JOB,
    DEADLINE_SWEEP_JOB,
    NOTIFICATION_FLUSH_JOB,
    WEEKLY_REMINDERS_JOB,
    JobDefinition,
    JobScheduler,
    build_default_jobs,
)
from app.utils.context import get_request_id
from app.utils.errors import JobNotFoundError


class CountingTask:
    def __init__(self, result=None, error: Exception = None):
        self.calls = 0
        self.result = result
        self.error = error
        self.request_ids = []

    async def __call__(self):
        self.calls += 1
        self.request_ids.append(get_request_id())
        if self.error:
            raise self.error
        return self.result


class GatedTask:
    """Blocks every run until `release` is set."""

    def __init__(self):
        self.calls = 0
        self.finished = 0
        self.release = asyncio.Event()
        self.request_ids = []

    async def __call__(self):
        self.calls += 1
        self.request_ids.append(get_request_id())
        await self.release.wait()
        self.finished += 1
        return {"success": True}


class SingleTick:
    """Sleep that fires the first interval at once and never again."""

    def __init__(self):
        self.fired = False

    async def __call__(self, seconds: float):
        if self.fired:
            await asyncio.Event().wait()
        self.fired = True


async def _wait_for(predicate, timeout: float = 2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestJobRegistry:
    """Registration, replacement and manual triggering."""

    @pytest.mark.asyncio
    async def test_stopped_job_runs_exactly_once_when_triggered(self):
        scheduler = JobScheduler()
        task = CountingTask(result={"success": True})
        scheduler.schedule_job("sweep", 3600, task)

        assert scheduler.stop_job("sweep") is True
        run = await scheduler.trigger_now("sweep")

        assert run.success is True
        assert task.calls == 1
        assert scheduler.get_job("sweep").run_count == 1
        assert scheduler.get_job("sweep").is_running is False

    @pytest.mark.asyncio
    async def test_trigger_unknown_job(self):
        scheduler = JobScheduler()

        with pytest.raises(JobNotFoundError):
            await scheduler.trigger_now("nope")

    @pytest.mark.asyncio
    async def test_non_positive_interval_is_rejected(self):
        scheduler = JobScheduler()

        with pytest.raises(ValueError):
            scheduler.schedule_job("bad", 0, CountingTask())

    @pytest.mark.asyncio
    async def test_rescheduling_replaces_previous_job(self):
        scheduler = JobScheduler()
        first, second = CountingTask(), CountingTask()
        old = scheduler.schedule_job("sweep", 3600, first)
        scheduler.schedule_job("sweep", 60, second)

        await scheduler.trigger_now("sweep")
        status = scheduler.get_status()

        assert old.is_running is False
        assert (first.calls, second.calls) == (0, 1)
        assert status["total_jobs"] == 1
        assert status["jobs"][0]["interval_seconds"] == 60
        await scheduler.shutdown()

    @pytest.mark.asyncio
    async def test_initialize_without_start_keeps_jobs_idle(self):
        scheduler = JobScheduler()
        scheduler.initialize(
            [JobDefinition("a", 60, CountingTask()), JobDefinition("b", 60, CountingTask())],
            start=False,
        )
        status = scheduler.get_status()

        assert status["initialized"] is False
        assert status["total_jobs"] == 2
        assert not any(job["is_running"] for job in status["jobs"])

        assert scheduler.start_all() == 2
        assert scheduler.get_status()["initialized"] is True
        assert scheduler.stop_all_jobs() == 2


class TestJobExecution:
    """Error isolation and bookkeeping of runs."""

    @pytest.mark.asyncio
    async def test_failures_are_recorded_not_raised(self):
        scheduler = JobScheduler()
        raising = CountingTask(error=RuntimeError("database unavailable"))
        reporting = CountingTask(result={"success": False, "error": "2 years failed"})
        healthy = CountingTask(result={"success": True})
        for name, task in (("raising", raising), ("reporting", reporting), ("healthy", healthy)):
            scheduler.schedule_job(name, 3600, task, start=False)

        runs = [await scheduler.trigger_now(name) for name in ("raising", "reporting", "healthy")]

        assert [run.success for run in runs] == [False, False, True]
        assert runs[0].error == "database unavailable"
        assert runs[1].error == "2 years failed"
        assert scheduler.get_job("raising").last_error == "database unavailable"
        assert scheduler.get_job("healthy").last_error is None

    @pytest.mark.asyncio
    async def test_each_run_gets_its_own_request_id(self):
        scheduler = JobScheduler()
        task = CountingTask()
        scheduler.schedule_job("sweep", 3600, task, start=False)

        await scheduler.trigger_now("sweep")
        await scheduler.trigger_now("sweep")

        assert task.request_ids[0] != task.request_ids[1]
        assert all(rid.startswith("sweep-") for rid in task.request_ids)
        assert get_request_id() is None

    @pytest.mark.asyncio
    async def test_timer_keeps_running_after_failure(self):
        scheduler = JobScheduler()
        failing = CountingTask(error=RuntimeError("boom"))
        healthy = CountingTask()
        scheduler.schedule_job("failing", 0.01, failing)
        scheduler.schedule_job("healthy", 0.01, healthy)

        await _wait_for(lambda: failing.calls >= 2 and healthy.calls >= 2)
        await scheduler.shutdown()

        assert scheduler.get_job("failing").last_error == "boom"
        assert scheduler.get_job("healthy").run_count >= 2

    @pytest.mark.asyncio
    async def test_manual_trigger_overlapping_scheduled_run(self):
        scheduler = JobScheduler(sleep=SingleTick())
        task = GatedTask()
        job = scheduler.schedule_job("sweep", 3600, task)
        await _wait_for(lambda: task.calls == 1)

        manual = asyncio.create_task(scheduler.trigger_now("sweep"))
        await _wait_for(lambda: task.calls == 2)
        task.release.set()
        run = await manual
        await _wait_for(lambda: job.run_count == 2)

        assert run.success is True
        assert task.finished == 2
        assert task.request_ids[0] != task.request_ids[1]
        assert scheduler.get_status()["total_jobs"] == 1
        assert scheduler.get_job("sweep") is job
        assert job.is_running is True
        await scheduler.shutdown()


class TestDefaultJobs:
    """The recurring jobs wired by the application."""

    def test_default_job_names(self, session_factory):
        names = [job.name for job in build_default_jobs(session_factory)]

        assert names == [
            DEADLINE_SWEEP_JOB,
            NOTIFICATION_FLUSH_JOB,
            DAILY_CLEANUP_JOB,
            WEEKLY_REMINDERS_JOB,
        ]

    @pytest.mark.asyncio
    async def test_trigger_default_sweep_on_empty_database(self, session_factory):
        scheduler = JobScheduler()
        scheduler.initialize(build_default_jobs(session_factory), start=False)

        run = await scheduler.trigger_now(DEADLINE_SWEEP_JOB)

        assert run.success is True
        assert run.result["years_processed"] == 0
        assert run.result["request_id"].startswith(f"{DEADLINE_SWEEP_JOB}-")
