from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
broker_url = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = f"redis://:{settings.REDIS_PASSWORD}@{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"

# Task Discovery
include = ["app.tasks"]

# Timezone Configuration
timezone = "UTC"
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 30 * 60  # 30 minutes
task_soft_time_limit = 25 * 60  # 25 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Task Retry Configuration
task_acks_late = True
task_reject_on_worker_lost = True
task_default_retry_delay = 60  # 60 seconds
task_max_retries = 3


def cron_schedule(expression: str) -> crontab:
    """Build a crontab from a five-field expression (minute hour day-of-month month day-of-week)."""
    minute, hour, day_of_month, month_of_year, day_of_week = expression.split()
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
    )


# Used only when the in-process scheduler is disabled (SCHEDULER_ENABLED=false)
# and `celery beat` drives the jobs instead. Both paths may overlap; repeat
# notifications are rejected by the unique `notifications.dedup_key` index.
beat_schedule = {
    "deadline-sweep": {
        "task": "app.tasks.cron.deadline_sweep.deadline_sweep_task",
        "schedule": cron_schedule(settings.DEADLINE_SWEEP_CRON),
        "args": ("deadline_sweep_cron",),
    },
    "notification-flush": {
        "task": "app.tasks.cron.notification_flush.notification_flush_task",
        "schedule": cron_schedule(settings.NOTIFICATION_FLUSH_CRON),
        "args": ("notification_flush_cron",),
    },
    "daily-cleanup": {
        "task": "app.tasks.cron.daily_cleanup.daily_cleanup_task",
        "schedule": cron_schedule(settings.DAILY_CLEANUP_CRON),
        "args": ("daily_cleanup_cron",),
    },
    "weekly-reminders": {
        "task": "app.tasks.cron.weekly_reminders.weekly_reminders_task",
        "schedule": cron_schedule(settings.WEEKLY_REMINDER_CRON),
        "args": ("weekly_reminders_cron",),
    },
}

# Default Queue
task_default_queue = "qa_deadlines"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
