from .cron import *

__all__ = [
    # Scheduled/Cron Tasks
    "deadline_sweep_task",
    "notification_flush_task",
    "daily_cleanup_task",
    "weekly_reminders_task",
]
