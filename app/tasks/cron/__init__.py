from .daily_cleanup import daily_cleanup_task
from .deadline_sweep import deadline_sweep_task
from .notification_flush import notification_flush_task
from .weekly_reminders import weekly_reminders_task

__all__ = [
    "deadline_sweep_task",
    "notification_flush_task",
    "daily_cleanup_task",
    "weekly_reminders_task",
]
