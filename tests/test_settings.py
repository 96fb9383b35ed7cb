import pytest
from celery.schedules import crontab
from pydantic import ValidationError

from app.config import celeryconfig
from app.config.settings import Settings


class TestSettingsValidation:
    """Configuration invariants checked at startup."""

    def test_defaults_are_consistent(self):
        config = Settings()

        assert config.NOTIFICATION_RETENTION_DAYS * 24 >= config.ESCALATION_COOLDOWN_HOURS
        assert config.SCHEDULER_ENABLED is False

    def test_retention_shorter_than_cooldown_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(NOTIFICATION_RETENTION_DAYS=1, ESCALATION_COOLDOWN_HOURS=48)

    def test_non_positive_interval_is_rejected(self):
        with pytest.raises(ValidationError):
            Settings(NOTIFICATION_FLUSH_INTERVAL_SECONDS=0)

    def test_allowed_hosts_from_comma_separated_string(self):
        config = Settings(ALLOWED_HOSTS="http://a.example.com, http://b.example.com")

        assert config.ALLOWED_HOSTS == ["http://a.example.com", "http://b.example.com"]

    def test_cron_expression_needs_five_fields(self):
        with pytest.raises(ValidationError):
            Settings(DAILY_CLEANUP_CRON="0 2 * *")


class TestBeatSchedule:
    """Celery beat entries run at fixed wall-clock times."""

    def test_jobs_are_anchored_to_the_clock(self):
        schedules = {
            name: entry["schedule"] for name, entry in celeryconfig.beat_schedule.items()
        }
        weekly = schedules["weekly-reminders"]

        assert all(isinstance(s, crontab) for s in schedules.values())
        assert schedules["deadline-sweep"].minute == {0}
        assert schedules["deadline-sweep"].hour == set(range(24))
        assert schedules["notification-flush"].minute == set(range(0, 60, 5))
        assert (schedules["daily-cleanup"].hour, schedules["daily-cleanup"].minute) == ({2}, {0})
        assert (weekly.day_of_week, weekly.hour, weekly.minute) == ({1}, {9}, {0})

    def test_cron_schedule_parses_all_fields(self):
        schedule = celeryconfig.cron_schedule("30 6 1 8 *")

        assert (schedule.minute, schedule.hour) == ({30}, {6})
        assert (schedule.day_of_month, schedule.month_of_year) == ({1}, {8})
