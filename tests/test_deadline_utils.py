from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from app.services.notifications.deadline_utils import (
    WindowTransition,
    compute_escalation_level,
    days_between,
    detect_transition,
    evaluate_window,
    get_escalation_step,
    is_within_reminder_lead,
)


class TestDaysBetween:
    """Whole-day arithmetic used by every deadline rule."""

    def test_truncates_partial_days(self):
        start = datetime(2025, 1, 31)
        assert days_between(start, start + timedelta(days=6, hours=23)) == 6
        assert days_between(start, start + timedelta(days=7)) == 7

    def test_truncates_toward_zero_when_negative(self):
        end = datetime(2025, 1, 31)
        assert days_between(end, end - timedelta(hours=20)) == 0
        assert days_between(end, end - timedelta(days=1, hours=2)) == -1


class TestEscalationLadder:
    """Boundary table of the overdue ladder."""

    @pytest.mark.parametrize(
        "days, level",
        [
            (0, None),
            (1, 1),
            (2, 1),
            (3, 2),
            (6, 2),
            (7, 3),
            (13, 3),
            (14, 4),
            (29, 4),
            (30, 5),
            (31, 5),
            (365, 5),
        ],
    )
    def test_level_for_days_overdue(self, days, level):
        assert compute_escalation_level(days) == level

    def test_step_carries_label(self):
        assert get_escalation_step(7).label == "Escalation to supervisor"
        assert get_escalation_step(-3) is None


class TestWindowEvaluation:
    """Window status and transitions of an academic year."""

    def _year(self):
        year = Mock()
        year.start_date = datetime(2025, 1, 1)
        year.end_date = datetime(2025, 1, 31)
        return year

    def test_inside_window(self):
        status = evaluate_window(self._year(), datetime(2025, 1, 26, 12))

        assert status.should_be_open is True
        assert status.days_until_close == 4
        assert status.has_closed is False

    def test_after_close(self):
        status = evaluate_window(self._year(), datetime(2025, 2, 8, 1))

        assert status.should_be_open is False
        assert status.has_closed is True
        assert status.days_since_close == 8

    def test_before_open(self):
        status = evaluate_window(self._year(), datetime(2024, 12, 20))

        assert status.should_be_open is False
        assert status.has_closed is False

    def test_detect_transition(self):
        assert detect_transition(False, True) == WindowTransition.OPENING
        assert detect_transition(True, False) == WindowTransition.CLOSING
        assert detect_transition(True, True) is None
        assert detect_transition(False, False) is None

    def test_reminder_lead(self):
        assert is_within_reminder_lead(4, 7) is True
        assert is_within_reminder_lead(7, 7) is True
        assert is_within_reminder_lead(8, 7) is False
        assert is_within_reminder_lead(-1, 7) is False
