from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from app.db.models import AcademicYear, NotificationType, UserRole, WindowType

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class EscalationStep:
    level: int
    min_days: int
    label: str


# Ordered by threshold; the highest step whose threshold is reached wins
ESCALATION_LADDER: List[EscalationStep] = [
    EscalationStep(level=1, min_days=1, label="Initial reminder"),
    EscalationStep(level=2, min_days=3, label="Second reminder"),
    EscalationStep(level=3, min_days=7, label="Escalation to supervisor"),
    EscalationStep(level=4, min_days=14, label="Final warning"),
    EscalationStep(level=5, min_days=30, label="Administrative action"),
]

URGENT_FROM_LEVEL = 3


class WindowTransition(Enum):
    OPENING = "opening"
    CLOSING = "closing"


# Roles notified when a window opens or closes
WINDOW_AUDIENCE = {
    WindowType.UPLOAD: (UserRole.SUBMITTER,),
    WindowType.EVALUATION: (UserRole.INTERNAL_REVIEWER, UserRole.EXTERNAL_REVIEWER),
}


@dataclass(frozen=True)
class WindowStatus:
    """Deadline proximity of an academic year at a given instant."""

    days_until_close: int
    days_since_close: Optional[int]
    should_be_open: bool

    @property
    def has_closed(self) -> bool:
        return self.days_since_close is not None


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from `start` to `end`, truncated toward zero."""
    return int((end - start) / ONE_DAY)


def evaluate_window(year: AcademicYear, now: datetime) -> WindowStatus:
    days_since_close = (
        days_between(year.end_date, now) if now > year.end_date else None
    )
    return WindowStatus(
        days_until_close=days_between(now, year.end_date),
        days_since_close=days_since_close,
        should_be_open=year.start_date <= now <= year.end_date,
    )


def detect_transition(
    flag_open: bool, should_be_open: bool
) -> Optional[WindowTransition]:
    if flag_open == should_be_open:
        return None
    return WindowTransition.OPENING if should_be_open else WindowTransition.CLOSING


def is_within_reminder_lead(days_until_close: int, reminder_days: int) -> bool:
    return 0 <= days_until_close <= reminder_days


def compute_escalation_level(days_overdue: int) -> Optional[int]:
    step = get_escalation_step(days_overdue)
    return step.level if step else None


def get_escalation_step(days_overdue: int) -> Optional[EscalationStep]:
    reached = None
    for step in ESCALATION_LADDER:
        if days_overdue >= step.min_days:
            reached = step
    return reached


EPOCH = datetime(1970, 1, 1)


def time_bucket(now: datetime, window: timedelta) -> int:
    """Index of the fixed `window`-wide slot containing `now`."""
    return (now - EPOCH) // window


def build_dedup_key(
    notification_type: NotificationType,
    user_id: str,
    academic_year_id: str,
    *scope,
) -> str:
    """
    Unique key for a notification that must be issued at most once per condition.

    Two sweeps deciding the same thing from the same history build the same
    key, so the unique index on `notifications.dedup_key` rejects the second
    insert. `scope` narrows the condition (escalation level, time bucket, the
    notification being superseded).
    """
    parts = [notification_type.value, user_id, academic_year_id]
    parts.extend(str(part) for part in scope)
    return ":".join(parts)
