from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import settings
from app.db.models import (
    AcademicYear,
    NotificationType,
    User,
    UserRole,
    WindowType,
    REVIEWER_ROLES,
)
from app.schemas.notification_schemas import NotificationCreate
from app.utils.datetime_utils import format_date, naive_utc_now
from app.utils.logging import get_logger

from .deadline_utils import (
    WINDOW_AUDIENCE,
    WindowStatus,
    WindowTransition,
    build_dedup_key,
    detect_transition,
    evaluate_window,
    is_within_reminder_lead,
    time_bucket,
)
from .escalation_service import EscalationService
from .notification_service import NotificationService

logger = get_logger()

WINDOW_FLAGS = {
    WindowType.UPLOAD: "upload_window_open",
    WindowType.EVALUATION: "evaluation_window_open",
}


@dataclass
class SweepSummary:
    years_processed: int = 0
    years_failed: int = 0
    notifications_created: int = 0
    failed_year_ids: List[str] = field(default_factory=list)

    def describe(self) -> str:
        return (
            f"Processed {self.years_processed} academic year(s), "
            f"{self.years_failed} failed, "
            f"{self.notifications_created} notification(s) created"
        )


@dataclass
class FlushSummary:
    processed: int = 0
    sent: int = 0
    failed: int = 0

    def describe(self) -> str:
        return f"Dispatched {self.sent} of {self.processed} pending notification(s), {self.failed} failed"


class DeadlineMonitorService:
    """
    Entry point of every sweep. Each active academic year is an isolated unit
    of work: a failure rolls back that year's writes and the sweep moves on.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        notification_service: NotificationService,
        escalation_service: EscalationService,
        clock: Callable[[], datetime] = naive_utc_now,
        reminder_dedup_hours: int = settings.REMINDER_DEDUP_HOURS,
        app_base_url: str = settings.APP_BASE_URL,
    ):
        self.db = db_session
        self.notifications = notification_service
        self.escalation = escalation_service
        self.clock = clock
        self.reminder_dedup = timedelta(hours=reminder_dedup_hours)
        self.app_base_url = app_base_url.rstrip("/")

    async def run_all_checks(self, now: Optional[datetime] = None) -> SweepSummary:
        """Reminders, window transitions and overdue escalation for every active year."""
        return await self._sweep(now or self.clock(), full=True)

    async def run_reminder_checks(
        self, now: Optional[datetime] = None
    ) -> SweepSummary:
        """Upload and evaluation reminders only."""
        return await self._sweep(now or self.clock(), full=False)

    async def _sweep(self, now: datetime, full: bool) -> SweepSummary:
        summary = SweepSummary()

        for year_id in await self._active_year_ids():
            try:
                summary.notifications_created += await self._check_year(
                    year_id, now, full
                )
                summary.years_processed += 1
            except Exception as e:
                await self.db.rollback()
                summary.years_failed += 1
                summary.failed_year_ids.append(year_id)
                logger.opt(exception=e).error(
                    f"Deadline check failed for academic year {year_id}: {e}"
                )

        logger.info(f"Deadline sweep completed: {summary.describe()}")
        return summary

    async def _active_year_ids(self) -> List[str]:
        result = await self.db.execute(
            select(AcademicYear.id)
            .where(AcademicYear.is_active.is_(True))
            .order_by(AcademicYear.start_date)
        )
        return list(result.scalars().all())

    async def _check_year(self, year_id: str, now: datetime, full: bool) -> int:
        # Refetch: a rollback in a previous year expires everything loaded
        year = await self.db.get(AcademicYear, year_id, populate_existing=True)
        if not year:
            return 0

        status = evaluate_window(year, now)
        created = 0

        if year.upload_window_open:
            created += await self.send_upload_reminders(year, status, now)
            await self.db.commit()

        if year.evaluation_window_open:
            created += await self.send_evaluation_reminders(year, status, now)
            await self.db.commit()

        if not full:
            return created

        created += await self.check_window_transitions(year, status)

        if not year.evaluation_window_open and status.has_closed:
            created += await self.escalation.process_overdue_evaluations(year, now)

        return created

    async def _reminder_candidates(
        self, roles: Sequence[UserRole], days_until_close: int
    ) -> Sequence[User]:
        result = await self.db.execute(
            select(User)
            .where(and_(User.is_active.is_(True), User.role.in_(roles)))
            .order_by(User.created_at)
        )
        return [
            user
            for user in result.scalars().all()
            if is_within_reminder_lead(days_until_close, user.deadline_reminder_days)
        ]

    async def _recently_reminded(
        self,
        user_id: str,
        notification_type: NotificationType,
        academic_year_id: str,
        now: datetime,
    ) -> bool:
        recent = await self.notifications.find_recent(
            user_id, notification_type, academic_year_id, since=now - self.reminder_dedup
        )
        return bool(recent)

    def _reminder_key(
        self,
        notification_type: NotificationType,
        user_id: str,
        academic_year_id: str,
        now: datetime,
    ) -> str:
        # Reminders that pass the lookback are a full window apart: never the same bucket
        return build_dedup_key(
            notification_type,
            user_id,
            academic_year_id,
            time_bucket(now, self.reminder_dedup),
        )

    async def send_upload_reminders(
        self, year: AcademicYear, status: WindowStatus, now: datetime
    ) -> int:
        if status.has_closed:
            return 0
        days_left = status.days_until_close

        created = 0
        for user in await self._reminder_candidates((UserRole.SUBMITTER,), days_left):
            if await self._recently_reminded(
                user.id, NotificationType.REMINDER_UPLOAD, year.id, now
            ):
                continue

            notification = await self.notifications.create_unique(
                NotificationCreate(
                    user_id=user.id,
                    type=NotificationType.REMINDER_UPLOAD,
                    title=f"Upload Deadline Reminder - {year.name}",
                    message=(
                        f"The upload window for {year.name} will close in {days_left} day(s) "
                        f"on {format_date(year.end_date)}. Please ensure all your evidence has been uploaded."
                    ),
                    metadata={
                        "academicYearId": year.id,
                        "daysUntilDeadline": days_left,
                        "deadlineDate": year.end_date.isoformat(),
                        "actionUrl": f"{self.app_base_url}/upload",
                    },
                ),
                self._reminder_key(NotificationType.REMINDER_UPLOAD, user.id, year.id, now),
            )
            if notification:
                created += 1

        if created:
            logger.info(f"Created {created} upload reminder(s) for {year.name}")
        return created

    async def send_evaluation_reminders(
        self, year: AcademicYear, status: WindowStatus, now: datetime
    ) -> int:
        if status.has_closed:
            return 0
        days_left = status.days_until_close

        created = 0
        for reviewer in await self._reminder_candidates(REVIEWER_ROLES, days_left):
            pending = await self.escalation.get_pending_evaluation_count(
                reviewer, year.id
            )
            if pending <= 0:
                continue
            if await self._recently_reminded(
                reviewer.id, NotificationType.REMINDER_EVALUATION, year.id, now
            ):
                continue

            notification = await self.notifications.create_unique(
                NotificationCreate(
                    user_id=reviewer.id,
                    type=NotificationType.REMINDER_EVALUATION,
                    title=f"Evaluation Deadline Reminder - {year.name}",
                    message=(
                        f"You have {pending} pending evaluation(s) for {year.name}. "
                        f"The evaluation window will close in {days_left} day(s) on {format_date(year.end_date)}."
                    ),
                    metadata={
                        "academicYearId": year.id,
                        "pendingCount": pending,
                        "daysUntilDeadline": days_left,
                        "deadlineDate": year.end_date.isoformat(),
                        "actionUrl": f"{self.app_base_url}/evaluate",
                    },
                ),
                self._reminder_key(
                    NotificationType.REMINDER_EVALUATION, reviewer.id, year.id, now
                ),
            )
            if notification:
                created += 1

        if created:
            logger.info(f"Created {created} evaluation reminder(s) for {year.name}")
        return created

    async def check_window_transitions(
        self, year: AcademicYear, status: WindowStatus
    ) -> int:
        created = 0
        for window_type, flag in WINDOW_FLAGS.items():
            transition = detect_transition(getattr(year, flag), status.should_be_open)
            if not transition:
                continue

            # Conditional flip: a concurrent sweep that already flipped wins
            result = await self.db.execute(
                update(AcademicYear)
                .where(
                    and_(
                        AcademicYear.id == year.id,
                        getattr(AcademicYear, flag).is_(not status.should_be_open),
                    )
                )
                .values({flag: status.should_be_open})
            )
            if result.rowcount != 1:
                await self.db.refresh(year)
                continue

            created += await self._notify_window_transition(year, window_type, transition)
            await self.db.commit()

            logger.info(
                f"{window_type.value} window {transition.value} for {year.name}"
            )
        return created

    async def _notify_window_transition(
        self,
        year: AcademicYear,
        window_type: WindowType,
        transition: WindowTransition,
    ) -> int:
        label = window_type.value.capitalize()
        action_path = "upload" if window_type == WindowType.UPLOAD else "evaluate"

        if transition == WindowTransition.OPENING:
            notification_type = NotificationType.WINDOW_OPENING
            title = f"{label} Window Opened - {year.name}"
            message = f"The {window_type.value} window for {year.name} is now open until {format_date(year.end_date)}."
        else:
            notification_type = NotificationType.WINDOW_CLOSING
            title = f"{label} Window Closed - {year.name}"
            message = f"The {window_type.value} window for {year.name} has been closed as of {format_date(year.end_date)}."

        metadata = {"academicYearId": year.id, "windowType": window_type.value}
        if transition == WindowTransition.OPENING:
            metadata["actionUrl"] = f"{self.app_base_url}/{action_path}"

        result = await self.db.execute(
            select(User.id)
            .where(
                and_(
                    User.is_active.is_(True),
                    User.role.in_(WINDOW_AUDIENCE[window_type]),
                )
            )
            .order_by(User.created_at)
        )
        user_ids = result.scalars().all()

        for user_id in user_ids:
            await self.notifications.create_notification(
                NotificationCreate(
                    user_id=user_id,
                    type=notification_type,
                    title=title,
                    message=message,
                    metadata=dict(metadata),
                )
            )
        return len(user_ids)

    async def process_pending_notifications(
        self, now: Optional[datetime] = None, limit: Optional[int] = None
    ) -> FlushSummary:
        """Dispatch due notifications oldest first. A failing one is skipped."""
        pending = await self.notifications.get_pending(now or self.clock(), limit)
        notification_ids = [notification.id for notification in pending]
        summary = FlushSummary(processed=len(notification_ids))

        for notification_id in notification_ids:
            try:
                result = await self.notifications.dispatch(notification_id)
            except Exception as e:
                await self.db.rollback()
                summary.failed += 1
                logger.opt(exception=e).error(
                    f"Failed to dispatch notification {notification_id}: {e}"
                )
                continue

            if result.completed:
                summary.sent += 1
            else:
                summary.failed += 1

        logger.info(f"Pending notification flush completed: {summary.describe()}")
        return summary
