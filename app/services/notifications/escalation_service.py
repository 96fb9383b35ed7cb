from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from app.config.settings import settings
from app.db.models import (
    AcademicYear,
    Evaluation,
    Evidence,
    Indicator,
    Notification,
    NotificationType,
    Standard,
    SubIndicator,
    User,
    UserRole,
    SUPERVISOR_ROLES,
)
from app.schemas.notification_schemas import NotificationCreate
from app.utils.datetime_utils import naive_utc_now
from app.utils.logging import get_logger

from .deadline_utils import (
    URGENT_FROM_LEVEL,
    EscalationStep,
    build_dedup_key,
    days_between,
    get_escalation_step,
    time_bucket,
)
from .notification_service import NotificationService

logger = get_logger()

LEVEL_CONSEQUENCES = {
    1: "Please complete these evaluations at your earliest convenience.",
    2: "Immediate action is required to complete these evaluations.",
    3: "This matter has been escalated to your supervisor for review.",
    4: "This is your final warning. Administrative action may be taken if not resolved immediately.",
    5: "Administrative action is being initiated due to continued non-compliance.",
}


def _not_deleted():
    return Evidence.deleted_at.is_(None)


def _has_no_evaluation():
    return ~Evidence.evaluations.any()


@dataclass(frozen=True)
class OverdueItem:
    """Detached view of one unevaluated evidence row and its naming hierarchy."""

    evidence_id: str
    file_name: str
    uploader: Optional[str]
    sub_indicator: str
    indicator: str
    standard: str
    education_level: str
    uploaded_at: datetime

    @classmethod
    def from_evidence(cls, evidence: Evidence) -> "OverdueItem":
        sub_indicator = evidence.sub_indicator
        standard = sub_indicator.indicator.standard
        return cls(
            evidence_id=evidence.id,
            file_name=evidence.original_name,
            uploader=evidence.uploader.name if evidence.uploader else None,
            sub_indicator=sub_indicator.name,
            indicator=sub_indicator.indicator.name,
            standard=standard.name,
            education_level=standard.education_level.name,
            uploaded_at=evidence.uploaded_at,
        )

    def as_breakdown(self) -> Dict[str, Any]:
        return {
            "evidenceId": self.evidence_id,
            "fileName": self.file_name,
            "uploader": self.uploader,
            "subIndicator": self.sub_indicator,
            "indicator": self.indicator,
            "standard": self.standard,
            "educationLevel": self.education_level,
            "uploadedAt": self.uploaded_at.isoformat(),
        }


class EscalationService:
    """
    Overdue-evaluation ladder for academic years whose evaluation window closed.

    The level is recomputed from elapsed days on every run. The only persisted
    escalation state is the notification history: the `escalationLevel` metadata
    of the most recent overdue_escalation notification inside the cool-down.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        notification_service: NotificationService,
        clock: Callable[[], datetime] = naive_utc_now,
        cooldown_hours: int = settings.ESCALATION_COOLDOWN_HOURS,
        app_base_url: str = settings.APP_BASE_URL,
    ):
        self.db = db_session
        self.notifications = notification_service
        self.clock = clock
        self.cooldown = timedelta(hours=cooldown_hours)
        self.app_base_url = app_base_url.rstrip("/")

    async def get_pending_evaluation_count(
        self, user: User, academic_year_id: str
    ) -> int:
        if user.role == UserRole.INTERNAL_REVIEWER:
            query = (
                select(func.count(Evidence.id))
                .join(SubIndicator, Evidence.sub_indicator_id == SubIndicator.id)
                .where(
                    and_(
                        Evidence.academic_year_id == academic_year_id,
                        SubIndicator.owner_id == user.id,
                        _not_deleted(),
                        _has_no_evaluation(),
                    )
                )
            )
        elif user.role == UserRole.EXTERNAL_REVIEWER:
            # Only an evaluation authored by this reviewer satisfies the item
            query = select(func.count(Evidence.id)).where(
                and_(
                    Evidence.academic_year_id == academic_year_id,
                    _not_deleted(),
                    ~Evidence.evaluations.any(Evaluation.evaluator_id == user.id),
                )
            )
        else:
            return 0

        return await self.db.scalar(query) or 0

    async def process_overdue_evaluations(
        self, year: AcademicYear, now: Optional[datetime] = None
    ) -> int:
        """Escalate every reviewer with unevaluated evidence in `year`. Returns notifications created."""
        now = now or self.clock()
        if now <= year.end_date:
            return 0

        days_since_close = days_between(year.end_date, now)
        grouped = await self._group_unevaluated_by_owner(year.id)
        if not grouped:
            return 0

        year_id, year_name = year.id, year.name
        created = 0
        for reviewer_id, items in grouped.items():
            try:
                created += await self.apply_escalation(
                    reviewer_id, items, year, days_since_close, now
                )
                await self.db.commit()
            except Exception as e:
                await self.db.rollback()
                logger.opt(exception=e).error(
                    f"Escalation failed for reviewer {reviewer_id} in {year_name}: {e}"
                )
                # Rollback expires loaded rows
                year = await self.db.get(AcademicYear, year_id, populate_existing=True)

        return created

    async def _group_unevaluated_by_owner(
        self, academic_year_id: str
    ) -> Dict[str, List[OverdueItem]]:
        result = await self.db.execute(
            select(Evidence)
            .options(
                selectinload(Evidence.uploader),
                selectinload(Evidence.sub_indicator)
                .selectinload(SubIndicator.indicator)
                .selectinload(Indicator.standard)
                .selectinload(Standard.education_level),
            )
            .where(
                and_(
                    Evidence.academic_year_id == academic_year_id,
                    _not_deleted(),
                    _has_no_evaluation(),
                )
            )
            .order_by(Evidence.uploaded_at)
        )

        grouped: Dict[str, List[OverdueItem]] = defaultdict(list)
        for evidence in result.scalars().all():
            owner_id = evidence.sub_indicator.owner_id
            if owner_id:
                grouped[owner_id].append(OverdueItem.from_evidence(evidence))
        return grouped

    async def apply_escalation(
        self,
        reviewer_id: str,
        evidence_list: Sequence[OverdueItem],
        year: AcademicYear,
        days_since_close: int,
        now: Optional[datetime] = None,
    ) -> int:
        now = now or self.clock()
        step = get_escalation_step(days_since_close)
        if not step:
            return 0

        latest = await self._latest_escalation(reviewer_id, year.id, now)
        if latest and latest.escalation_level == step.level:
            logger.debug(
                f"Level {step.level} already issued to reviewer {reviewer_id} for {year.name}"
            )
            return 0

        reviewer = await self.db.get(User, reviewer_id, populate_existing=True)
        if not reviewer:
            logger.warning(
                f"Sub-indicator owner {reviewer_id} does not exist, skipping escalation"
            )
            return 0

        # Sweeps that read the same history build the same key
        dedup_key = build_dedup_key(
            NotificationType.OVERDUE_ESCALATION,
            reviewer.id,
            year.id,
            f"L{step.level}",
            latest.id if latest else time_bucket(now, self.cooldown),
        )
        notified = await self._notify_reviewer(
            reviewer, evidence_list, year, step, days_since_close, dedup_key
        )
        if not notified:
            return 0

        created = 1

        if step.level == 3:
            created += await self._notify_supervisors(
                reviewer, evidence_list, year, days_since_close
            )
        elif step.level == 5:
            created += await self._create_administrative_alert(
                reviewer, evidence_list, year, days_since_close
            )

        logger.info(
            f"Escalation level {step.level} applied to reviewer {reviewer_id} "
            f"({len(evidence_list)} overdue, {days_since_close} days) for {year.name}"
        )
        return created

    async def _latest_escalation(
        self, reviewer_id: str, academic_year_id: str, now: datetime
    ) -> Optional[Notification]:
        """Most recent overdue_escalation for (reviewer, year) inside the cool-down."""
        recent: Sequence[Notification] = await self.notifications.find_recent(
            reviewer_id,
            NotificationType.OVERDUE_ESCALATION,
            academic_year_id,
            since=now - self.cooldown,
        )
        return recent[0] if recent else None

    async def _notify_reviewer(
        self,
        reviewer: User,
        evidence_list: Sequence[OverdueItem],
        year: AcademicYear,
        step: EscalationStep,
        days_since_close: int,
        dedup_key: str,
    ) -> Optional[Notification]:
        prefix = "[URGENT] " if step.level >= URGENT_FROM_LEVEL else ""
        message = (
            f"You have {len(evidence_list)} overdue evaluation(s) for {year.name}. "
            f"These evaluations are {days_since_close} day(s) overdue ({step.label}). "
            f"{LEVEL_CONSEQUENCES[step.level]}"
        )
        metadata: Dict[str, Any] = {
            "academicYearId": year.id,
            "escalationLevel": step.level,
            "escalationDescription": step.label,
            "overdueCount": len(evidence_list),
            "daysSinceClosure": days_since_close,
            "actionUrl": f"{self.app_base_url}/evaluate",
        }
        if step.level == 4:
            metadata["detailedBreakdown"] = [
                item.as_breakdown() for item in evidence_list
            ]

        return await self.notifications.create_unique(
            NotificationCreate(
                user_id=reviewer.id,
                type=NotificationType.OVERDUE_ESCALATION,
                title=f"{prefix}Overdue Evaluations - Level {step.level}",
                message=message,
                metadata=metadata,
            ),
            dedup_key,
        )

    async def _active_users(self, roles) -> Sequence[User]:
        result = await self.db.execute(
            select(User)
            .where(and_(User.is_active.is_(True), User.role.in_(roles)))
            .order_by(User.created_at)
        )
        return result.scalars().all()

    async def _notify_supervisors(
        self,
        reviewer: User,
        evidence_list: Sequence[OverdueItem],
        year: AcademicYear,
        days_since_close: int,
    ) -> int:
        supervisors = await self._active_users(SUPERVISOR_ROLES)
        for supervisor in supervisors:
            await self.notifications.create_notification(
                NotificationCreate(
                    user_id=supervisor.id,
                    type=NotificationType.SYSTEM_ALERT,
                    title="Escalation Alert: Overdue Evaluations",
                    message=(
                        f"{reviewer.name} ({reviewer.email}) has {len(evidence_list)} overdue "
                        f"evaluation(s) for {year.name}. These evaluations are {days_since_close} "
                        "day(s) overdue and require supervisor intervention."
                    ),
                    metadata={
                        "escalationType": "supervisor_notification",
                        "academicYearId": year.id,
                        "evaluatorId": reviewer.id,
                        "evaluatorName": reviewer.name,
                        "evaluatorEmail": reviewer.email,
                        "overdueCount": len(evidence_list),
                        "daysSinceClosure": days_since_close,
                        "actionUrl": f"{self.app_base_url}/admin/users",
                    },
                )
            )
        return len(supervisors)

    async def _create_administrative_alert(
        self,
        reviewer: User,
        evidence_list: Sequence[OverdueItem],
        year: AcademicYear,
        days_since_close: int,
    ) -> int:
        admins = await self._active_users((UserRole.ADMINISTRATOR,))
        for admin in admins:
            await self.notifications.create_notification(
                NotificationCreate(
                    user_id=admin.id,
                    type=NotificationType.SYSTEM_ALERT,
                    title="[ADMINISTRATIVE ACTION REQUIRED] Chronic Evaluation Delays",
                    message=(
                        f"URGENT: {reviewer.name} ({reviewer.email}) has persistently failed to "
                        f"complete {len(evidence_list)} evaluation(s) for {year.name}. These "
                        f"evaluations are {days_since_close} day(s) overdue. Immediate "
                        "administrative intervention is required."
                    ),
                    metadata={
                        "escalationType": "administrative_action",
                        "academicYearId": year.id,
                        "evaluatorId": reviewer.id,
                        "evaluatorName": reviewer.name,
                        "evaluatorEmail": reviewer.email,
                        "overdueCount": len(evidence_list),
                        "daysSinceClosure": days_since_close,
                        "severity": "critical",
                        "actionUrl": f"{self.app_base_url}/admin/users",
                    },
                )
            )

        await self.notifications.create_notification(
            NotificationCreate(
                user_id=reviewer.id,
                type=NotificationType.SYSTEM_ALERT,
                title="[ADMINISTRATIVE ACTION] Evaluation Compliance Issue",
                message=(
                    "Due to persistent failure to complete evaluations, administrative action "
                    f"has been initiated regarding your {len(evidence_list)} overdue "
                    f"evaluation(s) for {year.name}. Please contact the administrator immediately."
                ),
                metadata={
                    "escalationType": "administrative_notice",
                    "academicYearId": year.id,
                    "overdueCount": len(evidence_list),
                    "daysSinceClosure": days_since_close,
                    "severity": "critical",
                },
            )
        )

        logger.warning(
            f"Administrative action alert created for reviewer {reviewer.id} in {year.name}"
        )
        return len(admins) + 1
