from typing import Any, Dict, List, Optional
from datetime import datetime
import uuid
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    CheckConstraint,
    DateTime,
    JSON,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from app.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


def generate_uuid() -> str:
    return str(uuid.uuid4())


# Enums
class UserRole(enum.Enum):
    SUBMITTER = "submitter"
    INTERNAL_REVIEWER = "internal_reviewer"
    EXTERNAL_REVIEWER = "external_reviewer"
    EXECUTIVE = "executive"
    ADMINISTRATOR = "administrator"


REVIEWER_ROLES = (UserRole.INTERNAL_REVIEWER, UserRole.EXTERNAL_REVIEWER)
SUPERVISOR_ROLES = (UserRole.ADMINISTRATOR, UserRole.EXECUTIVE)


class NotificationType(enum.Enum):
    REMINDER_UPLOAD = "reminder_upload"
    REMINDER_EVALUATION = "reminder_evaluation"
    WINDOW_OPENING = "window_opening"
    WINDOW_CLOSING = "window_closing"
    OVERDUE_ESCALATION = "overdue_escalation"
    SYSTEM_ALERT = "system_alert"


class WindowType(enum.Enum):
    UPLOAD = "upload"
    EVALUATION = "evaluation"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Models
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    email: Mapped[str] = mapped_column(String(320), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    role: Mapped[UserRole] = mapped_column(Enum(UserRole), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Notification preferences
    email_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    push_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deadline_reminder_days: Mapped[int] = mapped_column(
        Integer, default=7, nullable=False
    )

    # Relationships
    notifications: Mapped[List["Notification"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    owned_sub_indicators: Mapped[List["SubIndicator"]] = relationship(
        back_populates="owner"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "deadline_reminder_days >= 0", name="ck_users_reminder_days_non_negative"
        ),
        Index("idx_users_role_active", "role", "is_active"),
    )


class AcademicYear(Base, AuditMixin):
    __tablename__ = "academic_years"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    upload_window_open: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    evaluation_window_open: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    # Relationships
    evidence: Mapped[List["Evidence"]] = relationship(back_populates="academic_year")

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "end_date > start_date", name="ck_academic_years_end_after_start"
        ),
        Index("idx_academic_years_is_active", "is_active"),
        Index("idx_academic_years_dates", "start_date", "end_date"),
    )


class EducationLevel(Base, AuditMixin):
    __tablename__ = "education_levels"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)

    standards: Mapped[List["Standard"]] = relationship(
        back_populates="education_level"
    )


class Standard(Base, AuditMixin):
    __tablename__ = "standards"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    education_level_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("education_levels.id"), nullable=False
    )

    education_level: Mapped["EducationLevel"] = relationship(
        back_populates="standards"
    )
    indicators: Mapped[List["Indicator"]] = relationship(back_populates="standard")


class Indicator(Base, AuditMixin):
    __tablename__ = "indicators"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    standard_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("standards.id"), nullable=False
    )

    standard: Mapped["Standard"] = relationship(back_populates="indicators")
    sub_indicators: Mapped[List["SubIndicator"]] = relationship(
        back_populates="indicator"
    )


class SubIndicator(Base, AuditMixin):
    __tablename__ = "sub_indicators"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    indicator_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("indicators.id"), nullable=False
    )
    # The internal reviewer responsible for evaluating evidence under it
    owner_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="SET NULL")
    )

    indicator: Mapped["Indicator"] = relationship(back_populates="sub_indicators")
    owner: Mapped[Optional["User"]] = relationship(
        back_populates="owned_sub_indicators"
    )
    evidence: Mapped[List["Evidence"]] = relationship(back_populates="sub_indicator")

    __table_args__ = (Index("idx_sub_indicators_owner_id", "owner_id"),)


class Evidence(Base):
    __tablename__ = "evidence"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    filename: Mapped[str] = mapped_column(String(500), nullable=False)
    original_name: Mapped[str] = mapped_column(String(500), nullable=False)
    uploader_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False
    )
    academic_year_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("academic_years.id"), nullable=False
    )
    sub_indicator_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("sub_indicators.id"), nullable=False
    )
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    uploader: Mapped["User"] = relationship()
    academic_year: Mapped["AcademicYear"] = relationship(back_populates="evidence")
    sub_indicator: Mapped["SubIndicator"] = relationship(back_populates="evidence")
    evaluations: Mapped[List["Evaluation"]] = relationship(
        back_populates="evidence",
        cascade="all, delete-orphan",
        order_by="Evaluation.evaluated_at",
    )

    __table_args__ = (
        Index("idx_evidence_year_sub_indicator", "academic_year_id", "sub_indicator_id"),
        Index("idx_evidence_deleted_at", "deleted_at"),
    )


class Evaluation(Base):
    __tablename__ = "evaluations"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    evidence_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("evidence.id", ondelete="CASCADE"), nullable=False
    )
    evaluator_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id"), nullable=False
    )
    qualitative_score: Mapped[Optional[int]] = mapped_column(Integer)
    quantitative_score: Mapped[Optional[int]] = mapped_column(Integer)
    comments: Mapped[Optional[str]] = mapped_column(Text)
    evaluated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )

    evidence: Mapped["Evidence"] = relationship(back_populates="evaluations")

    __table_args__ = (
        Index("idx_evaluations_evidence_evaluator", "evidence_id", "evaluator_id"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=generate_uuid
    )
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[NotificationType] = mapped_column(
        Enum(NotificationType), nullable=False
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # `metadata` is reserved by the declarative base
    notification_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(
        "metadata", JSON
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    # Set once by the dispatcher, never cleared
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Set on notifications issued at most once per condition; NULL otherwise
    dedup_key: Mapped[Optional[str]] = mapped_column(String(255))

    # Relationships
    user: Mapped["User"] = relationship(back_populates="notifications")

    @property
    def metadata_dict(self) -> Dict[str, Any]:
        return dict(self.notification_metadata or {})

    @property
    def escalation_level(self) -> Optional[int]:
        return self.metadata_dict.get("escalationLevel")

    # Indexes
    __table_args__ = (
        Index("idx_notif_user_type_created", "user_id", "type", "created_at"),
        Index("idx_notif_pending", "sent_at", "scheduled_for"),
        Index("idx_notif_created_at", "created_at"),
        Index("idx_notif_read_created", "is_read", "created_at"),
        Index("uq_notif_dedup_key", "dedup_key", unique=True),
    )
