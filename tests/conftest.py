import os

# Must be set before any app module builds its engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import uuid
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.models import (
    Base,
    AcademicYear,
    EducationLevel,
    Evaluation,
    Evidence,
    Indicator,
    Standard,
    SubIndicator,
    User,
    UserRole,
)
from app.services.scheduler_service import JobScheduler


# Test database setup
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Settable clock handed to every service under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest_asyncio.fixture
async def test_engine():
    """Create a fresh in-memory database per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for each test."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 26, 12, 0, 0))


# Test data factories
@pytest.fixture
def make_user(db_session: AsyncSession):
    async def _make_user(
        role: UserRole,
        name: Optional[str] = None,
        reminder_days: int = 7,
        email_enabled: bool = True,
        push_enabled: bool = False,
        is_active: bool = True,
    ) -> User:
        suffix = uuid.uuid4().hex[:8]
        user = User(
            email=f"{role.value}-{suffix}@example.com",
            name=name or f"{role.value.replace('_', ' ').title()} {suffix}",
            role=role,
            is_active=is_active,
            email_enabled=email_enabled,
            push_enabled=push_enabled,
            deadline_reminder_days=reminder_days,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_year(db_session: AsyncSession):
    async def _make_year(
        start_date: datetime,
        end_date: datetime,
        name: str = "2024/2025",
        upload_window_open: bool = False,
        evaluation_window_open: bool = False,
        is_active: bool = True,
    ) -> AcademicYear:
        year = AcademicYear(
            name=name,
            start_date=start_date,
            end_date=end_date,
            is_active=is_active,
            upload_window_open=upload_window_open,
            evaluation_window_open=evaluation_window_open,
        )
        db_session.add(year)
        await db_session.commit()
        return year

    return _make_year


@pytest.fixture
def make_sub_indicator(db_session: AsyncSession):
    """Build an education level > standard > indicator > sub-indicator chain."""

    async def _make_sub_indicator(owner: Optional[User] = None) -> SubIndicator:
        code = uuid.uuid4().hex[:6]
        level = EducationLevel(name="Primary Education", code=f"EL-{code}")
        standard = Standard(name="Learner Quality", code="S1", education_level=level)
        indicator = Indicator(name="Academic Achievement", code="1.1", standard=standard)
        sub_indicator = SubIndicator(
            name="Reading and Writing",
            code="1.1.1",
            indicator=indicator,
            owner_id=owner.id if owner else None,
        )
        db_session.add_all([level, standard, indicator, sub_indicator])
        await db_session.commit()
        return sub_indicator

    return _make_sub_indicator


@pytest.fixture
def make_evidence(db_session: AsyncSession):
    async def _make_evidence(
        year: AcademicYear,
        sub_indicator: SubIndicator,
        uploader: User,
        original_name: str = "report.pdf",
        uploaded_at: Optional[datetime] = None,
        deleted_at: Optional[datetime] = None,
    ) -> Evidence:
        evidence = Evidence(
            filename=f"{uuid.uuid4().hex}.pdf",
            original_name=original_name,
            uploader_id=uploader.id,
            academic_year_id=year.id,
            sub_indicator_id=sub_indicator.id,
            uploaded_at=uploaded_at or datetime(2025, 1, 10, 9, 0, 0),
            deleted_at=deleted_at,
        )
        db_session.add(evidence)
        await db_session.commit()
        return evidence

    return _make_evidence


@pytest.fixture
def make_evaluation(db_session: AsyncSession):
    async def _make_evaluation(evidence: Evidence, evaluator: User) -> Evaluation:
        evaluation = Evaluation(
            evidence_id=evidence.id,
            evaluator_id=evaluator.id,
            qualitative_score=4,
            comments="Meets the indicator",
        )
        db_session.add(evaluation)
        await db_session.commit()
        return evaluation

    return _make_evaluation


@pytest_asyncio.fixture
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to the app, sharing the test database."""
    from app.db.session import get_async_session
    from app.main import app

    async def override_get_async_session():
        async with session_factory() as session:
            yield session

    # ASGITransport does not run the lifespan, so the scheduler is set here
    app.state.scheduler = JobScheduler()
    app.dependency_overrides[get_async_session] = override_get_async_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    await app.state.scheduler.shutdown()
    app.dependency_overrides.clear()