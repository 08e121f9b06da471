"""
Shared fixtures: in-memory database, engine settings and seed helpers.

Every test gets a fresh SQLite database. Seed helpers write rows directly so
aggregation, ranking and publication tests can build a judged cohort without
walking each judge through a session.
"""
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from scifair.config.engine_settings import EngineSettings
from scifair.database import build_sessionmaker
from scifair.orm import (
    AssignmentStatus,
    Base,
    CompetitionLevel,
    JudgeAssignment,
    Project,
    Section,
    User,
    UserRole,
)
from scifair.services.assignment_store import AssignmentStore
from scifair.services.scoped_locks import ScopedLocks

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

REGION = "Rift Valley"
COUNTY = "Nakuru"
SUB_COUNTY = "Nakuru East"
OTHER_SUB_COUNTY = "Naivasha"

T0 = datetime(2026, 6, 1, 9, 0, 0)


# =============================================================================
# Database
# =============================================================================

@pytest_asyncio.fixture
async def engine():
    """Create test database engine."""
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = build_sessionmaker(engine)
    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def store(db_session) -> AssignmentStore:
    return AssignmentStore(db_session)


@pytest.fixture
def locks() -> ScopedLocks:
    return ScopedLocks()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        point_table={1: 4, 2: 3, 3: 2, 4: 1},
        arbitration_threshold=5,
        top_band_size=4,
        min_regular_judges=2,
        min_regular_judges_with_coordinator=1,
        session_minutes={Section.PART_A: (4, 7), Section.PART_BC: (8, 15)},
        enforce_session_minimum=True,
        enforce_judging_hours=False,
    )


# =============================================================================
# Seed helpers
# =============================================================================

class Seed:
    """Writes users, projects and assignments straight into the test session."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._counter = 0
        self._clock = T0

    def _next(self) -> int:
        self._counter += 1
        return self._counter

    def tick(self) -> datetime:
        """Strictly increasing completion timestamps."""
        self._clock += timedelta(minutes=1)
        return self._clock

    async def user(
        self,
        name: str,
        roles: List[UserRole],
        school: Optional[str] = "Visiting School",
        work_region: Optional[str] = REGION,
        work_county: Optional[str] = COUNTY,
        work_sub_county: Optional[str] = SUB_COUNTY,
    ) -> User:
        user = User(
            name=name,
            email=f"user{self._next()}@fair.test",
            roles=[r.value for r in roles],
            current_role=roles[0].value if roles else None,
            is_active=True,
            school=school,
            region=REGION,
            county=COUNTY,
            sub_county=SUB_COUNTY,
            work_region=work_region,
            work_county=work_county,
            work_sub_county=work_sub_county,
        )
        self.db.add(user)
        await self.db.commit()
        return user

    async def judge(self, name: str, school: Optional[str] = "Visiting School", **work) -> User:
        return await self.user(name, [UserRole.JUDGE], school=school, **work)

    async def super_admin(self) -> User:
        return await self.user(
            "Super Admin", [UserRole.SUPER_ADMIN],
            work_region=None, work_county=None, work_sub_county=None,
        )

    async def sub_county_admin(self, sub_county: str = SUB_COUNTY) -> User:
        return await self.user("Sub-County Admin", [UserRole.SUB_COUNTY_ADMIN], work_sub_county=sub_county)

    async def county_admin(self) -> User:
        return await self.user("County Admin", [UserRole.COUNTY_ADMIN], work_sub_county=None)

    async def project(
        self,
        title: str,
        category: str = "Physics",
        school: Optional[str] = None,
        zone: str = "Zone 1",
        sub_county: str = SUB_COUNTY,
        level: CompetitionLevel = CompetitionLevel.SUB_COUNTY,
    ) -> Project:
        n = self._next()
        project = Project(
            title=title,
            registration_number=f"REG-{n:04d}",
            category=category,
            region=REGION,
            county=COUNTY,
            sub_county=sub_county,
            zone=zone,
            school=school or f"School {n}",
            current_level=level.value,
        )
        self.db.add(project)
        await self.db.commit()
        return project

    async def assignment(
        self,
        judge: User,
        project: Project,
        section: Section,
        level: CompetitionLevel = CompetitionLevel.SUB_COUNTY,
        score: Optional[str] = None,
        status: Optional[AssignmentStatus] = None,
    ) -> JudgeAssignment:
        """An assignment; passing `score` makes it completed."""
        if status is None:
            status = AssignmentStatus.COMPLETED if score is not None else AssignmentStatus.NOT_STARTED
        row = JudgeAssignment(
            judge_id=judge.id,
            project_id=project.id,
            category=project.category,
            section=section.value,
            competition_level=level.value,
            status=status.value,
            score=Decimal(score) if score is not None else None,
            comments="Good work" if score is not None else None,
            recommendations="Keep going" if score is not None else None,
            completed_at=self.tick() if status == AssignmentStatus.COMPLETED else None,
        )
        self.db.add(row)
        await self.db.commit()
        return row

    async def judged(
        self,
        project: Project,
        part_a: List[str],
        part_bc: List[str],
        judges: List[User],
        level: CompetitionLevel = CompetitionLevel.SUB_COUNTY,
    ) -> None:
        """Complete both sections of a project with regular-judge scores."""
        a_judges, bc_judges = judges[:len(part_a)], judges[len(part_a):]
        for judge, score in zip(a_judges, part_a):
            await self.assignment(judge, project, Section.PART_A, level, score=score)
        for judge, score in zip(bc_judges, part_bc):
            await self.assignment(judge, project, Section.PART_BC, level, score=score)


@pytest_asyncio.fixture
async def seed(db_session) -> Seed:
    return Seed(db_session)


@pytest_asyncio.fixture
async def panel(seed) -> List[User]:
    """Four regular judges: two for Part A, two for Part B & C."""
    return [await seed.judge(f"Judge {i}") for i in range(1, 5)]
