"""
Assignment Store: repository over projects, users and judge assignments.

Every engine component receives an AssignmentStore instead of building its own
queries, so the invariants of the assignment table (one non-archived row per
judge/project/section/level, archival only through publication) are read and
written in one place. Coordinator-ness is derived here and nowhere else.
"""
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.core.geo_scope import GeoScope
from scifair.orm.competition import (
    CompetitionLevel, Section, EXCLUDED_PROJECT_STATUSES
)
from scifair.orm.judge_assignment import JudgeAssignment
from scifair.orm.level_publication import LevelPublication, PublicationStatus
from scifair.orm.project import Project
from scifair.orm.user import User

logger = logging.getLogger(__name__)


def derive_coordinator_ids(
    assignments: Iterable[JudgeAssignment],
    include_archived: bool = False
) -> Dict[str, Set[int]]:
    """
    Coordinators per category among `assignments` (all at one level).

    A judge coordinates a category exactly when the set of sections they hold
    in it has both "Part A" and "Part B & C". Archived rows are ignored unless
    `include_archived` is set (reporting on a published level).
    """
    sections: Dict[tuple, Set[str]] = defaultdict(set)
    for a in assignments:
        if a.is_archived and not include_archived:
            continue
        sections[(a.category, a.judge_id)].add(a.section)

    coordinators: Dict[str, Set[int]] = defaultdict(set)
    for (category, judge_id), held in sections.items():
        if len(held) == len(Section):
            coordinators[category].add(judge_id)
    return dict(coordinators)


def section_map(assignments: Iterable[JudgeAssignment]) -> Dict[str, Set[Section]]:
    """category -> sections held, for one judge's assignments."""
    held: Dict[str, Set[Section]] = defaultdict(set)
    for a in assignments:
        if not a.is_archived:
            held[a.category].add(Section(a.section))
    return dict(held)


class AssignmentStore:
    """Repository with scoped transactions, injected into each engine component."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # Transactions
    # =========================================================================

    @asynccontextmanager
    async def transaction(self):
        """Commit on success, roll back everything on any error."""
        try:
            yield self
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def flush(self) -> None:
        await self.db.flush()

    async def commit(self) -> None:
        await self.db.commit()

    async def rollback(self) -> None:
        await self.db.rollback()

    async def release(self) -> None:
        """
        End the current transaction after a rejected operation.

        Nothing was written, so committing releases row locks without
        expiring the objects the caller still holds. Pending changes, if any,
        are rolled back.
        """
        if self.db.new or self.db.dirty or self.db.deleted:
            await self.db.rollback()
        else:
            await self.db.commit()

    def add(self, obj) -> None:
        self.db.add(obj)

    # =========================================================================
    # Single-row lookups
    # =========================================================================

    async def get_project(self, project_id: int, lock: bool = False) -> Optional[Project]:
        query = select(Project).where(Project.id == project_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_user(self, user_id: int, lock: bool = False) -> Optional[User]:
        query = select(User).where(User.id == user_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_assignment(self, assignment_id: int, lock: bool = False) -> Optional[JudgeAssignment]:
        query = select(JudgeAssignment).where(JudgeAssignment.id == assignment_id)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def users_by_ids(self, user_ids: Iterable[int]) -> Dict[int, User]:
        ids = set(user_ids)
        if not ids:
            return {}
        result = await self.db.execute(select(User).where(User.id.in_(ids)))
        return {u.id: u for u in result.scalars().all()}

    async def projects_by_ids(self, project_ids: Iterable[int], lock: bool = False) -> Dict[int, Project]:
        ids = set(project_ids)
        if not ids:
            return {}
        query = select(Project).where(Project.id.in_(ids))
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return {p.id: p for p in result.scalars().all()}

    # =========================================================================
    # Assignment queries
    # =========================================================================

    async def active_assignments(
        self,
        level: CompetitionLevel,
        category: Optional[str] = None,
        judge_id: Optional[int] = None,
        project_ids: Optional[Iterable[int]] = None,
        section: Optional[Section] = None,
        lock: bool = False,
    ) -> List[JudgeAssignment]:
        """Non-archived assignments at `level`, optionally narrowed."""
        query = select(JudgeAssignment).where(
            JudgeAssignment.competition_level == level.value,
            JudgeAssignment.is_archived == False  # noqa: E712
        )
        if category is not None:
            query = query.where(JudgeAssignment.category == category)
        if judge_id is not None:
            query = query.where(JudgeAssignment.judge_id == judge_id)
        if project_ids is not None:
            query = query.where(JudgeAssignment.project_id.in_(set(project_ids)))
        if section is not None:
            query = query.where(JudgeAssignment.section == section.value)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.order_by(JudgeAssignment.id))
        return list(result.scalars().all())

    async def project_assignments(
        self,
        project_id: int,
        level: CompetitionLevel,
        include_archived: bool = False
    ) -> List[JudgeAssignment]:
        query = select(JudgeAssignment).where(
            JudgeAssignment.project_id == project_id,
            JudgeAssignment.competition_level == level.value,
        )
        if not include_archived:
            query = query.where(JudgeAssignment.is_archived == False)  # noqa: E712
        result = await self.db.execute(query.order_by(JudgeAssignment.id))
        return list(result.scalars().all())

    async def assignments_for_projects(
        self,
        project_ids: Iterable[int],
        level: CompetitionLevel,
        include_archived: bool = False
    ) -> Dict[int, List[JudgeAssignment]]:
        """project_id -> assignments at `level`, one query for a whole cohort."""
        ids = set(project_ids)
        grouped: Dict[int, List[JudgeAssignment]] = {pid: [] for pid in ids}
        if not ids:
            return grouped
        query = select(JudgeAssignment).where(
            JudgeAssignment.project_id.in_(ids),
            JudgeAssignment.competition_level == level.value,
        )
        if not include_archived:
            query = query.where(JudgeAssignment.is_archived == False)  # noqa: E712
        result = await self.db.execute(query.order_by(JudgeAssignment.id))
        for a in result.scalars().all():
            grouped[a.project_id].append(a)
        return grouped

    async def category_assignments(
        self,
        category: str,
        level: CompetitionLevel,
        include_archived: bool = False
    ) -> List[JudgeAssignment]:
        """Every assignment of a category at `level`, archived ones included on request."""
        if not include_archived:
            return await self.active_assignments(level, category=category)
        result = await self.db.execute(
            select(JudgeAssignment).where(
                JudgeAssignment.category == category,
                JudgeAssignment.competition_level == level.value,
            ).order_by(JudgeAssignment.id)
        )
        return list(result.scalars().all())

    async def find_active(
        self,
        judge_id: int,
        project_id: int,
        section: Section,
        level: CompetitionLevel
    ) -> Optional[JudgeAssignment]:
        result = await self.db.execute(
            select(JudgeAssignment).where(
                JudgeAssignment.judge_id == judge_id,
                JudgeAssignment.project_id == project_id,
                JudgeAssignment.section == section.value,
                JudgeAssignment.competition_level == level.value,
                JudgeAssignment.is_archived == False  # noqa: E712
            )
        )
        return result.scalar_one_or_none()

    async def assignments_by_ids(self, assignment_ids: Iterable[int]) -> List[JudgeAssignment]:
        ids = set(assignment_ids)
        if not ids:
            return []
        result = await self.db.execute(
            select(JudgeAssignment).where(JudgeAssignment.id.in_(ids)).order_by(JudgeAssignment.id)
        )
        return list(result.scalars().all())

    async def count_active_assignments(
        self,
        level: CompetitionLevel,
        project_ids: Optional[Iterable[int]] = None
    ) -> int:
        """Number of non-archived assignments at `level` (optionally for given projects)."""
        query = select(func.count(JudgeAssignment.id)).where(
            JudgeAssignment.competition_level == level.value,
            JudgeAssignment.is_archived == False  # noqa: E712
        )
        if project_ids is not None:
            ids = set(project_ids)
            if not ids:
                return 0
            query = query.where(JudgeAssignment.project_id.in_(ids))
        result = await self.db.execute(query)
        return result.scalar() or 0

    async def prior_level_categories(self, judge_id: int, level: CompetitionLevel) -> Dict[str, CompetitionLevel]:
        """Categories a judge judged at any level below `level` -> the lowest such level."""
        lower = [lv.value for lv in CompetitionLevel if lv < level]
        if not lower:
            return {}
        result = await self.db.execute(
            select(JudgeAssignment.category, JudgeAssignment.competition_level).where(
                JudgeAssignment.judge_id == judge_id,
                JudgeAssignment.competition_level.in_(lower),
            )
        )
        judged: Dict[str, CompetitionLevel] = {}
        for category, level_value in result.all():
            lv = CompetitionLevel(level_value)
            if category not in judged or lv < judged[category]:
                judged[category] = lv
        return judged

    # =========================================================================
    # Derived roles
    # =========================================================================

    async def coordinator_ids(self, category: str, level: CompetitionLevel) -> Set[int]:
        """Judges currently coordinating `category` at `level`."""
        assignments = await self.active_assignments(level, category=category)
        return derive_coordinator_ids(assignments).get(category, set())

    async def judge_sections(self, judge_id: int, level: CompetitionLevel) -> Dict[str, Set[Section]]:
        """category -> sections a judge holds at `level`."""
        return section_map(await self.active_assignments(level, judge_id=judge_id))

    # =========================================================================
    # Projects and cohorts
    # =========================================================================

    async def cohort_projects(
        self,
        level: CompetitionLevel,
        scope: Optional[GeoScope] = None,
        category: Optional[str] = None,
        lock: bool = False,
    ) -> List[Project]:
        """Projects competing at `level` inside `scope`: not eliminated, not pending or rejected."""
        query = select(Project).where(
            Project.current_level == level.value,
            Project.is_eliminated == False,  # noqa: E712
            Project.status.notin_(EXCLUDED_PROJECT_STATUSES),
        )
        scope = scope or GeoScope()
        if scope.region is not None:
            query = query.where(Project.region == scope.region)
        if scope.county is not None:
            query = query.where(Project.county == scope.county)
        if scope.sub_county is not None:
            query = query.where(Project.sub_county == scope.sub_county)
        if category is not None:
            query = query.where(Project.category == category)
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query.order_by(Project.id))
        return list(result.scalars().all())

    # =========================================================================
    # Publications
    # =========================================================================

    async def active_publications(self, level: CompetitionLevel) -> List[LevelPublication]:
        result = await self.db.execute(
            select(LevelPublication).where(
                LevelPublication.competition_level == level.value,
                LevelPublication.status == PublicationStatus.PUBLISHED.value,
            ).order_by(LevelPublication.id)
        )
        return list(result.scalars().all())

    async def latest_publication(
        self,
        level: CompetitionLevel,
        scope: GeoScope,
        lock: bool = False
    ) -> Optional[LevelPublication]:
        query = select(LevelPublication).where(
            LevelPublication.competition_level == level.value,
            LevelPublication.scope_key == scope.key(),
            LevelPublication.status == PublicationStatus.PUBLISHED.value,
        ).order_by(LevelPublication.id.desc())
        if lock:
            query = query.with_for_update()
        result = await self.db.execute(query)
        return result.scalars().first()

    async def list_publications(self, level: Optional[CompetitionLevel] = None) -> List[LevelPublication]:
        query = select(LevelPublication)
        if level is not None:
            query = query.where(LevelPublication.competition_level == level.value)
        result = await self.db.execute(query.order_by(LevelPublication.id))
        return list(result.scalars().all())

    async def published_projects(
        self,
        level: CompetitionLevel,
        scope: Optional[GeoScope] = None,
        category: Optional[str] = None,
    ) -> List[Project]:
        """Projects frozen by the active publications of `level` that fall inside `scope`."""
        scope = scope or GeoScope()
        ids: Set[int] = set()
        for publication in await self.active_publications(level):
            if category is not None and category not in (publication.categories or []):
                continue
            if not scope.overlaps(GeoScope(publication.region, publication.county, publication.sub_county)):
                continue
            ids.update(entry["id"] for entry in publication.project_snapshot or [])

        projects = await self.projects_by_ids(ids)
        return [
            projects[pid] for pid in sorted(projects)
            if scope.contains(projects[pid]) and (category is None or projects[pid].category == category)
        ]
