"""
Ranking Engine: category ranks, competition points and geographic roll-ups.

RankingEngine.rank() is a pure function of (projects, scores): calling it
twice on the same cohort gives identical output. Projects are ordered by
total score; equal totals are separated only by a manual override score.
Projects that still share a rank inside the top band are reported as ties
to resolve, and the Promotion Controller refuses to publish until they are.

Points roll up school -> zone -> sub-county -> county -> region.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from scifair.config.engine_settings import EngineSettings
from scifair.core.geo_scope import GeoScope
from scifair.errors import ErrorCode, ErrorKind, OperationResult
from scifair.orm.competition import CompetitionLevel
from scifair.orm.project import Project
from scifair.orm.user import User
from scifair.rbac import admin_scope, can_manage_level
from scifair.services.assignment_store import AssignmentStore
from scifair.services.audit_service import AuditEvent, AuditService
from scifair.services.score_aggregator import ProjectScore, ScoreAggregator
from scifair.services.scoped_locks import ScopedLocks, cohort_scope, engine_locks

logger = logging.getLogger(__name__)


# =============================================================================
# Output types
# =============================================================================

@dataclass
class RankedProject:
    project_id: int
    title: str
    category: str
    school: str
    zone: str
    sub_county: str
    county: str
    region: str
    total_score: Optional[Decimal]
    override_score: Optional[Decimal]
    is_fully_judged: bool
    rank: Optional[int] = None
    points: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "title": self.title,
            "category": self.category,
            "school": self.school,
            "zone": self.zone,
            "sub_county": self.sub_county,
            "county": self.county,
            "region": self.region,
            "total_score": float(self.total_score) if self.total_score is not None else None,
            "override_score": float(self.override_score) if self.override_score is not None else None,
            "is_fully_judged": self.is_fully_judged,
            "rank": self.rank,
            "points": self.points,
        }


@dataclass
class RankedEntity:
    name: str
    total_points: int
    rank: int
    parent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "total_points": self.total_points, "rank": self.rank, "parent": self.parent}


@dataclass
class TieGroup:
    category: str
    rank: int
    total_score: Decimal
    project_ids: List[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "rank": self.rank,
            "total_score": float(self.total_score),
            "project_ids": list(self.project_ids),
        }


@dataclass
class RankingData:
    projects_with_points: List[RankedProject] = field(default_factory=list)
    school_ranking: List[RankedEntity] = field(default_factory=list)
    zone_ranking: List[RankedEntity] = field(default_factory=list)
    sub_county_ranking: List[RankedEntity] = field(default_factory=list)
    county_ranking: List[RankedEntity] = field(default_factory=list)
    region_ranking: List[RankedEntity] = field(default_factory=list)
    ties_to_resolve: List[TieGroup] = field(default_factory=list)

    def ranked_in_category(self, category: str) -> List[RankedProject]:
        """Ranked projects of one category, best first."""
        return [p for p in self.projects_with_points if p.category == category and p.rank is not None]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projects_with_points": [p.to_dict() for p in self.projects_with_points],
            "school_ranking": [e.to_dict() for e in self.school_ranking],
            "zone_ranking": [e.to_dict() for e in self.zone_ranking],
            "sub_county_ranking": [e.to_dict() for e in self.sub_county_ranking],
            "county_ranking": [e.to_dict() for e in self.county_ranking],
            "region_ranking": [e.to_dict() for e in self.region_ranking],
            "ties_to_resolve": [t.to_dict() for t in self.ties_to_resolve],
        }


def group_by_parent(entities: List[RankedEntity]) -> Dict[str, List[RankedEntity]]:
    """Re-rank entities within each parent (zones per sub-county, and so on)."""
    grouped: Dict[str, List[RankedEntity]] = defaultdict(list)
    for entity in entities:
        grouped[entity.parent or ""].append(
            RankedEntity(entity.name, entity.total_points, len(grouped[entity.parent or ""]) + 1, entity.parent)
        )
    return dict(grouped)


def _decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


# =============================================================================
# Pure ranking
# =============================================================================

class RankingEngine:
    """Stateless ranking over already-scored projects."""

    def __init__(self, settings: EngineSettings):
        self.settings = settings

    @staticmethod
    def _sort_key(item: RankedProject) -> Tuple:
        # None override sorts below any explicit override
        override = item.override_score
        return (
            -item.total_score,
            0 if override is not None else 1,
            -(override or Decimal("0")),
            item.project_id,
        )

    def _rank_category(self, items: List[RankedProject]) -> List[TieGroup]:
        ranked = sorted((p for p in items if p.is_fully_judged and p.total_score is not None), key=self._sort_key)
        ties: List[TieGroup] = []

        previous_key = None
        current_rank = 0
        for position, item in enumerate(ranked, start=1):
            key = (item.total_score, item.override_score)
            if key != previous_key:
                current_rank = position
                previous_key = key
            item.rank = current_rank
            item.points = self.settings.points_for_rank(current_rank)

        by_rank: Dict[int, List[RankedProject]] = defaultdict(list)
        for item in ranked:
            by_rank[item.rank].append(item)
        for rank_value in sorted(by_rank):
            group = by_rank[rank_value]
            if rank_value <= self.settings.top_band_size and len(group) > 1:
                ties.append(TieGroup(
                    category=group[0].category,
                    rank=rank_value,
                    total_score=group[0].total_score,
                    project_ids=[p.project_id for p in group],
                ))
        return ties

    @staticmethod
    def _roll_up(items: List[Tuple[str, Optional[str], int]]) -> List[RankedEntity]:
        totals: Dict[Tuple[str, Optional[str]], int] = defaultdict(int)
        for name, parent, points in items:
            totals[(name, parent)] += points
        ordered = sorted(totals.items(), key=lambda kv: (-kv[1], kv[0][0], kv[0][1] or ""))
        return [
            RankedEntity(name=name, total_points=points, rank=position, parent=parent)
            for position, ((name, parent), points) in enumerate(ordered, start=1)
        ]

    def rank(self, projects: List[Project], scores: Dict[int, ProjectScore]) -> RankingData:
        """
        Rank a cohort.

        Args:
            projects: cohort projects (any mix of categories)
            scores: project id -> aggregated score at the cohort's level

        Returns:
            RankingData; incomplete projects are listed unranked with 0 points
        """
        items: List[RankedProject] = []
        for project in sorted(projects, key=lambda p: p.id):
            score = scores.get(project.id)
            items.append(RankedProject(
                project_id=project.id,
                title=project.title,
                category=project.category,
                school=project.school,
                zone=project.zone,
                sub_county=project.sub_county,
                county=project.county,
                region=project.region,
                total_score=score.total_score if score else None,
                override_score=_decimal(project.override_score),
                is_fully_judged=bool(score and score.is_fully_judged),
            ))

        by_category: Dict[str, List[RankedProject]] = defaultdict(list)
        for item in items:
            by_category[item.category].append(item)

        data = RankingData()
        for category in sorted(by_category):
            data.ties_to_resolve.extend(self._rank_category(by_category[category]))

        data.projects_with_points = sorted(
            items,
            key=lambda p: (p.category, p.rank is None, p.rank or 0, p.project_id),
        )
        data.school_ranking = self._roll_up([(p.school, p.zone, p.points) for p in items])
        data.zone_ranking = self._roll_up([(p.zone, p.sub_county, p.points) for p in items])
        data.sub_county_ranking = self._roll_up([(p.sub_county, p.county, p.points) for p in items])
        data.county_ranking = self._roll_up([(p.county, p.region, p.points) for p in items])
        data.region_ranking = self._roll_up([(p.region, None, p.points) for p in items])
        return data


# =============================================================================
# Store-backed service
# =============================================================================

class RankingService:
    """Ranks a level's cohort from the store and records manual tie-breaks."""

    def __init__(
        self,
        store: AssignmentStore,
        settings: EngineSettings,
        aggregator: Optional[ScoreAggregator] = None,
        audit: Optional[AuditService] = None,
        locks: Optional[ScopedLocks] = None,
    ):
        self.store = store
        self.settings = settings
        self.engine = RankingEngine(settings)
        self.aggregator = aggregator or ScoreAggregator(store, settings)
        self.audit = audit or AuditService(store)
        self.locks = locks or engine_locks

    async def rank_level(
        self,
        level: CompetitionLevel,
        scope: Optional[GeoScope] = None,
        category: Optional[str] = None,
    ) -> RankingData:
        """
        Rank the live cohort of `level` together with any projects an active
        publication froze there, the latter from their archived judging rows.
        """
        projects = await self.store.cohort_projects(level, scope=scope, category=category)
        published = await self.store.published_projects(level, scope=scope, category=category)
        if published:
            live = {p.id for p in projects}
            projects = sorted(projects + [p for p in published if p.id not in live], key=lambda p: p.id)
        scores = await self.aggregator.compute_cohort_scores(projects, level, include_archived=bool(published))
        return self.engine.rank(projects, scores)

    async def set_override_score(self, admin: User, project_id: int, value: Any) -> OperationResult:
        """Set (or clear, with None) the tie-break value of a project."""
        override: Optional[Decimal] = None
        if value is not None:
            try:
                override = Decimal(str(value))
            except (InvalidOperation, ValueError):
                override = None
            if override is None or not override.is_finite() or override < 0:
                return OperationResult.fail(
                    ErrorKind.VALIDATION_ERROR,
                    "Override score must be a non-negative number.",
                    ErrorCode.INVALID_INPUT,
                    field="override_score",
                )

        project = await self.store.get_project(project_id)
        if project is None:
            return OperationResult.fail(
                ErrorKind.NOT_FOUND, f"Project {project_id} not found.", ErrorCode.PROJECT_NOT_FOUND
            )
        level = project.level

        async with self.locks.hold(cohort_scope(project.category, level)):
            project = await self.store.get_project(project_id, lock=True)
            if not can_manage_level(admin, level):
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.INVARIANT_VIOLATION,
                    f"You cannot manage results at the {level.value} level.",
                    ErrorCode.LEVEL_NOT_PERMITTED,
                )
            if not admin_scope(admin).contains(project):
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.INVARIANT_VIOLATION,
                    "This project is outside your jurisdiction.",
                    ErrorCode.JURISDICTION_MISMATCH,
                )
            if project.is_eliminated:
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"Project '{project.title}' was eliminated at the {project.eliminated_at_level} level.",
                    ErrorCode.INVALID_STATE,
                )
            for publication in await self.store.active_publications(level):
                if project.category in (publication.categories or []) and GeoScope(
                    publication.region, publication.county, publication.sub_county
                ).contains(project):
                    await self.store.release()
                    return OperationResult.fail(
                        ErrorKind.PRECONDITION_NOT_MET,
                        f"Results for the {level.value} level are already published.",
                        ErrorCode.ALREADY_PUBLISHED,
                    )

            project.override_score = override
            await self.store.commit()

        message = (
            f"Tie-break score for '{project.title}' set to {override}."
            if override is not None
            else f"Tie-break score for '{project.title}' cleared."
        )
        logger.info(f"Admin {admin.id}: {message}")
        await self.audit.emit(
            AuditEvent.TIE_BREAK_SET,
            message,
            performing_admin_id=admin.id,
            scope=admin_scope(admin),
            level=level,
            category=project.category,
            notified_admin_role=admin.current_role,
        )
        return OperationResult.ok(message, data=project.to_dict())
