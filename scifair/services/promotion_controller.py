"""
Promotion Controller: publish and unpublish a competition level.

Cohort state per (category, level):

    IN_PROGRESS -> TIES_PENDING -> READY_TO_PUBLISH -> PUBLISHED -> ROLLED_BACK

Publish promotes the top band of every category to the next level,
eliminates the rest, archives the cohort's assignments and resets the
level's coordinators to Judge. Everything it overwrites is written to a
LevelPublication row first; unpublish restores from that row verbatim.
Both operations are all-or-nothing: one transaction, rolled back on any
database error.

NATIONAL publish finalizes placements and cannot be rolled back.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from scifair.config.engine_settings import EngineSettings
from scifair.core.geo_scope import GeoScope
from scifair.errors import ErrorCode, ErrorKind, OperationResult
from scifair.orm.competition import CompetitionLevel
from scifair.orm.level_publication import LevelPublication, PublicationStatus
from scifair.orm.project import Project
from scifair.orm.user import User, UserRole
from scifair.rbac import acting_admin_role, admin_scope, can_manage_level
from scifair.services.assignment_store import AssignmentStore, derive_coordinator_ids
from scifair.services.audit_service import AuditEvent, AuditService
from scifair.services.ranking_engine import RankingEngine, TieGroup
from scifair.services.score_aggregator import ProjectScore, ScoreAggregator
from scifair.services.scoped_locks import ScopedLocks, cohort_scopes, engine_locks

logger = logging.getLogger(__name__)


class CohortState(str, Enum):
    IN_PROGRESS = "in_progress"
    TIES_PENDING = "ties_pending"
    READY_TO_PUBLISH = "ready_to_publish"
    PUBLISHED = "published"
    ROLLED_BACK = "rolled_back"


@dataclass
class CohortEvaluation:
    """Publish readiness of one category's cohort."""
    category: str
    level: CompetitionLevel
    state: CohortState
    project_count: int = 0
    not_fully_judged: List[Project] = field(default_factory=list)
    needs_arbitration: List[Project] = field(default_factory=list)
    ties: List[TieGroup] = field(default_factory=list)
    publication_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "level": self.level.value,
            "state": self.state.value,
            "project_count": self.project_count,
            "not_fully_judged": [p.id for p in self.not_fully_judged],
            "needs_arbitration": [p.id for p in self.needs_arbitration],
            "ties": [t.to_dict() for t in self.ties],
            "publication_id": self.publication_id,
        }


class _RollbackGuardChanged(Exception):
    """Next-level judging started between the rollback check and its commit."""


def _titles(projects: List[Project], limit: int = 5) -> str:
    names = [f'"{p.title}"' for p in projects[:limit]]
    if len(projects) > limit:
        names.append(f"and {len(projects) - limit} more")
    return ", ".join(names)


class PromotionController:
    """Publish / unpublish orchestration over the Assignment Store."""

    VALID_TRANSITIONS = {
        CohortState.IN_PROGRESS: [CohortState.TIES_PENDING, CohortState.READY_TO_PUBLISH],
        CohortState.TIES_PENDING: [CohortState.READY_TO_PUBLISH, CohortState.IN_PROGRESS],
        CohortState.READY_TO_PUBLISH: [
            CohortState.PUBLISHED, CohortState.IN_PROGRESS, CohortState.TIES_PENDING
        ],
        CohortState.PUBLISHED: [CohortState.ROLLED_BACK],
        CohortState.ROLLED_BACK: [
            CohortState.PUBLISHED, CohortState.IN_PROGRESS,
            CohortState.TIES_PENDING, CohortState.READY_TO_PUBLISH,
        ],
    }

    def __init__(
        self,
        store: AssignmentStore,
        settings: EngineSettings,
        aggregator: Optional[ScoreAggregator] = None,
        ranking: Optional[RankingEngine] = None,
        audit: Optional[AuditService] = None,
        locks: Optional[ScopedLocks] = None,
    ):
        self.store = store
        self.settings = settings
        self.aggregator = aggregator or ScoreAggregator(store, settings)
        self.ranking = ranking or RankingEngine(settings)
        self.audit = audit or AuditService(store)
        self.locks = locks or engine_locks

    @classmethod
    def _is_valid_transition(cls, current: CohortState, new: CohortState) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, [])

    # =========================================================================
    # State
    # =========================================================================

    async def _covering_publication(
        self,
        level: CompetitionLevel,
        scope: GeoScope,
        category: str,
    ) -> Optional[LevelPublication]:
        for publication in reversed(await self.store.active_publications(level)):
            pub_scope = GeoScope(publication.region, publication.county, publication.sub_county)
            if category in (publication.categories or []) and pub_scope.covers(scope):
                return publication
        return None

    async def _last_rolled_back(self, level: CompetitionLevel, scope: GeoScope, category: str) -> bool:
        history = [
            p for p in await self.store.list_publications(level)
            if p.scope_key == scope.key() and category in (p.categories or [])
        ]
        return bool(history) and history[-1].status == PublicationStatus.ROLLED_BACK.value

    def _evaluate(
        self,
        category: str,
        level: CompetitionLevel,
        projects: List[Project],
        scores: Dict[int, ProjectScore],
    ) -> CohortEvaluation:
        in_category = [p for p in projects if p.category == category]
        evaluation = CohortEvaluation(
            category=category, level=level, state=CohortState.IN_PROGRESS, project_count=len(in_category)
        )
        for project in in_category:
            score = scores.get(project.id)
            if score is None or not score.is_fully_judged:
                evaluation.not_fully_judged.append(project)
            if score is not None and score.needs_arbitration:
                evaluation.needs_arbitration.append(project)

        ranking = self.ranking.rank(in_category, scores)
        evaluation.ties = list(ranking.ties_to_resolve)

        if not in_category or evaluation.not_fully_judged or evaluation.needs_arbitration:
            evaluation.state = CohortState.IN_PROGRESS
        elif evaluation.ties:
            evaluation.state = CohortState.TIES_PENDING
        else:
            evaluation.state = CohortState.READY_TO_PUBLISH
        return evaluation

    async def cohort_state(
        self,
        category: str,
        level: CompetitionLevel,
        scope: Optional[GeoScope] = None,
    ) -> CohortEvaluation:
        """Where a category's cohort stands on the way to publication."""
        scope = scope or GeoScope()
        publication = await self._covering_publication(level, scope, category)
        projects = await self.store.cohort_projects(level, scope=scope, category=category)

        if publication is not None:
            return CohortEvaluation(
                category=category, level=level, state=CohortState.PUBLISHED,
                project_count=len(projects), publication_id=publication.id,
            )

        scores = await self.aggregator.compute_cohort_scores(projects, level)
        evaluation = self._evaluate(category, level, projects, scores)
        if evaluation.state == CohortState.READY_TO_PUBLISH and await self._last_rolled_back(level, scope, category):
            evaluation.state = CohortState.ROLLED_BACK
        return evaluation

    async def level_status(self, level: CompetitionLevel, scope: Optional[GeoScope] = None) -> List[CohortEvaluation]:
        """cohort_state for every category with projects or a publication in `scope`."""
        scope = scope or GeoScope()
        categories: Set[str] = {p.category for p in await self.store.cohort_projects(level, scope=scope)}
        for publication in await self.store.active_publications(level):
            pub_scope = GeoScope(publication.region, publication.county, publication.sub_county)
            if pub_scope.covers(scope) or scope.covers(pub_scope):
                categories.update(publication.categories or [])
        return [await self.cohort_state(c, level, scope) for c in sorted(categories)]

    # =========================================================================
    # Publish
    # =========================================================================

    def _check_authority(self, admin: User, level: CompetitionLevel) -> Optional[OperationResult]:
        if can_manage_level(admin, level):
            return None
        role = acting_admin_role(admin)
        return OperationResult.fail(
            ErrorKind.INVARIANT_VIOLATION,
            f"A {role.value if role else 'user'} cannot publish results for the {level.value} level.",
            ErrorCode.LEVEL_NOT_PERMITTED,
        )

    def _blocking_reason(self, evaluations: List[CohortEvaluation]) -> Optional[OperationResult]:
        not_judged = [p for e in evaluations for p in e.not_fully_judged]
        if not_judged:
            return OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                f"Cannot publish. {len(not_judged)} project(s) are not fully judged: {_titles(not_judged)}.",
                ErrorCode.PROJECTS_NOT_FULLY_JUDGED,
                project_ids=[p.id for p in not_judged],
            )
        arbitration = [p for e in evaluations for p in e.needs_arbitration]
        if arbitration:
            return OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                f"Cannot publish. {len(arbitration)} project(s) are awaiting coordinator arbitration: "
                f"{_titles(arbitration)}.",
                ErrorCode.ARBITRATION_PENDING,
                project_ids=[p.id for p in arbitration],
            )
        ties = [t for e in evaluations for t in e.ties]
        if ties:
            first = ties[0]
            return OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                f"Cannot publish. {len(first.project_ids)} projects in '{first.category}' are tied at "
                f"rank {first.rank}. Set a tie-break score before publishing.",
                ErrorCode.TIES_UNRESOLVED,
                ties=[t.to_dict() for t in ties],
            )
        for evaluation in evaluations:
            if not self._is_valid_transition(evaluation.state, CohortState.PUBLISHED):
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"'{evaluation.category}' cannot be published from state {evaluation.state.value}.",
                    ErrorCode.STATE_TRANSITION_INVALID,
                )
        return None

    async def publish(
        self,
        admin: User,
        level: CompetitionLevel,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Publish the admin's cohort at `level`.

        Preconditions: every project fully judged, no pending arbitration, no
        unresolved top-band ties, not already published for the scope.
        """
        now = now or datetime.utcnow()
        denied = self._check_authority(admin, level)
        if denied:
            return denied

        scope = admin_scope(admin)
        projects = await self.store.cohort_projects(level, scope=scope)
        categories = sorted({p.category for p in projects})

        async with self.locks.hold(*cohort_scopes(categories, level)):
            if await self.store.latest_publication(level, scope, lock=True) is not None:
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"Results for the {level.value} level ({scope.label}) are already published.",
                    ErrorCode.ALREADY_PUBLISHED,
                )

            projects = await self.store.cohort_projects(level, scope=scope, lock=True)
            if not projects:
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"There are no active projects to publish at the {level.value} level ({scope.label}).",
                    ErrorCode.EMPTY_COHORT,
                )
            if not {p.category for p in projects} <= set(categories):
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.CONCURRENCY_CONFLICT,
                    "The cohort changed while publishing. Please try again.",
                    ErrorCode.CONCURRENT_MODIFICATION,
                )

            scores = await self.aggregator.compute_cohort_scores(projects, level)
            evaluations = [self._evaluate(c, level, projects, scores) for c in categories]
            for evaluation in evaluations:
                if evaluation.state == CohortState.READY_TO_PUBLISH and await self._last_rolled_back(
                    level, scope, evaluation.category
                ):
                    evaluation.state = CohortState.ROLLED_BACK
            blocked = self._blocking_reason(evaluations)
            if blocked:
                await self.store.release()
                return blocked

            async with self.store.transaction():
                publication = await self._apply_publish(admin, level, scope, projects, scores, categories, now)

        next_level = level.next_level()
        logger.info(
            f"Published {level.value} ({scope.label}) by admin {admin.id}: "
            f"{len(publication.promoted_project_ids)} promoted, "
            f"{len(publication.archived_assignment_ids)} assignments archived"
        )
        message = (
            f"Published results for {level.value} level."
            if next_level is not None
            else f"Published final results for {level.value} level. The competition is complete."
        )
        await self.audit.emit(
            AuditEvent.LEVEL_PUBLISHED,
            message,
            performing_admin_id=admin.id,
            scope=scope,
            level=level,
            notified_admin_role=admin.current_role,
        )
        return OperationResult.ok(message, data=publication.to_dict())

    async def _apply_publish(
        self,
        admin: User,
        level: CompetitionLevel,
        scope: GeoScope,
        projects: List[Project],
        scores: Dict[int, ProjectScore],
        categories: List[str],
        now: datetime,
    ) -> LevelPublication:
        next_level = level.next_level()
        ranking = self.ranking.rank(projects, scores)

        promoted: Set[int] = set()
        for category in categories:
            for item in ranking.ranked_in_category(category):
                if item.rank <= self.settings.top_band_size:
                    promoted.add(item.project_id)

        snapshot = [
            {
                "id": p.id,
                "current_level": p.current_level,
                "is_eliminated": p.is_eliminated,
                "eliminated_at_level": p.eliminated_at_level,
            }
            for p in projects
        ]
        for project in projects:
            if project.id in promoted:
                if next_level is not None:
                    project.current_level = next_level.value
            else:
                project.is_eliminated = True
                project.eliminated_at_level = level.value

        rows = await self.store.active_assignments(level, project_ids=[p.id for p in projects], lock=True)
        coordinator_ids: Set[int] = set()
        for ids in derive_coordinator_ids(rows).values():
            coordinator_ids |= ids
        for row in rows:
            row.is_archived = True
        await self.store.flush()

        role_snapshot = {}
        users = await self.store.users_by_ids(coordinator_ids)
        for user_id in sorted(users):
            user = users[user_id]
            role_snapshot[str(user_id)] = {
                "roles": list(user.roles or []),
                "current_role": user.current_role,
                "coordinated_category": user.coordinated_category,
            }
            if await self.store.judge_sections(user_id, level):
                continue
            roles = [r for r in user.role_set() if r != UserRole.COORDINATOR]
            if UserRole.JUDGE not in roles:
                roles.append(UserRole.JUDGE)
            user.set_roles(roles)
            user.coordinated_category = None

        publication = LevelPublication(
            competition_level=level.value,
            next_level=next_level.value if next_level else None,
            scope_key=scope.key(),
            region=scope.region,
            county=scope.county,
            sub_county=scope.sub_county,
            categories=list(categories),
            status=PublicationStatus.PUBLISHED.value,
            is_final=next_level is None,
            project_snapshot=snapshot,
            promoted_project_ids=sorted(promoted),
            archived_assignment_ids=[row.id for row in rows],
            role_snapshot=role_snapshot,
            published_by=admin.id,
            published_at=now,
        )
        self.store.add(publication)
        await self.store.flush()
        return publication

    # =========================================================================
    # Unpublish
    # =========================================================================

    async def _downstream_assignments(self, publication: LevelPublication) -> int:
        if publication.next_level is None:
            return 0
        return await self.store.count_active_assignments(
            CompetitionLevel(publication.next_level), publication.promoted_project_ids or []
        )

    async def unpublish(
        self,
        admin: User,
        level: CompetitionLevel,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Reverse the latest publish of `level` for the admin's scope.

        Allowed only while no promoted project has an assignment at the next
        level; the guard is evaluated again inside the rollback transaction.
        """
        now = now or datetime.utcnow()
        denied = self._check_authority(admin, level)
        if denied:
            return denied

        scope = admin_scope(admin)
        publication = await self.store.latest_publication(level, scope)
        if publication is None:
            return OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                f"Results for the {level.value} level ({scope.label}) have not been published.",
                ErrorCode.NOT_PUBLISHED,
            )
        if publication.is_final:
            return OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                f"{level.value} results are final and cannot be rolled back.",
                ErrorCode.PUBLICATION_FINAL,
            )

        categories = list(publication.categories or [])
        next_level = CompetitionLevel(publication.next_level)
        keys = cohort_scopes(categories, level) + cohort_scopes(categories, next_level)

        async with self.locks.hold(*keys):
            locked = await self.store.latest_publication(level, scope, lock=True)
            if locked is None or locked.id != publication.id:
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.CONCURRENCY_CONFLICT,
                    "The publication changed while rolling back. Please try again.",
                    ErrorCode.CONCURRENT_MODIFICATION,
                )
            publication = locked
            publication_id = publication.id

            started = await self._downstream_assignments(publication)
            if started:
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"Cannot roll back. Judging has already started at the {next_level.value} level "
                    f"({started} assignment(s) exist for promoted projects).",
                    ErrorCode.NEXT_LEVEL_STARTED,
                    active_assignments=started,
                )

            try:
                async with self.store.transaction():
                    await self._apply_unpublish(admin, publication, now)
                    if await self._downstream_assignments(publication):
                        raise _RollbackGuardChanged()
            except _RollbackGuardChanged:
                logger.warning(f"Rollback of publication {publication_id} lost a race with {next_level.value} judging")
                return OperationResult.fail(
                    ErrorKind.CONCURRENCY_CONFLICT,
                    f"Judging started at the {next_level.value} level during the rollback. Nothing was changed.",
                    ErrorCode.CONCURRENT_MODIFICATION,
                )

        message = f"Rolled back results for {level.value} level."
        logger.info(f"{message} Publication {publication.id}, admin {admin.id}")
        await self.audit.emit(
            AuditEvent.LEVEL_ROLLED_BACK,
            message,
            performing_admin_id=admin.id,
            scope=scope,
            level=level,
            notified_admin_role=admin.current_role,
        )
        return OperationResult.ok(message, data=publication.to_dict())

    async def _apply_unpublish(self, admin: User, publication: LevelPublication, now: datetime) -> None:
        snapshot = {entry["id"]: entry for entry in publication.project_snapshot or []}
        projects = await self.store.projects_by_ids(snapshot.keys(), lock=True)
        for project_id, entry in snapshot.items():
            project = projects.get(project_id)
            if project is None:
                continue
            project.current_level = entry["current_level"]
            project.is_eliminated = entry["is_eliminated"]
            project.eliminated_at_level = entry["eliminated_at_level"]

        for row in await self.store.assignments_by_ids(publication.archived_assignment_ids or []):
            row.is_archived = False

        users = await self.store.users_by_ids(int(uid) for uid in (publication.role_snapshot or {}))
        for user_id, entry in (publication.role_snapshot or {}).items():
            user = users.get(int(user_id))
            if user is None:
                continue
            user.roles = list(entry["roles"])
            user.current_role = entry["current_role"]
            user.coordinated_category = entry["coordinated_category"]

        publication.status = PublicationStatus.ROLLED_BACK.value
        publication.rolled_back_by = admin.id
        publication.rolled_back_at = now
        await self.store.flush()
