"""
Scoring Service: judging sessions and score submission.

A judge starts a session on an assignment, fills the score sheet for its
section and submits. The session has a minimum and maximum dwell time per
section; an overrun moves the assignment to review-pending and routes the
project section to the category Coordinator.

Coordinators adjudicate without a session timer.
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from scifair.config.engine_settings import EngineSettings
from scifair.config.score_sheets import get_score_sheet
from scifair.errors import ErrorCode, ErrorKind, OperationResult
from scifair.orm.competition import AssignmentStatus, CompetitionLevel, Section
from scifair.orm.judge_assignment import JudgeAssignment
from scifair.orm.user import User
from scifair.rbac import admin_role_for_level
from scifair.services.assignment_store import AssignmentStore
from scifair.services.audit_service import AuditEvent, AuditService
from scifair.services.score_aggregator import CONFLICT_REASON, ScoreAggregator
from scifair.services.scoped_locks import ScopedLocks, assignment_scope, engine_locks

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "Timeout: session exceeded {minutes} minutes"
COORDINATOR_TIMEOUT_NOTE = "Reviewing due to timeout from judge ID: {judge_id}"


def validate_breakdown(
    category: str,
    section: Section,
    breakdown: Optional[Dict[Any, Any]],
) -> Tuple[Dict[str, Decimal], Dict[str, str]]:
    """
    Check a score breakdown against the category's score sheet.

    Returns (values, errors): `values` maps criterion id (as str) to its
    Decimal score, `errors` maps criterion id to a rejection reason. Every
    criterion of the section must be present, numeric, within [0, max] and a
    multiple of the criterion's step. Out-of-range values are rejected, not
    clamped.
    """
    criteria = get_score_sheet(category).criteria(section)
    provided = {str(k): v for k, v in (breakdown or {}).items()}
    expected = {str(c.id) for c in criteria}

    values: Dict[str, Decimal] = {}
    errors: Dict[str, str] = {}

    for key in sorted(set(provided) - expected):
        errors[key] = f"Unknown criterion for {section.value}."

    for criterion in criteria:
        key = str(criterion.id)
        if key not in provided or provided[key] is None:
            errors[key] = "Score is required."
            continue
        raw = provided[key]
        if isinstance(raw, bool):
            errors[key] = "Score must be a number."
            continue
        try:
            value = Decimal(str(raw).strip())
        except (InvalidOperation, ValueError):
            errors[key] = "Score must be a number."
            continue
        if not value.is_finite():
            errors[key] = "Score must be a number."
        elif value < 0 or value > criterion.max_score:
            errors[key] = f"Score must be between 0 and {criterion.max_score}."
        elif value % criterion.step != 0:
            errors[key] = f"Score must be in steps of {criterion.step}."
        else:
            values[key] = value

    return values, errors


class ScoringService:
    """Session lifecycle and score submission for judge assignments."""

    VALID_TRANSITIONS = {
        AssignmentStatus.NOT_STARTED: [AssignmentStatus.IN_PROGRESS],
        AssignmentStatus.IN_PROGRESS: [AssignmentStatus.COMPLETED, AssignmentStatus.REVIEW_PENDING],
        # Only a coordinator re-opens a review-pending row
        AssignmentStatus.REVIEW_PENDING: [AssignmentStatus.IN_PROGRESS],
        AssignmentStatus.COMPLETED: [],
    }

    def __init__(
        self,
        store: AssignmentStore,
        settings: EngineSettings,
        audit: Optional[AuditService] = None,
        aggregator: Optional[ScoreAggregator] = None,
        locks: Optional[ScopedLocks] = None,
    ):
        self.store = store
        self.settings = settings
        self.audit = audit or AuditService(store)
        self.aggregator = aggregator or ScoreAggregator(store, settings)
        self.locks = locks or engine_locks

    @classmethod
    def _is_valid_transition(cls, current: AssignmentStatus, new: AssignmentStatus) -> bool:
        return new in cls.VALID_TRANSITIONS.get(current, [])

    def _within_judging_hours(self, now: datetime) -> bool:
        if not self.settings.enforce_judging_hours:
            return True
        start, end = self.settings.judging_hours
        return start <= now.time() < end

    async def _is_coordinator(self, assignment: JudgeAssignment) -> bool:
        coordinators = await self.store.coordinator_ids(assignment.category, assignment.level)
        return assignment.judge_id in coordinators

    async def _load_own_assignment(self, judge: User, assignment_id: int):
        assignment = await self.store.get_assignment(assignment_id, lock=True)
        if assignment is None:
            return None, OperationResult.fail(
                ErrorKind.NOT_FOUND, f"Assignment {assignment_id} not found.", ErrorCode.ASSIGNMENT_NOT_FOUND
            )
        if assignment.judge_id != judge.id:
            return None, OperationResult.fail(
                ErrorKind.INVARIANT_VIOLATION,
                "You are not assigned to judge this project section.",
                ErrorCode.NOT_ASSIGNED_JUDGE,
            )
        if assignment.is_archived:
            return None, OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                f"Results for the {assignment.competition_level} level have been published; "
                f"this assignment is closed.",
                ErrorCode.LEVEL_ARCHIVED,
            )
        return assignment, None

    # =========================================================================
    # Sessions
    # =========================================================================

    async def start_judging(
        self,
        judge: User,
        assignment_id: int,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Open (or resume) the judging session of an assignment."""
        now = now or datetime.utcnow()
        async with self.locks.hold(assignment_scope(assignment_id)):
            assignment, failure = await self._load_own_assignment(judge, assignment_id)
            if failure:
                await self.store.release()
                return failure

            current = AssignmentStatus(assignment.status)
            if current == AssignmentStatus.IN_PROGRESS:
                await self.store.release()
                return OperationResult.ok("Judging session resumed.", data=assignment.to_dict())

            is_coordinator = await self._is_coordinator(assignment)
            if current == AssignmentStatus.REVIEW_PENDING and not is_coordinator:
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"This assignment is awaiting coordinator review ({assignment.review_reason}).",
                    ErrorCode.INVALID_STATE,
                )
            if not self._is_valid_transition(current, AssignmentStatus.IN_PROGRESS):
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"Cannot start judging an assignment that is {current.value}.",
                    ErrorCode.INVALID_STATE,
                )
            if not self._within_judging_hours(now):
                start, end = self.settings.judging_hours
                await self.store.release()
                return OperationResult.fail(
                    ErrorKind.PRECONDITION_NOT_MET,
                    f"Judging is only open between {start.strftime('%H:%M')} and {end.strftime('%H:%M')}.",
                    ErrorCode.OUTSIDE_JUDGING_HOURS,
                )

            assignment.status = AssignmentStatus.IN_PROGRESS.value
            assignment.started_at = now
            await self.store.commit()

        logger.info(f"Judge {judge.id} started assignment {assignment_id} ({assignment.section})")
        return OperationResult.ok("Judging session started.", data=assignment.to_dict())

    async def submit_score(
        self,
        judge: User,
        assignment_id: int,
        breakdown: Dict[Any, Any],
        comments: Optional[str],
        recommendations: Optional[str],
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """
        Validate and record a judge's score sheet for one assignment.

        The assignment becomes completed with `score` = sum of the breakdown.
        Regular judges from the project's school are flagged for review
        after the write. An overrun session is timed out instead of scored.
        """
        now = now or datetime.utcnow()
        timed_out = None
        flagged: List[JudgeAssignment] = []

        async with self.locks.hold(assignment_scope(assignment_id)):
            assignment, failure = await self._load_own_assignment(judge, assignment_id)
            if failure:
                await self.store.release()
                return failure

            current = AssignmentStatus(assignment.status)
            if not self._is_valid_transition(current, AssignmentStatus.COMPLETED):
                await self.store.release()
                message = (
                    "Scores for this assignment have already been submitted."
                    if current == AssignmentStatus.COMPLETED
                    else "Start the judging session before submitting scores."
                )
                return OperationResult.fail(ErrorKind.PRECONDITION_NOT_MET, message, ErrorCode.INVALID_STATE)

            is_coordinator = await self._is_coordinator(assignment)
            if not is_coordinator and assignment.started_at is not None:
                low, high = self.settings.session_bounds(assignment.section_enum)
                elapsed = now - assignment.started_at
                if elapsed > timedelta(minutes=high):
                    timed_out = await self._time_out(assignment, high)
                    await self.store.commit()
                elif self.settings.enforce_session_minimum and elapsed < timedelta(minutes=low):
                    await self.store.release()
                    return OperationResult.fail(
                        ErrorKind.PRECONDITION_NOT_MET,
                        f"Please spend at least {low} minutes judging {assignment.section} before submitting.",
                        ErrorCode.SESSION_TOO_SHORT,
                        elapsed_seconds=int(elapsed.total_seconds()),
                    )

            if timed_out is None:
                values, errors = validate_breakdown(assignment.category, assignment.section_enum, breakdown)
                if errors:
                    await self.store.release()
                    return OperationResult.fail(
                        ErrorKind.VALIDATION_ERROR,
                        "Some scores are invalid.",
                        ErrorCode.INVALID_SCORE,
                        fields=errors,
                    )

                missing = [
                    name for name, text in (("comments", comments), ("recommendations", recommendations))
                    if not text or not text.strip()
                ]
                if missing:
                    await self.store.release()
                    return OperationResult.fail(
                        ErrorKind.VALIDATION_ERROR,
                        "Comments and recommendations are required.",
                        ErrorCode.MISSING_FEEDBACK,
                        fields={name: "This field is required." for name in missing},
                    )

                assignment.score_breakdown = {k: float(v) for k, v in values.items()}
                assignment.score = sum(values.values(), Decimal("0"))
                assignment.comments = comments.strip()
                assignment.recommendations = recommendations.strip()
                assignment.status = AssignmentStatus.COMPLETED.value
                assignment.completed_at = now
                assignment.review_reason = None
                await self.store.flush()
                flagged = await self.aggregator.flag_conflicts(assignment.project_id, assignment.level)
                await self.store.commit()

        if timed_out is not None:
            await self._audit_timeout(assignment, timed_out)
            return OperationResult.fail(
                ErrorKind.PRECONDITION_NOT_MET,
                "The judging session time limit was exceeded. This assignment has been sent "
                "to the Coordinator for review.",
                ErrorCode.SESSION_EXPIRED,
                assignment_id=assignment.id,
            )

        for row in flagged:
            await self.audit.emit(
                AuditEvent.CONFLICT_FLAGGED,
                f"Assignment {row.id} of judge {row.judge_id} flagged for review: {CONFLICT_REASON}.",
                performing_admin_id=None,
                level=row.level,
                category=row.category,
                target_user_id=row.judge_id,
                notified_admin_role=admin_role_for_level(row.level).value,
            )

        logger.info(f"Judge {judge.id} submitted {assignment.score} for assignment {assignment.id}")
        message = "Scores submitted successfully."
        if any(row.id == assignment.id for row in flagged):
            message = "Scores recorded. This assignment was sent to the Coordinator for review: " + CONFLICT_REASON + "."
        return OperationResult.ok(message, data=assignment.to_dict(), flagged=[row.id for row in flagged])

    # =========================================================================
    # Timeouts
    # =========================================================================

    async def _time_out(self, assignment: JudgeAssignment, max_minutes: int) -> Optional[JudgeAssignment]:
        """
        Move an overrun assignment to review-pending and queue the coordinator.

        Returns the coordinator's assignment that was queued, if any. Flushes
        only; the caller commits.
        """
        assignment.status = AssignmentStatus.REVIEW_PENDING.value
        assignment.review_reason = TIMEOUT_REASON.format(minutes=max_minutes)

        coordinator_row = None
        for coordinator_id in sorted(await self.store.coordinator_ids(assignment.category, assignment.level)):
            coordinator_row = await self.store.find_active(
                coordinator_id, assignment.project_id, assignment.section_enum, assignment.level
            )
            if coordinator_row is not None:
                break

        if coordinator_row is not None and coordinator_row.status == AssignmentStatus.NOT_STARTED.value:
            coordinator_row.status = AssignmentStatus.REVIEW_PENDING.value
            coordinator_row.comments = COORDINATOR_TIMEOUT_NOTE.format(judge_id=assignment.judge_id)
        await self.store.flush()
        return coordinator_row if coordinator_row is not None else assignment

    async def _audit_timeout(self, assignment: JudgeAssignment, routed_to: JudgeAssignment) -> None:
        routed = (
            f"routed to coordinator {routed_to.judge_id}"
            if routed_to.id != assignment.id
            else "no coordinator assigned"
        )
        await self.audit.emit(
            AuditEvent.SESSION_TIMEOUT,
            f"Judge {assignment.judge_id} exceeded the time limit for {assignment.section} "
            f"on project {assignment.project_id}; {routed}.",
            performing_admin_id=None,
            level=assignment.level,
            category=assignment.category,
            target_user_id=assignment.judge_id,
            notified_admin_role=admin_role_for_level(assignment.level).value,
        )

    async def expire_overdue_sessions(self, now: Optional[datetime] = None) -> OperationResult:
        """Time out every regular-judge session running past its section's maximum."""
        now = now or datetime.utcnow()
        expired = []

        for level in CompetitionLevel:
            candidates = [
                a for a in await self.store.active_assignments(level)
                if a.status == AssignmentStatus.IN_PROGRESS.value and a.started_at is not None
            ]
            for candidate in candidates:
                _, high = self.settings.session_bounds(candidate.section_enum)
                if now - candidate.started_at <= timedelta(minutes=high):
                    continue

                async with self.locks.hold(assignment_scope(candidate.id)):
                    assignment = await self.store.get_assignment(candidate.id, lock=True)
                    if (
                        assignment is None
                        or assignment.status != AssignmentStatus.IN_PROGRESS.value
                        or await self._is_coordinator(assignment)
                    ):
                        await self.store.release()
                        continue
                    routed_to = await self._time_out(assignment, high)
                    await self.store.commit()

                expired.append(assignment.id)
                await self._audit_timeout(assignment, routed_to)

        if expired:
            logger.info(f"Timed out {len(expired)} judging session(s): {expired}")
        return OperationResult.ok(f"{len(expired)} session(s) timed out.", data={"expired": expired})

    # =========================================================================
    # Queries
    # =========================================================================

    async def judge_assignments(self, judge: User, level: CompetitionLevel) -> List[Dict]:
        rows = await self.store.active_assignments(level, judge_id=judge.id)
        projects = await self.store.projects_by_ids(a.project_id for a in rows)
        items = []
        for a in rows:
            item = a.to_dict()
            project = projects.get(a.project_id)
            item["project_title"] = project.title if project else None
            items.append(item)
        return items

    async def get_arbitration_queue(self, coordinator: User, level: CompetitionLevel) -> List[Dict]:
        """
        Project sections waiting on this coordinator.

        One entry per section that needs arbitration, with the reasons and the
        coordinator's own assignment for that section.
        """
        held = await self.store.judge_sections(coordinator.id, level)
        categories = [c for c, sections in held.items() if len(sections) == len(Section)]
        queue = []
        for category in sorted(categories):
            projects = await self.store.cohort_projects(level, category=category)
            scores = await self.aggregator.compute_cohort_scores(projects, level)
            own = {
                (a.project_id, a.section): a
                for a in await self.store.active_assignments(level, category=category, judge_id=coordinator.id)
            }
            for project in projects:
                for section, detail in scores[project.id].sections.items():
                    if not detail.needs_arbitration:
                        continue
                    row = own.get((project.id, section.value))
                    queue.append({
                        "project_id": project.id,
                        "project_title": project.title,
                        "category": category,
                        "section": section.value,
                        "reasons": list(detail.arbitration_reasons),
                        "regular_scores": [float(s) for s in detail.regular_scores],
                        "assignment_id": row.id if row else None,
                        "assignment_status": row.status if row else None,
                    })
        return queue
