"""
Score Aggregator: a project's mark, judged status and arbitration status at a level.

The aggregation rules live in plain functions over already-loaded rows
(`aggregate_section`, `aggregate_project`) so they can be exercised without a
database. ScoreAggregator wraps them with the store lookups. Nothing here
writes; callers persist status changes (see `ScoreAggregator.flag_conflicts`
for the one sanctioned write path, used by the scoring service).
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set

from scifair.config.engine_settings import EngineSettings
from scifair.config.score_sheets import expected_sections, get_score_sheet
from scifair.orm.competition import AssignmentStatus, CompetitionLevel, Section
from scifair.orm.judge_assignment import JudgeAssignment
from scifair.orm.project import Project
from scifair.orm.user import User
from scifair.services.assignment_store import AssignmentStore, derive_coordinator_ids

logger = logging.getLogger(__name__)

CONFLICT_REASON = "Conflict of interest: judge is from the project's school"


# =============================================================================
# Result types
# =============================================================================

@dataclass
class SectionScore:
    section: Section
    score: Optional[Decimal] = None
    regular_scores: List[Decimal] = field(default_factory=list)
    coordinator_score: Optional[Decimal] = None
    is_fully_judged: bool = False
    needs_arbitration: bool = False
    arbitration_reasons: List[str] = field(default_factory=list)
    uses_coordinator_score: bool = False
    contributing_assignment_ids: List[int] = field(default_factory=list)
    conflicted_assignment_ids: List[int] = field(default_factory=list)

    @property
    def regular_average(self) -> Optional[Decimal]:
        if not self.regular_scores:
            return None
        return sum(self.regular_scores, Decimal("0")) / len(self.regular_scores)

    def to_dict(self) -> Dict:
        return {
            "section": self.section.value,
            "score": _num(self.score),
            "regular_scores": [_num(s) for s in self.regular_scores],
            "coordinator_score": _num(self.coordinator_score),
            "is_fully_judged": self.is_fully_judged,
            "needs_arbitration": self.needs_arbitration,
            "arbitration_reasons": list(self.arbitration_reasons),
            "uses_coordinator_score": self.uses_coordinator_score,
        }


@dataclass
class ProjectScore:
    project_id: int
    level: CompetitionLevel
    section_a_score: Optional[Decimal]
    section_bc_score: Optional[Decimal]
    total_score: Optional[Decimal]
    is_fully_judged: bool
    needs_arbitration: bool
    sections: Dict[Section, SectionScore] = field(default_factory=dict)

    @property
    def conflicted_assignment_ids(self) -> List[int]:
        ids: List[int] = []
        for s in self.sections.values():
            ids.extend(s.conflicted_assignment_ids)
        return ids

    def to_dict(self) -> Dict:
        return {
            "project_id": self.project_id,
            "level": self.level.value,
            "section_a_score": _num(self.section_a_score),
            "section_bc_score": _num(self.section_bc_score),
            "total_score": _num(self.total_score),
            "is_fully_judged": self.is_fully_judged,
            "needs_arbitration": self.needs_arbitration,
            "sections": {s.value: detail.to_dict() for s, detail in self.sections.items()},
        }


def _num(value: Optional[Decimal]) -> Optional[float]:
    return float(value) if value is not None else None


def _same_school(judge: Optional[User], project: Project) -> bool:
    if judge is None or not judge.school or not project.school:
        return False
    return judge.school.strip().lower() == project.school.strip().lower()


def _completion_key(a: JudgeAssignment):
    return (a.completed_at or datetime.min, a.id or 0)


# =============================================================================
# Pure aggregation
# =============================================================================

def aggregate_section(
    project: Project,
    section: Section,
    assignments: Iterable[JudgeAssignment],
    coordinator_ids: Set[int],
    judges: Dict[int, User],
    settings: EngineSettings,
) -> SectionScore:
    """
    Aggregate one section of one project.

    - regular judges: the first two completed scores are averaged
    - same-school regular judges are excluded and reported as conflicted
    - a regular row sitting in review-pending (conflict or timeout) also needs
      the coordinator
    - score gap >= arbitration threshold needs the coordinator
    - once the coordinator has completed the section, their score replaces the
      average wherever arbitration was needed
    """
    result = SectionScore(section=section)
    rows = [a for a in assignments if a.section == section.value]

    regular_completed: List[JudgeAssignment] = []
    coordinator_row: Optional[JudgeAssignment] = None
    pending_review = False

    for a in rows:
        if a.judge_id in coordinator_ids:
            if a.is_completed and a.score is not None:
                coordinator_row = a
            continue
        if _same_school(judges.get(a.judge_id), project):
            result.conflicted_assignment_ids.append(a.id)
            continue
        if a.status == AssignmentStatus.REVIEW_PENDING.value:
            pending_review = True
            continue
        if a.is_completed and a.score is not None:
            regular_completed.append(a)

    regular_completed.sort(key=_completion_key)
    regular_completed = regular_completed[:2]
    result.regular_scores = [a.decimal_score for a in regular_completed]

    if coordinator_row is not None:
        result.coordinator_score = coordinator_row.decimal_score

    if len(result.regular_scores) >= 2:
        gap = abs(result.regular_scores[0] - result.regular_scores[1])
        if gap >= settings.arbitration_threshold:
            result.arbitration_reasons.append("variance")
    if result.conflicted_assignment_ids:
        result.arbitration_reasons.append("conflict")
    if pending_review:
        result.arbitration_reasons.append("review")

    arbitration_needed = bool(result.arbitration_reasons)
    coordinator_done = coordinator_row is not None

    if coordinator_done and (arbitration_needed or not regular_completed):
        result.score = result.coordinator_score
        result.uses_coordinator_score = True
        result.contributing_assignment_ids = [coordinator_row.id]
    elif regular_completed:
        result.score = result.regular_average
        result.contributing_assignment_ids = [a.id for a in regular_completed]

    result.needs_arbitration = arbitration_needed and not coordinator_done

    completed_regular = len(regular_completed)
    result.is_fully_judged = (
        completed_regular >= settings.min_regular_judges
        or (coordinator_done and completed_regular >= settings.min_regular_judges_with_coordinator)
    )
    return result


def aggregate_project(
    project: Project,
    level: CompetitionLevel,
    assignments: Iterable[JudgeAssignment],
    coordinator_ids: Set[int],
    judges: Dict[int, User],
    settings: EngineSettings,
) -> ProjectScore:
    """Aggregate every section expected for the project's category."""
    rows = list(assignments)
    sections = {
        section: aggregate_section(project, section, rows, coordinator_ids, judges, settings)
        for section in expected_sections(project.category)
    }

    present = [s.score for s in sections.values() if s.score is not None]
    total = sum(present, Decimal("0")) if present else None

    return ProjectScore(
        project_id=project.id,
        level=level,
        section_a_score=sections[Section.PART_A].score if Section.PART_A in sections else None,
        section_bc_score=sections[Section.PART_BC].score if Section.PART_BC in sections else None,
        total_score=total,
        is_fully_judged=all(s.is_fully_judged for s in sections.values()),
        needs_arbitration=any(s.needs_arbitration for s in sections.values()),
        sections=sections,
    )


def split_breakdown(category: str, breakdown: Optional[Dict]) -> Dict[str, Decimal]:
    """Sum a B & C breakdown into its B and C sub-parts using the category's sheet."""
    sheet = get_score_sheet(category)
    b_ids = set(sheet.criterion_ids("B"))
    c_ids = set(sheet.criterion_ids("C"))
    totals = {"B": Decimal("0"), "C": Decimal("0")}
    for criterion_id, value in (breakdown or {}).items():
        cid = int(criterion_id)
        if cid in b_ids:
            totals["B"] += Decimal(str(value))
        elif cid in c_ids:
            totals["C"] += Decimal(str(value))
    return totals


# =============================================================================
# Store-backed service
# =============================================================================

class ScoreAggregator:
    """Reads the Assignment Store and applies the aggregation rules."""

    def __init__(self, store: AssignmentStore, settings: EngineSettings):
        self.store = store
        self.settings = settings

    async def _context(self, category: str, level: CompetitionLevel, rows: List[JudgeAssignment],
                       include_archived: bool):
        category_rows = await self.store.category_assignments(category, level, include_archived=include_archived)
        coordinators = derive_coordinator_ids(category_rows, include_archived=include_archived).get(category, set())
        judges = await self.store.users_by_ids(a.judge_id for a in rows)
        return coordinators, judges

    async def compute_score(
        self,
        project_id: int,
        level: CompetitionLevel,
        include_archived: bool = False,
    ) -> Optional[ProjectScore]:
        """
        Score a project at `level` from its non-archived assignments.

        `include_archived` reads a published level's archived rows instead,
        for reporting. Returns None when the project does not exist.
        """
        project = await self.store.get_project(project_id)
        if project is None:
            return None
        rows = await self.store.project_assignments(project_id, level, include_archived=include_archived)
        if include_archived:
            archived = [a for a in rows if a.is_archived]
            rows = archived if archived else rows
        coordinators, judges = await self._context(project.category, level, rows, include_archived)
        return aggregate_project(project, level, rows, coordinators, judges, self.settings)

    async def compute_cohort_scores(
        self,
        projects: List[Project],
        level: CompetitionLevel,
        include_archived: bool = False,
    ) -> Dict[int, ProjectScore]:
        """
        Scores for a whole cohort with one assignment query per category.

        With `include_archived`, a project whose level was published is scored
        from its archived rows, the same way compute_score reports it.
        """
        grouped = await self.store.assignments_for_projects(
            (p.id for p in projects), level, include_archived=include_archived
        )
        if include_archived:
            for project_id, rows in grouped.items():
                archived = [a for a in rows if a.is_archived]
                grouped[project_id] = archived if archived else rows
        judge_ids = {a.judge_id for rows in grouped.values() for a in rows}
        judges = await self.store.users_by_ids(judge_ids)

        coordinators_by_category: Dict[str, Set[int]] = {}
        for category in {p.category for p in projects}:
            category_rows = await self.store.category_assignments(category, level, include_archived=include_archived)
            coordinators_by_category[category] = derive_coordinator_ids(
                category_rows, include_archived=include_archived
            ).get(category, set())

        return {
            p.id: aggregate_project(
                p, level, grouped.get(p.id, []),
                coordinators_by_category.get(p.category, set()),
                judges, self.settings
            )
            for p in projects
        }

    async def flag_conflicts(self, project_id: int, level: CompetitionLevel) -> List[JudgeAssignment]:
        """
        Force same-school regular assignments of a project into review-pending.

        Flushes but does not commit; the caller owns the transaction.
        """
        score = await self.compute_score(project_id, level)
        if score is None:
            return []
        flagged = []
        for assignment in await self.store.assignments_by_ids(score.conflicted_assignment_ids):
            if assignment.status == AssignmentStatus.REVIEW_PENDING.value:
                continue
            assignment.status = AssignmentStatus.REVIEW_PENDING.value
            assignment.review_reason = CONFLICT_REASON
            flagged.append(assignment)
        if flagged:
            await self.store.flush()
            logger.info(f"Flagged {len(flagged)} conflicted assignment(s) for project {project_id}")
        return flagged

    async def compute_breakdown(self, project_id: int, level: CompetitionLevel,
                                include_archived: bool = False) -> Optional[Dict]:
        """Section A, B and C scores, with B and C split from the B & C breakdowns."""
        project = await self.store.get_project(project_id)
        score = await self.compute_score(project_id, level, include_archived=include_archived)
        if project is None or score is None:
            return None

        bc = score.sections.get(Section.PART_BC)
        score_b = score_c = None
        if score.is_fully_judged and bc is not None and bc.contributing_assignment_ids:
            rows = await self.store.assignments_by_ids(bc.contributing_assignment_ids)
            parts = [split_breakdown(project.category, a.score_breakdown) for a in rows]
            score_b = sum((p["B"] for p in parts), Decimal("0")) / len(parts)
            score_c = sum((p["C"] for p in parts), Decimal("0")) / len(parts)

        return {
            "project_id": project_id,
            "score_a": _num(score.section_a_score),
            "score_b": _num(score_b),
            "score_c": _num(score_c),
            "total_score": _num(score.total_score),
            "is_fully_judged": score.is_fully_judged,
        }

    async def judging_progress(self, project_id: int, level: CompetitionLevel) -> Optional[Dict]:
        """Completion percentage and status text for dashboards."""
        rows = await self.store.project_assignments(project_id, level, include_archived=True)
        if rows and all(a.is_archived for a in rows):
            return {"percentage": 100, "status_text": "Completed",
                    "section_a_complete": True, "section_bc_complete": True}

        score = await self.compute_score(project_id, level)
        if score is None:
            return None
        if score.needs_arbitration:
            return {"percentage": 50, "status_text": "Review Pending",
                    "section_a_complete": False, "section_bc_complete": False}
        if score.is_fully_judged:
            return {"percentage": 100, "status_text": "Completed",
                    "section_a_complete": True, "section_bc_complete": True}

        active = [a for a in rows if not a.is_archived]
        needed = self.settings.min_regular_judges
        done = {
            section: sum(1 for a in active if a.section == section.value and a.is_completed)
            for section in (Section.PART_A, Section.PART_BC)
        }
        percentage = min(100, int(round((done[Section.PART_A] + done[Section.PART_BC]) * 100 / (needed * 2))))
        started = any(a.status != AssignmentStatus.NOT_STARTED.value for a in active)
        return {
            "percentage": percentage,
            "status_text": "In Progress" if started else "Not Started",
            "section_a_complete": done[Section.PART_A] >= needed,
            "section_bc_complete": done[Section.PART_BC] >= needed,
        }

    async def category_stats(self, category: str, level: CompetitionLevel,
                             projects: Optional[List[Project]] = None) -> Dict:
        """Min, max, average and count of fully judged totals in a category."""
        if projects is None:
            projects = await self.store.cohort_projects(level, category=category)
        projects = [p for p in projects if p.category == category]
        scores = await self.compute_cohort_scores(projects, level)
        totals = [s.total_score for s in scores.values() if s.is_fully_judged and s.total_score is not None]
        if not totals:
            return {"min": 0.0, "max": 0.0, "average": 0.0, "count": 0}
        average = sum(totals, Decimal("0")) / len(totals)
        return {
            "min": float(min(totals)),
            "max": float(max(totals)),
            "average": float(round(average, 2)),
            "count": len(totals),
        }

    async def judging_details(self, project_id: int, level: CompetitionLevel,
                              include_archived: bool = True) -> List[Dict]:
        """Completed judge feedback for a project, for patrons and reports."""
        rows = await self.store.project_assignments(project_id, level, include_archived=include_archived)
        completed = [a for a in rows if a.is_completed]
        judges = await self.store.users_by_ids(a.judge_id for a in completed)
        details = []
        for a in sorted(completed, key=lambda r: (r.section, r.id)):
            judge = judges.get(a.judge_id)
            details.append({
                "judge_name": judge.name if judge else "Unknown Judge",
                "section": a.section,
                "score": _num(a.decimal_score),
                "score_breakdown": dict(a.score_breakdown) if a.score_breakdown else None,
                "comments": a.comments,
                "recommendations": a.recommendations,
            })
        return details
