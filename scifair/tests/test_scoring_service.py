"""
Scoring service tests.

Score sheet validation, judging session dwell time, timeouts routed to the
coordinator, conflict flagging at submission and the arbitration queue.
"""
from datetime import datetime, time, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

from scifair.errors import ErrorCode, ErrorKind
from scifair.orm import AssignmentStatus, CompetitionLevel, Section
from scifair.services.audit_service import AuditEvent, AuditService
from scifair.services.score_aggregator import CONFLICT_REASON
from scifair.services.scoring_service import ScoringService, validate_breakdown

from scifair.tests.conftest import T0

SUB = CompetitionLevel.SUB_COUNTY

PART_A_SHEET = {"1": 5, "2": 4.5, "3": 9, "4": 6, "5": 3.5}
FEEDBACK = ("Clear hypothesis and tidy data.", "Repeat the trials with a larger sample.")


@pytest_asyncio.fixture
async def scoring(store, settings, locks) -> ScoringService:
    return ScoringService(store, settings, locks=locks)


@pytest_asyncio.fixture
async def project(seed):
    return await seed.project("Solar Dryer", school="Alpha High")


async def _submit(scoring, judge, assignment, minutes, sheet=None, comments=FEEDBACK[0], recs=FEEDBACK[1]):
    return await scoring.submit_score(
        judge, assignment.id, sheet if sheet is not None else PART_A_SHEET, comments, recs,
        now=T0 + timedelta(minutes=minutes),
    )


# =============================================================================
# Score sheet validation
# =============================================================================

class TestValidateBreakdown:
    """Per-criterion checks against the category score sheet."""

    def test_valid_sheet(self):
        values, errors = validate_breakdown("Physics", Section.PART_A, PART_A_SHEET)

        assert errors == {}
        assert sum(values.values()) == Decimal("28")

    def test_missing_criterion(self):
        sheet = dict(PART_A_SHEET)
        del sheet["3"]
        _, errors = validate_breakdown("Physics", Section.PART_A, sheet)

        assert errors == {"3": "Score is required."}

    def test_out_of_range_rejected_not_clamped(self):
        _, errors = validate_breakdown("Physics", Section.PART_A, {**PART_A_SHEET, "1": 6, "2": -1})

        assert errors["1"] == "Score must be between 0 and 5."
        assert errors["2"] == "Score must be between 0 and 5."

    def test_step_enforced(self):
        _, errors = validate_breakdown("Physics", Section.PART_A, {**PART_A_SHEET, "4": 4.25})

        assert errors == {"4": "Score must be in steps of 0.5."}

    def test_robotics_missions_in_whole_points(self):
        sheet = {"101": 5, "102": 4, "103": 3, "104": 2, "201": 10.5, "202": 12, "203": 15}
        _, errors = validate_breakdown("Robotics", Section.PART_BC, sheet)

        assert errors == {"201": "Score must be in steps of 1."}

    def test_non_numeric_values(self):
        _, errors = validate_breakdown(
            "Physics", Section.PART_A, {**PART_A_SHEET, "1": "abc", "2": True, "3": "nan"}
        )

        assert errors == {
            "1": "Score must be a number.",
            "2": "Score must be a number.",
            "3": "Score must be a number.",
        }

    def test_unknown_criterion(self):
        _, errors = validate_breakdown("Physics", Section.PART_A, {**PART_A_SHEET, "99": 1})

        assert errors == {"99": "Unknown criterion for Part A."}


# =============================================================================
# Sessions
# =============================================================================

class TestJudgingSession:
    """Starting a session and the dwell-time window."""

    @pytest.mark.asyncio
    async def test_start_opens_session(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)

        result = await scoring.start_judging(judge, row.id, now=T0)

        assert result.success is True
        assert row.status == AssignmentStatus.IN_PROGRESS.value
        assert row.started_at == T0

    @pytest.mark.asyncio
    async def test_start_twice_resumes(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await scoring.start_judging(judge, row.id, now=T0 + timedelta(minutes=2))

        assert result.message == "Judging session resumed."
        assert row.started_at == T0

    @pytest.mark.asyncio
    async def test_other_judge_cannot_start(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        intruder = await seed.judge("Brian")
        row = await seed.assignment(judge, project, Section.PART_A)

        result = await scoring.start_judging(intruder, row.id, now=T0)

        assert result.code == ErrorCode.NOT_ASSIGNED_JUDGE
        assert row.status == AssignmentStatus.NOT_STARTED.value

    @pytest.mark.asyncio
    async def test_unknown_assignment(self, scoring, seed):
        judge = await seed.judge("Amina")

        result = await scoring.start_judging(judge, 999, now=T0)

        assert result.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_archived_assignment_is_closed(self, scoring, store, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        row.is_archived = True
        await store.commit()

        result = await scoring.start_judging(judge, row.id, now=T0)

        assert result.code == ErrorCode.LEVEL_ARCHIVED

    @pytest.mark.asyncio
    async def test_outside_judging_hours(self, scoring, settings, seed, project):
        settings.enforce_judging_hours = True
        settings.judging_hours = (time(8, 0), time(17, 0))
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)

        result = await scoring.start_judging(judge, row.id, now=datetime(2026, 6, 1, 20, 0))

        assert result.code == ErrorCode.OUTSIDE_JUDGING_HOURS
        assert row.status == AssignmentStatus.NOT_STARTED.value


# =============================================================================
# Submission
# =============================================================================

class TestSubmitScore:
    """Submitting a score sheet."""

    @pytest.mark.asyncio
    async def test_submit_completes_assignment(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await _submit(scoring, judge, row, minutes=5)

        assert result.success is True
        assert result.message == "Scores submitted successfully."
        assert row.status == AssignmentStatus.COMPLETED.value
        assert row.score == Decimal("28")
        assert row.score_breakdown["3"] == 9.0
        assert row.completed_at == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_submit_without_start(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)

        result = await _submit(scoring, judge, row, minutes=5)

        assert result.code == ErrorCode.INVALID_STATE
        assert result.message == "Start the judging session before submitting scores."

    @pytest.mark.asyncio
    async def test_submit_twice_rejected(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)
        await _submit(scoring, judge, row, minutes=5)

        result = await _submit(scoring, judge, row, minutes=6)

        assert result.code == ErrorCode.INVALID_STATE
        assert result.message == "Scores for this assignment have already been submitted."

    @pytest.mark.asyncio
    async def test_submit_too_early(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await _submit(scoring, judge, row, minutes=2)

        assert result.code == ErrorCode.SESSION_TOO_SHORT
        assert result.message == "Please spend at least 4 minutes judging Part A before submitting."
        assert row.status == AssignmentStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_invalid_scores_rejected(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await _submit(scoring, judge, row, minutes=5, sheet={**PART_A_SHEET, "3": 11})

        assert result.kind == ErrorKind.VALIDATION_ERROR
        assert result.code == ErrorCode.INVALID_SCORE
        assert result.details["fields"] == {"3": "Score must be between 0 and 10."}
        assert row.status == AssignmentStatus.IN_PROGRESS.value
        assert row.score is None

    @pytest.mark.asyncio
    async def test_feedback_required(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await _submit(scoring, judge, row, minutes=5, recs="   ")

        assert result.code == ErrorCode.MISSING_FEEDBACK
        assert list(result.details["fields"]) == ["recommendations"]

    @pytest.mark.asyncio
    async def test_same_school_judge_flagged_on_submit(self, scoring, store, seed, project):
        insider = await seed.judge("Insider", school="Alpha High")
        row = await seed.assignment(insider, project, Section.PART_A)
        await scoring.start_judging(insider, row.id, now=T0)

        result = await _submit(scoring, insider, row, minutes=5)

        assert result.success is True
        assert result.message.startswith("Scores recorded.")
        assert result.details["flagged"] == [row.id]
        assert row.status == AssignmentStatus.REVIEW_PENDING.value
        assert row.review_reason == CONFLICT_REASON
        entries = await AuditService(store).list_entries(event_type=AuditEvent.CONFLICT_FLAGGED)
        assert len(entries) == 1


# =============================================================================
# Timeouts and the coordinator
# =============================================================================

class TestSessionTimeout:
    """Overrun sessions go to the coordinator."""

    @pytest.mark.asyncio
    async def test_overrun_submission_times_out(self, scoring, store, seed, project):
        judge = await seed.judge("Amina")
        coordinator = await seed.judge("Coordinator")
        row = await seed.assignment(judge, project, Section.PART_A)
        coord_a = await seed.assignment(coordinator, project, Section.PART_A)
        await seed.assignment(coordinator, project, Section.PART_BC)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await _submit(scoring, judge, row, minutes=8)

        assert result.code == ErrorCode.SESSION_EXPIRED
        assert row.status == AssignmentStatus.REVIEW_PENDING.value
        assert row.review_reason == "Timeout: session exceeded 7 minutes"
        assert row.score is None
        assert coord_a.status == AssignmentStatus.REVIEW_PENDING.value
        assert coord_a.comments == f"Reviewing due to timeout from judge ID: {judge.id}"
        entries = await AuditService(store).list_entries(event_type=AuditEvent.SESSION_TIMEOUT)
        assert len(entries) == 1

    @pytest.mark.asyncio
    async def test_overrun_without_coordinator(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)

        result = await _submit(scoring, judge, row, minutes=30)

        assert result.code == ErrorCode.SESSION_EXPIRED
        assert row.status == AssignmentStatus.REVIEW_PENDING.value

    @pytest.mark.asyncio
    async def test_sweep_expires_only_overdue_sessions(self, scoring, seed, project):
        first = await seed.judge("Amina")
        second = await seed.judge("Brian")
        overdue = await seed.assignment(first, project, Section.PART_A)
        running = await seed.assignment(second, project, Section.PART_BC)
        await scoring.start_judging(first, overdue.id, now=T0)
        await scoring.start_judging(second, running.id, now=T0)

        result = await scoring.expire_overdue_sessions(now=T0 + timedelta(minutes=10))

        assert result.data == {"expired": [overdue.id]}
        assert overdue.status == AssignmentStatus.REVIEW_PENDING.value
        assert running.status == AssignmentStatus.IN_PROGRESS.value

    @pytest.mark.asyncio
    async def test_regular_judge_cannot_reopen_review(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A)
        await scoring.start_judging(judge, row.id, now=T0)
        await _submit(scoring, judge, row, minutes=8)

        result = await scoring.start_judging(judge, row.id, now=T0 + timedelta(minutes=9))

        assert result.code == ErrorCode.INVALID_STATE

    @pytest.mark.asyncio
    async def test_coordinator_adjudicates_without_timer(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        coordinator = await seed.judge("Coordinator")
        row = await seed.assignment(judge, project, Section.PART_A)
        coord_a = await seed.assignment(coordinator, project, Section.PART_A)
        await seed.assignment(coordinator, project, Section.PART_BC)
        await scoring.start_judging(judge, row.id, now=T0)
        await _submit(scoring, judge, row, minutes=8)

        started = await scoring.start_judging(coordinator, coord_a.id, now=T0 + timedelta(minutes=10))
        result = await _submit(scoring, coordinator, coord_a, minutes=11)

        assert started.success is True
        assert result.success is True
        assert coord_a.status == AssignmentStatus.COMPLETED.value


class TestArbitrationQueue:

    @pytest.mark.asyncio
    async def test_variance_appears_in_queue(self, scoring, seed, project):
        first = await seed.judge("Amina")
        second = await seed.judge("Brian")
        coordinator = await seed.judge("Coordinator")
        await seed.assignment(first, project, Section.PART_A, score="28")
        await seed.assignment(second, project, Section.PART_A, score="20")
        coord_a = await seed.assignment(coordinator, project, Section.PART_A)
        await seed.assignment(coordinator, project, Section.PART_BC)

        queue = await scoring.get_arbitration_queue(coordinator, SUB)

        assert len(queue) == 1
        entry = queue[0]
        assert entry["project_id"] == project.id
        assert entry["section"] == Section.PART_A.value
        assert entry["reasons"] == ["variance"]
        assert entry["regular_scores"] == [28.0, 20.0]
        assert entry["assignment_id"] == coord_a.id

    @pytest.mark.asyncio
    async def test_regular_judge_has_empty_queue(self, scoring, seed, project):
        judge = await seed.judge("Amina")
        await seed.assignment(judge, project, Section.PART_A)

        assert await scoring.get_arbitration_queue(judge, SUB) == []
