"""
Score aggregation tests.

Section averaging, the arbitration boundary, coordinator substitution,
conflict-of-interest exclusion and the coordinator fallback for
"fully judged".
"""
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from scifair.orm import (
    AssignmentStatus,
    CompetitionLevel,
    JudgeAssignment,
    Project,
    Section,
    User,
)
from scifair.services.score_aggregator import (
    CONFLICT_REASON,
    ScoreAggregator,
    aggregate_project,
    aggregate_section,
    split_breakdown,
)


T0 = datetime(2026, 6, 1, 9, 0, 0)
COORDINATOR_ID = 90


def _project(school: str = "Alpha High", category: str = "Physics") -> Project:
    return Project(
        id=1, title="Solar Dryer", category=category, school=school,
        zone="Zone 1", sub_county="Nakuru East", county="Nakuru", region="Rift Valley",
    )


def _row(row_id: int, judge_id: int, section: Section, score=None, status=None) -> JudgeAssignment:
    if status is None:
        status = AssignmentStatus.COMPLETED if score is not None else AssignmentStatus.NOT_STARTED
    return JudgeAssignment(
        id=row_id,
        judge_id=judge_id,
        project_id=1,
        category="Physics",
        section=section.value,
        competition_level=CompetitionLevel.SUB_COUNTY.value,
        status=status.value,
        score=Decimal(score) if score is not None else None,
        completed_at=T0 + timedelta(minutes=row_id) if status == AssignmentStatus.COMPLETED else None,
        is_archived=False,
    )


def _judges(*schools):
    return {i: User(id=i, name=f"Judge {i}", school=school) for i, school in enumerate(schools, start=1)}


# =============================================================================
# Section averaging and arbitration
# =============================================================================

class TestSectionAverage:
    """Two regular judges, no arbitration."""

    def test_two_close_scores_are_averaged(self, settings):
        """Scores 24 and 20 average to 22 with no arbitration."""
        rows = [_row(1, 1, Section.PART_A, "24"), _row(2, 2, Section.PART_A, "20")]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y"), settings)

        assert result.score == Decimal("22")
        assert result.needs_arbitration is False
        assert result.is_fully_judged is True
        assert result.contributing_assignment_ids == [1, 2]

    def test_no_completed_regular_score_leaves_section_empty(self, settings):
        rows = [_row(1, 1, Section.PART_A), _row(2, 2, Section.PART_A)]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y"), settings)

        assert result.score is None
        assert result.is_fully_judged is False

    def test_only_first_two_completions_count(self, settings):
        """A third completed regular score is ignored."""
        rows = [
            _row(1, 1, Section.PART_A, "24"),
            _row(2, 2, Section.PART_A, "22"),
            _row(3, 3, Section.PART_A, "10"),
        ]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y", "Z"), settings)

        assert result.regular_scores == [Decimal("24"), Decimal("22")]
        assert result.score == Decimal("23")


class TestArbitration:
    """Score gaps at or above the threshold route the section to the coordinator."""

    def test_large_gap_needs_arbitration(self, settings):
        """Scores 28 and 20 (gap 8) need the coordinator."""
        rows = [_row(1, 1, Section.PART_A, "28"), _row(2, 2, Section.PART_A, "20")]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y"), settings)

        assert result.needs_arbitration is True
        assert result.arbitration_reasons == ["variance"]
        assert result.uses_coordinator_score is False

    def test_coordinator_score_replaces_average(self, settings):
        """Once the coordinator scores 25, the section is 25 and the flag clears."""
        rows = [
            _row(1, 1, Section.PART_A, "28"),
            _row(2, 2, Section.PART_A, "20"),
            _row(3, COORDINATOR_ID, Section.PART_A, "25"),
        ]
        result = aggregate_section(
            _project(), Section.PART_A, rows, {COORDINATOR_ID}, _judges("X", "Y"), settings
        )

        assert result.score == Decimal("25")
        assert result.needs_arbitration is False
        assert result.uses_coordinator_score is True
        assert result.coordinator_score == Decimal("25")

    def test_gap_equal_to_threshold_needs_arbitration(self, settings):
        rows = [_row(1, 1, Section.PART_A, "25"), _row(2, 2, Section.PART_A, "20")]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y"), settings)

        assert result.needs_arbitration is True

    def test_gap_just_below_threshold_does_not(self, settings):
        rows = [_row(1, 1, Section.PART_A, "24.99"), _row(2, 2, Section.PART_A, "20")]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y"), settings)

        assert result.needs_arbitration is False
        assert result.score == Decimal("22.495")

    def test_coordinator_score_excluded_without_arbitration(self, settings):
        """With close regular scores the coordinator's score does not enter the average."""
        rows = [
            _row(1, 1, Section.PART_A, "24"),
            _row(2, 2, Section.PART_A, "22"),
            _row(3, COORDINATOR_ID, Section.PART_A, "10"),
        ]
        result = aggregate_section(
            _project(), Section.PART_A, rows, {COORDINATOR_ID}, _judges("X", "Y"), settings
        )

        assert result.score == Decimal("23")
        assert result.uses_coordinator_score is False

    def test_review_pending_regular_row_needs_coordinator(self, settings):
        rows = [
            _row(1, 1, Section.PART_A, "24"),
            _row(2, 2, Section.PART_A, status=AssignmentStatus.REVIEW_PENDING),
        ]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X", "Y"), settings)

        assert result.arbitration_reasons == ["review"]
        assert result.needs_arbitration is True


# =============================================================================
# Conflict of interest and fallback
# =============================================================================

class TestConflictOfInterest:
    """Regular judges from the project's school are excluded."""

    def test_same_school_judge_is_excluded(self, settings):
        rows = [_row(1, 1, Section.PART_A, "29"), _row(2, 2, Section.PART_A, "20")]
        judges = _judges(" alpha high ", "Beta Secondary")
        result = aggregate_section(_project(), Section.PART_A, rows, set(), judges, settings)

        assert result.conflicted_assignment_ids == [1]
        assert result.regular_scores == [Decimal("20")]
        assert "conflict" in result.arbitration_reasons
        assert result.needs_arbitration is True
        assert result.is_fully_judged is False

    def test_coordinator_from_same_school_is_exempt(self, settings):
        rows = [
            _row(1, 1, Section.PART_A, "24"),
            _row(2, 2, Section.PART_A, "22"),
            _row(3, COORDINATOR_ID, Section.PART_A, "23"),
        ]
        judges = _judges("X", "Y")
        judges[COORDINATOR_ID] = User(id=COORDINATOR_ID, name="Coordinator", school="Alpha High")
        result = aggregate_section(_project(), Section.PART_A, rows, {COORDINATOR_ID}, judges, settings)

        assert result.conflicted_assignment_ids == []
        assert result.needs_arbitration is False


class TestFullyJudged:
    """The fully-judged rule and its coordinator fallback."""

    def test_one_regular_judge_is_not_enough(self, settings):
        rows = [_row(1, 1, Section.PART_A, "24")]
        result = aggregate_section(_project(), Section.PART_A, rows, set(), _judges("X"), settings)

        assert result.is_fully_judged is False

    def test_one_regular_plus_coordinator_is_enough(self, settings):
        rows = [_row(1, 1, Section.PART_A, "24"), _row(2, COORDINATOR_ID, Section.PART_A, "22")]
        result = aggregate_section(
            _project(), Section.PART_A, rows, {COORDINATOR_ID}, _judges("X"), settings
        )

        assert result.is_fully_judged is True
        assert result.score == Decimal("24")

    def test_project_total_sums_sections(self, settings):
        rows = [
            _row(1, 1, Section.PART_A, "24"),
            _row(2, 2, Section.PART_A, "20"),
            _row(3, 3, Section.PART_BC, "40"),
            _row(4, 4, Section.PART_BC, "42"),
        ]
        score = aggregate_project(
            _project(), CompetitionLevel.SUB_COUNTY, rows, set(), _judges("W", "X", "Y", "Z"), settings
        )

        assert score.section_a_score == Decimal("22")
        assert score.section_bc_score == Decimal("41")
        assert score.total_score == Decimal("63")
        assert score.is_fully_judged is True
        assert score.needs_arbitration is False

    def test_project_not_fully_judged_until_every_section_is(self, settings):
        rows = [_row(1, 1, Section.PART_A, "24"), _row(2, 2, Section.PART_A, "20")]
        score = aggregate_project(
            _project(), CompetitionLevel.SUB_COUNTY, rows, set(), _judges("X", "Y"), settings
        )

        assert score.total_score == Decimal("22")
        assert score.section_bc_score is None
        assert score.is_fully_judged is False


class TestSplitBreakdown:

    def test_standard_sheet_split(self):
        parts = split_breakdown("Physics", {"6": 4, "7": 4.5, "8": 5, "9": 8, "10": 9, "11": 4, "12": 7})
        assert parts == {"B": Decimal("13.5"), "C": Decimal("28")}

    def test_robotics_sheet_split(self):
        parts = split_breakdown("Robotics", {"101": 5, "102": 4, "103": 3, "104": 2, "201": 10, "202": 12, "203": 15})
        assert parts == {"B": Decimal("14"), "C": Decimal("37")}


# =============================================================================
# Store-backed aggregation
# =============================================================================

class TestScoreAggregatorService:
    """ScoreAggregator over the database."""

    @pytest.mark.asyncio
    async def test_compute_score_from_store(self, store, seed, panel, settings):
        project = await seed.project("Water Filter")
        await seed.judged(project, ["24", "20"], ["40", "42"], panel)

        score = await ScoreAggregator(store, settings).compute_score(project.id, CompetitionLevel.SUB_COUNTY)

        assert score.total_score == Decimal("63")
        assert score.is_fully_judged is True

    @pytest.mark.asyncio
    async def test_compute_score_unknown_project(self, store, settings):
        assert await ScoreAggregator(store, settings).compute_score(999, CompetitionLevel.SUB_COUNTY) is None

    @pytest.mark.asyncio
    async def test_coordinator_derived_from_sections(self, store, seed, panel, settings):
        """A judge holding both sections of the category is treated as coordinator."""
        project = await seed.project("Wind Pump")
        await seed.judged(project, ["28", "20"], ["40", "42"], panel)
        coordinator = await seed.judge("Coordinator")
        await seed.assignment(coordinator, project, Section.PART_A, score="25")
        await seed.assignment(coordinator, project, Section.PART_BC)

        score = await ScoreAggregator(store, settings).compute_score(project.id, CompetitionLevel.SUB_COUNTY)

        assert score.section_a_score == Decimal("25")
        assert score.total_score == Decimal("66")
        assert score.needs_arbitration is False

    @pytest.mark.asyncio
    async def test_flag_conflicts_moves_row_to_review(self, store, seed, panel, settings):
        project = await seed.project("Biogas", school="Alpha High")
        insider = await seed.judge("Insider", school="Alpha High")
        row = await seed.assignment(insider, project, Section.PART_A, score="29")

        flagged = await ScoreAggregator(store, settings).flag_conflicts(project.id, CompetitionLevel.SUB_COUNTY)
        await store.commit()

        assert [a.id for a in flagged] == [row.id]
        refreshed = await store.get_assignment(row.id)
        assert refreshed.status == AssignmentStatus.REVIEW_PENDING.value
        assert refreshed.review_reason == CONFLICT_REASON

    @pytest.mark.asyncio
    async def test_category_stats(self, store, seed, panel, settings):
        first = await seed.project("A")
        second = await seed.project("B")
        await seed.judged(first, ["24", "20"], ["40", "42"], panel)
        await seed.judged(second, ["20", "20"], ["30", "30"], panel)

        stats = await ScoreAggregator(store, settings).category_stats("Physics", CompetitionLevel.SUB_COUNTY)

        assert stats == {"min": 50.0, "max": 63.0, "average": 56.5, "count": 2}

    @pytest.mark.asyncio
    async def test_judging_progress_half_done(self, store, seed, panel, settings):
        project = await seed.project("Half")
        await seed.assignment(panel[0], project, Section.PART_A, score="24")
        await seed.assignment(panel[1], project, Section.PART_A, score="22")
        await seed.assignment(panel[2], project, Section.PART_BC)

        progress = await ScoreAggregator(store, settings).judging_progress(project.id, CompetitionLevel.SUB_COUNTY)

        assert progress["percentage"] == 50
        assert progress["section_a_complete"] is True
        assert progress["section_bc_complete"] is False
        assert progress["status_text"] == "In Progress"
