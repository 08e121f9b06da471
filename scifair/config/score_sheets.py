"""
Score sheet definitions.

Part A (written report) is marked out of 30. Part B & C is one judging
session marked out of 50 overall but reported as two sub-parts: B
(presentation) and C (scientific content). Robotics replaces B & C with its
own sheet in which the mission criteria are scored in whole points.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Tuple

from scifair.orm.competition import ROBOTICS_CATEGORY, Section


@dataclass(frozen=True)
class Criterion:
    id: int
    text: str
    max_score: Decimal
    part: str
    step: Decimal = Decimal("0.5")


@dataclass(frozen=True)
class ScoreSheet:
    name: str
    sections: Dict[Section, Tuple[Criterion, ...]] = field(default_factory=dict)

    def criteria(self, section: Section) -> Tuple[Criterion, ...]:
        return self.sections[section]

    def criterion_ids(self, part: str) -> List[int]:
        return [c.id for crits in self.sections.values() for c in crits if c.part == part]


def _c(id: int, text: str, max_score: str, part: str, step: str = "0.5") -> Criterion:
    return Criterion(id=id, text=text, max_score=Decimal(max_score), part=part, step=Decimal(step))


PART_A_CRITERIA = (
    _c(1, "Title, problem statement and objectives", "5", "A"),
    _c(2, "Literature review and background research", "5", "A"),
    _c(3, "Methodology and experimental design", "10", "A"),
    _c(4, "Data, results and discussion", "6", "A"),
    _c(5, "Conclusions, recommendations and references", "4", "A"),
)

STANDARD_SCORE_SHEET = ScoreSheet(
    name="standard",
    sections={
        Section.PART_A: PART_A_CRITERIA,
        Section.PART_BC: (
            _c(6, "Oral presentation and communication", "5", "B"),
            _c(7, "Exhibit and visual display", "5", "B"),
            _c(8, "Response to questions", "5", "B"),
            _c(9, "Originality and creativity", "10", "C"),
            _c(10, "Scientific thought and understanding", "10", "C"),
            _c(11, "Skill and thoroughness", "5", "C"),
            _c(12, "Relevance and application to society", "10", "C"),
        ),
    },
)

ROBOTICS_SCORE_SHEET = ScoreSheet(
    name="robotics",
    sections={
        Section.PART_A: PART_A_CRITERIA,
        Section.PART_BC: (
            _c(101, "Robot design and build quality", "5", "B"),
            _c(102, "Programming and control logic", "5", "B"),
            _c(103, "Team presentation and communication", "5", "B"),
            _c(104, "Response to questions", "5", "B"),
            _c(201, "Compulsory mission 1", "15", "C", step="1"),
            _c(202, "Compulsory mission 2", "15", "C", step="1"),
            _c(203, "Student-generated mission", "20", "C", step="1"),
        ),
    },
)


def get_score_sheet(category: str) -> ScoreSheet:
    """Score sheet used to judge a category."""
    if category == ROBOTICS_CATEGORY:
        return ROBOTICS_SCORE_SHEET
    return STANDARD_SCORE_SHEET


def expected_sections(category: str) -> Tuple[Section, ...]:
    """Sections a project of `category` must be judged on."""
    return tuple(get_score_sheet(category).sections.keys())
