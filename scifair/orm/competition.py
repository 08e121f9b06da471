"""
Competition vocabulary shared by every engine table.

CompetitionLevel is an ordered enumeration; all promotion and filtering logic
goes through `order` / `next_level()` and never compares level names.
"""
from enum import Enum
from typing import List, Optional


class CompetitionLevel(str, Enum):
    """Competition levels in promotion order."""
    SUB_COUNTY = "Sub-County"
    COUNTY = "County"
    REGIONAL = "Regional"
    NATIONAL = "National"

    @property
    def order(self) -> int:
        return LEVEL_SEQUENCE.index(self)

    def next_level(self) -> Optional["CompetitionLevel"]:
        """Level that promoted projects move to, or None at NATIONAL."""
        idx = self.order + 1
        return LEVEL_SEQUENCE[idx] if idx < len(LEVEL_SEQUENCE) else None

    def previous_level(self) -> Optional["CompetitionLevel"]:
        idx = self.order - 1
        return LEVEL_SEQUENCE[idx] if idx >= 0 else None

    @property
    def is_terminal(self) -> bool:
        return self.next_level() is None

    def __lt__(self, other):
        if not isinstance(other, CompetitionLevel):
            return NotImplemented
        return self.order < other.order

    def __le__(self, other):
        if not isinstance(other, CompetitionLevel):
            return NotImplemented
        return self.order <= other.order

    def __gt__(self, other):
        if not isinstance(other, CompetitionLevel):
            return NotImplemented
        return self.order > other.order

    def __ge__(self, other):
        if not isinstance(other, CompetitionLevel):
            return NotImplemented
        return self.order >= other.order


LEVEL_SEQUENCE: List[CompetitionLevel] = [
    CompetitionLevel.SUB_COUNTY,
    CompetitionLevel.COUNTY,
    CompetitionLevel.REGIONAL,
    CompetitionLevel.NATIONAL,
]


class ProjectStatus(str, Enum):
    """Registration / judging status of a project."""
    AWAITING_APPROVAL = "Awaiting Approval"
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    REJECTED = "Rejected"


# Projects with these statuses never join a ranking / publish cohort
EXCLUDED_PROJECT_STATUSES = (ProjectStatus.AWAITING_APPROVAL.value, ProjectStatus.REJECTED.value)


class Section(str, Enum):
    """Judging sections of the score sheet."""
    PART_A = "Part A"
    PART_BC = "Part B & C"


ALL_SECTIONS = (Section.PART_A, Section.PART_BC)


class AssignmentStatus(str, Enum):
    """JudgeAssignment status."""
    NOT_STARTED = "Not Started"
    IN_PROGRESS = "In Progress"
    COMPLETED = "Completed"
    REVIEW_PENDING = "Review Pending"


CATEGORIES = (
    "Agriculture",
    "Behavioral Science",
    "Biology and Biotechnology",
    "Chemistry",
    "Computer Science",
    "Energy and Transportation",
    "Engineering",
    "Environmental Science and Management",
    "Food Technology, Textiles & Home Economics",
    "Mathematical Science",
    "Physics",
    "Robotics",
    "Technology and Applied Technology",
)

ROBOTICS_CATEGORY = "Robotics"
