"""
scifair/orm/judge_assignment.py
JudgeAssignment: one judge, one project, one section, one competition level.

Invariant: at most one non-archived row per (judge, project, section, level),
enforced by a partial unique index. Archival is append-only; only an
unpublish flips `is_archived` back.
"""
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, Text, Boolean, DateTime, Numeric, ForeignKey,
    Index, CheckConstraint, text
)

from scifair.core.db_types import JSONDict
from scifair.orm.base import BaseModel
from scifair.orm.competition import AssignmentStatus, CompetitionLevel, Section


class JudgeAssignment(BaseModel):
    """
    Unit of judging work.

    `score` is the sum of `score_breakdown` (criterion id -> value) once the
    judge submits. `review_reason` is set when the row is moved to
    review-pending (conflict of interest or session timeout).
    """
    __tablename__ = "judge_assignments"

    judge_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    project_id = Column(
        Integer,
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )
    category = Column(String(100), nullable=False)
    section = Column(String(20), nullable=False)
    competition_level = Column(String(20), nullable=False)

    status = Column(
        String(20),
        nullable=False,
        default=AssignmentStatus.NOT_STARTED.value
    )
    score = Column(Numeric(6, 2), nullable=True)
    score_breakdown = Column(JSONDict, nullable=True)
    comments = Column(Text, nullable=True)
    recommendations = Column(Text, nullable=True)
    review_reason = Column(String(255), nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    is_archived = Column(Boolean, nullable=False, default=False, index=True)

    __table_args__ = (
        Index(
            "uq_active_assignment",
            "judge_id", "project_id", "section", "competition_level",
            unique=True,
            sqlite_where=text("is_archived = 0"),
            postgresql_where=text("is_archived = false"),
        ),
        Index("idx_assignments_level_category", "competition_level", "category", "is_archived"),
        CheckConstraint(
            "section IN ('Part A', 'Part B & C')",
            name="ck_assignment_section"
        ),
        CheckConstraint(
            "status IN ('Not Started', 'In Progress', 'Completed', 'Review Pending')",
            name="ck_assignment_status"
        ),
    )

    @property
    def level(self) -> CompetitionLevel:
        return CompetitionLevel(self.competition_level)

    @property
    def section_enum(self) -> Section:
        return Section(self.section)

    @property
    def is_completed(self) -> bool:
        return self.status == AssignmentStatus.COMPLETED.value

    @property
    def has_submitted_score(self) -> bool:
        return self.is_completed or self.score is not None

    @property
    def decimal_score(self) -> Optional[Decimal]:
        if self.score is None:
            return None
        return Decimal(str(self.score))

    def to_dict(self):
        return {
            "id": self.id,
            "judge_id": self.judge_id,
            "project_id": self.project_id,
            "category": self.category,
            "section": self.section,
            "competition_level": self.competition_level,
            "status": self.status,
            "score": float(self.score) if self.score is not None else None,
            "score_breakdown": dict(self.score_breakdown) if self.score_breakdown else None,
            "comments": self.comments,
            "recommendations": self.recommendations,
            "review_reason": self.review_reason,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "is_archived": self.is_archived,
        }
