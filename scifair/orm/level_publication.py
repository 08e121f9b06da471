"""
scifair/orm/level_publication.py
Record of one publish of a competition level within a geographic scope.

The snapshot columns hold exactly what the publish overwrote, so that an
unpublish restores those values verbatim instead of re-deriving them.
"""
from enum import Enum
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index, CheckConstraint

from scifair.core.db_types import UniversalJSON
from scifair.orm.base import BaseModel


class PublicationStatus(str, Enum):
    PUBLISHED = "published"
    ROLLED_BACK = "rolled_back"


class LevelPublication(BaseModel):
    """
    Snapshot layout:
    - project_snapshot: [{id, current_level, is_eliminated, eliminated_at_level}]
    - promoted_project_ids: projects advanced to next_level
    - archived_assignment_ids: assignments this publish archived
    - role_snapshot: {user_id: {roles, current_role, coordinated_category}}
    """
    __tablename__ = "level_publications"

    competition_level = Column(String(20), nullable=False)
    next_level = Column(String(20), nullable=True)
    scope_key = Column(String(400), nullable=False)
    region = Column(String(100), nullable=True)
    county = Column(String(100), nullable=True)
    sub_county = Column(String(100), nullable=True)
    categories = Column(UniversalJSON, nullable=False, default=list)

    status = Column(String(20), nullable=False, default=PublicationStatus.PUBLISHED.value)
    is_final = Column(Boolean, nullable=False, default=False)

    project_snapshot = Column(UniversalJSON, nullable=False, default=list)
    promoted_project_ids = Column(UniversalJSON, nullable=False, default=list)
    archived_assignment_ids = Column(UniversalJSON, nullable=False, default=list)
    role_snapshot = Column(UniversalJSON, nullable=False, default=dict)

    published_by = Column(Integer, nullable=False)
    published_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    rolled_back_by = Column(Integer, nullable=True)
    rolled_back_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_publication_level_scope", "competition_level", "scope_key", "status"),
        CheckConstraint(
            "status IN ('published', 'rolled_back')",
            name="ck_publication_status"
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "competition_level": self.competition_level,
            "next_level": self.next_level,
            "scope": {
                "region": self.region,
                "county": self.county,
                "sub_county": self.sub_county,
            },
            "categories": list(self.categories or []),
            "status": self.status,
            "is_final": self.is_final,
            "promoted_project_ids": list(self.promoted_project_ids or []),
            "archived_assignment_count": len(self.archived_assignment_ids or []),
            "published_by": self.published_by,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "rolled_back_by": self.rolled_back_by,
            "rolled_back_at": self.rolled_back_at.isoformat() if self.rolled_back_at else None,
        }
