"""
scifair/orm/project.py
Project registration record.

Level and elimination flags change only through the promotion controller
(publish / unpublish); status changes come from admin approval or rejection.
"""
from sqlalchemy import Column, String, Boolean, Numeric, Index, CheckConstraint

from scifair.orm.base import BaseModel
from scifair.orm.competition import CompetitionLevel, ProjectStatus


class Project(BaseModel):
    """
    A science fair project entered by a school.

    KEY FIELDS:
    - category: one of the fixed competition categories
    - region / county / sub_county / zone / school: geographic path used for
      ranking roll-ups and admin scope
    - current_level: level the project is competing at
    - is_eliminated / eliminated_at_level: set when a publish drops the project
    - override_score: manual tie-break value, only consulted for equal totals
    """
    __tablename__ = "projects"

    title = Column(String(300), nullable=False)
    registration_number = Column(String(50), nullable=True, unique=True)
    category = Column(String(100), nullable=False, index=True)

    region = Column(String(100), nullable=False)
    county = Column(String(100), nullable=False)
    sub_county = Column(String(100), nullable=False)
    zone = Column(String(100), nullable=False)
    school = Column(String(200), nullable=False, index=True)

    current_level = Column(
        String(20),
        nullable=False,
        default=CompetitionLevel.SUB_COUNTY.value,
        index=True
    )
    is_eliminated = Column(Boolean, nullable=False, default=False)
    eliminated_at_level = Column(String(20), nullable=True)
    status = Column(
        String(30),
        nullable=False,
        default=ProjectStatus.NOT_STARTED.value
    )
    override_score = Column(Numeric(8, 2), nullable=True)

    __table_args__ = (
        Index("idx_projects_level_category", "current_level", "category"),
        CheckConstraint(
            "current_level IN ('Sub-County', 'County', 'Regional', 'National')",
            name="ck_projects_current_level"
        ),
    )

    @property
    def level(self) -> CompetitionLevel:
        return CompetitionLevel(self.current_level)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "registration_number": self.registration_number,
            "category": self.category,
            "region": self.region,
            "county": self.county,
            "sub_county": self.sub_county,
            "zone": self.zone,
            "school": self.school,
            "current_level": self.current_level,
            "is_eliminated": self.is_eliminated,
            "eliminated_at_level": self.eliminated_at_level,
            "status": self.status,
            "override_score": float(self.override_score) if self.override_score is not None else None,
        }
