"""
scifair/orm
Importing this package registers every engine table on Base.metadata.
"""
from scifair.orm.base import Base, BaseModel
from scifair.orm.competition import (
    CompetitionLevel,
    LEVEL_SEQUENCE,
    ProjectStatus,
    Section,
    ALL_SECTIONS,
    AssignmentStatus,
    CATEGORIES,
    ROBOTICS_CATEGORY,
    EXCLUDED_PROJECT_STATUSES,
)
from scifair.orm.user import User, UserRole, ADMIN_ROLES
from scifair.orm.project import Project
from scifair.orm.judge_assignment import JudgeAssignment
from scifair.orm.level_publication import LevelPublication, PublicationStatus
from scifair.orm.audit_log import AuditLog

__all__ = [
    "Base",
    "BaseModel",
    "CompetitionLevel",
    "LEVEL_SEQUENCE",
    "ProjectStatus",
    "Section",
    "ALL_SECTIONS",
    "AssignmentStatus",
    "CATEGORIES",
    "ROBOTICS_CATEGORY",
    "EXCLUDED_PROJECT_STATUSES",
    "User",
    "UserRole",
    "ADMIN_ROLES",
    "Project",
    "JudgeAssignment",
    "LevelPublication",
    "PublicationStatus",
    "AuditLog",
]
