"""
scifair/orm/audit_log.py
Audit trail entries for publish, unpublish, assignment changes, conflict and
timeout events. Written best-effort after the state change commits.
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index

from scifair.core.db_types import UniversalJSON
from scifair.orm.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    action = Column(String(500), nullable=False)
    event_type = Column(String(50), nullable=False)
    performing_admin_id = Column(Integer, nullable=True)
    target_user_id = Column(Integer, nullable=True)
    notified_admin_role = Column(String(30), nullable=True)
    competition_level = Column(String(20), nullable=True)
    category = Column(String(100), nullable=True)
    scope = Column(UniversalJSON, nullable=False, default=dict)
    timestamp = Column(DateTime, nullable=False, default=datetime.utcnow)
    is_read = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_audit_logs_timestamp", "timestamp"),
        Index("idx_audit_logs_event_type", "event_type"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "action": self.action,
            "event_type": self.event_type,
            "performing_admin_id": self.performing_admin_id,
            "target_user_id": self.target_user_id,
            "notified_admin_role": self.notified_admin_role,
            "competition_level": self.competition_level,
            "category": self.category,
            "scope": self.scope or {},
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "is_read": self.is_read,
        }
