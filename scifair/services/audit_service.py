"""
Audit trail emission.

Entries are written on their own session after the state change they describe
has committed.
Emission is best-effort: a failure is logged and swallowed so it can never
block or undo the engine operation that triggered it.
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.core.geo_scope import GeoScope
from scifair.orm.audit_log import AuditLog
from scifair.orm.competition import CompetitionLevel
from scifair.services.assignment_store import AssignmentStore

logger = logging.getLogger(__name__)

Notifier = Callable[[Dict], Awaitable[None]]


class AuditEvent:
    """Event types recorded in the audit trail."""
    ASSIGNMENT_CREATED = "assignment_created"
    ASSIGNMENT_REMOVED = "assignment_removed"
    COORDINATOR_PROMOTED = "coordinator_promoted"
    COORDINATOR_DEMOTED = "coordinator_demoted"
    CONFLICT_FLAGGED = "conflict_flagged"
    SESSION_TIMEOUT = "session_timeout"
    TIE_BREAK_SET = "tie_break_set"
    LEVEL_PUBLISHED = "level_published"
    LEVEL_ROLLED_BACK = "level_rolled_back"


class AuditService:
    """Writes AuditLog rows and forwards entries to optional notifiers."""

    def __init__(self, store: AssignmentStore, notifiers: Optional[List[Notifier]] = None):
        self.store = store
        self.notifiers = list(notifiers or [])

    async def emit(
        self,
        event_type: str,
        action: str,
        performing_admin_id: Optional[int],
        scope: Optional[GeoScope] = None,
        level: Optional[CompetitionLevel] = None,
        category: Optional[str] = None,
        target_user_id: Optional[int] = None,
        notified_admin_role: Optional[str] = None,
    ) -> Optional[AuditLog]:
        """Record one entry. Returns None when the write failed."""
        scope = scope or GeoScope()
        entry = AuditLog(
            action=action,
            event_type=event_type,
            performing_admin_id=performing_admin_id,
            target_user_id=target_user_id,
            notified_admin_role=notified_admin_role,
            competition_level=level.value if level else None,
            category=category,
            scope=scope.to_dict(),
        )
        # Own session: a failed write must not roll back or expire the caller's objects
        async with AsyncSession(bind=self.store.db.bind, expire_on_commit=False) as session:
            try:
                session.add(entry)
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.warning(f"Audit entry '{event_type}' not recorded: {str(e)}")
                return None

        payload = entry.to_dict()
        for notify in self.notifiers:
            try:
                await notify(payload)
            except Exception as e:
                logger.warning(f"Audit notifier failed for '{event_type}': {str(e)}")
        return entry

    async def list_entries(
        self,
        level: Optional[CompetitionLevel] = None,
        event_type: Optional[str] = None,
        unread_only: bool = False,
        limit: int = 100,
    ) -> List[AuditLog]:
        query = select(AuditLog)
        if level is not None:
            query = query.where(AuditLog.competition_level == level.value)
        if event_type is not None:
            query = query.where(AuditLog.event_type == event_type)
        if unread_only:
            query = query.where(AuditLog.is_read == False)  # noqa: E712
        result = await self.store.db.execute(
            query.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(limit)
        )
        return list(result.scalars().all())

    async def mark_read(self, entry_ids: List[int]) -> int:
        if not entry_ids:
            return 0
        result = await self.store.db.execute(
            update(AuditLog).where(AuditLog.id.in_(entry_ids)).values(is_read=True)
        )
        await self.store.commit()
        return result.rowcount or 0
