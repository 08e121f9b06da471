"""
scifair/routes/audit.py
Audit trail access for administrators
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.database import get_db
from scifair.orm.competition import CompetitionLevel
from scifair.orm.user import User
from scifair.rbac import require_admin
from scifair.services.assignment_store import AssignmentStore
from scifair.services.audit_service import AuditService

router = APIRouter(prefix="/audit", tags=["Audit"])


class MarkReadRequest(BaseModel):
    ids: List[int]


@router.get("/logs")
async def get_audit_logs(
    level: Optional[CompetitionLevel] = Query(None, description="Filter by competition level"),
    event_type: Optional[str] = Query(None, description="Filter by event type"),
    unread_only: bool = Query(False),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """
    Audit entries, newest first.

    RBAC: any admin role.
    """
    entries = await AuditService(AssignmentStore(db)).list_entries(
        level=level, event_type=event_type, unread_only=unread_only, limit=limit
    )
    return {"success": True, "entries": [e.to_dict() for e in entries]}


@router.post("/logs/read")
async def mark_audit_logs_read(
    request: MarkReadRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    updated = await AuditService(AssignmentStore(db)).mark_read(request.ids)
    return {"success": True, "updated": updated}
