"""
scifair/routes/assignments.py
Judge and coordinator allocation endpoints (admin only)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.config import EngineSettings, get_engine_settings
from scifair.database import get_db
from scifair.errors import NotFoundError, ErrorCode
from scifair.orm.competition import CompetitionLevel, Section
from scifair.orm.user import User
from scifair.rbac import require_admin
from scifair.routes.responses import result_response
from scifair.services.assignment_allocator import AssignmentAllocator
from scifair.services.assignment_store import AssignmentStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/assignments", tags=["Assignments"])


# ================= SCHEMAS =================

class AssignRequest(BaseModel):
    """Assign a judge to one section of a category"""
    judge_id: int
    category: str = Field(..., min_length=1)
    section: Section
    level: CompetitionLevel


class CoordinatorRequest(BaseModel):
    """Make a judge the Coordinator of a category (both sections)"""
    judge_id: int
    category: str = Field(..., min_length=1)
    level: CompetitionLevel


class UnassignRequest(BaseModel):
    """Remove a judge from one section, or from the whole category when section is omitted"""
    judge_id: int
    category: str = Field(..., min_length=1)
    section: Optional[Section] = None
    level: CompetitionLevel


def _allocator(db: AsyncSession, settings: EngineSettings) -> AssignmentAllocator:
    return AssignmentAllocator(AssignmentStore(db), settings)


# ================= ROUTES =================

@router.post("")
async def assign_judge(
    request: AssignRequest,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    result = await _allocator(db, settings).assign(
        current_user, request.judge_id, request.category, request.section.value, request.level
    )
    return result_response(result)


@router.post("/coordinator")
async def assign_coordinator(
    request: CoordinatorRequest,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    result = await _allocator(db, settings).assign_coordinator(
        current_user, request.judge_id, request.category, request.level
    )
    return result_response(result)


@router.post("/unassign")
async def unassign_judge(
    request: UnassignRequest,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    allocator = _allocator(db, settings)
    if request.section is None:
        result = await allocator.unassign_category(
            current_user, request.judge_id, request.category, request.level
        )
    else:
        result = await allocator.unassign(
            current_user, request.judge_id, request.category, request.section.value, request.level
        )
    return result_response(result)


@router.get("/judges/{judge_id}")
async def get_judge_assignments(
    judge_id: int,
    level: CompetitionLevel = Query(...),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    """Sections a judge holds per category at a level, with coordinator status."""
    store = AssignmentStore(db)
    judge = await store.get_user(judge_id)
    if judge is None:
        raise NotFoundError("Judge", judge_id, code=ErrorCode.JUDGE_NOT_FOUND)

    held = await store.judge_sections(judge_id, level)
    return {
        "success": True,
        "judge": judge.to_dict(),
        "level": level.value,
        "categories": [
            {
                "category": category,
                "sections": sorted(s.value for s in sections),
                "is_coordinator": len(sections) == len(Section),
            }
            for category, sections in sorted(held.items())
        ],
    }
