"""
scifair/routes/scoring.py
Judging sessions, score submission, arbitration queue and project score views
"""
import logging
from typing import Dict, Optional, Union

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.config import EngineSettings, get_engine_settings
from scifair.database import get_db
from scifair.errors import ErrorCode, NotFoundError
from scifair.orm.competition import CompetitionLevel
from scifair.orm.user import User, UserRole
from scifair.rbac import get_current_user, require_admin, require_roles
from scifair.routes.responses import result_response
from scifair.services.assignment_store import AssignmentStore
from scifair.services.score_aggregator import ScoreAggregator
from scifair.services.scoring_service import ScoringService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/scoring", tags=["Scoring"])

require_judge = require_roles(UserRole.JUDGE, UserRole.COORDINATOR)


# ================= SCHEMAS =================

class ScoreSubmission(BaseModel):
    """Score sheet for one assignment: criterion id -> score"""
    breakdown: Dict[str, Union[float, str]]
    comments: Optional[str] = Field(None, max_length=5000)
    recommendations: Optional[str] = Field(None, max_length=5000)


def _scoring(db: AsyncSession, settings: EngineSettings) -> ScoringService:
    return ScoringService(AssignmentStore(db), settings)


# ================= JUDGE ROUTES =================

@router.get("/my-assignments")
async def get_my_assignments(
    level: CompetitionLevel = Query(...),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_judge),
):
    items = await _scoring(db, settings).judge_assignments(current_user, level)
    return {"success": True, "level": level.value, "assignments": items}


@router.post("/assignments/{assignment_id}/start")
async def start_judging(
    assignment_id: int,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_judge),
):
    result = await _scoring(db, settings).start_judging(current_user, assignment_id)
    return result_response(result)


@router.post("/assignments/{assignment_id}/submit")
async def submit_score(
    assignment_id: int,
    submission: ScoreSubmission,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_judge),
):
    result = await _scoring(db, settings).submit_score(
        current_user,
        assignment_id,
        submission.breakdown,
        submission.comments,
        submission.recommendations,
    )
    return result_response(result)


@router.get("/arbitration-queue")
async def get_arbitration_queue(
    level: CompetitionLevel = Query(...),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_roles(UserRole.COORDINATOR)),
):
    queue = await _scoring(db, settings).get_arbitration_queue(current_user, level)
    return {"success": True, "level": level.value, "queue": queue}


# ================= ADMIN ROUTES =================

@router.post("/sweep-timeouts")
async def sweep_timeouts(
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    result = await _scoring(db, settings).expire_overdue_sessions()
    return result_response(result)


# ================= PROJECT SCORE VIEWS =================

@router.get("/projects/{project_id}")
async def get_project_score(
    project_id: int,
    level: CompetitionLevel = Query(...),
    include_archived: bool = Query(False, description="Read a published level's archived assignments"),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(get_current_user),
):
    aggregator = ScoreAggregator(AssignmentStore(db), settings)
    score = await aggregator.compute_score(project_id, level, include_archived=include_archived)
    if score is None:
        raise NotFoundError("Project", project_id, code=ErrorCode.PROJECT_NOT_FOUND)
    breakdown = await aggregator.compute_breakdown(project_id, level, include_archived=include_archived)
    return {"success": True, "score": score.to_dict(), "breakdown": breakdown}


@router.get("/projects/{project_id}/progress")
async def get_project_progress(
    project_id: int,
    level: CompetitionLevel = Query(...),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(get_current_user),
):
    progress = await ScoreAggregator(AssignmentStore(db), settings).judging_progress(project_id, level)
    if progress is None:
        raise NotFoundError("Project", project_id, code=ErrorCode.PROJECT_NOT_FOUND)
    return {"success": True, "progress": progress}


@router.get("/projects/{project_id}/feedback")
async def get_project_feedback(
    project_id: int,
    level: CompetitionLevel = Query(...),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(get_current_user),
):
    """Completed judges' scores and feedback, for patrons and reports."""
    store = AssignmentStore(db)
    if await store.get_project(project_id) is None:
        raise NotFoundError("Project", project_id, code=ErrorCode.PROJECT_NOT_FOUND)
    details = await ScoreAggregator(store, settings).judging_details(project_id, level)
    return {"success": True, "details": details}
