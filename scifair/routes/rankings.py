"""
scifair/routes/rankings.py
Category rankings, entity roll-ups, statistics and manual tie-breaks
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.config import EngineSettings, get_engine_settings
from scifair.database import get_db
from scifair.orm.competition import CompetitionLevel
from scifair.orm.user import User
from scifair.rbac import admin_scope, require_admin
from scifair.routes.responses import result_response
from scifair.services.assignment_store import AssignmentStore
from scifair.services.ranking_engine import RankingService, group_by_parent
from scifair.services.score_aggregator import ScoreAggregator

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/rankings", tags=["Rankings"])


class OverrideScoreRequest(BaseModel):
    """Manual tie-break value; null clears it"""
    override_score: Optional[float] = Field(None, ge=0)


@router.get("")
async def get_rankings(
    level: CompetitionLevel = Query(...),
    category: Optional[str] = Query(None),
    grouped: bool = Query(False, description="Group zone/sub-county/county rankings under their parent"),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    """
    Rankings for the admin's cohort at a level.

    Returns category ranks with points, the school to region roll-ups and any
    top-band ties still to resolve.
    """
    service = RankingService(AssignmentStore(db), settings)
    data = await service.rank_level(level, scope=admin_scope(current_user), category=category)
    body = {"success": True, "level": level.value, **data.to_dict()}
    if grouped:
        for key, entities in (
            ("zone_ranking", data.zone_ranking),
            ("sub_county_ranking", data.sub_county_ranking),
            ("county_ranking", data.county_ranking),
        ):
            body[key] = {
                parent: [e.to_dict() for e in items]
                for parent, items in group_by_parent(entities).items()
            }
    return body


@router.get("/stats")
async def get_category_stats(
    level: CompetitionLevel = Query(...),
    category: str = Query(...),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    store = AssignmentStore(db)
    projects = await store.cohort_projects(level, scope=admin_scope(current_user), category=category)
    stats = await ScoreAggregator(store, settings).category_stats(category, level, projects=projects)
    return {"success": True, "level": level.value, "category": category, "stats": stats}


@router.put("/projects/{project_id}/override")
async def set_override_score(
    project_id: int,
    request: OverrideScoreRequest,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    service = RankingService(AssignmentStore(db), settings)
    result = await service.set_override_score(current_user, project_id, request.override_score)
    return result_response(result)
