"""
scifair/routes/publication.py
Publish / unpublish of competition levels and cohort readiness
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.ext.asyncio import AsyncSession

from scifair.config import EngineSettings, get_engine_settings
from scifair.database import get_db
from scifair.orm.competition import CompetitionLevel
from scifair.orm.user import User
from scifair.rbac import admin_scope, require_admin
from scifair.routes.responses import result_response
from scifair.services.assignment_store import AssignmentStore
from scifair.services.promotion_controller import PromotionController

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/publication", tags=["Publication"])

limiter = Limiter(key_func=get_remote_address)


class LevelRequest(BaseModel):
    level: CompetitionLevel


def _controller(db: AsyncSession, settings: EngineSettings) -> PromotionController:
    return PromotionController(AssignmentStore(db), settings)


@router.get("/status")
async def get_publication_status(
    level: CompetitionLevel = Query(...),
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    """Publish readiness of every category in the admin's cohort."""
    scope = admin_scope(current_user)
    evaluations = await _controller(db, settings).level_status(level, scope)
    return {
        "success": True,
        "level": level.value,
        "scope": scope.to_dict(),
        "categories": [e.to_dict() for e in evaluations],
    }


@router.post("/publish")
@limiter.limit("10/minute")
async def publish_level(
    request: Request,
    body: LevelRequest,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    result = await _controller(db, settings).publish(current_user, body.level)
    return result_response(result)


@router.post("/unpublish")
@limiter.limit("10/minute")
async def unpublish_level(
    request: Request,
    body: LevelRequest,
    db: AsyncSession = Depends(get_db),
    settings: EngineSettings = Depends(get_engine_settings),
    current_user: User = Depends(require_admin),
):
    result = await _controller(db, settings).unpublish(current_user, body.level)
    return result_response(result)


@router.get("/history")
async def get_publication_history(
    level: Optional[CompetitionLevel] = Query(None),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(require_admin),
):
    publications = await AssignmentStore(db).list_publications(level)
    return {"success": True, "publications": [p.to_dict() for p in publications]}
