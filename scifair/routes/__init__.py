"""
scifair/routes
Route registration for the judging engine API.
"""
from fastapi import APIRouter

from scifair.errors import ErrorResponse
from scifair.routes import assignments, scoring, rankings, publication, audit

router = APIRouter(
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid token"},
        403: {"model": ErrorResponse, "description": "Role, level or jurisdiction not permitted"},
        404: {"model": ErrorResponse, "description": "Resource not found"},
        409: {"model": ErrorResponse, "description": "Invariant, precondition or concurrency conflict"},
    }
)

router.include_router(assignments.router)
router.include_router(scoring.router)
router.include_router(rankings.router)
router.include_router(publication.router)
router.include_router(audit.router)
