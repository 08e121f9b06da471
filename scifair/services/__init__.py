"""
scifair/services
Judging engine components. Each one receives an AssignmentStore bound to the
caller's session; none of them reads global state.
"""
from scifair.services.assignment_store import AssignmentStore, derive_coordinator_ids
from scifair.services.score_aggregator import ScoreAggregator, ProjectScore, SectionScore
from scifair.services.assignment_allocator import AssignmentAllocator
from scifair.services.scoring_service import ScoringService, validate_breakdown
from scifair.services.ranking_engine import RankingEngine, RankingService, RankingData, RankedEntity
from scifair.services.promotion_controller import PromotionController, CohortState
from scifair.services.audit_service import AuditService, AuditEvent
from scifair.services.scoped_locks import ScopedLocks, engine_locks

__all__ = [
    "AssignmentStore",
    "derive_coordinator_ids",
    "ScoreAggregator",
    "ProjectScore",
    "SectionScore",
    "AssignmentAllocator",
    "ScoringService",
    "validate_breakdown",
    "RankingEngine",
    "RankingService",
    "RankingData",
    "RankedEntity",
    "PromotionController",
    "CohortState",
    "AuditService",
    "AuditEvent",
    "ScopedLocks",
    "engine_locks",
]
