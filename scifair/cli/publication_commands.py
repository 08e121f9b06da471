"""
Publication CLI Commands

Publication of levels: status, publish, unpublish, history
"""
import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from scifair.config import settings
from scifair.core.geo_scope import GeoScope
from scifair.database import AsyncSessionLocal
from scifair.errors import OperationResult, ErrorCode, ErrorKind
from scifair.orm.competition import CompetitionLevel
from scifair.services.assignment_store import AssignmentStore
from scifair.services.promotion_controller import PromotionController


class PublicationCommand:
    """Publication CLI command handler."""

    def __init__(self, dry_run: bool = False, session_factory: Optional[async_sessionmaker] = None):
        self.dry_run = dry_run
        self.session_factory = session_factory or AsyncSessionLocal

    def execute(self, args) -> int:
        """Execute publication command."""
        if args.publication_action == "status":
            return self._status(args)
        elif args.publication_action == "publish":
            return self._change(args, publish=True)
        elif args.publication_action == "unpublish":
            return self._change(args, publish=False)
        elif args.publication_action == "history":
            return self._history(args)
        else:
            print("Error: Unknown publication action")
            return 1

    def _status(self, args) -> int:
        level = CompetitionLevel(args.level)
        scope = GeoScope(args.region, args.county, args.sub_county)
        print(f"=== Publication Status: {level.value} ({scope.label}) ===")

        try:
            evaluations = asyncio.run(self._async_status(level, scope))
        except Exception as e:
            print(f"Error: {e}")
            return 1

        if not evaluations:
            print("No categories found")
            return 0

        print(f"\n{'Category':<45} {'State':<18} {'Projects':<9} {'Unjudged':<9} {'Arbitration':<12} Ties")
        print("-" * 100)
        for e in evaluations:
            print(
                f"{e.category[:43]:<45} {e.state.value:<18} {e.project_count:<9} "
                f"{len(e.not_fully_judged):<9} {len(e.needs_arbitration):<12} {len(e.ties)}"
            )
        return 0

    async def _async_status(self, level: CompetitionLevel, scope: GeoScope):
        async with self.session_factory() as db:
            return await PromotionController(AssignmentStore(db), settings).level_status(level, scope)

    def _change(self, args, publish: bool) -> int:
        level = CompetitionLevel(args.level)
        action = "Publish" if publish else "Unpublish"
        print(f"=== {action}: {level.value} ===")

        if self.dry_run:
            print(f"[DRY RUN] Would {action.lower()} {level.value} as admin {args.admin_id}")
            return 0

        try:
            result = asyncio.run(self._async_change(level, args.admin_id, publish))
        except Exception as e:
            print(f"Error: {e}")
            return 1

        print(result.message)
        if not result.success:
            print(f"Code: {result.code}")
            return 1
        return 0

    async def _async_change(self, level: CompetitionLevel, admin_id: int, publish: bool) -> OperationResult:
        async with self.session_factory() as db:
            store = AssignmentStore(db)
            admin = await store.get_user(admin_id)
            if admin is None:
                return OperationResult.fail(ErrorKind.NOT_FOUND, f"User {admin_id} not found.", ErrorCode.NOT_FOUND)
            controller = PromotionController(store, settings)
            if publish:
                return await controller.publish(admin, level)
            return await controller.unpublish(admin, level)

    def _history(self, args) -> int:
        print("=== Publications ===")
        try:
            publications = asyncio.run(self._async_history())
        except Exception as e:
            print(f"Error: {e}")
            return 1

        if not publications:
            print("No publications found")
            return 0

        print(f"\n{'ID':<5} {'Level':<12} {'Scope':<30} {'Status':<12} {'Final':<6} Published")
        print("-" * 90)
        for p in publications:
            scope = GeoScope(p["scope"]["region"], p["scope"]["county"], p["scope"]["sub_county"])
            print(
                f"{p['id']:<5} {p['competition_level']:<12} {scope.label[:28]:<30} {p['status']:<12} "
                f"{str(p['is_final']):<6} {p['published_at']}"
            )
        return 0

    async def _async_history(self):
        async with self.session_factory() as db:
            return [p.to_dict() for p in await AssignmentStore(db).list_publications()]
