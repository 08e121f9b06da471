"""
Ranking CLI Commands

Rankings: show
"""
import asyncio
import json
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from scifair.config import settings
from scifair.core.geo_scope import GeoScope
from scifair.database import AsyncSessionLocal
from scifair.orm.competition import CompetitionLevel
from scifair.services.assignment_store import AssignmentStore
from scifair.services.ranking_engine import RankingData, RankingService


def format_rankings(data: RankingData) -> str:
    """Plain-text rendering of a RankingData."""
    lines = []
    category = None
    for item in data.projects_with_points:
        if item.category != category:
            category = item.category
            lines.append(f"\n[{category}]")
            lines.append(f"{'Rank':<6} {'Points':<7} {'Total':<8} {'Title':<40} School")
        rank = str(item.rank) if item.rank is not None else "-"
        total = f"{item.total_score:.2f}" if item.total_score is not None else "-"
        lines.append(f"{rank:<6} {item.points:<7} {total:<8} {item.title[:38]:<40} {item.school}")

    for title, entities in (
        ("Schools", data.school_ranking),
        ("Zones", data.zone_ranking),
        ("Sub-Counties", data.sub_county_ranking),
        ("Counties", data.county_ranking),
        ("Regions", data.region_ranking),
    ):
        lines.append(f"\n=== {title} ===")
        for entity in entities:
            lines.append(f"{entity.rank:<5} {entity.name:<40} {entity.total_points}")

    if data.ties_to_resolve:
        lines.append("\n=== Ties to resolve ===")
        for tie in data.ties_to_resolve:
            ids = ", ".join(str(i) for i in tie.project_ids)
            lines.append(f"{tie.category}: rank {tie.rank} shared by projects {ids}")
    return "\n".join(lines)


class RankingCommand:
    """Ranking CLI command handler."""

    def __init__(self, dry_run: bool = False, session_factory: Optional[async_sessionmaker] = None):
        self.dry_run = dry_run
        self.session_factory = session_factory or AsyncSessionLocal

    def execute(self, args) -> int:
        """Execute ranking command."""
        if args.rankings_action == "show":
            return self._show(args)
        else:
            print("Error: Unknown rankings action")
            return 1

    def _show(self, args) -> int:
        level = CompetitionLevel(args.level)
        scope = GeoScope(args.region, args.county, args.sub_county)
        print(f"=== Rankings: {level.value} ({scope.label}) ===")

        try:
            data = asyncio.run(self._async_rank(level, scope, args.category))
        except Exception as e:
            print(f"Error: {e}")
            return 1

        if args.format == "json":
            print(json.dumps(data.to_dict(), indent=2))
        else:
            print(format_rankings(data))
        return 0

    async def _async_rank(self, level: CompetitionLevel, scope: GeoScope, category: Optional[str]) -> RankingData:
        async with self.session_factory() as db:
            return await RankingService(AssignmentStore(db), settings).rank_level(level, scope, category)
