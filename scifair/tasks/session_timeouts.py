"""
scifair/tasks/session_timeouts.py
Periodic sweep that times out judging sessions running past their maximum
"""

import logging
import asyncio
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from scifair.config import settings
from scifair.database import AsyncSessionLocal
from scifair.services.assignment_store import AssignmentStore
from scifair.services.scoring_service import ScoringService

logger = logging.getLogger(__name__)


async def run_sweep_once(
    session_factory: Optional[async_sessionmaker] = None,
    now: Optional[datetime] = None,
) -> int:
    """Run a single timeout sweep. Returns the number of sessions timed out."""
    session_factory = session_factory or AsyncSessionLocal

    async with session_factory() as db:
        result = await ScoringService(AssignmentStore(db), settings).expire_overdue_sessions(now)
        count = len(result.data["expired"])
        logger.info(f"Timeout sweep completed: {count} sessions timed out")
        return count


async def sweep_loop(interval_seconds: int = 60, session_factory: Optional[async_sessionmaker] = None):
    """
    Background timeout loop.
    Runs every interval_seconds (default 1 minute).
    """
    logger.info(f"Starting timeout sweep loop with interval {interval_seconds}s")

    while True:
        try:
            await run_sweep_once(session_factory)
        except Exception as e:
            logger.error(f"Timeout sweep error: {str(e)}")

        await asyncio.sleep(interval_seconds)


def start_sweep_task(interval_seconds: int = 60, session_factory: Optional[async_sessionmaker] = None):
    """Start the sweep loop as a background coroutine."""
    return asyncio.create_task(sweep_loop(interval_seconds, session_factory))


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)

    asyncio.run(run_sweep_once())
