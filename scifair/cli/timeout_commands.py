"""
Timeout CLI Commands

Judging session timeouts: sweep
"""
import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from scifair.tasks.session_timeouts import run_sweep_once


class TimeoutCommand:
    """Session timeout CLI command handler."""

    def __init__(self, dry_run: bool = False, session_factory: Optional[async_sessionmaker] = None):
        self.dry_run = dry_run
        self.session_factory = session_factory

    def execute(self, args) -> int:
        """Execute timeout command."""
        if args.timeouts_action == "sweep":
            return self._sweep(args)
        else:
            print("Error: Unknown timeouts action")
            return 1

    def _sweep(self, args) -> int:
        print("=== Session Timeout Sweep ===")

        if self.dry_run:
            print("[DRY RUN] Would time out sessions running past their section maximum")
            return 0

        try:
            count = asyncio.run(run_sweep_once(self.session_factory))
        except Exception as e:
            print(f"Error: {e}")
            return 1
        print(f"{count} session(s) timed out")
        return 0
