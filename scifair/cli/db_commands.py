"""
Database CLI Commands

Database operations: init
"""
import asyncio
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from scifair.database import engine, init_db


class DbCommand:
    """Database CLI command handler."""

    def __init__(self, dry_run: bool = False, bind: Optional[AsyncEngine] = None):
        self.dry_run = dry_run
        self.bind = bind or engine

    def execute(self, args) -> int:
        """Execute database command."""
        if args.db_action == "init":
            return self._init(args)
        else:
            print("Error: Unknown database action")
            return 1

    def _init(self, args) -> int:
        """Create all tables."""
        print("=== Database Initialization ===")

        if self.dry_run:
            print(f"[DRY RUN] Would create tables on {self.bind.url.render_as_string(hide_password=True)}")
            return 0

        try:
            asyncio.run(self._async_init())
        except Exception as e:
            print(f"Error: {e}")
            return 1
        print("Tables created")
        return 0

    async def _async_init(self) -> None:
        await init_db(self.bind)
        await self.bind.dispose()
