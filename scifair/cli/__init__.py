#!/usr/bin/env python3
"""
Science Fair Judging Engine CLI

Usage:
    python -m scifair.cli <command> [options]

Commands:
    db           Database operations (init)
    timeouts     Judging session timeouts (sweep)
    rankings     Rankings for a level (show)
    publication  Publish readiness and publication history (status, publish, unpublish)

Environment:
    DATABASE_URL    Async SQLAlchemy URL (default sqlite+aiosqlite:///./scifair.db)
    LOG_LEVEL       DEBUG|INFO|WARNING|ERROR
"""
import sys
import argparse
import logging
from typing import Optional

from scifair import __version__
from scifair.orm.competition import CompetitionLevel
from scifair.cli.db_commands import DbCommand
from scifair.cli.timeout_commands import TimeoutCommand
from scifair.cli.ranking_commands import RankingCommand
from scifair.cli.publication_commands import PublicationCommand

LEVEL_CHOICES = [level.value for level in CompetitionLevel]


def setup_logging(level: str = "INFO") -> None:
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def _add_scope_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--region", help="Limit to one region")
    parser.add_argument("--county", help="Limit to one county")
    parser.add_argument("--sub-county", dest="sub_county", help="Limit to one sub-county")


def create_parser() -> argparse.ArgumentParser:
    """Create CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="scifair",
        description="Science Fair Judging Engine CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s db init
  %(prog)s timeouts sweep
  %(prog)s rankings show --level Sub-County --category Physics
  %(prog)s publication status --level County --county Nairobi
  %(prog)s publication publish --level Sub-County --admin-id 3
        """
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without executing"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Database commands
    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_action")
    db_subparsers.add_parser("init", help="Create all engine tables")

    # Timeout commands
    timeouts_parser = subparsers.add_parser("timeouts", help="Judging session timeouts")
    timeouts_subparsers = timeouts_parser.add_subparsers(dest="timeouts_action")
    timeouts_subparsers.add_parser("sweep", help="Time out sessions running past their maximum")

    # Ranking commands
    rankings_parser = subparsers.add_parser("rankings", help="Rankings")
    rankings_subparsers = rankings_parser.add_subparsers(dest="rankings_action")
    show_parser = rankings_subparsers.add_parser("show", help="Show category ranks and roll-ups")
    show_parser.add_argument("--level", required=True, choices=LEVEL_CHOICES, help="Competition level")
    show_parser.add_argument("--category", help="Limit to one category")
    show_parser.add_argument("--format", choices=["json", "text"], default="text", help="Output format")
    _add_scope_arguments(show_parser)

    # Publication commands
    publication_parser = subparsers.add_parser("publication", help="Publication of levels")
    publication_subparsers = publication_parser.add_subparsers(dest="publication_action")

    status_parser = publication_subparsers.add_parser("status", help="Publish readiness per category")
    status_parser.add_argument("--level", required=True, choices=LEVEL_CHOICES, help="Competition level")
    _add_scope_arguments(status_parser)

    publish_parser = publication_subparsers.add_parser("publish", help="Publish a level")
    publish_parser.add_argument("--level", required=True, choices=LEVEL_CHOICES, help="Competition level")
    publish_parser.add_argument("--admin-id", type=int, required=True, help="Admin user ID")

    unpublish_parser = publication_subparsers.add_parser("unpublish", help="Roll back a published level")
    unpublish_parser.add_argument("--level", required=True, choices=LEVEL_CHOICES, help="Competition level")
    unpublish_parser.add_argument("--admin-id", type=int, required=True, help="Admin user ID")

    publication_subparsers.add_parser("history", help="List publications")

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point."""
    parser = create_parser()
    parsed = parser.parse_args(args)

    if not parsed.command:
        parser.print_help()
        return 1

    # Setup logging
    setup_logging(parsed.log_level)

    # Route to appropriate command handler
    command_map = {
        "db": DbCommand,
        "timeouts": TimeoutCommand,
        "rankings": RankingCommand,
        "publication": PublicationCommand,
    }

    if parsed.command in command_map:
        handler = command_map[parsed.command](dry_run=parsed.dry_run)
        return handler.execute(parsed)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
