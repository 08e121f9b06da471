"""
CLI and background task tests.

Parser wiring, dry runs, the empty-database paths of the read commands and a
single timeout sweep.
"""
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from scifair.cli import create_parser, main
from scifair.cli.db_commands import DbCommand
from scifair.cli.publication_commands import PublicationCommand
from scifair.cli.ranking_commands import RankingCommand
from scifair.database import build_sessionmaker
from scifair.orm import AssignmentStatus, Section
from scifair.tasks.session_timeouts import run_sweep_once

from scifair.tests.conftest import T0


@pytest.fixture
def file_engine(tmp_path):
    """File-backed engine; NullPool so each asyncio.run opens its own connection."""
    return create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}", poolclass=NullPool)


# =============================================================================
# CLI Parser Tests
# =============================================================================

class TestCLIParser:
    """Test CLI argument parsing."""

    def test_publish_parsing(self):
        args = create_parser().parse_args(["publication", "publish", "--level", "Sub-County", "--admin-id", "3"])

        assert args.command == "publication"
        assert args.publication_action == "publish"
        assert args.level == "Sub-County"
        assert args.admin_id == 3

    def test_rankings_scope_parsing(self):
        args = create_parser().parse_args(
            ["rankings", "show", "--level", "County", "--county", "Nakuru", "--format", "json"]
        )

        assert args.rankings_action == "show"
        assert args.county == "Nakuru"
        assert args.sub_county is None
        assert args.format == "json"

    def test_unknown_level_rejected(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["rankings", "show", "--level", "Ward"])

    def test_dry_run_flag(self):
        args = create_parser().parse_args(["--dry-run", "timeouts", "sweep"])

        assert args.dry_run is True
        assert args.timeouts_action == "sweep"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out


# =============================================================================
# Command Handlers
# =============================================================================

class TestCommands:

    def test_publish_dry_run(self, capsys):
        code = main(["--dry-run", "publication", "publish", "--level", "Sub-County", "--admin-id", "3"])

        assert code == 0
        assert "[DRY RUN] Would publish Sub-County as admin 3" in capsys.readouterr().out

    def test_db_init_dry_run(self, file_engine, capsys):
        args = create_parser().parse_args(["db", "init"])

        assert DbCommand(dry_run=True, bind=file_engine).execute(args) == 0
        assert "[DRY RUN]" in capsys.readouterr().out

    def test_empty_database(self, file_engine, capsys):
        parser = create_parser()
        factory = build_sessionmaker(file_engine)

        assert DbCommand(bind=file_engine).execute(parser.parse_args(["db", "init"])) == 0

        history = PublicationCommand(session_factory=factory)
        assert history.execute(parser.parse_args(["publication", "history"])) == 0

        status = PublicationCommand(session_factory=factory)
        assert status.execute(parser.parse_args(["publication", "status", "--level", "Sub-County"])) == 0

        rankings = RankingCommand(session_factory=factory)
        assert rankings.execute(parser.parse_args(["rankings", "show", "--level", "Sub-County"])) == 0

        out = capsys.readouterr().out
        assert "No publications found" in out
        assert "No categories found" in out

    def test_publish_unknown_admin(self, file_engine, capsys):
        parser = create_parser()
        DbCommand(bind=file_engine).execute(parser.parse_args(["db", "init"]))

        command = PublicationCommand(session_factory=build_sessionmaker(file_engine))
        code = command.execute(parser.parse_args(["publication", "publish", "--level", "Sub-County", "--admin-id", "9"]))

        assert code == 1
        assert "User 9 not found." in capsys.readouterr().out


# =============================================================================
# Timeout sweep
# =============================================================================

class TestTimeoutSweep:

    @pytest.mark.asyncio
    async def test_sweep_once(self, engine, db_session, seed):
        project = await seed.project("Solar Dryer")
        judge = await seed.judge("Amina")
        row = await seed.assignment(judge, project, Section.PART_A, status=AssignmentStatus.IN_PROGRESS)
        row.started_at = T0
        await db_session.commit()

        count = await run_sweep_once(build_sessionmaker(engine), now=T0 + timedelta(minutes=20))

        assert count == 1
