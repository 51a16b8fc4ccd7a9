"""Tests for the worker command line entry point."""

import sys
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import func, select

from jukebox.core.models import Track
from jukebox.worker import main as cli


def _close(coro):
    coro.close()


@pytest.mark.parametrize(
    "argv, target, expected",
    [
        (["scan", "--music-dir", "/srv/music"], "run_scan", ("/srv/music",)),
        (["watch"], "run_watch", (None,)),
        (["cleanup"], "run_cleanup", ()),
        (["stats"], "run_stats", ()),
    ],
)
def test_main_dispatches_commands(argv, target, expected):
    with patch.object(sys, "argv", ["jukebox", *argv]), patch.object(
        cli, target, MagicMock()
    ) as job, patch.object(cli.asyncio, "run", side_effect=_close) as run, patch.object(
        cli, "setup_logging"
    ):
        cli.main()

    job.assert_called_once_with(*expected)
    run.assert_called_once()


def test_main_init_db_force():
    with patch.object(sys, "argv", ["jukebox", "init-db", "--force"]), patch.object(
        cli, "init_db", MagicMock()
    ) as init_db, patch.object(cli.asyncio, "run"), patch.object(cli, "setup_logging"):
        cli.main()

    init_db.assert_called_once_with(force=True)


def test_verbose_flag_lowers_log_level():
    with patch.object(sys, "argv", ["jukebox", "-v", "stats"]), patch.object(
        cli, "run_stats", MagicMock()
    ), patch.object(cli.asyncio, "run", side_effect=_close), patch.object(
        cli, "setup_logging"
    ) as setup:
        cli.main()

    setup.assert_called_once_with("DEBUG")


def test_main_without_command_prints_help(capsys):
    with patch.object(sys, "argv", ["jukebox"]), patch.object(cli, "setup_logging"):
        cli.main()

    assert "init-db" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_run_scan_ingests_directory(db_engine, session_factory, music_root, make_files):
    make_files(3)

    with patch.object(cli, "AsyncSessionLocal", session_factory):
        await cli.run_scan(str(music_root))

    async with session_factory() as session:
        count = (await session.execute(select(func.count(Track.id)))).scalar_one()
    assert count == 3


@pytest.mark.asyncio
async def test_run_stats_on_empty_library(db_engine, session_factory):
    with patch.object(cli, "AsyncSessionLocal", session_factory):
        await cli.run_stats()
