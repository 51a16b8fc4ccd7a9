import argparse
import asyncio
import signal
import uuid
from pathlib import Path
from typing import Awaitable, Callable, Optional

from loguru import logger

from jukebox.core.config import settings
from jukebox.core.db import AsyncSessionLocal, engine, init_db
from jukebox.core.logger import setup_logging
from jukebox.core.task_store import TaskStore
from jukebox.services.catalog import LibraryCatalog
from jukebox.worker.scanner import LibraryScanner


def _on_interrupt(callback: Callable[[], None]) -> None:
    """Route SIGINT/SIGTERM to ``callback`` where the platform allows it."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, callback)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handler support
            pass


async def _with_db(job: Awaitable[None]) -> None:
    """Ensures tables exist, runs ``job``, then closes pooled connections."""
    try:
        await init_db()
        await job
    finally:
        await engine.dispose()


async def run_scan(music_dir: Optional[str] = None) -> None:
    """Runs a full library scan.

    Args:
        music_dir: Overrides ``settings.MUSIC_DIR``.
    """
    root = Path(music_dir) if music_dir else settings.MUSIC_DIR
    task_store = TaskStore()
    task_id = f"scan-{uuid.uuid4().hex[:8]}"

    async with AsyncSessionLocal() as session:
        scanner = LibraryScanner(session, root, task_store=task_store)
        _on_interrupt(lambda: task_store.cancel_task(task_id))
        stats = await scanner.scan_all(task_id=task_id)

    if stats is not None:
        logger.info(f"Scan result: {stats.to_dict()}")


async def run_watch(music_dir: Optional[str] = None) -> None:
    """Scans once, then keeps the catalog in sync until interrupted."""
    root = Path(music_dir) if music_dir else settings.MUSIC_DIR
    stop = asyncio.Event()

    async with AsyncSessionLocal() as session:
        scanner = LibraryScanner(session, root)
        _on_interrupt(stop.set)

        await scanner.scan_all()
        watcher = scanner.watch()
        try:
            await stop.wait()
        finally:
            await scanner.destroy()
        logger.info(f"Watcher summary: {watcher.stats.to_dict()}")


async def run_cleanup() -> None:
    """Removes tracks whose files are gone and covers nothing refers to."""
    async with AsyncSessionLocal() as session:
        scanner = LibraryScanner(session)
        result = await scanner.cleanup()
    if result is not None:
        logger.info(
            f"Cleanup: {result.removed_tracks} tracks, "
            f"{result.removed_covers} covers removed"
        )


async def run_stats() -> None:
    """Logs library and play statistics."""
    async with AsyncSessionLocal() as session:
        catalog = LibraryCatalog(session)
        stats = await catalog.get_stats()
        plays = await catalog.get_play_stats()

    hours = stats.total_duration / 3600
    logger.info(
        f"Library: {stats.total_tracks} tracks, {stats.total_artists} artists, "
        f"{stats.total_albums} albums, {stats.total_genres} genres, {hours:.1f} h"
    )
    if stats.oldest_year:
        logger.info(
            f"Years: {stats.oldest_year}-{stats.newest_year} "
            f"(average {stats.average_year:.0f})"
        )
    logger.info(
        f"Plays: {plays.total_plays} total, max {plays.max_plays}, "
        f"{plays.avg_plays_per_track:.2f} per track"
    )


def main():
    parser = argparse.ArgumentParser(description="Jukebox library worker")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Log at DEBUG level"
    )
    subparsers = parser.add_subparsers(dest="command")

    # Init DB Command
    init_parser = subparsers.add_parser("init-db", help="Initialize database tables")
    init_parser.add_argument(
        "--force", action="store_true", help="Drop and re-create all tables (backs up first)"
    )

    # Scan Command
    scan_parser = subparsers.add_parser("scan", help="Scan the music directory")
    scan_parser.add_argument("--music-dir", help="Music directory to scan")

    # Watch Command
    watch_parser = subparsers.add_parser(
        "watch", help="Scan, then follow filesystem changes"
    )
    watch_parser.add_argument("--music-dir", help="Music directory to watch")

    subparsers.add_parser(
        "cleanup", help="Remove missing tracks and orphaned covers"
    )
    subparsers.add_parser("stats", help="Show library statistics")

    args = parser.parse_args()
    setup_logging("DEBUG" if args.verbose else None)

    if args.command == "init-db":
        asyncio.run(init_db(force=args.force))

    elif args.command == "scan":
        asyncio.run(_with_db(run_scan(args.music_dir)))

    elif args.command == "watch":
        asyncio.run(_with_db(run_watch(args.music_dir)))

    elif args.command == "cleanup":
        asyncio.run(_with_db(run_cleanup()))

    elif args.command == "stats":
        asyncio.run(_with_db(run_stats()))

    else:
        parser.print_help()


if __name__ == "__main__":
    main()
