"""Async engine, session factory and schema bootstrap for the catalog database."""

import asyncio
import datetime
import sqlite3
from pathlib import Path
from typing import Any

from jukebox.core.config import settings
from jukebox.core.models import Base
from loguru import logger
from sqlalchemy import Engine, event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

engine = create_async_engine(
    settings.DB_URL,
    echo=settings.DB_ECHO,
    connect_args={"check_same_thread": False, "timeout": 30},
)


@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Sets per-connection pragmas on SQLite connections.

    WAL lets catalog reads run while a scan holds the write transaction.
    Foreign keys are on so deleting a track nulls its play history
    reference instead of leaving it dangling.
    """
    if not settings.DB_URL.startswith("sqlite"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


def _backup_sync(src: Path, dst: Path) -> None:
    # The online backup API includes pages still sitting in the WAL file
    source = sqlite3.connect(str(src))
    try:
        target = sqlite3.connect(str(dst))
        try:
            source.backup(target)
        finally:
            target.close()
    finally:
        source.close()


def _prune_backups(db_path: Path, keep: int) -> None:
    backups = sorted(db_path.parent.glob(f"{db_path.name}.*.bak"))
    for old in backups[:-keep] if keep > 0 else backups:
        old.unlink()


async def backup_db() -> None:
    """Writes ``<db>.<timestamp>.bak`` next to the catalog and prunes old copies.

    At most ``DB_BACKUP_RETENTION`` backups are kept. Failures are logged;
    a missing database is not an error.
    """
    src = settings.DB_PATH
    if not src.exists():
        return

    timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
    dst = src.parent / f"{src.name}.{timestamp}.bak"
    try:
        await asyncio.to_thread(_backup_sync, src, dst)
        await asyncio.to_thread(_prune_backups, src, settings.DB_BACKUP_RETENTION)
    except (OSError, sqlite3.Error) as e:
        logger.error(f"Failed to back up catalog database: {e}")
        return
    logger.info(f"Catalog database backed up to {dst.name}")


async def init_db(force: bool = False) -> None:
    """Creates missing tables.

    Args:
        force: Back up the database, then drop and re-create every table.
            Play history is lost as well.
    """
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    if force:
        logger.warning("Re-creating all catalog tables")
        await backup_db()

    async with engine.begin() as conn:
        if force:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Catalog schema ready")
