"""Library scanner: discovers audio files and ingests them into the catalog.

A full scan walks the music root, then ingests files in waves of
``max_concurrent_files``. Metadata extraction and cover thumbnailing run
concurrently; every database operation goes through one ``asyncio.Lock``
because an ``AsyncSession`` must not be used by two tasks at once.

Writes are batched into transactions. After each wave the open transaction
is committed once ``commit_interval`` writes have accumulated, and always
after the last wave. A database failure rolls back only the open batch;
earlier commits survive and the scan continues with a fresh transaction.

Typical usage example:
    async with AsyncSessionLocal() as session:
        scanner = LibraryScanner(session, settings.MUSIC_DIR)
        stats = await scanner.scan_all(task_id="scan-1")
        print(f"Created: {stats.created}, Skipped: {stats.skipped}")
"""

import asyncio
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jukebox.core.config import settings
from jukebox.core.errors import TransactionError, TransientIOError
from jukebox.core.scanner_config import ScannerConfig
from jukebox.core.schemas import CleanupResult, TrackData
from jukebox.core.stats import ScanStats
from jukebox.core.task_store import TaskStore
from jukebox.services.catalog import LibraryCatalog
from jukebox.worker.covers import CoverResolver, CoverResult, album_key
from jukebox.worker.metadata import MetadataPipeline, TrackMetadata
from jukebox.worker.watcher import DirectoryWatcher

# Per-file outcomes
SKIPPED = "skipped"
CREATED = "created"
UPDATED = "updated"
LOST = "lost"  # write dropped because the open batch already failed
ERROR = "error"

MAX_FAILED_COMMITS = 2


class LibraryScanner:
    """Walks the music root and keeps the catalog in sync with it.

    Attributes:
        session: Async SQLAlchemy session shared by all catalog writes.
        catalog: Catalog wrapper around ``session``.
        music_root: Root directory of the music library.
        config: Wave width, commit interval and extension allow-list.
        pipeline: Metadata extraction chain.
        cover_resolver: Embedded/folder cover thumbnailer.
        task_store: Progress and cancellation registry.
    """

    def __init__(
        self,
        session: AsyncSession,
        music_root: Optional[Union[str, Path]] = None,
        config: Optional[ScannerConfig] = None,
        pipeline: Optional[MetadataPipeline] = None,
        cover_resolver: Optional[CoverResolver] = None,
        task_store: Optional[TaskStore] = None,
    ):
        self.session = session
        self.catalog = LibraryCatalog(session)
        self.music_root = Path(music_root or settings.MUSIC_DIR).absolute()
        self.config = config or ScannerConfig()
        self.pipeline = pipeline or MetadataPipeline.default()
        self.cover_resolver = cover_resolver or CoverResolver(self.music_root)
        self.task_store = task_store or TaskStore()

        self._db_lock = asyncio.Lock()
        self._scanning = False
        self._cancel_requested = False
        self._watcher: Optional[DirectoryWatcher] = None

        # Open batch state, guarded by _db_lock
        self._batch_active = False
        self._batch_failed = False
        self._pending_created = 0
        self._pending_updated = 0
        self._pending_lost = 0
        self._pending_removed = 0
        self._failed_commits = 0

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def _pending_writes(self) -> int:
        return self._pending_created + self._pending_updated

    def cancel(self) -> None:
        """Ask a running scan to stop at the next wave boundary."""
        if self._scanning:
            logger.info("Scan cancellation requested")
            self._cancel_requested = True

    def _is_cancelled(self, task_id: Optional[str]) -> bool:
        if self._cancel_requested:
            return True
        return bool(task_id and self.task_store.is_cancelled(task_id))

    # ========== Discovery ==========

    def _is_supported(self, path: Path) -> bool:
        return (
            not path.name.startswith(".")
            and path.suffix.lower() in self.config.extensions
        )

    def _walk(
        self, root: Optional[Path] = None, unreadable: Optional[List[Path]] = None
    ) -> List[Path]:
        found: List[Path] = []
        stack = [root or self.music_root]
        while stack:
            current = stack.pop()
            try:
                with os.scandir(current) as entries:
                    for entry in entries:
                        if entry.name.startswith("."):
                            continue
                        if entry.is_dir(follow_symlinks=False):
                            stack.append(Path(entry.path))
                        elif entry.is_file() and self._is_supported(Path(entry.path)):
                            found.append(Path(entry.path))
            except PermissionError:
                logger.warning(f"Permission denied: {current}")
                if unreadable is not None:
                    unreadable.append(Path(current))
            except OSError as e:
                logger.error(f"Error scanning directory {current}: {e}")
                if unreadable is not None:
                    unreadable.append(Path(current))
        found.sort()
        return found

    async def find_music_files(self) -> List[Path]:
        """All supported audio files below the music root, sorted by path."""
        return await asyncio.to_thread(self._walk)

    # ========== Full scan ==========

    async def scan_all(self, task_id: Optional[str] = None) -> Optional[ScanStats]:
        """Scan the whole music root.

        Returns:
            ScanStats for the run, or None if another scan is already running.
        """
        if self._scanning:
            logger.warning("Scan already in progress, ignoring request")
            return None
        self._scanning = True
        self._cancel_requested = False
        self._failed_commits = 0
        stats = ScanStats()

        try:
            if not self.music_root.is_dir():
                logger.error(f"Music directory not found: {self.music_root}")
                stats.errors = 1
                if task_id:
                    self._ensure_task(task_id, 0)
                    self.task_store.complete_task(
                        task_id, success=False, error="Directory not found"
                    )
                return stats

            unreadable: List[Path] = []
            files = await asyncio.to_thread(self._walk, None, unreadable)
            if task_id:
                self._ensure_task(task_id, len(files))
            logger.info(
                f"Starting scan of {self.music_root}: {len(files)} files "
                f"(waves of {self.config.max_concurrent_files}, "
                f"commit every {self.config.commit_interval} writes)"
            )

            self._batch_active = True
            width = self.config.max_concurrent_files
            for start in range(0, len(files), width):
                if self._is_cancelled(task_id):
                    stats.cancelled = True
                    logger.info(f"Scan cancelled after {stats.processed} files")
                    break

                wave = files[start : start + width]
                prev_processed = stats.processed
                await self._run_wave(wave, stats)
                if stats.aborted:
                    break

                is_last = start + width >= len(files)
                if self._pending_writes >= self.config.commit_interval or is_last:
                    await self._commit_batch(stats)
                    if stats.aborted:
                        break

                self._report_progress(task_id, prev_processed, stats, is_last)

            if not (stats.cancelled or stats.aborted):
                await self._remove_vanished(files, unreadable, stats)

            if not stats.aborted and (self._pending_writes or self.session.in_transaction()):
                # Cancelled scans keep what they already wrote
                await self._commit_batch(stats)

            self._finish_task(task_id, stats)
            return stats
        finally:
            self._batch_active = False
            self._batch_failed = False
            self._scanning = False

    def _ensure_task(self, task_id: str, total: int) -> None:
        if self.task_store.get_task(task_id) is None:
            self.task_store.create_task(task_id, "scan", total=total)
        else:
            self.task_store.update_progress(task_id, 0, "Starting scan...", total=total)

    def _report_progress(
        self, task_id: Optional[str], prev_processed: int, stats: ScanStats, is_last: bool
    ) -> None:
        if not task_id:
            return
        interval = self.config.progress_update_interval
        if is_last or stats.processed // interval > prev_processed // interval:
            self.task_store.update_progress(
                task_id,
                stats.processed,
                f"Scanned {stats.processed} files ({self._pending_created + stats.created} new)",
            )

    def _finish_task(self, task_id: Optional[str], stats: ScanStats) -> None:
        if stats.aborted:
            logger.error(f"Scan aborted after repeated transaction failures: {stats}")
            if task_id:
                self.task_store.complete_task(
                    task_id, success=False, error="Transaction failure"
                )
        elif stats.cancelled:
            logger.warning(f"Scan cancelled: {stats}")
            if task_id:
                self.task_store.mark_cancelled(task_id)
        else:
            logger.success(f"Scan completed: {stats}")
            if task_id:
                self.task_store.complete_task(task_id, success=True)

    async def _run_wave(self, wave: List[Path], stats: ScanStats) -> None:
        """Ingest one wave concurrently; roll back the batch if it failed."""
        async with self._db_lock:
            try:
                known = await self.catalog.get_mtimes(str(p) for p in wave)
            except SQLAlchemyError as e:
                logger.error(f"Could not load stored mtimes: {e}")
                self._batch_failed = True
                known = None

        if known is None:
            stats.processed += len(wave)
            stats.errors += len(wave)
        else:
            outcomes = await asyncio.gather(
                *(self._ingest(path, known) for path in wave)
            )
            stats.processed += len(outcomes)
            stats.skipped += outcomes.count(SKIPPED)
            stats.errors += outcomes.count(ERROR)

        if self._batch_failed:
            await self._rollback_batch(stats)

    async def _remove_vanished(
        self, discovered: List[Path], unreadable: List[Path], stats: ScanStats
    ) -> None:
        """Delete rows below the music root whose files the walk did not find.

        Rows below a directory the walk could not read are kept. The
        deletions join the open batch and are counted on commit.
        """
        found = {str(p) for p in discovered}
        skipped_dirs = tuple(str(d).rstrip(os.sep) + os.sep for d in unreadable)
        async with self._db_lock:
            try:
                stored = await self.catalog.get_paths_under(str(self.music_root))
                vanished = [
                    p for p in stored if p not in found and not p.startswith(skipped_dirs)
                ]
                if vanished:
                    self._pending_removed += await self.catalog.remove_tracks_by_paths(
                        vanished
                    )
            except SQLAlchemyError as e:
                logger.error(f"Could not remove tracks of vanished files: {e}")
                await self._rollback_locked(stats)
                return
        if vanished:
            logger.info(f"{len(vanished)} tracks no longer on disk, removing")

    async def _commit_batch(self, stats: ScanStats) -> None:
        async with self._db_lock:
            pending = self._pending_writes
            try:
                await self.catalog.commit()
            except SQLAlchemyError as e:
                self._failed_commits += 1
                logger.error(
                    f"Commit of {pending} writes failed "
                    f"({self._failed_commits} in a row): {e}"
                )
                await self._rollback_locked(stats)
                if self._failed_commits >= MAX_FAILED_COMMITS:
                    stats.aborted = True
                return

            self._failed_commits = 0
            if pending or self._pending_removed:
                stats.commits += 1
                logger.debug(
                    f"Committed {pending} writes, {self._pending_removed} removals"
                )
            stats.created += self._pending_created
            stats.updated += self._pending_updated
            stats.removed += self._pending_removed
            self._reset_batch()

    async def _rollback_batch(self, stats: ScanStats) -> None:
        async with self._db_lock:
            await self._rollback_locked(stats)

    async def _rollback_locked(self, stats: ScanStats) -> None:
        lost = self._pending_writes + self._pending_lost
        try:
            await self.catalog.rollback()
        except SQLAlchemyError as e:
            logger.critical(f"Rollback failed, aborting scan: {e}")
            stats.aborted = True
        stats.rolled_back += lost
        logger.warning(f"Rolled back batch, {lost} writes lost")
        self._reset_batch()

    def _reset_batch(self) -> None:
        self._batch_failed = False
        self._pending_removed = 0
        self._pending_created = 0
        self._pending_updated = 0
        self._pending_lost = 0

    # ========== Single file ingestion ==========

    async def scan_file(self, path: Union[str, Path]) -> bool:
        """Ingest one file, e.g. on a watcher event.

        Commits on its own unless a full scan owns the open transaction, in
        which case the write joins that batch.

        Returns:
            True if the catalog row was written.

        Raises:
            TransactionError: The write or its commit failed.
        """
        path = Path(path).absolute()
        if not self._is_supported(path):
            return False
        outcome = await self._ingest(path, None, commit=True)
        return outcome in (CREATED, UPDATED)

    async def _ingest(
        self,
        path: Path,
        known_mtimes: Optional[Dict[str, Optional[float]]],
        commit: bool = False,
    ) -> str:
        """Stat, extract, thumbnail and write one file.

        Per-file problems are logged and reported as ERROR. Database failures
        inside a batch are reported as ERROR after flagging the batch; outside
        a batch they raise ``TransactionError``.
        """
        path_str = str(path)
        try:
            try:
                stat = await asyncio.to_thread(path.stat)
            except OSError as e:
                raise TransientIOError(f"Cannot stat file: {e}", path) from e

            if known_mtimes is None:
                async with self._db_lock:
                    known_mtimes = await self.catalog.get_mtimes([path_str])
            is_new = path_str not in known_mtimes
            if not is_new and known_mtimes[path_str] == stat.st_mtime:
                return SKIPPED

            meta = await self.pipeline.extract(path)
            cover = await self.cover_resolver.resolve(path, meta.picture)
            if await self._changed_since(path, stat):
                # The event or scan that follows the change ingests it again
                logger.debug(f"{path.name} changed during ingestion, not writing")
                return SKIPPED
            data = self._build_track_data(path_str, stat, meta, cover)
            return await self._write(data, cover, is_new, commit)
        except TransactionError:
            if self._batch_active and not commit:
                return ERROR
            raise
        except SQLAlchemyError as e:
            raise TransactionError(f"Database error: {e}", path) from e
        except Exception as e:
            self._handle_file_error(path, e)
            return ERROR

    @staticmethod
    async def _changed_since(path: Path, stat: os.stat_result) -> bool:
        """True if the file's mtime differs from the one ingestion started with."""
        try:
            fresh = await asyncio.to_thread(path.stat)
        except OSError as e:
            raise TransientIOError(f"File vanished during ingestion: {e}", path) from e
        return fresh.st_mtime != stat.st_mtime

    @staticmethod
    def _build_track_data(
        path_str: str, stat: os.stat_result, meta: TrackMetadata, cover: CoverResult
    ) -> TrackData:
        return TrackData(
            file_path=path_str,
            file_size=stat.st_size,
            file_mtime=stat.st_mtime,
            title=meta.title,
            artist=meta.artist,
            album=meta.album,
            album_artist=meta.album_artist,
            genre=meta.genre,
            year=meta.year,
            track_number=meta.track_number,
            disc_number=meta.disc_number,
            duration=meta.duration,
            bitrate=meta.bitrate,
            format=meta.format,
            cover_path=cover.cover_path,
            has_cover=cover.has_cover,
        )

    async def _write(
        self, data: TrackData, cover: CoverResult, is_new: bool, commit: bool
    ) -> str:
        async with self._db_lock:
            in_batch = self._batch_active
            if in_batch and self._batch_failed:
                self._pending_lost += 1
                return LOST

            try:
                await self.catalog.upsert_track(data)
                if cover.has_cover:
                    await self.catalog.upsert_cover(
                        album_key(data.artist, data.album),
                        cover.cover_path,
                        cover.width,
                        cover.height,
                        "jpeg",
                    )
                if commit and not in_batch:
                    await self.catalog.commit()
            except SQLAlchemyError as e:
                if in_batch:
                    logger.error(f"Batch write failed at {data.file_path}: {e}")
                    self._batch_failed = True
                else:
                    await self._rollback_single(data.file_path)
                raise TransactionError(
                    f"Write failed: {e}", data.file_path
                ) from e

            if in_batch:
                if is_new:
                    self._pending_created += 1
                else:
                    self._pending_updated += 1
            return CREATED if is_new else UPDATED

    async def _rollback_single(self, path: str) -> None:
        try:
            await self.catalog.rollback()
        except SQLAlchemyError as e:
            logger.critical(f"Rollback after failed write of {path} failed: {e}")

    def _handle_file_error(self, path: Path, error: Exception) -> None:
        if isinstance(error, TransientIOError):
            logger.warning(f"Skipping vanished or unreadable file {path}: {error}")
        else:
            logger.error(f"Error processing {path}: {error}")

    # ========== Removal and maintenance ==========

    async def remove_file(self, path: Union[str, Path]) -> bool:
        """Delete the catalog row of a removed file.

        Returns:
            True if a row was deleted.
        """
        path_str = str(Path(path).absolute())
        async with self._db_lock:
            try:
                removed = await self.catalog.remove_track_by_path(path_str)
                if not self._batch_active:
                    await self.catalog.commit()
            except SQLAlchemyError as e:
                if self._batch_active:
                    self._batch_failed = True
                else:
                    await self._rollback_single(path_str)
                raise TransactionError(f"Remove failed: {e}", path_str) from e
        if removed:
            logger.info(f"Removed track for deleted file {path_str}")
        return bool(removed)

    async def remove_directory(self, path: Union[str, Path]) -> int:
        """Delete the rows of every track below a removed or moved-away directory.

        Returns:
            Number of rows deleted.
        """
        prefix = str(Path(path).absolute())
        async with self._db_lock:
            try:
                removed = await self.catalog.remove_tracks_under(prefix)
                if not self._batch_active:
                    await self.catalog.commit()
            except SQLAlchemyError as e:
                if self._batch_active:
                    self._batch_failed = True
                else:
                    await self._rollback_single(prefix)
                raise TransactionError(f"Remove failed: {e}", prefix) from e
        if removed:
            logger.info(f"Removed {removed} tracks below {prefix}")
        return removed

    async def scan_directory(self, path: Union[str, Path]) -> int:
        """Ingest every supported file below a directory that appeared.

        Returns:
            Number of catalog rows written.
        """
        files = await asyncio.to_thread(self._walk, Path(path).absolute())
        written = 0
        for file_path in files:
            if await self.scan_file(file_path):
                written += 1
        return written

    async def cleanup(self) -> Optional[CleanupResult]:
        """Remove tracks whose files are gone, then orphaned covers.

        Returns:
            What was removed, or None if a scan is running.
        """
        if self._scanning:
            logger.warning("Cleanup skipped, scan in progress")
            return None
        async with self._db_lock:
            try:
                result = await self.catalog.cleanup()
                await self.catalog.commit()
            except SQLAlchemyError as e:
                await self._rollback_single("<cleanup>")
                raise TransactionError(f"Cleanup failed: {e}") from e
        logger.info(
            f"Cleanup removed {result.removed_tracks} tracks, "
            f"{result.removed_covers} covers"
        )
        return result

    # ========== Watching ==========

    def watch(self) -> DirectoryWatcher:
        """Start a live watcher feeding this scanner. Call from a running loop."""
        if self._watcher is None:
            self._watcher = DirectoryWatcher(
                self.music_root, self, extensions=self.config.extensions
            )
            self._watcher.start()
        return self._watcher

    async def destroy(self) -> None:
        """Stop the watcher and any running scan."""
        self.cancel()
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None
