"""Live directory watcher feeding filesystem changes into the scanner.

watchdog delivers callbacks on its observer thread. They are turned into
``FileEvent`` objects and handed to the event loop through
``call_soon_threadsafe``; one dispatch task then applies them to the catalog
in arrival order, so a file's events are never processed concurrently.
"""

import asyncio
import contextlib
import enum
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, Optional, Union

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from jukebox.core.config import settings
from jukebox.core.stats import ScanStats

if TYPE_CHECKING:
    from jukebox.worker.scanner import LibraryScanner


class FileEventType(str, enum.Enum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class FileEvent:
    type: FileEventType
    path: Path
    is_directory: bool = False


class _QueueingHandler(FileSystemEventHandler):
    """Translates watchdog callbacks into FileEvents. Runs on the observer thread.

    Directory creations, deletions and moves are forwarded as directory
    events; a directory moved out of the tree leaves no per-file events
    behind, so its rows must be dropped by prefix.
    """

    def __init__(self, watcher: "DirectoryWatcher"):
        super().__init__()
        self._watcher = watcher

    def _emit(self, event_type: FileEventType, raw_path, is_directory: bool) -> None:
        self._watcher._enqueue_threadsafe(
            FileEvent(event_type, Path(os.fsdecode(raw_path)), is_directory)
        )

    def on_created(self, event: FileSystemEvent) -> None:
        self._emit(FileEventType.ADDED, event.src_path, event.is_directory)

    def on_modified(self, event: FileSystemEvent) -> None:
        # Directory mtimes change with every entry; the entries report themselves
        if not event.is_directory:
            self._emit(FileEventType.CHANGED, event.src_path, False)

    def on_deleted(self, event: FileSystemEvent) -> None:
        self._emit(FileEventType.REMOVED, event.src_path, event.is_directory)

    def on_moved(self, event: FileSystemEvent) -> None:
        self._emit(FileEventType.REMOVED, event.src_path, event.is_directory)
        self._emit(FileEventType.ADDED, event.dest_path, event.is_directory)


class DirectoryWatcher:
    """Watches the music root and keeps the catalog current.

    Attributes:
        root: Watched directory (recursive).
        scanner: Scanner that ingests and removes files.
        extensions: Lowercase suffixes that are acted upon.
        stats: Running tally of dispatched events.
    """

    def __init__(
        self,
        root: Union[str, Path],
        scanner: "LibraryScanner",
        extensions: Optional[Iterable[str]] = None,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self.root = Path(root).absolute()
        self.scanner = scanner
        self.extensions = frozenset(
            e.lower() for e in (extensions or settings.SUPPORTED_EXTENSIONS)
        )
        self.stats = ScanStats()
        self.queue: asyncio.Queue = asyncio.Queue()
        self._observer_factory = observer_factory
        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def accepts(self, path: Path, is_directory: bool = False) -> bool:
        """True for supported audio files, or directories, inside the root.

        Hidden files and anything below a hidden directory are ignored, as is
        every path outside the root, such as the far end of a move out.
        """
        if not is_directory and path.suffix.lower() not in self.extensions:
            return False
        try:
            parts = path.relative_to(self.root).parts
        except ValueError:
            return False
        return not any(part.startswith(".") for part in parts)

    def start(self) -> None:
        """Start the dispatch task and the filesystem observer."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self._dispatch_loop())

        observer = self._observer_factory()
        observer.daemon = True
        observer.schedule(_QueueingHandler(self), str(self.root), recursive=True)
        observer.start()
        self._observer = observer
        logger.info(f"Watching {self.root} for changes")

    async def stop(self) -> None:
        """Stop the observer, then the dispatch task. Queued events are dropped."""
        if self._observer is not None:
            self._observer.stop()
            await asyncio.to_thread(self._observer.join, 5)
            self._observer = None
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info(f"Stopped watching {self.root}")

    def publish(self, event: FileEvent) -> None:
        """Inject an event as if the observer had reported it."""
        if self.accepts(event.path, event.is_directory):
            self.queue.put_nowait(event)

    def _enqueue_threadsafe(self, event: FileEvent) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        if self.accepts(event.path, event.is_directory):
            self._loop.call_soon_threadsafe(self.queue.put_nowait, event)

    async def join(self) -> None:
        """Wait until every queued event has been dispatched."""
        await self.queue.join()

    async def _dispatch_loop(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                await self._dispatch(event)
            except Exception as e:
                self.stats.errors += 1
                logger.error(f"Failed to handle {event.type.value} event for {event.path}: {e}")
            finally:
                self.queue.task_done()

    async def _dispatch(self, event: FileEvent) -> None:
        self.stats.processed += 1
        if event.is_directory:
            await self._dispatch_directory(event)
            return

        if event.type is FileEventType.REMOVED:
            if await self.scanner.remove_file(event.path):
                self.stats.removed += 1
            else:
                self.stats.skipped += 1
            return

        if await self.scanner.scan_file(event.path):
            if event.type is FileEventType.ADDED:
                self.stats.created += 1
            else:
                self.stats.updated += 1
            logger.info(f"Ingested {event.type.value} file {event.path.name}")
        else:
            self.stats.skipped += 1

    async def _dispatch_directory(self, event: FileEvent) -> None:
        # A move inside the tree arrives as removal of the old path and
        # addition of the new one
        if event.type is FileEventType.REMOVED:
            removed = await self.scanner.remove_directory(event.path)
            self.stats.removed += removed
            if not removed:
                self.stats.skipped += 1
            return

        written = await self.scanner.scan_directory(event.path)
        self.stats.created += written
        if written:
            logger.info(f"Ingested {written} files from directory {event.path.name}")
        else:
            self.stats.skipped += 1
