"""Configuration for scanner behavior and performance tuning."""

from dataclasses import dataclass
from typing import Optional

from jukebox.core.config import settings


@dataclass
class ScannerConfig:
    """Configuration for LibraryScanner behavior.

    Attributes:
        max_concurrent_files: Width of one worker wave (files ingested in
            parallel before the next commit check).
        commit_interval: Writes per transaction. Checked at wave boundaries,
            so a transaction holds at least this many writes unless it is
            the last one of the scan.
        progress_update_interval: Report progress every N files.
        extensions: Lowercase suffixes accepted by the walker and watcher.

    Example:
        >>> config = ScannerConfig(max_concurrent_files=10, commit_interval=50)
        >>> scanner = LibraryScanner(session, music_root, config=config)
    """

    max_concurrent_files: int = settings.SCAN_CONCURRENCY
    commit_interval: int = settings.SCAN_COMMIT_INTERVAL
    progress_update_interval: int = 50
    extensions: Optional[frozenset] = None

    def __post_init__(self):
        """Validate values and fill the extension allow-list.

        Raises:
            ValueError: If any configuration value is invalid.
        """
        if self.extensions is None:
            self.extensions = frozenset(
                e.lower() for e in settings.SUPPORTED_EXTENSIONS
            )
        else:
            self.extensions = frozenset(e.lower() for e in self.extensions)
        if self.max_concurrent_files < 1:
            raise ValueError("max_concurrent_files must be >= 1")
        if self.commit_interval < 1:
            raise ValueError("commit_interval must be >= 1")
        if self.progress_update_interval < 1:
            raise ValueError("progress_update_interval must be >= 1")
        if not self.extensions:
            raise ValueError("extensions must not be empty")
