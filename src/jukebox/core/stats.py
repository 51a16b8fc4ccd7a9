"""Statistics tracking for scan operations.

Replaces loose dict counters with a typed container that the scanner updates
under its lock and returns to callers when a scan finishes, is cancelled, or
is aborted.
"""

from dataclasses import dataclass


@dataclass
class ScanStats:
    """Statistics for a library scan.

    Attributes:
        processed: Files attempted (skipped, written, or failed).
        created: New track rows written.
        updated: Existing track rows rewritten after an mtime change.
        skipped: Files whose stored mtime matched (no write).
        errors: Files that failed at the file boundary.
        removed: Track rows deleted (vanished files, watcher removals, cleanup).
        rolled_back: Writes lost to a rolled back batch.
        commits: Transactions committed during the scan.
        cancelled: Set when cancellation was requested; the scan stops
            at the next wave boundary.
        aborted: Set when a transaction failure could not be recovered.

    Example:
        >>> stats = ScanStats()
        >>> stats.processed += 1
        >>> stats.created += 1
        >>> stats.to_dict()["created"]
        1
    """

    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: int = 0
    removed: int = 0
    rolled_back: int = 0
    commits: int = 0
    cancelled: bool = False
    aborted: bool = False

    @property
    def written(self) -> int:
        return self.created + self.updated

    def to_dict(self) -> dict:
        """Convert stats to a plain dictionary for reporting."""
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": self.errors,
            "removed": self.removed,
            "rolled_back": self.rolled_back,
            "commits": self.commits,
            "cancelled": self.cancelled,
            "aborted": self.aborted,
        }

    def __str__(self) -> str:
        return (
            f"ScanStats(processed={self.processed}, created={self.created}, "
            f"updated={self.updated}, skipped={self.skipped}, "
            f"errors={self.errors}, rolled_back={self.rolled_back})"
        )
