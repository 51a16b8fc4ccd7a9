"""Error taxonomy for library ingestion.

Per-file errors (``TransientIOError``, ``MetadataParseError``,
``ImageProcessingError``) are contained at the file boundary by the scanner.
``TransactionError`` is the only kind that affects a whole batch.
"""

from pathlib import Path
from typing import Optional, Union


class JukeboxError(Exception):
    """Base class for all catalog and ingestion errors."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = str(path) if path is not None else None


class TransientIOError(JukeboxError):
    """File vanished or became unreadable between discovery and ingestion."""


class MetadataParseError(JukeboxError):
    """A metadata extraction stage could not read the file."""

    def __init__(
        self,
        message: str,
        path: Optional[Union[str, Path]] = None,
        stage: Optional[str] = None,
    ):
        super().__init__(message, path)
        self.stage = stage


class ImageProcessingError(JukeboxError):
    """Cover art could not be decoded, resized or written."""


class TransactionError(JukeboxError):
    """A batch write, commit or rollback failed."""
