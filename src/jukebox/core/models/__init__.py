"""SQLAlchemy models for the jukebox catalog.

Submodules:
- base: Base, TimestampMixin
- library: Track, Cover
- playback: ExternalTrack, PlayHistory, CustomPlaylist, PlaySource
"""

from jukebox.core.models.base import Base, TimestampMixin, utcnow
from jukebox.core.models.library import Cover, Track
from jukebox.core.models.playback import (
    CustomPlaylist,
    ExternalTrack,
    PlayHistory,
    PlaySource,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "Track",
    "Cover",
    "ExternalTrack",
    "PlayHistory",
    "PlaySource",
    "CustomPlaylist",
]
