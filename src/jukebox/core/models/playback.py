"""Playback models: ExternalTrack, PlayHistory, CustomPlaylist."""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from jukebox.core.models.base import Base, TimestampMixin, utcnow


class PlaySource(str, enum.Enum):
    LOCAL = "local"
    EXTERNAL = "external"


class ExternalTrack(Base, TimestampMixin):
    """Mirror of an entry in a remote catalog (e.g. a streaming service).

    Never touched by the file scanner; upserted by ``external_id``.
    """

    __tablename__ = "external_tracks"

    id: Mapped[int] = mapped_column(primary_key=True)
    external_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    artist: Mapped[Optional[str]] = mapped_column(
        String, index=True, nullable=True
    )
    album: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    genre: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    preview_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    uri: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    popularity: Mapped[int] = mapped_column(Integer, default=0, index=True)
    added_date: Mapped[datetime] = mapped_column(default=utcnow)
    play_count: Mapped[int] = mapped_column(Integer, default=0)
    last_played: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True)


class PlayHistory(Base):
    """Append-only record of a single play, used for interval reporting."""

    __tablename__ = "play_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    track_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("tracks.id", ondelete="SET NULL"), index=True, nullable=True
    )
    external_id: Mapped[Optional[str]] = mapped_column(
        String, index=True, nullable=True
    )
    title: Mapped[str] = mapped_column(String)
    artist: Mapped[str] = mapped_column(String, index=True)
    album: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    source: Mapped[PlaySource] = mapped_column(
        Enum(PlaySource, values_callable=lambda e: [m.value for m in e]),
        index=True,
    )
    played_at: Mapped[datetime] = mapped_column(index=True, default=utcnow)
    session_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)


class CustomPlaylist(Base, TimestampMixin):
    """A named link to an externally hosted playlist."""

    __tablename__ = "custom_playlists"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String, index=True)
    external_url: Mapped[str] = mapped_column(String)
