"""Library models: Track, Cover."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Float, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from jukebox.core.models.base import Base, TimestampMixin


class Track(Base, TimestampMixin):
    """One ingested audio file on disk.

    ``file_path`` is the natural key and ``file_mtime`` the change-detection
    key: a row is rewritten only when the file's mtime moves forward.
    """

    __tablename__ = "tracks"
    __table_args__ = (
        Index("idx_tracks_artist", "artist"),
        Index("idx_tracks_album", "album"),
        Index("idx_tracks_genre", "genre"),
        Index("idx_tracks_year", "year"),
        Index("idx_tracks_mtime", "file_mtime"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    file_path: Mapped[str] = mapped_column(String, unique=True, index=True)
    file_size: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    file_mtime: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    title: Mapped[str] = mapped_column(String)
    artist: Mapped[str] = mapped_column(String)
    album: Mapped[str] = mapped_column(String)
    album_artist: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    genre: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    track_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    disc_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    bitrate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    format: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    cover_path: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    has_cover: Mapped[bool] = mapped_column(Boolean, default=False)

    play_count: Mapped[int] = mapped_column(Integer, default=0)
    last_played: Mapped[Optional[datetime]] = mapped_column(nullable=True)


class Cover(Base, TimestampMixin):
    """Resolved album artwork, keyed by ``lower(artist)||lower(album)``."""

    __tablename__ = "covers"

    id: Mapped[int] = mapped_column(primary_key=True)
    album_key: Mapped[str] = mapped_column(String, unique=True, index=True)
    cover_path: Mapped[str] = mapped_column(String)
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    format: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    @staticmethod
    def key_for(artist: Optional[str], album: Optional[str]) -> str:
        """Album key shared by tracks and covers: ``lower(artist)||lower(album)``."""
        return f"{(artist or '').lower()}||{(album or '').lower()}"
