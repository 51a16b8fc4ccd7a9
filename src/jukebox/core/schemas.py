"""Pydantic models for catalog query inputs and results."""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from jukebox.core.models import PlaySource


class TrackFilters(BaseModel):
    """Filters for track listings. Text filters are case-insensitive substrings."""

    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[int] = None
    search: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)


class TrackData(BaseModel):
    """Fully resolved track record, ready to be written to the catalog."""

    file_path: str
    file_size: Optional[int] = None
    file_mtime: Optional[float] = None
    title: str
    artist: str
    album: str
    album_artist: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[int] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    duration: Optional[float] = None
    bitrate: Optional[int] = None
    format: Optional[str] = None
    cover_path: Optional[str] = None
    has_cover: bool = False


class ExternalTrackData(BaseModel):
    """Entry from a remote catalog, keyed by ``external_id``."""

    external_id: str
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[int] = None
    duration: Optional[int] = None
    image_url: Optional[str] = None
    preview_url: Optional[str] = None
    uri: Optional[str] = None
    popularity: int = 0
    added_date: Optional[datetime] = None


class ArtistEntry(BaseModel):
    """Artist grouped case-insensitively, shown with its most common spelling."""

    artist: str
    track_count: int


class AlbumEntry(BaseModel):
    album: str
    artist: str
    track_count: int
    year: Optional[int] = None


class GenreEntry(BaseModel):
    genre: str
    track_count: int


class LibraryStats(BaseModel):
    total_tracks: int = 0
    total_artists: int = 0
    total_albums: int = 0
    total_genres: int = 0
    total_duration: float = 0.0
    average_year: Optional[float] = None
    oldest_year: Optional[int] = None
    newest_year: Optional[int] = None


class PlayStats(BaseModel):
    total_tracks: int = 0
    total_plays: int = 0
    avg_plays_per_track: float = 0.0
    max_plays: int = 0


class ExternalStats(BaseModel):
    total_tracks: int = 0
    unique_artists: int = 0
    unique_albums: int = 0
    avg_popularity: float = 0.0
    total_plays: int = 0


class MostPlayedEntry(BaseModel):
    """One row of the merged local/external most-played ranking."""

    id: int
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    play_count: int
    last_played: Optional[datetime] = None
    source: PlaySource
    file_path: Optional[str] = None
    external_id: Optional[str] = None
    uri: Optional[str] = None
    image_url: Optional[str] = None


class PlayRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    track_id: Optional[int] = None
    external_id: Optional[str] = None
    title: str
    artist: str
    album: Optional[str] = None
    source: PlaySource
    played_at: datetime
    session_id: Optional[str] = None


class SearchHit(BaseModel):
    id: int
    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[int] = None
    duration: Optional[float] = None
    source: PlaySource
    file_path: Optional[str] = None
    cover_path: Optional[str] = None
    external_id: Optional[str] = None
    uri: Optional[str] = None
    image_url: Optional[str] = None


class SearchResults(BaseModel):
    local: List[SearchHit] = []
    external: List[SearchHit] = []

    @property
    def total(self) -> int:
        return len(self.local) + len(self.external)


class CleanupResult(BaseModel):
    removed_tracks: int = 0
    removed_covers: int = 0
