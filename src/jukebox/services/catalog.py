"""Catalog database access: upserts, browsing queries and play statistics.

``LibraryCatalog`` wraps one ``AsyncSession`` and never commits on its own;
the caller owns the transaction boundary. The scanner uses that to batch many
upserts into one transaction, while an API layer commits after each request.

Typical usage example:
    async with AsyncSessionLocal() as session:
        catalog = LibraryCatalog(session)
        artists = await catalog.list_artists()
        await catalog.increment_play_count(track_id)
        await catalog.commit()
"""

import asyncio
import os
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy import delete, func, or_, select, union_all, update
from sqlalchemy.ext.asyncio import AsyncSession

from jukebox.core.models import (
    Cover,
    CustomPlaylist,
    ExternalTrack,
    PlayHistory,
    PlaySource,
    Track,
    utcnow,
)
from jukebox.core.schemas import (
    AlbumEntry,
    ArtistEntry,
    CleanupResult,
    ExternalStats,
    ExternalTrackData,
    GenreEntry,
    LibraryStats,
    MostPlayedEntry,
    PlayRecord,
    PlayStats,
    SearchHit,
    SearchResults,
    TrackData,
    TrackFilters,
)

# Stay well below SQLite's bound-parameter limit for IN (...) queries
IN_CHUNK_SIZE = 500


def _contains(column, text: str):
    """Case-insensitive substring match."""
    return func.lower(column).like(func.lower(f"%{text}%"))


def _below(directory: str):
    """Paths inside ``directory``; ``/m/A`` never matches ``/m/AB/x.mp3``."""
    prefix = directory.rstrip(os.sep) + os.sep
    return Track.file_path.startswith(prefix, autoescape=True)


class LibraryCatalog:
    """Persistent catalog of tracks, covers, external tracks and play history.

    Attributes:
        session: Async SQLAlchemy session all operations run on.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self._session_id: Optional[str] = None

    # ========== Transaction control ==========

    @property
    def in_transaction(self) -> bool:
        return self.session.in_transaction()

    async def begin(self) -> None:
        """Open a transaction unless one is already active."""
        if not self.session.in_transaction():
            await self.session.begin()

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()

    # ========== Tracks ==========

    async def get_track_by_path(self, file_path: str) -> Optional[Track]:
        stmt = select(Track).where(Track.file_path == file_path)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_track_by_id(self, track_id: int) -> Optional[Track]:
        return await self.session.get(Track, track_id)

    async def get_mtimes(self, paths: Iterable[str]) -> Dict[str, Optional[float]]:
        """Return stored mtimes for the given paths (missing paths are absent)."""
        path_list = list(paths)
        mtimes: Dict[str, Optional[float]] = {}
        for start in range(0, len(path_list), IN_CHUNK_SIZE):
            chunk = path_list[start : start + IN_CHUNK_SIZE]
            stmt = select(Track.file_path, Track.file_mtime).where(
                Track.file_path.in_(chunk)
            )
            result = await self.session.execute(stmt)
            for row in result.all():
                mtimes[row.file_path] = row.file_mtime
        return mtimes

    async def upsert_track(self, data: TrackData) -> Track:
        """Insert or replace the track stored at ``data.file_path``.

        Any mtime difference replaces the row, including an mtime that moved
        backwards after a restore. Play statistics of an existing row are
        preserved.
        """
        values = data.model_dump()
        existing = await self.get_track_by_path(data.file_path)
        if existing is None:
            track = Track(**values)
            self.session.add(track)
            await self.session.flush()
            return track

        for key, value in values.items():
            setattr(existing, key, value)
        await self.session.flush()
        return existing

    async def remove_track_by_path(self, file_path: str) -> int:
        result = await self.session.execute(
            delete(Track).where(Track.file_path == file_path)
        )
        return result.rowcount or 0

    async def remove_track_by_id(self, track_id: int) -> int:
        result = await self.session.execute(
            delete(Track).where(Track.id == track_id)
        )
        return result.rowcount or 0

    async def remove_tracks_by_paths(self, paths: Iterable[str]) -> int:
        path_list = list(paths)
        removed = 0
        for start in range(0, len(path_list), IN_CHUNK_SIZE):
            chunk = path_list[start : start + IN_CHUNK_SIZE]
            result = await self.session.execute(
                delete(Track).where(Track.file_path.in_(chunk))
            )
            removed += result.rowcount or 0
        return removed

    async def get_paths_under(self, directory: str) -> List[str]:
        """Stored file paths strictly below ``directory``."""
        result = await self.session.execute(
            select(Track.file_path).where(_below(directory))
        )
        return list(result.scalars().all())

    async def remove_tracks_under(self, directory: str) -> int:
        """Delete every track stored below ``directory`` (not its siblings)."""
        result = await self.session.execute(
            delete(Track)
            .where(_below(directory))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    async def list_tracks(self, filters: Optional[TrackFilters] = None) -> List[Track]:
        """Filtered, ordered and optionally paginated track listing."""
        f = filters or TrackFilters()
        stmt = select(Track)

        if f.artist:
            stmt = stmt.where(_contains(Track.artist, f.artist))
        if f.album:
            stmt = stmt.where(_contains(Track.album, f.album))
        if f.genre:
            stmt = stmt.where(_contains(Track.genre, f.genre))
        if f.year:
            stmt = stmt.where(Track.year == f.year)
        if f.search:
            stmt = stmt.where(
                or_(
                    _contains(Track.title, f.search),
                    _contains(Track.artist, f.search),
                    _contains(Track.album, f.search),
                )
            )

        stmt = stmt.order_by(
            func.lower(Track.artist),
            func.lower(Track.album),
            Track.track_number,
            func.lower(Track.title),
        )
        if f.limit:
            stmt = stmt.limit(f.limit).offset(f.offset)

        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get_track_with_cover(self, artist: str, album: str) -> Optional[Track]:
        """Any track of the album that has a resolved cover."""
        stmt = (
            select(Track)
            .where(
                func.lower(Track.artist) == func.lower(artist),
                func.lower(Track.album) == func.lower(album),
                Track.has_cover.is_(True),
                Track.cover_path.is_not(None),
            )
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_artist_album_covers(self, artist: str) -> List[Dict[str, str]]:
        """Distinct (album, cover_path) pairs for an artist, used for mosaics."""
        stmt = (
            select(Track.album, Track.cover_path)
            .where(
                func.lower(Track.artist) == func.lower(artist),
                Track.has_cover.is_(True),
                Track.cover_path.is_not(None),
            )
            .distinct()
            .order_by(Track.album)
        )
        result = await self.session.execute(stmt)
        return [
            {"album": row.album, "cover_path": row.cover_path}
            for row in result.all()
        ]

    # ========== Aggregations ==========

    async def list_artists(self) -> List[ArtistEntry]:
        """Distinct artists with track counts, grouped case-insensitively.

        Each group is displayed with its most frequent original spelling, so
        10 x "Queen" and 2 x "queen" aggregate to one "Queen" with 12 tracks.
        """
        stmt = (
            select(Track.artist, func.count().label("count"))
            .where(Track.artist.is_not(None), Track.artist != "")
            .group_by(Track.artist)
            .order_by(func.count().desc(), Track.artist)
        )
        result = await self.session.execute(stmt)

        display: Dict[str, str] = {}
        best: Dict[str, int] = {}
        totals: Dict[str, int] = {}
        for row in result.all():
            key = row.artist.lower()
            totals[key] = totals.get(key, 0) + row.count
            if row.count > best.get(key, 0):
                best[key] = row.count
                display[key] = row.artist

        return [
            ArtistEntry(artist=display[key], track_count=totals[key])
            for key in sorted(totals)
        ]

    async def list_albums(self, artist: Optional[str] = None) -> List[AlbumEntry]:
        """Distinct albums (optionally for one artist) with track count and year."""
        stmt = select(
            func.min(Track.album).label("album"),
            func.min(Track.artist).label("artist"),
            func.count().label("track_count"),
            func.min(Track.year).label("year"),
        ).where(Track.album.is_not(None), Track.album != "")

        if artist:
            stmt = stmt.where(func.lower(Track.artist) == func.lower(artist))

        stmt = stmt.group_by(
            func.lower(Track.album), func.lower(Track.artist)
        ).order_by(
            func.lower(func.min(Track.artist)),
            func.min(Track.year),
            func.lower(func.min(Track.album)),
        )
        result = await self.session.execute(stmt)
        return [
            AlbumEntry(
                album=row.album,
                artist=row.artist,
                track_count=row.track_count,
                year=row.year,
            )
            for row in result.all()
        ]

    async def list_genres(self) -> List[GenreEntry]:
        stmt = (
            select(Track.genre, func.count().label("track_count"))
            .where(Track.genre.is_not(None), Track.genre != "")
            .group_by(Track.genre)
            .order_by(Track.genre)
        )
        result = await self.session.execute(stmt)
        return [
            GenreEntry(genre=row.genre, track_count=row.track_count)
            for row in result.all()
        ]

    async def get_stats(self) -> LibraryStats:
        """Library-wide counts, total duration and year range."""
        stmt = select(
            func.count(Track.id).label("total_tracks"),
            func.count(func.distinct(Track.artist)).label("total_artists"),
            func.count(func.distinct(Track.album)).label("total_albums"),
            func.count(func.distinct(Track.genre)).label("total_genres"),
            func.coalesce(func.sum(Track.duration), 0.0).label("total_duration"),
            func.avg(Track.year).label("average_year"),
            func.min(Track.year).label("oldest_year"),
            func.max(Track.year).label("newest_year"),
        )
        row = (await self.session.execute(stmt)).one()
        return LibraryStats(**row._asdict())

    async def get_play_stats(self) -> PlayStats:
        """Play totals across local and external tracks."""
        plays = union_all(
            select(Track.play_count.label("play_count")),
            select(ExternalTrack.play_count.label("play_count")),
        ).subquery()
        stmt = select(
            func.count().label("total_tracks"),
            func.coalesce(func.sum(plays.c.play_count), 0).label("total_plays"),
            func.coalesce(func.avg(plays.c.play_count), 0.0).label(
                "avg_plays_per_track"
            ),
            func.coalesce(func.max(plays.c.play_count), 0).label("max_plays"),
        )
        row = (await self.session.execute(stmt)).one()
        return PlayStats(**row._asdict())

    async def get_most_played(self, limit: int = 10) -> List[MostPlayedEntry]:
        """Most played tracks from both sources, by play count then recency."""
        local_stmt = (
            select(Track)
            .where(Track.play_count > 0)
            .order_by(Track.play_count.desc(), Track.last_played.desc())
            .limit(limit)
        )
        external_stmt = (
            select(ExternalTrack)
            .where(ExternalTrack.play_count > 0)
            .order_by(
                ExternalTrack.play_count.desc(), ExternalTrack.last_played.desc()
            )
            .limit(limit)
        )
        local = (await self.session.execute(local_stmt)).scalars().all()
        external = (await self.session.execute(external_stmt)).scalars().all()

        entries = [
            MostPlayedEntry(
                id=t.id,
                title=t.title,
                artist=t.artist,
                album=t.album,
                play_count=t.play_count,
                last_played=t.last_played,
                source=PlaySource.LOCAL,
                file_path=t.file_path,
            )
            for t in local
        ] + [
            MostPlayedEntry(
                id=t.id,
                title=t.title,
                artist=t.artist,
                album=t.album,
                play_count=t.play_count,
                last_played=t.last_played,
                source=PlaySource.EXTERNAL,
                external_id=t.external_id,
                uri=t.uri,
                image_url=t.image_url,
            )
            for t in external
        ]

        def _naive(dt: Optional[datetime]) -> datetime:
            if dt is None:
                return datetime.min
            return dt.replace(tzinfo=None)

        entries.sort(key=lambda e: (e.play_count, _naive(e.last_played)), reverse=True)
        return entries[:limit]

    # ========== Covers ==========

    async def get_cover(self, album_key: str) -> Optional[Cover]:
        stmt = select(Cover).where(Cover.album_key == album_key)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_cover(
        self,
        album_key: str,
        cover_path: str,
        width: Optional[int] = None,
        height: Optional[int] = None,
        format: Optional[str] = None,
    ) -> Cover:
        """Store the cover for an album key, overwriting a different one."""
        cover = await self.get_cover(album_key)
        if cover is None:
            cover = Cover(
                album_key=album_key,
                cover_path=cover_path,
                width=width,
                height=height,
                format=format,
            )
            self.session.add(cover)
        elif (cover.cover_path, cover.width, cover.height, cover.format) != (
            cover_path,
            width,
            height,
            format,
        ):
            cover.cover_path = cover_path
            cover.width = width
            cover.height = height
            cover.format = format
        await self.session.flush()
        return cover

    async def cleanup_orphans(self) -> int:
        """Delete covers whose album key matches no remaining track."""
        pairs = await self.session.execute(
            select(Track.artist, Track.album)
            .where(Track.artist.is_not(None), Track.album.is_not(None))
            .distinct()
        )
        live_keys = {Cover.key_for(row.artist, row.album) for row in pairs.all()}

        covers = await self.session.execute(select(Cover.id, Cover.album_key))
        orphan_ids = [row.id for row in covers.all() if row.album_key not in live_keys]

        removed = 0
        for start in range(0, len(orphan_ids), IN_CHUNK_SIZE):
            chunk = orphan_ids[start : start + IN_CHUNK_SIZE]
            result = await self.session.execute(delete(Cover).where(Cover.id.in_(chunk)))
            removed += result.rowcount or 0

        logger.info(f"Removed {removed} orphaned album covers")
        return removed

    async def remove_missing_tracks(self) -> int:
        """Delete tracks whose backing file no longer exists."""
        rows = (
            await self.session.execute(select(Track.id, Track.file_path))
        ).all()

        def _missing() -> List[int]:
            return [row.id for row in rows if not Path(row.file_path).exists()]

        missing_ids = await asyncio.to_thread(_missing)
        removed = 0
        for start in range(0, len(missing_ids), IN_CHUNK_SIZE):
            chunk = missing_ids[start : start + IN_CHUNK_SIZE]
            result = await self.session.execute(delete(Track).where(Track.id.in_(chunk)))
            removed += result.rowcount or 0

        if removed:
            logger.info(f"Removed {removed} tracks with missing files")
        return removed

    async def cleanup(self) -> CleanupResult:
        """Remove tracks with missing files, then covers left without tracks."""
        removed_tracks = await self.remove_missing_tracks()
        removed_covers = await self.cleanup_orphans()
        return CleanupResult(
            removed_tracks=removed_tracks, removed_covers=removed_covers
        )

    # ========== External catalog ==========

    async def get_external_track(self, external_id: str) -> Optional[ExternalTrack]:
        stmt = select(ExternalTrack).where(ExternalTrack.external_id == external_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def upsert_external_track(self, data: ExternalTrackData) -> ExternalTrack:
        """Insert or update a remote catalog entry, keeping its play statistics."""
        values = data.model_dump(exclude_none=True)
        track = await self.get_external_track(data.external_id)
        if track is None:
            track = ExternalTrack(**values)
            self.session.add(track)
        else:
            for key, value in values.items():
                setattr(track, key, value)
        await self.session.flush()
        return track

    async def list_external_tracks(
        self, filters: Optional[TrackFilters] = None
    ) -> List[ExternalTrack]:
        f = filters or TrackFilters(limit=50)
        stmt = select(ExternalTrack)
        if f.search:
            stmt = stmt.where(
                or_(
                    _contains(ExternalTrack.title, f.search),
                    _contains(ExternalTrack.artist, f.search),
                    _contains(ExternalTrack.album, f.search),
                )
            )
        if f.artist:
            stmt = stmt.where(_contains(ExternalTrack.artist, f.artist))
        if f.album:
            stmt = stmt.where(_contains(ExternalTrack.album, f.album))
        if f.genre:
            stmt = stmt.where(_contains(ExternalTrack.genre, f.genre))
        if f.year:
            stmt = stmt.where(ExternalTrack.year == f.year)

        stmt = stmt.order_by(
            ExternalTrack.popularity.desc(), ExternalTrack.added_date.desc()
        )
        stmt = stmt.limit(f.limit or 50).offset(f.offset)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def remove_external_track(self, external_id: str) -> int:
        result = await self.session.execute(
            delete(ExternalTrack).where(ExternalTrack.external_id == external_id)
        )
        return result.rowcount or 0

    async def get_external_stats(self) -> ExternalStats:
        stmt = select(
            func.count(ExternalTrack.id).label("total_tracks"),
            func.count(func.distinct(ExternalTrack.artist)).label("unique_artists"),
            func.count(func.distinct(ExternalTrack.album)).label("unique_albums"),
            func.coalesce(func.avg(ExternalTrack.popularity), 0.0).label(
                "avg_popularity"
            ),
            func.coalesce(func.sum(ExternalTrack.play_count), 0).label("total_plays"),
        )
        row = (await self.session.execute(stmt)).one()
        return ExternalStats(**row._asdict())

    # ========== Play recording ==========

    async def increment_play_count(self, track_id: int) -> bool:
        """Atomically bump a local track's play count. False if no such track."""
        now = utcnow()
        result = await self.session.execute(
            update(Track)
            .where(Track.id == track_id)
            .values(play_count=Track.play_count + 1, last_played=now, updated_at=now)
        )
        return bool(result.rowcount)

    async def increment_external_play_count(self, external_id: str) -> bool:
        now = utcnow()
        result = await self.session.execute(
            update(ExternalTrack)
            .where(ExternalTrack.external_id == external_id)
            .values(
                play_count=ExternalTrack.play_count + 1,
                last_played=now,
                updated_at=now,
            )
        )
        return bool(result.rowcount)

    @property
    def session_id(self) -> str:
        """Identifier grouping the plays recorded through this catalog."""
        if self._session_id is None:
            self._session_id = (
                f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
            )
        return self._session_id

    def reset_session(self) -> None:
        self._session_id = None

    async def record_play(
        self,
        source: PlaySource,
        title: Optional[str],
        artist: Optional[str],
        album: Optional[str] = None,
        track_id: Optional[int] = None,
        external_id: Optional[str] = None,
        played_at: Optional[datetime] = None,
    ) -> PlayHistory:
        """Append an immutable play history entry.

        Only the reference matching ``source`` is stored; title and artist
        are denormalized so reports survive track deletion.
        """
        source = PlaySource(source)
        entry = PlayHistory(
            track_id=track_id if source is PlaySource.LOCAL else None,
            external_id=external_id if source is PlaySource.EXTERNAL else None,
            title=title or "Unknown Title",
            artist=artist or "Unknown Artist",
            album=album or "",
            source=source,
            played_at=played_at or utcnow(),
            session_id=self.session_id,
        )
        self.session.add(entry)
        await self.session.flush()
        logger.debug(f"Play recorded: {entry.artist} - {entry.title} ({source.value})")
        return entry

    async def get_plays_for_period(
        self, start: datetime, end: datetime
    ) -> List[PlayRecord]:
        """Plays with ``start <= played_at <= end``, oldest first."""
        stmt = (
            select(PlayHistory)
            .where(PlayHistory.played_at >= start, PlayHistory.played_at <= end)
            .order_by(PlayHistory.played_at, PlayHistory.id)
        )
        result = await self.session.execute(stmt)
        return [PlayRecord.model_validate(row) for row in result.scalars().all()]

    # ========== Search ==========

    async def search_all(self, term: str, limit: int = 50) -> SearchResults:
        """Search titles, artists and albums in both catalogs."""
        local_stmt = (
            select(Track)
            .where(
                or_(
                    _contains(Track.title, term),
                    _contains(Track.artist, term),
                    _contains(Track.album, term),
                )
            )
            .order_by(Track.title)
            .limit(limit)
        )
        external_stmt = (
            select(ExternalTrack)
            .where(
                or_(
                    _contains(ExternalTrack.title, term),
                    _contains(ExternalTrack.artist, term),
                    _contains(ExternalTrack.album, term),
                )
            )
            .order_by(ExternalTrack.popularity.desc())
            .limit(limit)
        )
        local = (await self.session.execute(local_stmt)).scalars().all()
        external = (await self.session.execute(external_stmt)).scalars().all()

        return SearchResults(
            local=[
                SearchHit(
                    id=t.id,
                    title=t.title,
                    artist=t.artist,
                    album=t.album,
                    genre=t.genre,
                    year=t.year,
                    duration=t.duration,
                    source=PlaySource.LOCAL,
                    file_path=t.file_path,
                    cover_path=t.cover_path,
                )
                for t in local
            ],
            external=[
                SearchHit(
                    id=t.id,
                    title=t.title,
                    artist=t.artist,
                    album=t.album,
                    genre=t.genre,
                    year=t.year,
                    duration=t.duration,
                    source=PlaySource.EXTERNAL,
                    external_id=t.external_id,
                    uri=t.uri,
                    image_url=t.image_url,
                )
                for t in external
            ],
        )

    # ========== Custom playlists ==========

    async def add_playlist(self, name: str, external_url: str) -> CustomPlaylist:
        playlist = CustomPlaylist(name=name, external_url=external_url)
        self.session.add(playlist)
        await self.session.flush()
        return playlist

    async def list_playlists(self) -> List[CustomPlaylist]:
        stmt = select(CustomPlaylist).order_by(
            CustomPlaylist.created_at.desc(), CustomPlaylist.id.desc()
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def delete_playlist(self, playlist_id: int) -> bool:
        result = await self.session.execute(
            delete(CustomPlaylist).where(CustomPlaylist.id == playlist_id)
        )
        return bool(result.rowcount)

    async def clear_playlists(self) -> int:
        result = await self.session.execute(delete(CustomPlaylist))
        return result.rowcount or 0

    # ========== Admin ==========

    async def clear_database(self) -> None:
        """Delete all tracks, external tracks, covers and playlists.

        Play history is kept; it is the append-only reporting record.
        """
        logger.warning("Clearing catalog database...")
        for model in (Track, ExternalTrack, Cover, CustomPlaylist):
            await self.session.execute(delete(model))
        logger.info("Catalog database cleared")
