"""Metadata extraction with an ordered fallback chain.

Each audio file is read by a tag parser (mutagen) first. If that fails the
file is probed with ffprobe, and as a last resort a record is derived from
the filename alone. The pipeline therefore always yields a usable
``TrackMetadata``; only the quality of the fields degrades.

Typical usage example:
    pipeline = MetadataPipeline.default()
    meta = await pipeline.extract(Path("/music/Queen/Innuendo/01.flac"))
    print(meta.source, meta.artist, meta.title)
"""

import asyncio
import base64
import contextlib
import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import mutagen
from loguru import logger
from mutagen.flac import Picture
from mutagen.id3 import ID3

from jukebox.core.config import settings
from jukebox.core.errors import MetadataParseError
from jukebox.core.genres import validate_genres

UNKNOWN_ARTIST = "Unknown Artist"
UNKNOWN_ALBUM = "Unknown Album"

_YEAR_RE = re.compile(r"(\d{4})")
_NUMBER_RE = re.compile(r"^\s*(\d+)")

# Containers without an "easy" mutagen view (WAV, AIFF) expose raw ID3 frames
ID3_TEXT_FRAMES = {
    "title": "TIT2",
    "artist": "TPE1",
    "album": "TALB",
    "albumartist": "TPE2",
    "genre": "TCON",
    "date": "TDRC",
    "tracknumber": "TRCK",
    "discnumber": "TPOS",
}


@dataclass
class TrackMetadata:
    """Metadata for one audio file as produced by a single extraction stage.

    Attributes:
        source: Name of the stage that produced the record.
        picture: Raw bytes of the first embedded picture, if any.
    """

    title: Optional[str] = None
    artist: Optional[str] = None
    album: Optional[str] = None
    album_artist: Optional[str] = None
    genre: Optional[str] = None
    year: Optional[int] = None
    track_number: Optional[int] = None
    disc_number: Optional[int] = None
    duration: Optional[float] = None
    bitrate: Optional[int] = None
    format: Optional[str] = None
    picture: Optional[bytes] = None
    source: str = "unknown"


class Extractor(Protocol):
    name: str

    async def extract(self, path: Path) -> TrackMetadata:
        ...


def _first(value: Any) -> Optional[str]:
    """First non-empty string of a tag value (tags are usually lists)."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        for item in value:
            text = str(item).strip()
            if text:
                return text
        return None
    text = str(value).strip()
    return text or None


def _parse_year(value: Any) -> Optional[int]:
    text = _first(value)
    if not text:
        return None
    match = _YEAR_RE.search(text)
    return int(match.group(1)) if match else None


def _parse_number(value: Any) -> Optional[int]:
    """Parse "3", "03" or "3/12" into 3."""
    text = _first(value)
    if not text:
        return None
    match = _NUMBER_RE.match(text)
    return int(match.group(1)) if match else None


def _format_of(path: Path) -> str:
    return path.suffix.lstrip(".").lower()


def _text_tags(tags: Any) -> Dict[str, Any]:
    """Easy-style ``{"title": [...], ...}`` view of a mutagen tag object."""
    if tags is None:
        return {}
    if isinstance(tags, ID3):
        view: Dict[str, Any] = {}
        for key, frame_id in ID3_TEXT_FRAMES.items():
            frame = tags.get(frame_id)
            if frame is None:
                continue
            # TCON resolves numeric ID3v1 genres like "(17)"
            view[key] = frame.genres if frame_id == "TCON" else [str(t) for t in frame.text]
        return view
    return tags


class MutagenTagExtractor:
    """Reads embedded tags and the first embedded picture with mutagen."""

    name = "tags"

    async def extract(self, path: Path) -> TrackMetadata:
        return await asyncio.to_thread(self._extract_sync, path)

    def _extract_sync(self, path: Path) -> TrackMetadata:
        try:
            audio = mutagen.File(path, easy=True)
        except Exception as e:
            raise MetadataParseError(
                f"Tag parsing failed: {e}", path, stage=self.name
            ) from e
        if audio is None:
            raise MetadataParseError(
                "Unrecognized audio container", path, stage=self.name
            )

        tags = _text_tags(audio.tags)
        info = audio.info
        bitrate = getattr(info, "bitrate", None) if info else None

        # A single value may still hold "Rock; Pop", so let it be split
        genre = tags.get("genre")
        if isinstance(genre, list) and len(genre) == 1:
            genre = genre[0]

        return TrackMetadata(
            title=_first(tags.get("title")),
            artist=_first(tags.get("artist")),
            album=_first(tags.get("album")),
            album_artist=_first(tags.get("albumartist")),
            genre=genre,
            year=_parse_year(tags.get("date") or tags.get("year")),
            track_number=_parse_number(tags.get("tracknumber")),
            disc_number=_parse_number(tags.get("discnumber")),
            duration=getattr(info, "length", None) if info else None,
            bitrate=int(bitrate) if bitrate else None,
            format=_format_of(path),
            picture=self._read_picture(path),
            source=self.name,
        )

    def _read_picture(self, path: Path) -> Optional[bytes]:
        """First embedded picture, or None. Never raises."""
        try:
            raw = mutagen.File(path)
        except Exception as e:
            logger.debug(f"Could not read raw tags for picture in {path}: {e}")
            return None
        if raw is None:
            return None

        # FLAC keeps pictures outside the tag block
        pictures = getattr(raw, "pictures", None)
        if pictures:
            return pictures[0].data

        tags = raw.tags
        if not tags:
            return None

        # ID3 (MP3, WAV, AIFF)
        if isinstance(tags, ID3):
            frames = tags.getall("APIC")
            if frames:
                return frames[0].data
            return None

        # MP4 / M4A
        covers = tags.get("covr") if hasattr(tags, "get") else None
        if covers:
            return bytes(covers[0])

        # Ogg Vorbis / Opus
        blocks = tags.get("metadata_block_picture") if hasattr(tags, "get") else None
        if blocks:
            try:
                return Picture(base64.b64decode(blocks[0])).data
            except Exception as e:
                logger.debug(f"Invalid picture block in {path}: {e}")
        return None


class FfprobeExtractor:
    """Probes the container with ffprobe; pulls attached pictures with ffmpeg."""

    name = "probe"

    def __init__(
        self,
        ffprobe_path: Optional[str] = None,
        ffmpeg_path: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_TOOL_TIMEOUT

    async def _run(self, args: Sequence[str], path: Path) -> bytes:
        """Run an external tool, returning stdout.

        Raises:
            MetadataParseError: Tool missing, timed out or exited non-zero.
        """
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise MetadataParseError(
                f"Could not start {args[0]}: {e}", path, stage=self.name
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise MetadataParseError(
                f"{args[0]} timed out after {self.timeout}s", path, stage=self.name
            ) from e

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            raise MetadataParseError(
                f"{args[0]} exited with {proc.returncode}: {message}",
                path,
                stage=self.name,
            )
        return stdout

    async def extract(self, path: Path) -> TrackMetadata:
        stdout = await self._run(
            [
                self.ffprobe_path,
                "-v",
                "quiet",
                "-print_format",
                "json",
                "-show_format",
                "-show_streams",
                str(path),
            ],
            path,
        )
        try:
            probe = json.loads(stdout)
        except ValueError as e:
            raise MetadataParseError(
                f"Unparseable ffprobe output: {e}", path, stage=self.name
            ) from e

        fmt: Dict[str, Any] = probe.get("format") or {}
        streams: List[Dict[str, Any]] = probe.get("streams") or []
        # Tag keys differ in case between containers
        tags = {k.lower(): v for k, v in (fmt.get("tags") or {}).items()}

        duration = fmt.get("duration")
        bitrate = fmt.get("bit_rate")

        picture = None
        if any(s.get("codec_type") == "video" for s in streams):
            picture = await self._extract_picture(path)

        return TrackMetadata(
            title=_first(tags.get("title")),
            artist=_first(tags.get("artist")),
            album=_first(tags.get("album")),
            album_artist=_first(tags.get("album_artist")),
            genre=_first(tags.get("genre")),
            year=_parse_year(tags.get("date") or tags.get("year")),
            track_number=_parse_number(tags.get("track")),
            disc_number=_parse_number(tags.get("disc")),
            duration=float(duration) if duration else None,
            bitrate=int(bitrate) if bitrate else None,
            format=_format_of(path),
            picture=picture,
            source=self.name,
        )

    async def _extract_picture(self, path: Path) -> Optional[bytes]:
        """Attached picture of the first video stream; None on any failure."""
        try:
            data = await self._run(
                [
                    self.ffmpeg_path,
                    "-hide_banner",
                    "-nostdin",
                    "-loglevel",
                    "error",
                    "-i",
                    str(path),
                    "-an",
                    "-map",
                    "0:v:0",
                    "-frames:v",
                    "1",
                    "-f",
                    "image2pipe",
                    "-vcodec",
                    "mjpeg",
                    "-",
                ],
                path,
            )
        except MetadataParseError as e:
            logger.debug(f"No attached picture for {path}: {e}")
            return None
        return data or None


class FilenameExtractor:
    """Last resort: title from the file name, placeholders for the rest."""

    name = "filename"

    async def extract(self, path: Path) -> TrackMetadata:
        return TrackMetadata(
            title=path.stem,
            artist=UNKNOWN_ARTIST,
            album=UNKNOWN_ALBUM,
            format=_format_of(path),
            source=self.name,
        )


class MetadataPipeline:
    """Runs extractors in order until one succeeds.

    A stage is tried only when the previous one failed, whether with
    ``MetadataParseError`` or an unexpected exception. The filename stage
    cannot fail, so ``extract`` always returns a record with title, artist
    and album set.
    """

    def __init__(self, extractors: Optional[Sequence[Extractor]] = None):
        self.extractors: List[Extractor] = list(
            extractors
            if extractors is not None
            else (MutagenTagExtractor(), FfprobeExtractor())
        )
        if not any(isinstance(e, FilenameExtractor) for e in self.extractors):
            self.extractors.append(FilenameExtractor())

    @classmethod
    def default(cls) -> "MetadataPipeline":
        return cls([MutagenTagExtractor(), FfprobeExtractor(), FilenameExtractor()])

    async def extract(self, path: Path) -> TrackMetadata:
        meta: Optional[TrackMetadata] = None
        for extractor in self.extractors:
            try:
                meta = await extractor.extract(path)
                break
            except MetadataParseError as e:
                logger.debug(f"[{extractor.name}] {path.name}: {e}")
            except Exception as e:
                # A stage bug must not cost the file its row
                logger.warning(
                    f"[{extractor.name}] unexpected failure on {path.name}: {e!r}"
                )

        if meta is None:
            meta = await FilenameExtractor().extract(path)
        return self._finalize(meta, path)

    @staticmethod
    def _finalize(meta: TrackMetadata, path: Path) -> TrackMetadata:
        meta.title = meta.title or path.stem
        meta.artist = meta.artist or UNKNOWN_ARTIST
        meta.album = meta.album or UNKNOWN_ALBUM
        meta.album_artist = meta.album_artist or meta.artist
        meta.genre = validate_genres(meta.genre)
        meta.format = meta.format or _format_of(path)
        return meta
