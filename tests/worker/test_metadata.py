"""Tests for the metadata extraction fallback chain."""

import asyncio
import json
import wave
from io import BytesIO
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from mutagen.id3 import APIC, TALB, TCON, TDRC, TIT2, TPE1, TRCK
from mutagen.wave import WAVE
from PIL import Image

from jukebox.core.errors import MetadataParseError
from jukebox.worker.metadata import (
    FfprobeExtractor,
    FilenameExtractor,
    MetadataPipeline,
    MutagenTagExtractor,
    TrackMetadata,
)


class FailingExtractor:
    def __init__(self, name):
        self.name = name
        self.calls = 0

    async def extract(self, path):
        self.calls += 1
        raise MetadataParseError("cannot read", path, stage=self.name)


class FixedExtractor:
    name = "fixed"

    def __init__(self, meta):
        self.meta = meta
        self.calls = 0

    async def extract(self, path):
        self.calls += 1
        return self.meta


def _jpeg_bytes(size=(64, 64), color="red"):
    buf = BytesIO()
    Image.new("RGB", size, color).save(buf, format="JPEG")
    return buf.getvalue()


@pytest.fixture
def tagged_wav(tmp_path) -> Path:
    """A short silent WAV file carrying ID3 tags and an embedded picture."""
    path = tmp_path / "Queen" / "Innuendo" / "01 - Innuendo.wav"
    path.parent.mkdir(parents=True)
    with wave.open(str(path), "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(8000)
        w.writeframes(b"\x00\x00" * 8000)

    audio = WAVE(path)
    audio.add_tags()
    audio.tags.add(TIT2(encoding=3, text="Innuendo"))
    audio.tags.add(TPE1(encoding=3, text="Queen"))
    audio.tags.add(TALB(encoding=3, text="Innuendo"))
    audio.tags.add(TCON(encoding=3, text="Rock"))
    audio.tags.add(TDRC(encoding=3, text="1991"))
    audio.tags.add(TRCK(encoding=3, text="1/12"))
    audio.tags.add(
        APIC(encoding=3, mime="image/jpeg", type=3, desc="Cover", data=_jpeg_bytes())
    )
    audio.save()
    return path


# ========== Pipeline ==========


@pytest.mark.asyncio
async def test_all_stages_fail_falls_back_to_filename(tmp_path):
    path = tmp_path / "Some Song.flac"
    tags, probe = FailingExtractor("tags"), FailingExtractor("probe")
    pipeline = MetadataPipeline([tags, probe, FilenameExtractor()])

    meta = await pipeline.extract(path)

    assert meta.source == "filename"
    assert meta.title == "Some Song"
    assert meta.artist == "Unknown Artist"
    assert meta.album == "Unknown Album"
    assert meta.duration is None
    assert meta.format == "flac"
    assert tags.calls == 1
    assert probe.calls == 1


@pytest.mark.asyncio
async def test_later_stages_not_called_after_success(tmp_path):
    fixed = FixedExtractor(TrackMetadata(title="T", artist="A", album="B", source="fixed"))
    never = FailingExtractor("never")
    pipeline = MetadataPipeline([fixed, never])

    meta = await pipeline.extract(tmp_path / "x.mp3")

    assert meta.source == "fixed"
    assert never.calls == 0


@pytest.mark.asyncio
async def test_filename_stage_is_always_appended(tmp_path):
    pipeline = MetadataPipeline([FailingExtractor("tags")])
    assert isinstance(pipeline.extractors[-1], FilenameExtractor)

    meta = await pipeline.extract(tmp_path / "Track.ogg")
    assert meta.source == "filename"


@pytest.mark.asyncio
async def test_missing_fields_are_backfilled_and_genre_validated(tmp_path):
    fixed = FixedExtractor(
        TrackMetadata(artist="Queen", genre="Pop Music", duration=12.5, source="fixed")
    )
    pipeline = MetadataPipeline([fixed])

    meta = await pipeline.extract(tmp_path / "Untagged.mp3")

    assert meta.title == "Untagged"
    assert meta.album == "Unknown Album"
    assert meta.album_artist == "Queen"
    assert meta.genre == "Pop"
    assert meta.format == "mp3"
    assert meta.duration == 12.5


@pytest.mark.asyncio
async def test_unknown_genre_becomes_none(tmp_path):
    fixed = FixedExtractor(TrackMetadata(title="T", genre="Deutsch-Rap", source="fixed"))
    meta = await MetadataPipeline([fixed]).extract(tmp_path / "t.mp3")
    assert meta.genre is None


@pytest.mark.asyncio
async def test_unexpected_stage_error_falls_through(tmp_path):
    class BuggyExtractor:
        name = "buggy"

        async def extract(self, path):
            raise ValueError("invalid literal for int()")

    fixed = FixedExtractor(TrackMetadata(title="T", artist="A", source="fixed"))

    meta = await MetadataPipeline([BuggyExtractor(), fixed]).extract(tmp_path / "x.mp3")

    assert meta.source == "fixed"
    assert fixed.calls == 1


@pytest.mark.asyncio
async def test_malformed_tool_values_fall_back_to_filename(tmp_path):
    ffprobe_json = json.dumps(
        {"format": {"bit_rate": "N/A", "tags": {"title": "T"}}, "streams": []}
    ).encode()
    create = AsyncMock(return_value=_fake_process(ffprobe_json))
    pipeline = MetadataPipeline([FailingExtractor("tags"), FfprobeExtractor()])

    with patch("asyncio.create_subprocess_exec", create):
        meta = await pipeline.extract(tmp_path / "Song.mp3")

    assert meta.source == "filename"
    assert meta.title == "Song"


def test_default_pipeline_order():
    names = [e.name for e in MetadataPipeline.default().extractors]
    assert names == ["tags", "probe", "filename"]


# ========== Tag parser ==========


@pytest.mark.asyncio
async def test_tag_extractor_reads_tags_and_picture(tagged_wav):
    meta = await MutagenTagExtractor().extract(tagged_wav)

    assert meta.source == "tags"
    assert meta.title == "Innuendo"
    assert meta.artist == "Queen"
    assert meta.album == "Innuendo"
    assert meta.genre == "Rock"
    assert meta.year == 1991
    assert meta.track_number == 1
    assert meta.duration == pytest.approx(1.0, abs=0.05)
    assert meta.format == "wav"
    assert meta.picture is not None
    with Image.open(BytesIO(meta.picture)) as img:
        assert img.size == (64, 64)


@pytest.mark.asyncio
async def test_tag_extractor_rejects_unreadable_file(tmp_path):
    path = tmp_path / "empty.mp3"
    path.write_bytes(b"")

    with pytest.raises(MetadataParseError) as exc_info:
        await MutagenTagExtractor().extract(path)
    assert exc_info.value.stage == "tags"


@pytest.mark.asyncio
async def test_full_pipeline_on_unreadable_file_uses_filename(tmp_path):
    path = tmp_path / "broken.mp3"
    path.write_bytes(b"not audio at all")
    probe = FfprobeExtractor(ffprobe_path=str(tmp_path / "no-such-ffprobe"))

    meta = await MetadataPipeline([MutagenTagExtractor(), probe]).extract(path)

    assert meta.source == "filename"
    assert meta.title == "broken"


# ========== Media probe ==========


def _fake_process(stdout=b"", returncode=0, stderr=b""):
    proc = MagicMock()
    proc.returncode = returncode
    proc.communicate = AsyncMock(return_value=(stdout, stderr))
    proc.wait = AsyncMock(return_value=returncode)
    return proc


@pytest.mark.asyncio
async def test_ffprobe_parses_format_tags(tmp_path):
    probe_output = json.dumps(
        {
            "format": {
                "duration": "215.5",
                "bit_rate": "320000",
                "tags": {
                    "TITLE": "Headlong",
                    "ARTIST": "Queen",
                    "album": "Innuendo",
                    "genre": "Rock",
                    "date": "1991-02-04",
                    "track": "2/12",
                },
            },
            "streams": [{"codec_type": "audio"}],
        }
    ).encode()
    create = AsyncMock(return_value=_fake_process(probe_output))

    with patch("asyncio.create_subprocess_exec", create):
        meta = await FfprobeExtractor(ffprobe_path="ffprobe").extract(tmp_path / "x.m4a")

    assert meta.source == "probe"
    assert meta.title == "Headlong"
    assert meta.artist == "Queen"
    assert meta.year == 1991
    assert meta.track_number == 2
    assert meta.duration == 215.5
    assert meta.bitrate == 320000
    assert meta.format == "m4a"
    assert meta.picture is None
    # No video stream, so ffmpeg is never invoked
    assert create.await_count == 1
    assert create.await_args.args[0] == "ffprobe"


@pytest.mark.asyncio
async def test_ffprobe_extracts_attached_picture(tmp_path):
    probe_output = json.dumps(
        {"format": {"tags": {}}, "streams": [{"codec_type": "audio"}, {"codec_type": "video"}]}
    ).encode()
    create = AsyncMock(
        side_effect=[_fake_process(probe_output), _fake_process(b"JPEGDATA")]
    )

    with patch("asyncio.create_subprocess_exec", create):
        meta = await FfprobeExtractor(ffmpeg_path="ffmpeg").extract(tmp_path / "x.mp3")

    assert meta.picture == b"JPEGDATA"
    assert create.await_args_list[1].args[0] == "ffmpeg"


@pytest.mark.asyncio
async def test_ffprobe_picture_failure_only_drops_picture(tmp_path):
    probe_output = json.dumps(
        {"format": {"tags": {"title": "T"}}, "streams": [{"codec_type": "video"}]}
    ).encode()
    create = AsyncMock(
        side_effect=[_fake_process(probe_output), _fake_process(returncode=1, stderr=b"bad")]
    )

    with patch("asyncio.create_subprocess_exec", create):
        meta = await FfprobeExtractor().extract(tmp_path / "x.mp3")

    assert meta.title == "T"
    assert meta.picture is None


@pytest.mark.asyncio
async def test_ffprobe_nonzero_exit_raises(tmp_path):
    create = AsyncMock(return_value=_fake_process(returncode=1, stderr=b"Invalid data"))

    with patch("asyncio.create_subprocess_exec", create):
        with pytest.raises(MetadataParseError, match="Invalid data"):
            await FfprobeExtractor().extract(tmp_path / "x.mp3")


@pytest.mark.asyncio
async def test_ffprobe_missing_binary_raises(tmp_path):
    create = AsyncMock(side_effect=FileNotFoundError("ffprobe"))

    with patch("asyncio.create_subprocess_exec", create):
        with pytest.raises(MetadataParseError):
            await FfprobeExtractor().extract(tmp_path / "x.mp3")


@pytest.mark.asyncio
async def test_ffprobe_timeout_kills_process(tmp_path):
    async def hang():
        await asyncio.sleep(10)

    proc = _fake_process()
    proc.communicate = hang
    create = AsyncMock(return_value=proc)

    with patch("asyncio.create_subprocess_exec", create):
        with pytest.raises(MetadataParseError, match="timed out"):
            await FfprobeExtractor(timeout=0.05).extract(tmp_path / "x.mp3")

    proc.kill.assert_called_once()
    proc.wait.assert_awaited_once()


@pytest.mark.asyncio
async def test_ffprobe_garbage_output_raises(tmp_path):
    create = AsyncMock(return_value=_fake_process(b"{not json"))

    with patch("asyncio.create_subprocess_exec", create):
        with pytest.raises(MetadataParseError):
            await FfprobeExtractor().extract(tmp_path / "x.mp3")
