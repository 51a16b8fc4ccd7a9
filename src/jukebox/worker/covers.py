"""Album artwork resolution and thumbnailing.

Artwork is taken from the picture embedded in the audio file or, failing
that, from a conventional image file next to it (``folder.jpg``,
``cover.png``, ...). Whatever the source, the image is shrunk to fit a square
box, converted to RGB and written as JPEG under the covers directory,
mirroring the track's directory below the music root.
"""

import asyncio
import os
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Tuple, Union

from loguru import logger
from PIL import Image

from jukebox.core.config import settings
from jukebox.core.errors import ImageProcessingError
from jukebox.core.models import Cover

# Checked in this order, matched case-insensitively
FOLDER_COVER_NAMES = [
    f"{stem}{ext}"
    for ext in (".jpg", ".png")
    for stem in ("folder", "cover", "album", "front")
]

album_key = Cover.key_for


def cover_path_for(
    music_root: Union[str, Path], track_path: Union[str, Path]
) -> Path:
    """Relative location of a track's cover below the covers directory.

    ``<music_root>/Queen/Innuendo/01 Innuendo.flac`` maps to
    ``Queen/Innuendo/01 Innuendo_cover.jpg``.
    """
    track_path = Path(track_path)
    try:
        rel_dir = track_path.parent.relative_to(Path(music_root))
    except ValueError:
        rel_dir = Path(track_path.parent.name)
    return rel_dir / f"{track_path.stem}_cover.jpg"


@dataclass
class CoverResult:
    cover_path: Optional[str] = None
    has_cover: bool = False
    width: Optional[int] = None
    height: Optional[int] = None


class CoverResolver:
    """Finds, resizes and stores the cover for a track.

    Attributes:
        music_root: Root of the music library.
        covers_dir: Directory the JPEG thumbnails are written to.
        max_size: Bounding box edge in pixels; images are never enlarged.
        quality: JPEG quality.
    """

    def __init__(
        self,
        music_root: Union[str, Path],
        covers_dir: Optional[Union[str, Path]] = None,
        max_size: Optional[int] = None,
        quality: Optional[int] = None,
    ):
        self.music_root = Path(music_root)
        self.covers_dir = Path(covers_dir) if covers_dir else settings.COVERS_DIR
        self.max_size = max_size or settings.COVER_MAX_SIZE
        self.quality = quality or settings.COVER_QUALITY

    async def resolve(
        self, track_path: Union[str, Path], picture: Optional[bytes] = None
    ) -> CoverResult:
        """Store the best available cover for ``track_path``.

        Never raises for image problems; an undecodable picture falls
        through to the folder image, and a bad folder image to no cover.
        """
        track_path = Path(track_path)
        rel_path = cover_path_for(self.music_root, track_path)

        if picture:
            try:
                return await self._store(picture, rel_path)
            except ImageProcessingError as e:
                logger.warning(f"Embedded cover unusable for {track_path.name}: {e}")

        folder_image = await asyncio.to_thread(self.find_folder_cover, track_path.parent)
        if folder_image is not None:
            try:
                data = await asyncio.to_thread(folder_image.read_bytes)
                return await self._store(data, rel_path)
            except OSError as e:
                logger.warning(f"Could not read folder cover {folder_image}: {e}")
            except ImageProcessingError as e:
                logger.warning(f"Folder cover unusable for {track_path.name}: {e}")

        return CoverResult()

    @staticmethod
    def find_folder_cover(directory: Path) -> Optional[Path]:
        """Conventional cover image in ``directory``, or None."""
        try:
            with os.scandir(directory) as entries:
                files = {e.name.lower(): e.path for e in entries if e.is_file()}
        except OSError:
            return None
        for name in FOLDER_COVER_NAMES:
            if name in files:
                return Path(files[name])
        return None

    async def _store(self, data: bytes, rel_path: Path) -> CoverResult:
        dest = self.covers_dir / rel_path
        width, height = await asyncio.to_thread(self._process_image_sync, data, dest)
        return CoverResult(
            cover_path=rel_path.as_posix(),
            has_cover=True,
            width=width,
            height=height,
        )

    def _process_image_sync(self, data: bytes, dest: Path) -> Tuple[int, int]:
        """Decode, shrink to fit and write as JPEG. Runs in a worker thread.

        Raises:
            ImageProcessingError: Decoding, resizing or writing failed.
        """
        tmp = dest.with_name(dest.name + ".tmp")
        try:
            with Image.open(BytesIO(data)) as img:
                if img.mode != "RGB":
                    img = img.convert("RGB")
                img.thumbnail((self.max_size, self.max_size), Image.Resampling.LANCZOS)
                dest.parent.mkdir(parents=True, exist_ok=True)
                img.save(tmp, format="JPEG", quality=self.quality)
                size = img.size
            os.replace(tmp, dest)
            return size
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            tmp.unlink(missing_ok=True)
            raise ImageProcessingError(str(e), dest) from e
