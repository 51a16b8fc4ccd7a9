import os
import tempfile
from pathlib import Path

# Keep the data directory (created on settings import) out of the project tree
os.environ.setdefault("JUKEBOX_DATA_DIR", tempfile.mkdtemp(prefix="jukebox-test-"))

import pytest
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

# Import all models to ensure Base.metadata is populated
from jukebox.core import models  # noqa
from jukebox.core.models import Base
from jukebox.core.task_store import TaskStore
from jukebox.services.catalog import LibraryCatalog
from jukebox.worker.metadata import TrackMetadata

# In-memory DB for isolation and speed (NEVER use the production engine in tests!)
TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest.fixture(scope="function")
async def db_engine():
    """Create test database tables before each test, drop after."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(scope="function")
async def db_session(db_engine):
    """Provide a test database session."""
    async with TestSessionLocal() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory():
    """Session factory bound to the in-memory test engine."""
    return TestSessionLocal


@pytest.fixture
async def catalog(db_session):
    return LibraryCatalog(db_session)


@pytest.fixture
def task_store():
    """Isolated TaskStore instance for one test."""
    return TaskStore()


@pytest.fixture
def music_root(tmp_path) -> Path:
    root = tmp_path / "music"
    root.mkdir()
    return root


@pytest.fixture
def covers_dir(tmp_path) -> Path:
    return tmp_path / "covers"


class StubPipeline:
    """Metadata pipeline that never touches file contents.

    Artist and album are taken from the two parent directories, so
    ``<root>/Queen/Innuendo/01.mp3`` yields Queen / Innuendo / "01".
    """

    def __init__(self, genre: str = "Rock"):
        self.genre = genre
        self.calls = []

    async def extract(self, path: Path) -> TrackMetadata:
        self.calls.append(path)
        return TrackMetadata(
            title=path.stem,
            artist=path.parent.parent.name,
            album=path.parent.name,
            album_artist=path.parent.parent.name,
            genre=self.genre,
            year=1991,
            duration=180.0,
            format=path.suffix.lstrip("."),
            source="stub",
        )


@pytest.fixture
def stub_pipeline():
    return StubPipeline()


def make_audio_files(root: Path, count: int, artist="Artist", album="Album"):
    """Create ``count`` empty .mp3 files, named so that sort order is index order."""
    album_dir = root / artist / album
    album_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(count):
        path = album_dir / f"track_{i:03d}.mp3"
        path.write_bytes(b"")
        paths.append(path)
    return paths


@pytest.fixture
def make_files(music_root):
    """Factory fixture: ``make_files(count, artist=..., album=...)``."""

    def _make(count, artist="Artist", album="Album"):
        return make_audio_files(music_root, count, artist, album)

    return _make
