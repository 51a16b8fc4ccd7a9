from pathlib import Path

from jukebox.core.config import settings


def test_config_paths():
    """Verify that paths are correctly resolved."""
    assert isinstance(settings.BASE_DIR, Path)
    assert isinstance(settings.DATA_DIR, Path)
    assert isinstance(settings.DB_PATH, Path)
    assert settings.DB_NAME == "music.db"
    assert settings.COVERS_DIR == settings.DATA_DIR / "covers"


def test_db_url():
    """Verify DB URL construction."""
    assert settings.DB_URL.startswith("sqlite+aiosqlite:///")
    assert settings.DB_URL.endswith("/music.db")


def test_data_dir_creation():
    """Verify DATA_DIR exists (it should be created on import)."""
    assert settings.DATA_DIR.exists()
    assert settings.DATA_DIR.is_dir()


def test_scanner_defaults():
    assert settings.SCAN_CONCURRENCY == 20
    assert settings.SCAN_COMMIT_INTERVAL == 100
    assert ".flac" in settings.SUPPORTED_EXTENSIONS
    assert settings.COVER_MAX_SIZE == 500
    assert settings.COVER_QUALITY == 85
    assert settings.EXTERNAL_TOOL_TIMEOUT == 10.0
