import os
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Project Paths
    BASE_DIR: Path = Path(__file__).resolve().parent.parent.parent.parent
    DATA_DIR: Path = Path(
        os.getenv("JUKEBOX_DATA_DIR", str(BASE_DIR / "data"))
    )
    MUSIC_DIR: Path = Path(
        os.getenv("JUKEBOX_MUSIC_DIR", str(BASE_DIR / "music"))
    )

    # Database
    DB_NAME: str = "music.db"
    DB_BACKUP_RETENTION: int = 5

    @property
    def DB_PATH(self) -> Path:
        return self.DATA_DIR / self.DB_NAME

    @property
    def DB_URL(self) -> str:
        # Forward slashes keep Windows paths valid inside the URL
        path = self.DB_PATH.resolve().as_posix()
        return f"sqlite+aiosqlite:///{path}"

    # Cover art
    COVERS_DIR_NAME: str = "covers"
    COVER_MAX_SIZE: int = 500
    COVER_QUALITY: int = 85

    @property
    def COVERS_DIR(self) -> Path:
        return self.DATA_DIR / self.COVERS_DIR_NAME

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_RETENTION: str = "10 days"
    LOG_ROTATION: str = "10 MB"

    DB_ECHO: bool = False  # SQLAlchemy query logging

    # Scanner
    SCAN_CONCURRENCY: int = 20
    SCAN_COMMIT_INTERVAL: int = 100
    SUPPORTED_EXTENSIONS: List[str] = [
        ".mp3",
        ".flac",
        ".m4a",
        ".ogg",
        ".opus",
        ".wav",
    ]

    # External tools used as metadata/cover fallbacks
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_PATH: str = "ffmpeg"
    EXTERNAL_TOOL_TIMEOUT: float = 10.0  # seconds


settings = Settings()

# Ensure data directory exists
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
