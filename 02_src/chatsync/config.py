"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "chatsync.db"
DEFAULT_MEDIA_DIR = DATA_DIR / "media"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


def resolve_media_dir(env_value: PathLike | None = None) -> Path:
    """Resolve MEDIA_DIR to an absolute directory path."""
    if not env_value:
        return DEFAULT_MEDIA_DIR

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass
class Settings:
    """Runtime settings, read from the environment."""

    db_path: PathLike = DEFAULT_DB_PATH
    media_dir: Path = DEFAULT_MEDIA_DIR
    blob_base_url: str | None = None
    log_level: str = "INFO"
    api_host: str = "localhost"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        return cls(
            db_path=resolve_db_path(os.getenv("DATABASE_URL")),
            media_dir=resolve_media_dir(os.getenv("MEDIA_DIR")),
            blob_base_url=os.getenv("BLOB_BASE_URL") or None,
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            api_host=os.getenv("API_HOST", "localhost"),
            api_port=int(os.getenv("API_PORT", "8000")),
        )

    @property
    def api_url(self) -> str:
        return f"http://{self.api_host}:{self.api_port}"
