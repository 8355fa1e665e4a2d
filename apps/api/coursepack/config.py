from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings

ROOT_DIR = Path(__file__).resolve().parents[3]
TMP_PROJECTS_DIR = Path("/tmp/coursepack/projects")

_SERVERLESS_MARKERS = ("VERCEL", "VERCEL_ENV", "VERCEL_URL", "AWS_LAMBDA_FUNCTION_NAME")


def _default_projects_dir() -> Path:
    if any(os.getenv(marker) for marker in _SERVERLESS_MARKERS):
        return TMP_PROJECTS_DIR
    return ROOT_DIR / "projects"


class Settings(BaseSettings):
    app_name: str = "Course Package Builder API"
    projects_dir: Path = _default_projects_dir()
    db_path: Optional[Path] = None

    # remote media downloads
    http_timeout: float = 20.0
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    user_agent: str = "CoursePackBot/0.1 (+local)"
    remote_fetch_timeout_seconds: float = 15.0

    # Entry timeout must stay above remote_fetch_timeout_seconds so a real
    # cancellation is always observed before an entry gives up on its own.
    media_entry_timeout_seconds: float = 30.0
    phase_yield_seconds: float = 0.0
    youtube_embed_base: str = "https://www.youtube.com/embed/"

    default_package_version: str = "1.0"
    default_pass_mark: int = 80

    environment: str = "development"
    log_level: str = "INFO"

    class Config:
        env_file = (
            ".env",
            str(ROOT_DIR / ".env"),
            str(ROOT_DIR / "apps" / "api" / ".env"),
        )
        env_prefix = ""


def _prepare_dirs() -> None:
    settings.projects_dir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)


def use_tmp_projects_dir() -> None:
    settings.projects_dir = TMP_PROJECTS_DIR
    settings.db_path = TMP_PROJECTS_DIR / "metadata.db"
    _prepare_dirs()


settings = Settings()

if settings.db_path is None:
    settings.db_path = settings.projects_dir / "metadata.db"

try:
    _prepare_dirs()
except OSError:
    use_tmp_projects_dir()
