from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any

from .config import settings

PROJECT_SUBDIRS = ("media", "outputs")


def iso_now() -> str:
    return datetime.utcnow().isoformat() + "Z"


def project_dir(project_id: str) -> Path:
    return settings.projects_dir / safe_filename(project_id)


def ensure_project_dirs(project_id: str) -> Path:
    base = project_dir(project_id)
    for name in PROJECT_SUBDIRS:
        (base / name).mkdir(parents=True, exist_ok=True)
    return base


def _replace_atomically(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                pass


def atomic_write_json(path: Path, data: Any) -> None:
    _replace_atomically(path, json.dumps(data, ensure_ascii=True, indent=2).encode("utf-8"))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    _replace_atomically(path, data)


def read_json(path: Path, default: Any = None) -> Any:
    if not path.exists():
        return default
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def safe_filename(name: str) -> str:
    if not name or name.startswith("."):
        raise ValueError("Invalid filename")
    if "/" in name or "\\" in name or ".." in name:
        raise ValueError("Invalid filename")
    return name
