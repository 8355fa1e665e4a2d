from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlmodel import Session, SQLModel, create_engine

from .config import settings, use_tmp_projects_dir

logger = logging.getLogger(__name__)

_engine = None


def _create_tables():
    engine = create_engine(
        f"sqlite:///{settings.db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(engine)
    return engine


def init_db():
    global _engine
    if _engine is None:
        try:
            _engine = _create_tables()
        except Exception:
            # Read-only deployments only have /tmp to write to.
            logger.warning("Database at %s is not writable, moving projects to /tmp", settings.db_path)
            use_tmp_projects_dir()
            _engine = _create_tables()
    return _engine


@contextmanager
def get_session() -> Iterator[Session]:
    with Session(init_db()) as session:
        yield session
