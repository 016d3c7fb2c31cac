"""FastAPI dependencies for DI (settings, database sessions, queue, caller identity).

Tests replace ``get_database`` and ``get_settings`` through ``app.dependency_overrides``; every
other provider builds on those two.
"""

from collections.abc import Iterator
from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from statement_importer.core.db import Database
from statement_importer.core.settings import Settings
from statement_importer.core.settings import get_settings as load_settings
from statement_importer.workers.queue import IMPORT_QUEUE, WorkQueue


@lru_cache(maxsize=1)
def _cached_settings() -> Settings:
    return load_settings()


def get_settings() -> Settings:
    """Provide the application settings."""
    return _cached_settings()


@lru_cache(maxsize=1)
def _database(url: str) -> Database:
    return Database(url)


def get_database(settings: Settings = Depends(get_settings)) -> Database:
    """Provide the shared Database for the configured URL."""
    return _database(settings.database_url)


def get_session(db: Database = Depends(get_database)) -> Iterator[Session]:
    """Provide a session committed when the request succeeds."""
    with db.session_scope() as session:
        yield session


def get_import_queue(
    db: Database = Depends(get_database), settings: Settings = Depends(get_settings)
) -> WorkQueue:
    """Provide the import work queue."""
    return WorkQueue(db, IMPORT_QUEUE, settings.queue_lease_seconds)


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity as forwarded by the authenticating gateway."""
    if not x_user_id:
        raise HTTPException(401, "Missing X-User-Id header")
    return x_user_id
