"""Persistence layer for processes and process steps."""

from __future__ import annotations

import os
from typing import Optional

from ..config import StepEngineConfig, load_config
from .inmemory import InMemoryProcessStepRepository, InMemoryStore
from .paging import PagedCursor
from .repository import ProcessStepRepository
from .sqlite import SQLiteProcessStepRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresProcessStepRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresProcessStepRepository = None  # type: ignore


class Repositories:
    """Repositories available to lifecycle operations and executors.

    Built once at startup. All repositories share one unit of work, so
    ``save`` and ``clear`` act on everything staged through any of them.
    """

    def __init__(self, process_steps: ProcessStepRepository) -> None:
        self.process_steps = process_steps

    async def save(self) -> None:
        await self.process_steps.save()

    def clear(self) -> None:
        self.process_steps.clear()


_repositories_instance: Repositories | None = None


def create_process_step_repository(
    database_url: Optional[str], page_size: int = 100
) -> ProcessStepRepository:
    """Build a backend for ``database_url``; ``None`` selects the in-memory store."""

    if not database_url:
        return InMemoryProcessStepRepository(page_size=page_size)
    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteProcessStepRepository(path, page_size=page_size)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresProcessStepRepository is None:
            raise RuntimeError("Postgres support not available")
        return PostgresProcessStepRepository(database_url, page_size=page_size)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repositories(
    database_url: Optional[str] = None, config: Optional[StepEngineConfig] = None
) -> Repositories:
    """Factory function to obtain the repositories.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``STEPENGINE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repositories_instance
    if _repositories_instance is not None and database_url is None and config is None:
        return _repositories_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("STEPENGINE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )
    _repositories_instance = Repositories(
        create_process_step_repository(database_url, page_size=config.worker.page_size)
    )
    return _repositories_instance


__all__ = [
    "InMemoryProcessStepRepository",
    "InMemoryStore",
    "PagedCursor",
    "PostgresProcessStepRepository",
    "ProcessStepRepository",
    "Repositories",
    "SQLiteProcessStepRepository",
    "create_process_step_repository",
    "get_repositories",
]
