"""Persistence layer for cadence state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import CadenceConfig, load_config
from .inmemory import InMemoryCadenceRepository
from .models import (
    EnrollmentStatus,
    LeadEnrollment,
    LinkedAccount,
    ScheduleEntry,
    ScheduleStatus,
    StepInstance,
    StepInstanceStatus,
    schedule_fingerprint,
)
from .repository import CadenceRepository
from .sqlite import SQLiteCadenceRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresCadenceRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresCadenceRepository = None  # type: ignore

_repository_instance: CadenceRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[CadenceConfig] = None
) -> CadenceRepository:
    """Factory function to obtain a cadence repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CADENCEKIT_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CADENCEKIT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryCadenceRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteCadenceRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresCadenceRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresCadenceRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "CadenceRepository",
    "EnrollmentStatus",
    "InMemoryCadenceRepository",
    "LeadEnrollment",
    "LinkedAccount",
    "PostgresCadenceRepository",
    "SQLiteCadenceRepository",
    "ScheduleEntry",
    "ScheduleStatus",
    "StepInstance",
    "StepInstanceStatus",
    "get_repository",
    "schedule_fingerprint",
]
