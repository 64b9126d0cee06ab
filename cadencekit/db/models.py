from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class EventType(str, Enum):
    ENROLLED = "enrolled"
    STEP_COMPILED = "step_compiled"
    BRANCH_RESOLVED = "branch_resolved"
    SCHEDULE_CREATED = "schedule_created"
    OUTCOME_RECORDED = "outcome_recorded"
    ENROLLMENT_STATUS = "enrollment_status"
    PATH_EXHAUSTED = "path_exhausted"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CadenceEvent(SQLModel, table=True):
    """One audit record of a cadence engine decision."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    event_type: str = Field(index=True)
    owner_id: str = Field(index=True)
    cadence_id: Optional[str] = None
    enrollment_id: Optional[str] = Field(default=None, index=True)
    step_id: Optional[str] = None
    detail: dict = Field(default_factory=dict, sa_column=Column(JSON))
    recorded_at: datetime = Field(default_factory=_utcnow)
