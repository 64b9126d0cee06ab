"""Data models for persisted cadence state."""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class StepInstanceStatus(str, Enum):
    PENDING = "pending"
    GENERATED = "generated"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset(
    {StepInstanceStatus.SENT, StepInstanceStatus.FAILED, StepInstanceStatus.SKIPPED}
)


class ScheduleStatus(str, Enum):
    SCHEDULED = "scheduled"
    EXECUTED = "executed"
    CANCELED = "canceled"
    SKIPPED_DUE_TO_STATE_CHANGE = "skipped_due_to_state_change"
    FAILED = "failed"


# Entries in these states no longer hold their fingerprint.
RELEASED_SCHEDULE_STATUSES = frozenset(
    {ScheduleStatus.CANCELED, ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE}
)


def schedule_fingerprint(cadence_id: str, step_id: str, lead_id: str) -> str:
    """Idempotency key of a schedule entry."""
    raw = f"{cadence_id}:{step_id}:{lead_id}".encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class LeadEnrollment(BaseModel):
    """Membership of one lead in one cadence."""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    cadence_id: str
    lead_id: str
    timezone: str = "UTC"
    current_step_id: Optional[str] = None
    status: EnrollmentStatus = EnrollmentStatus.ACTIVE
    lead: Dict[str, Any] = Field(default_factory=dict)
    signals: Dict[str, Any] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=utcnow)
    last_error: Optional[str] = None
    version: int = 1
    updated_at: datetime = Field(default_factory=utcnow)


class StepInstance(BaseModel):
    """Per-lead occurrence of a step that the lead's path reached."""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    enrollment_id: str
    cadence_id: str
    step_id: str
    lead_id: str
    node_kind: str
    day_offset: int = 0
    status: StepInstanceStatus = StepInstanceStatus.PENDING
    branch: Optional[str] = None
    inputs: Optional[Dict[str, Any]] = None
    rendered_content: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STEP_STATUSES


class ScheduleEntry(BaseModel):
    """Timestamped commitment to execute one step instance."""

    id: str = Field(default_factory=_new_id)
    owner_id: str
    cadence_id: str
    step_id: str
    lead_id: str
    enrollment_id: str
    step_instance_id: str
    fingerprint: str
    scheduled_at: datetime
    timezone: str = "UTC"
    node_kind: str = "action"
    channel: Optional[str] = None
    status: ScheduleStatus = ScheduleStatus.SCHEDULED
    claimed_at: Optional[datetime] = None
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def holds_fingerprint(self) -> bool:
        return self.status not in RELEASED_SCHEDULE_STATUSES


class LinkedAccount(BaseModel):
    """External messaging account linked by an owner."""

    owner_id: str
    provider: str
    account_id: Optional[str] = None
    status: str = "active"
    connected_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
