"""Messages exchanged between the scheduler, executors and the state machine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from .persistence.models import LeadEnrollment, ScheduleEntry, StepInstance


class DueEntryMessage(BaseModel):
    """Envelope published for each due Action entry."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    owner_id: str
    enrollment_id: str
    entry: ScheduleEntry
    step_type: Optional[str] = None
    template: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    lead: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "DueEntryMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class ExecutionReport(BaseModel):
    """Outcome an executor reports for one schedule entry.

    ``generated`` records drafted content without finishing the step;
    ``sent``, ``failed`` and ``skipped`` are terminal.
    """

    entry_id: str
    owner_id: str
    outcome: Literal["generated", "sent", "failed", "skipped"]
    rendered_content: Optional[str] = None
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None


class AdvanceResult(BaseModel):
    """What one state machine operation did to an enrollment."""

    outcome: Literal["scheduled", "unchanged", "completed", "blocked", "halted"]
    enrollment: LeadEnrollment
    instance: Optional[StepInstance] = None
    entry: Optional[ScheduleEntry] = None
    detail: Optional[str] = None
