"""Branch predicates for Condition steps.

Evaluation only reads a :class:`ConditionContext` snapshot, so the same
snapshot always yields the same branch. The consulted inputs are returned
alongside the branch so they can be stored on the Condition's step
instance and replayed later.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

Branch = Literal["yes", "no"]


class MessageReceived(BaseModel):
    """Lead replied, optionally with a keyword in the reply."""

    type: Literal["message_received"] = "message_received"
    keyword_filter: str = ""


class ConnectionAccepted(BaseModel):
    type: Literal["connection_accepted"] = "connection_accepted"


class LeadAttribute(BaseModel):
    """Compare one lead field against a value."""

    type: Literal["lead_attribute"] = "lead_attribute"
    field: str
    operator: Literal[
        "equals", "contains", "starts_with", "ends_with", "is_empty", "is_not_empty"
    ] = "equals"
    value: str = ""


class TimeElapsed(BaseModel):
    type: Literal["time_elapsed"] = "time_elapsed"
    duration: int
    unit: Literal["hours", "days"] = "days"


class StepOutcome(BaseModel):
    """Branch on the recorded status of an earlier step."""

    type: Literal["step_outcome"] = "step_outcome"
    step_id: str
    status: str = "sent"


Predicate = Annotated[
    Union[MessageReceived, ConnectionAccepted, LeadAttribute, TimeElapsed, StepOutcome],
    Field(discriminator="type"),
]


class ConditionContext(BaseModel):
    """Read-only snapshot of what a condition may look at."""

    model_config = ConfigDict(frozen=True)

    lead: Dict[str, Any] = Field(default_factory=dict)
    signals: Dict[str, Any] = Field(default_factory=dict)
    outcomes: Dict[str, str] = Field(default_factory=dict)
    enrolled_at: Optional[datetime] = None
    as_of: datetime


class ConditionResult(BaseModel):
    branch: Branch
    inputs: Dict[str, Any] = Field(default_factory=dict)


def _yes(flag: bool) -> Branch:
    return "yes" if flag else "no"


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip().lower()


def _eval_message_received(p: MessageReceived, ctx: ConditionContext) -> ConditionResult:
    replied = bool(ctx.signals.get("replied"))
    last_reply = ctx.signals.get("last_reply")
    matched = replied
    if replied and p.keyword_filter:
        matched = _text(p.keyword_filter) in _text(last_reply)
    return ConditionResult(
        branch=_yes(matched),
        inputs={"replied": replied, "last_reply": last_reply},
    )


def _eval_connection_accepted(p: ConnectionAccepted, ctx: ConditionContext) -> ConditionResult:
    accepted = bool(ctx.signals.get("connection_accepted"))
    return ConditionResult(branch=_yes(accepted), inputs={"connection_accepted": accepted})


def _eval_lead_attribute(p: LeadAttribute, ctx: ConditionContext) -> ConditionResult:
    raw = ctx.lead.get(p.field)
    actual = _text(raw)
    expected = _text(p.value)
    if p.operator == "equals":
        matched = actual == expected
    elif p.operator == "contains":
        matched = expected in actual
    elif p.operator == "starts_with":
        matched = actual.startswith(expected)
    elif p.operator == "ends_with":
        matched = actual.endswith(expected)
    elif p.operator == "is_empty":
        matched = actual == ""
    else:
        matched = actual != ""
    return ConditionResult(branch=_yes(matched), inputs={p.field: raw})


def _eval_time_elapsed(p: TimeElapsed, ctx: ConditionContext) -> ConditionResult:
    if ctx.enrolled_at is None:
        return ConditionResult(branch="no", inputs={"enrolled_at": None})
    threshold = timedelta(**{p.unit: p.duration})
    elapsed = ctx.as_of - ctx.enrolled_at
    return ConditionResult(
        branch=_yes(elapsed >= threshold),
        inputs={
            "enrolled_at": ctx.enrolled_at.isoformat(),
            "as_of": ctx.as_of.isoformat(),
        },
    )


def _eval_step_outcome(p: StepOutcome, ctx: ConditionContext) -> ConditionResult:
    status = ctx.outcomes.get(p.step_id)
    return ConditionResult(branch=_yes(status == p.status), inputs={p.step_id: status})


_EVALUATORS = {
    "message_received": _eval_message_received,
    "connection_accepted": _eval_connection_accepted,
    "lead_attribute": _eval_lead_attribute,
    "time_elapsed": _eval_time_elapsed,
    "step_outcome": _eval_step_outcome,
}


def evaluate(predicate: Predicate, context: ConditionContext) -> ConditionResult:
    """Resolve ``predicate`` against ``context``."""
    return _EVALUATORS[predicate.type](predicate, context)
