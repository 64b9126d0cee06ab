"""Turn compiled step instances into timestamped, idempotent schedule entries."""

from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone
from typing import Iterable, List, Literal, Optional, Tuple
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from .config import SchedulingConfig
from .db import EventLogDB, EventType
from .errors import IdempotencyConflict, PartialBatchFailure
from .graph import DelayConfig, NodeKind, StepNode
from .persistence.models import (
    LeadEnrollment,
    ScheduleEntry,
    StepInstance,
    schedule_fingerprint,
)
from .persistence.repository import CadenceRepository

logger = logging.getLogger(__name__)


def _parse_send_time(value: str) -> time:
    hours, minutes = value.split(":", 1)
    return time(int(hours), int(minutes))


def compute_scheduled_at(
    node: StepNode,
    day_offset: int,
    tz_name: str,
    start: datetime,
    config: Optional[SchedulingConfig] = None,
    not_before: Optional[datetime] = None,
) -> datetime:
    """Absolute UTC timestamp at which ``node`` is due for one lead.

    Actions land on the channel's send time in the lead's timezone on day
    ``day_offset`` after ``start``, never before ``start`` itself. Delays
    release ``duration`` after the later of their day and ``not_before``.
    """
    config = config or SchedulingConfig()
    tz = ZoneInfo(tz_name)
    if start.tzinfo is None:
        start = start.replace(tzinfo=timezone.utc)

    if isinstance(node.config, DelayConfig):
        base = start + timedelta(days=day_offset)
        if not_before is not None and not_before > base:
            base = not_before
        return (base + node.config.as_timedelta()).astimezone(timezone.utc)

    send_time = _parse_send_time(config.send_time_for(node.channel))
    day = start.astimezone(tz).date() + timedelta(days=day_offset)
    scheduled = datetime.combine(day, send_time, tzinfo=tz)
    if scheduled < start:
        scheduled = start
    if not_before is not None and scheduled < not_before:
        scheduled = not_before
    return scheduled.astimezone(timezone.utc)


class ScheduleRequest(BaseModel):
    """One (step, lead) pair to materialize."""

    enrollment: LeadEnrollment
    instance: StepInstance
    node: StepNode
    not_before: Optional[datetime] = None


class ScheduleOutcome(BaseModel):
    index: int
    step_id: str
    lead_id: str
    status: Literal["created", "existing", "failed"]
    entry: Optional[ScheduleEntry] = None
    error: Optional[str] = None


class BulkScheduleResult(BaseModel):
    outcomes: List[ScheduleOutcome] = Field(default_factory=list)
    failed_count: int = 0

    @property
    def succeeded(self) -> List[ScheduleOutcome]:
        return [o for o in self.outcomes if o.status != "failed"]


class ScheduleMaterializer:
    """Create at most one live schedule entry per (cadence, step, lead)."""

    def __init__(
        self,
        repository: CadenceRepository,
        config: Optional[SchedulingConfig] = None,
        event_log: Optional[EventLogDB] = None,
    ) -> None:
        self.repository = repository
        self.config = config or SchedulingConfig()
        self.event_log = event_log

    async def materialize(
        self,
        enrollment: LeadEnrollment,
        instance: StepInstance,
        node: StepNode,
        not_before: Optional[datetime] = None,
    ) -> ScheduleEntry:
        entry, _ = await self.materialize_entry(enrollment, instance, node, not_before)
        return entry

    async def materialize_entry(
        self,
        enrollment: LeadEnrollment,
        instance: StepInstance,
        node: StepNode,
        not_before: Optional[datetime] = None,
        stagger: timedelta = timedelta(0),
    ) -> Tuple[ScheduleEntry, bool]:
        if node.kind is NodeKind.CONDITION:
            raise ValueError(f"Condition node {node.id} is never scheduled")

        fingerprint = schedule_fingerprint(
            enrollment.cadence_id, instance.step_id, enrollment.lead_id
        )
        existing = await self.repository.get_live_schedule_entry(
            enrollment.owner_id, fingerprint
        )
        if existing is not None:
            logger.debug(f"Schedule entry {existing.id} already holds {fingerprint}")
            return existing, False

        scheduled_at = compute_scheduled_at(
            node,
            instance.day_offset,
            enrollment.timezone,
            enrollment.started_at,
            self.config,
            not_before,
        ) + stagger
        entry = ScheduleEntry(
            owner_id=enrollment.owner_id,
            cadence_id=enrollment.cadence_id,
            step_id=instance.step_id,
            lead_id=enrollment.lead_id,
            enrollment_id=enrollment.id,
            step_instance_id=instance.id,
            fingerprint=fingerprint,
            scheduled_at=scheduled_at,
            timezone=enrollment.timezone,
            node_kind=node.kind.value,
            channel=node.channel,
        )
        try:
            entry = await self.repository.insert_schedule_entry(entry)
        except IdempotencyConflict as exc:
            logger.debug(f"Lost insert race for {fingerprint}; returning existing entry")
            if exc.existing is not None:
                return exc.existing, False
            existing = await self.repository.get_live_schedule_entry(
                enrollment.owner_id, fingerprint
            )
            if existing is None:
                raise
            return existing, False

        logger.info(
            f"Scheduled step {entry.step_id} for lead {entry.lead_id} at "
            f"{entry.scheduled_at.isoformat()} (owner {entry.owner_id})"
        )
        if self.event_log is not None:
            await self.event_log.record(
                EventType.SCHEDULE_CREATED,
                entry.owner_id,
                cadence_id=entry.cadence_id,
                enrollment_id=entry.enrollment_id,
                step_id=entry.step_id,
                detail={"entry_id": entry.id, "scheduled_at": entry.scheduled_at.isoformat()},
            )
        return entry, True

    async def materialize_many(
        self, requests: Iterable[ScheduleRequest], raise_on_failure: bool = False
    ) -> BulkScheduleResult:
        """Materialize each request independently.

        Items are staggered by ``bulk_stagger_seconds`` in submission order.
        A failing item is reported in the result and never aborts the rest.
        """
        result = BulkScheduleResult()
        step = timedelta(seconds=self.config.bulk_stagger_seconds)
        for index, request in enumerate(requests):
            try:
                entry, created = await self.materialize_entry(
                    request.enrollment,
                    request.instance,
                    request.node,
                    request.not_before,
                    stagger=step * index,
                )
            except Exception as exc:
                logger.warning(
                    f"Bulk item {index} (step {request.instance.step_id}, lead "
                    f"{request.enrollment.lead_id}) failed: {exc}"
                )
                result.failed_count += 1
                result.outcomes.append(
                    ScheduleOutcome(
                        index=index,
                        step_id=request.instance.step_id,
                        lead_id=request.enrollment.lead_id,
                        status="failed",
                        error=str(exc),
                    )
                )
                continue
            result.outcomes.append(
                ScheduleOutcome(
                    index=index,
                    step_id=entry.step_id,
                    lead_id=entry.lead_id,
                    status="created" if created else "existing",
                    entry=entry,
                )
            )

        logger.info(
            f"Bulk materialization finished: {len(result.outcomes) - result.failed_count} "
            f"ok, {result.failed_count} failed"
        )
        if raise_on_failure and result.failed_count:
            raise PartialBatchFailure(result)
        return result
