"""Scheduler tick: hand due schedule entries to executors."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from .contracts import DueEntryMessage
from .errors import CadenceError, GraphIntegrityError
from .graph import ActionConfig
from .persistence.models import (
    EnrollmentStatus,
    ScheduleEntry,
    ScheduleStatus,
    utcnow,
)
from .persistence.repository import CadenceRepository
from .progress import LeadProgress
from .transports import BaseTransport

logger = logging.getLogger(__name__)


def topic_for(channel: Optional[str]) -> str:
    """Transport topic executors of ``channel`` listen on."""
    return channel or "default"


class TickResult(BaseModel):
    claimed: int = 0
    published: int = 0
    delays_released: int = 0
    skipped: int = 0
    errors: int = 0


class ScheduleDispatcher:
    """Claims due entries, releases Delays internally and publishes Actions."""

    def __init__(
        self,
        repository: CadenceRepository,
        progress: LeadProgress,
        transport: BaseTransport,
        batch_size: int = 100,
        claim_lease: Optional[timedelta] = timedelta(hours=1),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.progress = progress
        self.transport = transport
        self.batch_size = batch_size
        self.claim_lease = claim_lease
        self._clock = clock

    async def tick(self, now: Optional[datetime] = None) -> TickResult:
        now = now or self._clock()
        entries = await self.repository.claim_due_entries(
            now, self.batch_size, lease=self.claim_lease
        )
        result = TickResult(claimed=len(entries))
        for entry in entries:
            try:
                await self._dispatch(entry, result)
            except Exception as exc:
                logger.error(
                    f"Dispatching entry {entry.id} (step {entry.step_id}, lead "
                    f"{entry.lead_id}) failed: {exc}"
                )
                result.errors += 1
                await self.repository.release_claim(entry.owner_id, entry.id)
        if entries:
            logger.info(
                f"Tick at {now.isoformat()}: {result.claimed} claimed, {result.published} "
                f"published, {result.delays_released} delays released, {result.errors} errors"
            )
        return result

    async def _dispatch(self, entry: ScheduleEntry, result: TickResult) -> None:
        if entry.node_kind == "delay":
            try:
                await self.progress.complete_delay(entry.owner_id, entry.id)
            except CadenceError as exc:
                # The state machine already halted the enrollment.
                logger.error(f"Releasing delay entry {entry.id} failed: {exc}")
                result.errors += 1
                return
            result.delays_released += 1
            return

        message = await self._message_for(entry)
        if message is None:
            result.skipped += 1
            return
        await self.transport.publish(topic_for(entry.channel), message)
        result.published += 1
        logger.info(
            f"Published entry {entry.id} (step {entry.step_id}, lead {entry.lead_id}) "
            f"to {topic_for(entry.channel)}"
        )

    async def _message_for(self, entry: ScheduleEntry) -> Optional[DueEntryMessage]:
        enrollment = await self.repository.get_enrollment(entry.owner_id, entry.enrollment_id)
        if enrollment is None or enrollment.status is not EnrollmentStatus.ACTIVE:
            await self.repository.update_schedule_status(
                entry.owner_id,
                entry.id,
                ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE,
                expected=ScheduleStatus.SCHEDULED,
            )
            logger.info(f"Skipped entry {entry.id}; enrollment is no longer active")
            return None

        graph = await self.repository.get_graph(entry.owner_id, entry.cadence_id)
        node = graph.nodes.get(entry.step_id) if graph else None
        config = node.config if node is not None else None
        if not isinstance(config, ActionConfig):
            error = GraphIntegrityError(
                "scheduled action no longer exists in the cadence", node_id=entry.step_id
            )
            logger.warning(f"Entry {entry.id} cannot be sent: {error}")
            await self.progress.fail(entry.owner_id, entry.enrollment_id, str(error))
            return None
        return DueEntryMessage(
            owner_id=entry.owner_id,
            enrollment_id=entry.enrollment_id,
            entry=entry,
            step_type=config.step_type.value,
            template=config.template_text,
            config=config.model_dump(mode="json"),
            lead=enrollment.lead,
        )

    async def run(self, interval: float = 60.0, lifespan: Optional[float] = None) -> None:
        """Tick every ``interval`` seconds until ``lifespan`` elapses."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        while lifespan is None or loop.time() - started < lifespan:
            await self.tick()
            await asyncio.sleep(interval)
