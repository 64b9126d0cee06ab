"""Lead Progress State Machine.

Owns each enrollment's step pointer and membership status. Executors
report outcomes here; every terminal outcome compiles and schedules the
lead's next segment unless the enrollment has left ``active``.

Operations on one enrollment are serialized by an in-process lock and,
across processes, by compare-and-swap on the enrollment version. A
writer that loses the swap reloads and treats its call as a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
from zoneinfo import ZoneInfo

from .compiler import CompiledStep, Compiler
from .conditions import ConditionContext
from .config import CadenceConfig
from .contracts import AdvanceResult, ExecutionReport
from .db import EventLogDB, EventType
from .errors import (
    CadenceError,
    CycleDetectedError,
    GraphIntegrityError,
    NotFoundError,
    StaleEnrollmentError,
)
from .graph import CadenceGraph, CadenceStatus, NodeKind
from .persistence.models import (
    EnrollmentStatus,
    LeadEnrollment,
    ScheduleEntry,
    ScheduleStatus,
    StepInstance,
    StepInstanceStatus,
    utcnow,
)
from .persistence.repository import CadenceRepository
from .schedule import ScheduleMaterializer

logger = logging.getLogger(__name__)

ChannelGate = Callable[[str, Optional[str]], Awaitable[bool]]

_REPORTED_ENTRY_STATUS = {
    "sent": ScheduleStatus.EXECUTED,
    "failed": ScheduleStatus.FAILED,
    "skipped": ScheduleStatus.CANCELED,
}


class EnrollmentLocks:
    """Registry of one :class:`asyncio.Lock` per enrollment id."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def get(self, enrollment_id: str) -> asyncio.Lock:
        lock = self._locks.get(enrollment_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[enrollment_id] = lock
        return lock


class LeadProgress:
    def __init__(
        self,
        repository: CadenceRepository,
        config: Optional[CadenceConfig] = None,
        compiler: Optional[Compiler] = None,
        materializer: Optional[ScheduleMaterializer] = None,
        channel_ready: Optional[ChannelGate] = None,
        event_log: Optional[EventLogDB] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.config = config or CadenceConfig()
        self.event_log = event_log
        self.compiler = compiler or Compiler(repository, event_log=event_log)
        self.materializer = materializer or ScheduleMaterializer(
            repository, self.config.scheduling, event_log=event_log
        )
        self.channel_ready = channel_ready
        self._clock = clock
        self._locks = EnrollmentLocks()

    # ------------------------------------------------------------------
    # Helpers
    async def _load(self, owner_id: str, enrollment_id: str) -> LeadEnrollment:
        enrollment = await self.repository.get_enrollment(owner_id, enrollment_id)
        if enrollment is None:
            raise NotFoundError(f"Enrollment {enrollment_id} not found for owner {owner_id}")
        return enrollment

    async def _graph(self, enrollment: LeadEnrollment) -> CadenceGraph:
        graph = await self.repository.get_graph(enrollment.owner_id, enrollment.cadence_id)
        if graph is None:
            raise NotFoundError(
                f"Cadence {enrollment.cadence_id} not found for owner {enrollment.owner_id}"
            )
        return graph

    async def build_context(self, enrollment: LeadEnrollment) -> ConditionContext:
        instances = await self.repository.list_step_instances(
            enrollment.owner_id, enrollment.id
        )
        return ConditionContext(
            lead=enrollment.lead,
            signals=enrollment.signals,
            outcomes={i.step_id: i.status.value for i in instances},
            enrolled_at=enrollment.started_at,
            as_of=self._clock(),
        )

    async def _record(
        self,
        event_type: EventType,
        enrollment: LeadEnrollment,
        step_id: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        if self.event_log is None:
            return
        await self.event_log.record(
            event_type,
            enrollment.owner_id,
            cadence_id=enrollment.cadence_id,
            enrollment_id=enrollment.id,
            step_id=step_id,
            detail=detail,
        )

    async def _swap(self, enrollment: LeadEnrollment, expected: int) -> bool:
        if await self.repository.compare_and_swap_enrollment(enrollment, expected):
            return True
        logger.debug(
            f"Enrollment {enrollment.id} changed concurrently (expected version {expected})"
        )
        return False

    async def _set_status(
        self,
        enrollment: LeadEnrollment,
        status: EnrollmentStatus,
        last_error: Optional[str] = None,
    ) -> LeadEnrollment:
        """Move an enrollment to ``status``; a halted one loses its scheduled work."""
        expected = enrollment.version
        enrollment.status = status
        if last_error is not None:
            enrollment.last_error = last_error
        if not await self._swap(enrollment, expected):
            raise StaleEnrollmentError(
                f"Enrollment {enrollment.id} was modified while changing status to {status.value}"
            )
        if status in (EnrollmentStatus.PAUSED, EnrollmentStatus.FAILED):
            skipped = await self.repository.transition_schedule_entries(
                enrollment.owner_id,
                enrollment.id,
                ScheduleStatus.SCHEDULED,
                ScheduleStatus.SKIPPED_DUE_TO_STATE_CHANGE,
            )
            logger.info(
                f"Enrollment {enrollment.id} is {status.value}; {skipped} scheduled "
                f"entr{'y' if skipped == 1 else 'ies'} skipped"
            )
        await self._record(
            EventType.ENROLLMENT_STATUS,
            enrollment,
            detail={"status": status.value, "last_error": last_error},
        )
        return enrollment

    async def _halt(self, enrollment: LeadEnrollment, error: str) -> LeadEnrollment:
        logger.error(
            f"Halting enrollment {enrollment.id} of owner {enrollment.owner_id}: {error}"
        )
        return await self._set_status(enrollment, EnrollmentStatus.FAILED, last_error=error)

    # ------------------------------------------------------------------
    # Operations
    async def enroll(
        self,
        owner_id: str,
        cadence_id: str,
        lead_id: str,
        lead: Optional[Dict[str, Any]] = None,
        timezone: Optional[str] = None,
        started_at: Optional[datetime] = None,
    ) -> AdvanceResult:
        """Add a lead to an active cadence and schedule its first step."""
        graph = await self.repository.get_graph(owner_id, cadence_id)
        if graph is None:
            raise NotFoundError(f"Cadence {cadence_id} not found for owner {owner_id}")
        if graph.status is not CadenceStatus.ACTIVE:
            raise CadenceError(
                f"Cadence {cadence_id} is {graph.status.value}; only active cadences accept leads"
            )
        tz_name = timezone or self.config.scheduling.default_timezone
        ZoneInfo(tz_name)

        enrollment = await self.repository.create_enrollment(
            LeadEnrollment(
                owner_id=owner_id,
                cadence_id=cadence_id,
                lead_id=lead_id,
                timezone=tz_name,
                lead=lead or {},
                started_at=started_at or self._clock(),
            )
        )
        logger.info(f"Enrolled lead {lead_id} in cadence {cadence_id} (owner {owner_id})")
        await self._record(EventType.ENROLLED, enrollment, detail={"lead_id": lead_id})
        return await self.advance(owner_id, enrollment.id)

    async def advance(self, owner_id: str, enrollment_id: str) -> AdvanceResult:
        """Compile and schedule the enrollment's next segment."""
        async with self._locks.get(enrollment_id):
            return await self._advance(owner_id, enrollment_id)

    async def _advance(
        self,
        owner_id: str,
        enrollment_id: str,
        not_before: Optional[datetime] = None,
    ) -> AdvanceResult:
        enrollment = await self._load(owner_id, enrollment_id)
        if enrollment.status is not EnrollmentStatus.ACTIVE:
            logger.debug(f"Enrollment {enrollment_id} is {enrollment.status.value}; not advancing")
            return AdvanceResult(outcome="unchanged", enrollment=enrollment)

        graph = await self._graph(enrollment)
        if graph.status is not CadenceStatus.ACTIVE:
            return AdvanceResult(
                outcome="blocked",
                enrollment=enrollment,
                detail=f"cadence is {graph.status.value}",
            )

        expected = enrollment.version
        context = await self.build_context(enrollment)
        try:
            compiled = await self.compiler.compile_next(graph, enrollment, context)
        except (GraphIntegrityError, CycleDetectedError) as exc:
            await self._halt(enrollment, str(exc))
            raise

        if not isinstance(compiled, CompiledStep):
            enrollment.status = EnrollmentStatus.COMPLETED
            enrollment.current_step_id = None
            if not await self._swap(enrollment, expected):
                return AdvanceResult(
                    outcome="unchanged", enrollment=await self._load(owner_id, enrollment_id)
                )
            logger.info(f"Enrollment {enrollment_id} completed cadence {enrollment.cadence_id}")
            await self._record(
                EventType.ENROLLMENT_STATUS, enrollment, detail={"status": "completed"}
            )
            return AdvanceResult(outcome="completed", enrollment=enrollment)

        node, instance = compiled.node, compiled.instance
        if (
            node.kind is NodeKind.ACTION
            and self.channel_ready is not None
            and not await self.channel_ready(owner_id, node.channel)
        ):
            logger.warning(
                f"Channel {node.channel} not ready for owner {owner_id}; "
                f"step {node.id} of enrollment {enrollment_id} is waiting"
            )
            return AdvanceResult(
                outcome="blocked",
                enrollment=enrollment,
                instance=instance,
                detail=f"channel '{node.channel}' is not ready",
            )

        entry, created = await self.materializer.materialize_entry(
            enrollment, instance, node, not_before
        )
        moved = enrollment.current_step_id != instance.step_id
        if moved:
            enrollment.current_step_id = instance.step_id
            if not await self._swap(enrollment, expected):
                return AdvanceResult(
                    outcome="unchanged",
                    enrollment=await self._load(owner_id, enrollment_id),
                    instance=instance,
                    entry=entry,
                )
        if not (moved or created):
            logger.debug(f"Enrollment {enrollment_id} already waits on step {instance.step_id}")
            return AdvanceResult(
                outcome="unchanged", enrollment=enrollment, instance=instance, entry=entry
            )
        return AdvanceResult(
            outcome="scheduled", enrollment=enrollment, instance=instance, entry=entry
        )

    async def record_outcome(self, report: ExecutionReport) -> AdvanceResult:
        """Apply an executor's report for one schedule entry.

        A report for an entry that was skipped while the enrollment was
        paused is applied only when it is ``sent`` and the replacement
        entry for the same step has not been handed out yet; the
        replacement is then canceled so the step is sent once.
        """
        entry = await self.repository.get_schedule_entry(report.owner_id, report.entry_id)
        if entry is None:
            raise NotFoundError(f"Schedule entry {report.entry_id} not found")

        async with self._locks.get(entry.enrollment_id):
            entry = await self.repository.get_schedule_entry(report.owner_id, report.entry_id)
            enrollment = await self._load(report.owner_id, entry.enrollment_id)
            instance = await self.repository.get_step_instance(
                report.owner_id, entry.enrollment_id, entry.step_id
            )
            if instance is None:
                raise NotFoundError(
                    f"Step instance {entry.step_id} missing for enrollment {entry.enrollment_id}"
                )
            if instance.is_terminal:
                logger.debug(
                    f"Ignoring '{report.outcome}' for terminal step {instance.step_id} "
                    f"of enrollment {enrollment.id}"
                )
                return AdvanceResult(outcome="unchanged", enrollment=enrollment, instance=instance)

            if report.rendered_content is not None:
                instance.rendered_content = report.rendered_content
            if report.result is not None:
                instance.result = report.result

            if report.outcome == "generated":
                instance.status = StepInstanceStatus.GENERATED
                await self.repository.update_step_instance(instance)
                return AdvanceResult(outcome="unchanged", enrollment=enrollment, instance=instance)

            if not await self._settle_entry(entry, report):
                return AdvanceResult(
                    outcome="unchanged",
                    enrollment=enrollment,
                    instance=instance,
                    detail=f"entry {entry.id} is {entry.status.value}",
                )
            await self._finish_step(instance, report)

            if enrollment.status is not EnrollmentStatus.ACTIVE:
                return AdvanceResult(outcome="unchanged", enrollment=enrollment, instance=instance)
            if report.outcome == "failed" and self.config.progress.halt_on_failure:
                error = report.error or f"step {instance.step_id} failed"
                enrollment = await self._halt(enrollment, error)
                return AdvanceResult(
                    outcome="halted", enrollment=enrollment, instance=instance, detail=error
                )
            return await self._advance(report.owner_id, enrollment.id)

    async def _settle_entry(self, entry: ScheduleEntry, report: ExecutionReport) -> bool:
        """Write the entry status a terminal report implies; False drops the report."""
        if entry.status is not ScheduleStatus.SCHEDULED:
            if entry.holds_fingerprint:
                logger.debug(f"Entry {entry.id} is already {entry.status.value}")
                return False
            if report.outcome != "sent":
                logger.info(
                    f"Dropping '{report.outcome}' report for released entry {entry.id}"
                )
                return False
            live = await self.repository.get_live_schedule_entry(
                entry.owner_id, entry.fingerprint
            )
            if live is not None:
                if live.claimed_at is not None or not await self.repository.update_schedule_status(
                    entry.owner_id,
                    live.id,
                    ScheduleStatus.CANCELED,
                    expected=ScheduleStatus.SCHEDULED,
                    last_error=f"step already sent by entry {entry.id}",
                ):
                    logger.warning(
                        f"Dropping late report for entry {entry.id}; replacement "
                        f"{live.id} was already handed out"
                    )
                    return False
                logger.info(
                    f"Canceled replacement entry {live.id}; step {entry.step_id} was "
                    f"sent by entry {entry.id}"
                )
        return await self.repository.update_schedule_status(
            entry.owner_id,
            entry.id,
            _REPORTED_ENTRY_STATUS[report.outcome],
            expected=entry.status,
            last_error=report.error,
        )

    async def _finish_step(self, instance: StepInstance, report: ExecutionReport) -> None:
        instance.status = StepInstanceStatus(report.outcome)
        if report.error:
            instance.last_error = report.error
        await self.repository.update_step_instance(instance)
        logger.info(
            f"Step {instance.step_id} of enrollment {instance.enrollment_id} is {report.outcome}"
        )
        if self.event_log is not None:
            await self.event_log.record(
                EventType.OUTCOME_RECORDED,
                instance.owner_id,
                cadence_id=instance.cadence_id,
                enrollment_id=instance.enrollment_id,
                step_id=instance.step_id,
                detail={"outcome": report.outcome, "error": report.error},
            )

    async def complete_delay(
        self, owner_id: str, entry_id: str, now: Optional[datetime] = None
    ) -> AdvanceResult:
        """Release a due Delay entry and schedule what follows it."""
        entry = await self.repository.get_schedule_entry(owner_id, entry_id)
        if entry is None:
            raise NotFoundError(f"Schedule entry {entry_id} not found")
        if entry.node_kind != NodeKind.DELAY.value:
            raise ValueError(f"Schedule entry {entry_id} is not a delay")

        async with self._locks.get(entry.enrollment_id):
            enrollment = await self._load(owner_id, entry.enrollment_id)
            released = await self.repository.update_schedule_status(
                owner_id, entry.id, ScheduleStatus.EXECUTED, expected=ScheduleStatus.SCHEDULED
            )
            if not released:
                return AdvanceResult(outcome="unchanged", enrollment=enrollment)
            instance = await self.repository.get_step_instance(
                owner_id, entry.enrollment_id, entry.step_id
            )
            if instance is not None and not instance.is_terminal:
                await self._finish_step(
                    instance,
                    ExecutionReport(entry_id=entry.id, owner_id=owner_id, outcome="sent"),
                )
            return await self._advance(
                owner_id, entry.enrollment_id, not_before=now or entry.scheduled_at
            )

    async def pause(self, owner_id: str, enrollment_id: str) -> AdvanceResult:
        """Stop a lead; its scheduled entries become ``skipped_due_to_state_change``."""
        async with self._locks.get(enrollment_id):
            enrollment = await self._load(owner_id, enrollment_id)
            if enrollment.status is not EnrollmentStatus.ACTIVE:
                return AdvanceResult(outcome="unchanged", enrollment=enrollment)
            enrollment = await self._set_status(enrollment, EnrollmentStatus.PAUSED)
            return AdvanceResult(outcome="halted", enrollment=enrollment)

    async def resume(self, owner_id: str, enrollment_id: str) -> AdvanceResult:
        """Reactivate a paused lead and reschedule the step it was waiting on."""
        async with self._locks.get(enrollment_id):
            enrollment = await self._load(owner_id, enrollment_id)
            if enrollment.status is not EnrollmentStatus.PAUSED:
                return AdvanceResult(outcome="unchanged", enrollment=enrollment)
            await self._set_status(enrollment, EnrollmentStatus.ACTIVE)
            return await self._advance(owner_id, enrollment_id, not_before=self._clock())

    async def fail(self, owner_id: str, enrollment_id: str, reason: str) -> AdvanceResult:
        async with self._locks.get(enrollment_id):
            enrollment = await self._load(owner_id, enrollment_id)
            if enrollment.status in (EnrollmentStatus.COMPLETED, EnrollmentStatus.FAILED):
                return AdvanceResult(outcome="unchanged", enrollment=enrollment)
            enrollment = await self._halt(enrollment, reason)
            return AdvanceResult(outcome="halted", enrollment=enrollment, detail=reason)

    async def update_context(
        self,
        owner_id: str,
        enrollment_id: str,
        lead: Optional[Dict[str, Any]] = None,
        signals: Optional[Dict[str, Any]] = None,
    ) -> LeadEnrollment:
        """Merge new lead attributes or signals consulted by later conditions.

        Conditions already resolved keep their recorded branch.
        """
        async with self._locks.get(enrollment_id):
            enrollment = await self._load(owner_id, enrollment_id)
            expected = enrollment.version
            if lead:
                enrollment.lead = {**enrollment.lead, **lead}
            if signals:
                enrollment.signals = {**enrollment.signals, **signals}
            if not await self._swap(enrollment, expected):
                raise StaleEnrollmentError(
                    f"Enrollment {enrollment_id} was modified while updating its context"
                )
            return enrollment
