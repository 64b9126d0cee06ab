"""In-memory implementation of the cadence repository."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from ..errors import IdempotencyConflict
from ..graph import CadenceGraph
from .models import (
    EnrollmentStatus,
    LeadEnrollment,
    LinkedAccount,
    ScheduleEntry,
    ScheduleStatus,
    StepInstance,
    utcnow,
)
from .repository import CadenceRepository


class InMemoryCadenceRepository(CadenceRepository):
    """Store cadence state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in
    and out so callers never alias stored state.
    """

    def __init__(self) -> None:
        self._graphs: Dict[Tuple[str, str], CadenceGraph] = {}
        self._enrollments: Dict[str, LeadEnrollment] = {}
        self._instances: Dict[Tuple[str, str], StepInstance] = {}
        self._entries: Dict[str, ScheduleEntry] = {}
        self._accounts: Dict[Tuple[str, str], LinkedAccount] = {}

    # ------------------------------------------------------------------
    async def save_graph(self, graph: CadenceGraph) -> None:
        self._graphs[(graph.owner_id, graph.cadence_id)] = graph.model_copy(deep=True)

    async def get_graph(self, owner_id: str, cadence_id: str) -> CadenceGraph | None:
        graph = self._graphs.get((owner_id, cadence_id))
        return graph.model_copy(deep=True) if graph else None

    async def delete_graph(self, owner_id: str, cadence_id: str) -> None:
        self._graphs.pop((owner_id, cadence_id), None)

    # ------------------------------------------------------------------
    async def create_enrollment(self, enrollment: LeadEnrollment) -> LeadEnrollment:
        existing = await self.find_enrollment(
            enrollment.owner_id, enrollment.cadence_id, enrollment.lead_id
        )
        if existing:
            return existing
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return enrollment.model_copy(deep=True)

    async def get_enrollment(
        self, owner_id: str, enrollment_id: str
    ) -> LeadEnrollment | None:
        enrollment = self._enrollments.get(enrollment_id)
        if enrollment is None or enrollment.owner_id != owner_id:
            return None
        return enrollment.model_copy(deep=True)

    async def find_enrollment(
        self, owner_id: str, cadence_id: str, lead_id: str
    ) -> LeadEnrollment | None:
        for enrollment in self._enrollments.values():
            if (
                enrollment.owner_id == owner_id
                and enrollment.cadence_id == cadence_id
                and enrollment.lead_id == lead_id
            ):
                return enrollment.model_copy(deep=True)
        return None

    async def list_enrollments(
        self,
        owner_id: str,
        cadence_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[LeadEnrollment]:
        return [
            e.model_copy(deep=True)
            for e in self._enrollments.values()
            if e.owner_id == owner_id
            and (cadence_id is None or e.cadence_id == cadence_id)
            and (status is None or e.status == status)
        ]

    async def compare_and_swap_enrollment(
        self, enrollment: LeadEnrollment, expected_version: int
    ) -> bool:
        stored = self._enrollments.get(enrollment.id)
        if (
            stored is None
            or stored.owner_id != enrollment.owner_id
            or stored.version != expected_version
        ):
            return False
        enrollment.version = expected_version + 1
        enrollment.updated_at = utcnow()
        self._enrollments[enrollment.id] = enrollment.model_copy(deep=True)
        return True

    # ------------------------------------------------------------------
    async def create_step_instance(self, instance: StepInstance) -> StepInstance:
        key = (instance.enrollment_id, instance.step_id)
        if key not in self._instances:
            self._instances[key] = instance.model_copy(deep=True)
        return self._instances[key].model_copy(deep=True)

    async def get_step_instance(
        self, owner_id: str, enrollment_id: str, step_id: str
    ) -> StepInstance | None:
        instance = self._instances.get((enrollment_id, step_id))
        if instance is None or instance.owner_id != owner_id:
            return None
        return instance.model_copy(deep=True)

    async def list_step_instances(
        self, owner_id: str, enrollment_id: str
    ) -> list[StepInstance]:
        return [
            i.model_copy(deep=True)
            for (eid, _), i in self._instances.items()
            if eid == enrollment_id and i.owner_id == owner_id
        ]

    async def update_step_instance(self, instance: StepInstance) -> None:
        key = (instance.enrollment_id, instance.step_id)
        if key in self._instances:
            instance.updated_at = utcnow()
            self._instances[key] = instance.model_copy(deep=True)

    # ------------------------------------------------------------------
    def _live_entry(self, fingerprint: str) -> ScheduleEntry | None:
        for entry in self._entries.values():
            if entry.fingerprint == fingerprint and entry.holds_fingerprint:
                return entry
        return None

    async def insert_schedule_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        existing = self._live_entry(entry.fingerprint)
        if existing is not None:
            raise IdempotencyConflict(entry.fingerprint, existing.model_copy(deep=True))
        self._entries[entry.id] = entry.model_copy(deep=True)
        return entry.model_copy(deep=True)

    async def get_schedule_entry(
        self, owner_id: str, entry_id: str
    ) -> ScheduleEntry | None:
        entry = self._entries.get(entry_id)
        if entry is None or entry.owner_id != owner_id:
            return None
        return entry.model_copy(deep=True)

    async def get_live_schedule_entry(
        self, owner_id: str, fingerprint: str
    ) -> ScheduleEntry | None:
        entry = self._live_entry(fingerprint)
        if entry is None or entry.owner_id != owner_id:
            return None
        return entry.model_copy(deep=True)

    async def list_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: Optional[str] = None,
        status: Optional[ScheduleStatus] = None,
    ) -> list[ScheduleEntry]:
        entries: List[ScheduleEntry] = [
            e.model_copy(deep=True)
            for e in self._entries.values()
            if e.owner_id == owner_id
            and (enrollment_id is None or e.enrollment_id == enrollment_id)
            and (status is None or e.status == status)
        ]
        return sorted(entries, key=lambda e: e.scheduled_at)

    async def update_schedule_status(
        self,
        owner_id: str,
        entry_id: str,
        status: ScheduleStatus,
        expected: Optional[ScheduleStatus] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        entry = self._entries.get(entry_id)
        if entry is None or entry.owner_id != owner_id:
            return False
        if expected is not None and entry.status != expected:
            return False
        entry.status = status
        if last_error is not None:
            entry.last_error = last_error
        entry.updated_at = utcnow()
        return True

    async def transition_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: str,
        from_status: ScheduleStatus,
        to_status: ScheduleStatus,
    ) -> int:
        count = 0
        for entry in self._entries.values():
            if (
                entry.owner_id == owner_id
                and entry.enrollment_id == enrollment_id
                and entry.status == from_status
            ):
                entry.status = to_status
                entry.updated_at = utcnow()
                count += 1
        return count

    async def claim_due_entries(
        self, now: datetime, limit: int = 100, lease: Optional[timedelta] = None
    ) -> list[ScheduleEntry]:
        expired = now - lease if lease is not None else None
        due = sorted(
            (
                e
                for e in self._entries.values()
                if e.status == ScheduleStatus.SCHEDULED
                and (
                    e.claimed_at is None
                    or (expired is not None and e.claimed_at <= expired)
                )
                and e.scheduled_at <= now
            ),
            key=lambda e: e.scheduled_at,
        )[:limit]
        for entry in due:
            entry.claimed_at = now
        return [e.model_copy(deep=True) for e in due]

    async def release_claim(self, owner_id: str, entry_id: str) -> bool:
        entry = self._entries.get(entry_id)
        if (
            entry is None
            or entry.owner_id != owner_id
            or entry.status != ScheduleStatus.SCHEDULED
        ):
            return False
        entry.claimed_at = None
        return True

    # ------------------------------------------------------------------
    async def save_linked_account(self, account: LinkedAccount) -> None:
        self._accounts[(account.owner_id, account.provider)] = account.model_copy(deep=True)

    async def get_linked_account(
        self, owner_id: str, provider: str
    ) -> LinkedAccount | None:
        account = self._accounts.get((owner_id, provider))
        return account.model_copy(deep=True) if account else None
