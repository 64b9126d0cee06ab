"""Repository abstraction for cadence state persistence."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Protocol

from ..graph import CadenceGraph
from .models import (
    EnrollmentStatus,
    LeadEnrollment,
    LinkedAccount,
    ScheduleEntry,
    ScheduleStatus,
    StepInstance,
)


class CadenceRepository(Protocol):
    """Protocol for cadence persistence backends.

    Every read and write is scoped by ``owner_id`` except
    :meth:`claim_due_entries`, which serves background schedulers.
    """

    async def save_graph(self, graph: CadenceGraph) -> None:
        """Insert or replace a cadence graph."""

    async def get_graph(self, owner_id: str, cadence_id: str) -> CadenceGraph | None:
        """Retrieve a cadence graph by id."""

    async def delete_graph(self, owner_id: str, cadence_id: str) -> None:
        """Remove a cadence graph."""

    async def create_enrollment(self, enrollment: LeadEnrollment) -> LeadEnrollment:
        """Persist a new enrollment; returns the existing one for the same lead and cadence."""

    async def get_enrollment(
        self, owner_id: str, enrollment_id: str
    ) -> LeadEnrollment | None:
        """Retrieve an enrollment by id."""

    async def find_enrollment(
        self, owner_id: str, cadence_id: str, lead_id: str
    ) -> LeadEnrollment | None:
        """Retrieve the enrollment of a lead in a cadence."""

    async def list_enrollments(
        self,
        owner_id: str,
        cadence_id: Optional[str] = None,
        status: Optional[EnrollmentStatus] = None,
    ) -> list[LeadEnrollment]:
        """Return enrollments, optionally filtered."""

    async def compare_and_swap_enrollment(
        self, enrollment: LeadEnrollment, expected_version: int
    ) -> bool:
        """Write ``enrollment`` only if the stored version equals ``expected_version``.

        On success the stored and the passed object's version become
        ``expected_version + 1``.
        """

    async def create_step_instance(self, instance: StepInstance) -> StepInstance:
        """Persist a step instance; returns the existing one for the same enrollment and step."""

    async def get_step_instance(
        self, owner_id: str, enrollment_id: str, step_id: str
    ) -> StepInstance | None:
        """Retrieve the instance of a step for an enrollment."""

    async def list_step_instances(
        self, owner_id: str, enrollment_id: str
    ) -> list[StepInstance]:
        """Return all instances of an enrollment in creation order."""

    async def update_step_instance(self, instance: StepInstance) -> None:
        """Persist changes to a step instance."""

    async def insert_schedule_entry(self, entry: ScheduleEntry) -> ScheduleEntry:
        """Persist a schedule entry.

        Raises:
            IdempotencyConflict: A live entry already holds the fingerprint.
        """

    async def get_schedule_entry(
        self, owner_id: str, entry_id: str
    ) -> ScheduleEntry | None:
        """Retrieve a schedule entry by id."""

    async def get_live_schedule_entry(
        self, owner_id: str, fingerprint: str
    ) -> ScheduleEntry | None:
        """Return the entry currently holding ``fingerprint``, if any."""

    async def list_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: Optional[str] = None,
        status: Optional[ScheduleStatus] = None,
    ) -> list[ScheduleEntry]:
        """Return schedule entries ordered by ``scheduled_at``."""

    async def update_schedule_status(
        self,
        owner_id: str,
        entry_id: str,
        status: ScheduleStatus,
        expected: Optional[ScheduleStatus] = None,
        last_error: Optional[str] = None,
    ) -> bool:
        """Set an entry's status, optionally only when it is ``expected``."""

    async def transition_schedule_entries(
        self,
        owner_id: str,
        enrollment_id: str,
        from_status: ScheduleStatus,
        to_status: ScheduleStatus,
    ) -> int:
        """Move every entry of an enrollment in ``from_status`` to ``to_status``."""

    async def claim_due_entries(
        self, now: datetime, limit: int = 100, lease: Optional[timedelta] = None
    ) -> list[ScheduleEntry]:
        """Mark scheduled entries due at ``now`` as claimed and return them.

        Entries claimed earlier are handed out again once their claim is
        older than ``lease``; without a lease a claim never expires.
        """

    async def release_claim(self, owner_id: str, entry_id: str) -> bool:
        """Clear the claim of a still scheduled entry so the next tick retries it."""

    async def save_linked_account(self, account: LinkedAccount) -> None:
        """Insert or replace the owner's account for a provider."""

    async def get_linked_account(
        self, owner_id: str, provider: str
    ) -> LinkedAccount | None:
        """Retrieve the owner's account for a provider."""
