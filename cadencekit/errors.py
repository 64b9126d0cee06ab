"""Exception hierarchy for cadencekit."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, List, Optional

if TYPE_CHECKING:
    from .persistence.models import ScheduleEntry


class CadenceError(Exception):
    """Base class for all library errors."""


class GraphIntegrityError(CadenceError):
    """Malformed cadence definition. Blocks activation of the cadence."""

    def __init__(self, message: str, node_id: Optional[str] = None) -> None:
        self.node_id = node_id
        prefix = f"Node '{node_id}': " if node_id else ""
        super().__init__(f"{prefix}{message}")


class CycleDetectedError(CadenceError):
    """Traversal revisited a node already on the current path."""

    def __init__(self, path: List[str]) -> None:
        self.path = list(path)
        super().__init__(f"Cycle detected along path: {' -> '.join(self.path)}")


class IdempotencyConflict(CadenceError):
    """A live schedule entry already exists for the fingerprint.

    Benign: callers return ``existing`` instead of surfacing the error.
    """

    def __init__(self, fingerprint: str, existing: "ScheduleEntry | None" = None) -> None:
        self.fingerprint = fingerprint
        self.existing = existing
        super().__init__(f"Schedule entry already exists for fingerprint {fingerprint}")


class PartialBatchFailure(CadenceError):
    """Raised by callers that opt into treating bulk failures as errors."""

    def __init__(self, result: Any) -> None:
        self.result = result
        super().__init__(f"{result.failed_count} item(s) failed in bulk materialization")


class StaleEnrollmentError(CadenceError):
    """Compare-and-swap on an enrollment lost against a concurrent writer."""


class CadenceLockedError(CadenceError):
    """Graph edits are not allowed while leads are in flight."""


class NotFoundError(CadenceError):
    """Requested record does not exist for the owner."""
