"""Cadence lifecycle: draft edits, activation, pause and archive."""

from __future__ import annotations

import logging

from .errors import CadenceLockedError, NotFoundError
from .graph import CadenceGraph, CadenceStatus
from .persistence.models import EnrollmentStatus
from .persistence.repository import CadenceRepository

logger = logging.getLogger(__name__)

_LIVE_ENROLLMENT_STATUSES = (EnrollmentStatus.ACTIVE, EnrollmentStatus.PAUSED)


class CadenceService:
    """Author-facing operations on cadence graphs."""

    def __init__(self, repository: CadenceRepository) -> None:
        self.repository = repository

    async def _get(self, owner_id: str, cadence_id: str) -> CadenceGraph:
        graph = await self.repository.get_graph(owner_id, cadence_id)
        if graph is None:
            raise NotFoundError(f"Cadence {cadence_id} not found for owner {owner_id}")
        return graph

    async def live_enrollment_count(self, owner_id: str, cadence_id: str) -> int:
        count = 0
        for status in _LIVE_ENROLLMENT_STATUSES:
            count += len(
                await self.repository.list_enrollments(owner_id, cadence_id, status)
            )
        return count

    async def save(self, graph: CadenceGraph, new_version: bool = False) -> CadenceGraph:
        """Store an edited graph.

        Editing an active cadence with live enrollments requires
        ``new_version``. In-flight leads keep the steps already compiled for
        them; only segments they reach later are compiled from the new graph.
        A graph stored as active must pass validation even when it is new
        or replaces a draft.
        """
        existing = await self.repository.get_graph(graph.owner_id, graph.cadence_id)
        if existing is not None and existing.status is CadenceStatus.ACTIVE:
            live = await self.live_enrollment_count(graph.owner_id, graph.cadence_id)
            if live and not new_version:
                raise CadenceLockedError(
                    f"Cadence {graph.cadence_id} is active with {live} live enrollment(s)"
                )
            graph.status = CadenceStatus.ACTIVE
        if graph.status is CadenceStatus.ACTIVE:
            graph.ensure_valid()
        if existing is not None and new_version:
            graph.version = existing.version + 1
        await self.repository.save_graph(graph)
        logger.info(f"Saved cadence {graph.cadence_id} v{graph.version} (owner {graph.owner_id})")
        return graph

    async def activate(self, owner_id: str, cadence_id: str) -> CadenceGraph:
        """Validate and activate; raises :class:`GraphIntegrityError` on a bad graph."""
        graph = await self._get(owner_id, cadence_id)
        graph.ensure_valid()
        graph.status = CadenceStatus.ACTIVE
        await self.repository.save_graph(graph)
        logger.info(f"Activated cadence {cadence_id} (owner {owner_id})")
        return graph

    async def pause(self, owner_id: str, cadence_id: str) -> CadenceGraph:
        return await self._set_status(owner_id, cadence_id, CadenceStatus.PAUSED)

    async def archive(self, owner_id: str, cadence_id: str) -> CadenceGraph:
        return await self._set_status(owner_id, cadence_id, CadenceStatus.ARCHIVED)

    async def _set_status(
        self, owner_id: str, cadence_id: str, status: CadenceStatus
    ) -> CadenceGraph:
        graph = await self._get(owner_id, cadence_id)
        graph.status = status
        await self.repository.save_graph(graph)
        logger.info(f"Cadence {cadence_id} is now {status.value} (owner {owner_id})")
        return graph

    async def delete(self, owner_id: str, cadence_id: str) -> None:
        graph = await self._get(owner_id, cadence_id)
        live = await self.live_enrollment_count(owner_id, graph.cadence_id)
        if live:
            raise CadenceLockedError(
                f"Cadence {cadence_id} still has {live} live enrollment(s)"
            )
        await self.repository.delete_graph(owner_id, cadence_id)
        logger.info(f"Deleted cadence {cadence_id} (owner {owner_id})")
