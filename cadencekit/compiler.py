"""Compile a lead's realized path through a cadence graph one segment at a time."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, Field

from .conditions import ConditionContext, evaluate
from .db import EventLogDB, EventType
from .errors import CycleDetectedError
from .graph import CadenceGraph, ConditionConfig, NodeKind, StepNode
from .persistence.models import LeadEnrollment, StepInstance, StepInstanceStatus
from .persistence.repository import CadenceRepository

logger = logging.getLogger(__name__)


class CompiledStep(BaseModel):
    """The next Action or Delay instance the lead has to go through."""

    kind: Literal["compiled"] = "compiled"
    node: StepNode
    instance: StepInstance
    conditions: List[StepInstance] = Field(default_factory=list)


class PathExhausted(BaseModel):
    """The lead walked off the end of its path."""

    kind: Literal["exhausted"] = "exhausted"
    conditions: List[StepInstance] = Field(default_factory=list)


CompileResult = Union[CompiledStep, PathExhausted]


class PreviewStep(BaseModel):
    node_id: str
    kind: NodeKind
    day_offset: int
    order_in_day: int
    channel: Optional[str] = None
    branch: Optional[str] = None


class Compiler:
    """Walk a graph forward from an enrollment's pointer.

    Every node visited gets a :class:`StepInstance`. Condition instances
    carry the resolved branch and the inputs that were consulted; once
    recorded, the branch is replayed instead of re-evaluated. The walk stops
    at the first Action or Delay node. The compiler never moves the
    enrollment pointer itself.
    """

    def __init__(
        self, repository: CadenceRepository, event_log: Optional[EventLogDB] = None
    ) -> None:
        self.repository = repository
        self.event_log = event_log

    async def compile_next(
        self,
        graph: CadenceGraph,
        enrollment: LeadEnrollment,
        context: ConditionContext,
    ) -> CompileResult:
        owner_id = enrollment.owner_id
        path: List[str] = []
        parent_offset = 0
        conditions: List[StepInstance] = []

        if enrollment.current_step_id is None:
            node_id = graph.entry_node_id()
        else:
            pointer = graph.node(enrollment.current_step_id)
            current = await self.repository.get_step_instance(
                owner_id, enrollment.id, pointer.id
            )
            if current is None or not current.is_terminal:
                node_id = pointer.id
            else:
                path.append(pointer.id)
                parent_offset = current.day_offset
                node_id = graph.successor(pointer.id)

        while node_id is not None:
            if node_id in path:
                raise CycleDetectedError(path + [node_id])
            path.append(node_id)
            node = graph.node(node_id)
            issues = graph.node_issues(node)
            if issues:
                raise issues[0].to_error()
            offset = max(node.day_offset, parent_offset)

            if isinstance(node.config, ConditionConfig):
                instance = await self._resolve_condition(
                    graph, enrollment, node, offset, context
                )
                conditions.append(instance)
                parent_offset = instance.day_offset
                node_id = graph.successor(node_id, instance.branch)
                continue

            instance = await self.repository.create_step_instance(
                StepInstance(
                    owner_id=owner_id,
                    enrollment_id=enrollment.id,
                    cadence_id=graph.cadence_id,
                    step_id=node.id,
                    lead_id=enrollment.lead_id,
                    node_kind=node.kind.value,
                    day_offset=offset,
                )
            )
            if instance.is_terminal:
                # Already realized before a graph edit moved it onto this path.
                parent_offset = instance.day_offset
                node_id = graph.successor(node_id)
                continue

            logger.info(
                f"Compiled step {node.id} (day {instance.day_offset}) for enrollment "
                f"{enrollment.id} of owner {owner_id}"
            )
            await self._record(
                EventType.STEP_COMPILED,
                enrollment,
                node.id,
                {"day_offset": instance.day_offset, "node_kind": node.kind.value},
            )
            return CompiledStep(node=node, instance=instance, conditions=conditions)

        logger.info(f"Path exhausted for enrollment {enrollment.id} of owner {owner_id}")
        await self._record(EventType.PATH_EXHAUSTED, enrollment, None, {})
        return PathExhausted(conditions=conditions)

    async def _resolve_condition(
        self,
        graph: CadenceGraph,
        enrollment: LeadEnrollment,
        node: StepNode,
        offset: int,
        context: ConditionContext,
    ) -> StepInstance:
        existing = await self.repository.get_step_instance(
            enrollment.owner_id, enrollment.id, node.id
        )
        if existing is not None and existing.branch is not None:
            logger.debug(
                f"Replaying branch '{existing.branch}' of condition {node.id} "
                f"for enrollment {enrollment.id}"
            )
            return existing

        result = evaluate(node.config.predicate, context)
        # A concurrent writer may have recorded the branch first; keep theirs.
        instance = await self.repository.create_step_instance(
            StepInstance(
                owner_id=enrollment.owner_id,
                enrollment_id=enrollment.id,
                cadence_id=graph.cadence_id,
                step_id=node.id,
                lead_id=enrollment.lead_id,
                node_kind=NodeKind.CONDITION.value,
                day_offset=offset,
                status=StepInstanceStatus.SENT,
                branch=result.branch,
                inputs=result.inputs,
            )
        )
        logger.info(
            f"Condition {node.id} resolved '{instance.branch}' for enrollment {enrollment.id}"
        )
        await self._record(
            EventType.BRANCH_RESOLVED,
            enrollment,
            node.id,
            {"branch": instance.branch, "inputs": instance.inputs or {}},
        )
        return instance

    async def _record(
        self,
        event_type: EventType,
        enrollment: LeadEnrollment,
        step_id: Optional[str],
        detail: dict,
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

    def preview(
        self, graph: CadenceGraph, context: ConditionContext
    ) -> List[PreviewStep]:
        """Return the full path a lead with ``context`` would take. Writes nothing."""
        steps: List[PreviewStep] = []
        path: List[str] = []
        parent_offset = 0
        node_id = graph.entry_node_id()
        while node_id is not None:
            if node_id in path:
                raise CycleDetectedError(path + [node_id])
            path.append(node_id)
            node = graph.node(node_id)
            issues = graph.node_issues(node)
            if issues:
                raise issues[0].to_error()
            offset = max(node.day_offset, parent_offset)
            branch = None
            if isinstance(node.config, ConditionConfig):
                branch = evaluate(node.config.predicate, context).branch
            steps.append(
                PreviewStep(
                    node_id=node.id,
                    kind=node.kind,
                    day_offset=offset,
                    order_in_day=node.order_in_day,
                    channel=node.channel,
                    branch=branch,
                )
            )
            parent_offset = offset
            node_id = graph.successor(node_id, branch)
        return steps
