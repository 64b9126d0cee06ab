"""Typed cadence graph: steps, edges and structural validation."""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from datetime import timedelta
from enum import Enum
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, ValidationError

from .conditions import (
    ConnectionAccepted,
    LeadAttribute,
    MessageReceived,
    Predicate,
    TimeElapsed,
)
from .errors import GraphIntegrityError

logger = logging.getLogger(__name__)


class NodeKind(str, Enum):
    ACTION = "action"
    DELAY = "delay"
    CONDITION = "condition"


class StepType(str, Enum):
    SEND_EMAIL = "send_email"
    LINKEDIN_MESSAGE = "linkedin_message"
    LINKEDIN_CONNECT = "linkedin_connect"
    LINKEDIN_LIKE = "linkedin_like"
    LINKEDIN_COMMENT = "linkedin_comment"
    WHATSAPP_MESSAGE = "whatsapp_message"
    CALL_MANUAL = "call_manual"
    TASK = "task"


STEP_CHANNELS: Dict[StepType, str] = {
    StepType.SEND_EMAIL: "email",
    StepType.LINKEDIN_MESSAGE: "linkedin",
    StepType.LINKEDIN_CONNECT: "linkedin",
    StepType.LINKEDIN_LIKE: "linkedin",
    StepType.LINKEDIN_COMMENT: "linkedin",
    StepType.WHATSAPP_MESSAGE: "whatsapp",
    StepType.CALL_MANUAL: "phone",
    StepType.TASK: "task",
}

_REQUIRED_FIELDS: Dict[StepType, Tuple[str, ...]] = {
    StepType.SEND_EMAIL: ("subject", "body_template"),
    StepType.LINKEDIN_MESSAGE: ("message_template",),
    StepType.WHATSAPP_MESSAGE: ("message_template",),
    StepType.LINKEDIN_COMMENT: ("comment_text",),
    StepType.LINKEDIN_LIKE: ("reaction_type",),
    StepType.CALL_MANUAL: ("task_description",),
    StepType.TASK: ("task_description",),
    StepType.LINKEDIN_CONNECT: (),
}


class ActionConfig(BaseModel):
    """Outbound work on one channel."""

    kind: Literal["action"] = "action"
    step_type: StepType
    subject: Optional[str] = None
    body_template: Optional[str] = None
    message_template: Optional[str] = None
    note_text: Optional[str] = None
    comment_text: Optional[str] = None
    reaction_type: Optional[
        Literal["LIKE", "CELEBRATE", "LOVE", "INSIGHTFUL", "CURIOUS"]
    ] = None
    post_url: Optional[str] = None
    task_description: Optional[str] = None
    template_id: Optional[str] = None

    @property
    def channel(self) -> str:
        return STEP_CHANNELS[self.step_type]

    @property
    def template_text(self) -> Optional[str]:
        """The text an executor renders for this step, if any."""
        return (
            self.body_template
            or self.message_template
            or self.comment_text
            or self.note_text
            or self.task_description
        )

    def missing_fields(self) -> List[str]:
        return [
            name
            for name in _REQUIRED_FIELDS[self.step_type]
            if not (getattr(self, name) or "").strip()
        ]


class DelayConfig(BaseModel):
    kind: Literal["delay"] = "delay"
    duration: int
    unit: Literal["hours", "days"] = "days"

    def as_timedelta(self) -> timedelta:
        return timedelta(**{self.unit: self.duration})


class ConditionConfig(BaseModel):
    kind: Literal["condition"] = "condition"
    predicate: Predicate
    timeout_days: Optional[int] = None


StepConfig = Annotated[
    Union[ActionConfig, DelayConfig, ConditionConfig], Field(discriminator="kind")
]


class StepNode(BaseModel):
    """One designed step of a cadence."""

    id: str
    cadence_id: str
    label: str = ""
    day_offset: int = Field(default=0, ge=0)
    order_in_day: int = 0
    config: StepConfig

    @property
    def kind(self) -> NodeKind:
        return NodeKind(self.config.kind)

    @property
    def channel(self) -> Optional[str]:
        if isinstance(self.config, ActionConfig):
            return self.config.channel
        return None

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.day_offset, self.order_in_day)


class Edge(BaseModel):
    source: str
    target: str
    branch: Optional[Literal["yes", "no"]] = None


class CadenceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    ARCHIVED = "archived"


class GraphIssue(BaseModel):
    """A single structural problem found by :meth:`CadenceGraph.issues`."""

    node_id: Optional[str] = None
    message: str

    def to_error(self) -> GraphIntegrityError:
        return GraphIntegrityError(self.message, node_id=self.node_id)


class CadenceGraph(BaseModel):
    """Node set and edges of one cadence."""

    cadence_id: str
    owner_id: str
    name: str = ""
    status: CadenceStatus = CadenceStatus.DRAFT
    version: int = 1
    nodes: Dict[str, StepNode] = Field(default_factory=dict)
    edges: List[Edge] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # Construction
    @classmethod
    def build(
        cls,
        cadence_id: str,
        owner_id: str,
        nodes: Iterable[StepNode],
        edges: Iterable[Edge] = (),
        **kwargs: Any,
    ) -> "CadenceGraph":
        node_map: Dict[str, StepNode] = {}
        for node in nodes:
            if node.id in node_map:
                raise GraphIntegrityError("duplicate node id", node_id=node.id)
            node_map[node.id] = node
        return cls(
            cadence_id=cadence_id,
            owner_id=owner_id,
            nodes=node_map,
            edges=list(edges),
            **kwargs,
        )

    @classmethod
    def from_linear_steps(
        cls, cadence_id: str, owner_id: str, steps: Iterable[StepNode], **kwargs: Any
    ) -> "CadenceGraph":
        """Chain edge-less steps by ``(day_offset, order_in_day)``."""
        ordered = sorted(steps, key=lambda s: s.sort_key)
        edges = [
            Edge(source=a.id, target=b.id) for a, b in zip(ordered, ordered[1:])
        ]
        return cls.build(cadence_id, owner_id, ordered, edges, **kwargs)

    @classmethod
    def from_editor_json(
        cls, cadence_id: str, owner_id: str, document: Dict[str, Any], **kwargs: Any
    ) -> "CadenceGraph":
        """Import a visual editor ``{"nodes": [...], "edges": [...]}`` document.

        Trigger nodes only mark the entry point. Nodes without explicit
        ``dayOffset``/``orderInDay`` get them derived from the delays that
        precede them on the path.
        """
        raw_nodes = document.get("nodes") or []
        raw_edges = document.get("edges") or []
        triggers = {
            n["id"] for n in raw_nodes if str(n.get("type", "")).startswith("trigger_")
        }

        nodes: Dict[str, StepNode] = {}
        explicit: Dict[str, Tuple[int, int]] = {}
        for raw in raw_nodes:
            if raw["id"] in triggers:
                continue
            data = raw.get("data") or {}
            try:
                config = _editor_config(raw.get("type", ""), data)
            except (KeyError, ValueError, ValidationError) as exc:
                raise GraphIntegrityError(
                    f"invalid configuration: {exc}", node_id=raw["id"]
                ) from exc
            if "dayOffset" in data:
                explicit[raw["id"]] = (
                    int(data["dayOffset"]),
                    int(data.get("orderInDay", 0)),
                )
            nodes[raw["id"]] = StepNode(
                id=raw["id"],
                cadence_id=cadence_id,
                label=data.get("label", ""),
                config=config,
            )

        edges: List[Edge] = []
        entry_ids: List[str] = []
        for raw in raw_edges:
            if raw["source"] in triggers:
                entry_ids.append(raw["target"])
                continue
            handle = raw.get("sourceHandle")
            edges.append(
                Edge(
                    source=raw["source"],
                    target=raw["target"],
                    branch=handle if handle in ("yes", "no") else None,
                )
            )

        graph = cls(
            cadence_id=cadence_id, owner_id=owner_id, nodes=nodes, edges=edges, **kwargs
        )
        graph._assign_offsets(entry_ids, explicit)
        return graph

    def _assign_offsets(
        self, entry_ids: List[str], explicit: Dict[str, Tuple[int, int]]
    ) -> None:
        roots = entry_ids or [nid for nid in self.nodes if not self.incoming(nid)]
        # (node_id, hours since start, order counter within the day)
        queue = deque((nid, 0, 0) for nid in roots if nid in self.nodes)
        seen: set = set()
        while queue:
            node_id, hours, order = queue.popleft()
            if node_id in seen:
                continue
            seen.add(node_id)
            node = self.nodes[node_id]
            if node_id in explicit:
                node.day_offset, node.order_in_day = explicit[node_id]
                hours, order = node.day_offset * 24, node.order_in_day
            else:
                node.day_offset, node.order_in_day = hours // 24, order

            next_hours, next_order = hours, order + 1
            if isinstance(node.config, DelayConfig):
                next_hours = hours + int(node.config.as_timedelta().total_seconds() // 3600)
                if next_hours // 24 != hours // 24:
                    next_order = 0
            elif isinstance(node.config, ConditionConfig):
                next_order = order
            for edge in self.outgoing(node_id):
                queue.append((edge.target, next_hours, next_order))

    # ------------------------------------------------------------------
    # Navigation
    def node(self, node_id: str) -> StepNode:
        try:
            return self.nodes[node_id]
        except KeyError:
            raise GraphIntegrityError("node does not exist", node_id=node_id) from None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def entry_node_id(self) -> Optional[str]:
        """Return the single node without incoming edges, or ``None`` if empty."""
        if not self.nodes:
            return None
        roots = [nid for nid in self.nodes if not self.incoming(nid)]
        if len(roots) != 1:
            raise GraphIntegrityError(
                f"graph must have exactly one entry node, found {len(roots)}"
                + (f" ({', '.join(sorted(roots))})" if roots else "")
            )
        return roots[0]

    def successor(self, node_id: str, branch: Optional[str] = None) -> Optional[str]:
        """Return the next node id, following ``branch`` for conditions."""
        node = self.node(node_id)
        edges = self.outgoing(node_id)
        if node.kind is NodeKind.CONDITION:
            matches = [e for e in edges if e.branch == branch]
            if len(matches) != 1:
                raise GraphIntegrityError(
                    f"condition must have exactly one '{branch}' branch", node_id=node_id
                )
            target = matches[0].target
        else:
            if len(edges) > 1:
                raise GraphIntegrityError(
                    "non-condition node has more than one outgoing edge", node_id=node_id
                )
            if not edges:
                return None
            target = edges[0].target
        if target not in self.nodes:
            raise GraphIntegrityError(
                f"edge points to missing node '{target}'", node_id=node_id
            )
        return target

    # ------------------------------------------------------------------
    # Validation
    def node_issues(self, node: StepNode) -> List[GraphIssue]:
        """Configuration problems of a single node."""
        issues: List[GraphIssue] = []
        config = node.config
        if isinstance(config, ActionConfig):
            missing = config.missing_fields()
            if missing:
                issues.append(
                    GraphIssue(
                        node_id=node.id,
                        message=f"{config.step_type.value} step is missing {', '.join(missing)}",
                    )
                )
        elif isinstance(config, DelayConfig):
            if config.duration <= 0:
                issues.append(
                    GraphIssue(node_id=node.id, message="delay duration must be positive")
                )
        return issues

    def issues(self) -> List[GraphIssue]:
        """Collect every structural problem in the graph."""
        issues: List[GraphIssue] = []
        for node in self.nodes.values():
            issues.extend(self.node_issues(node))

        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in self.nodes:
                    issues.append(
                        GraphIssue(node_id=edge.source, message=f"edge references missing node '{end}'")
                    )

        for node_id, node in self.nodes.items():
            edges = self.outgoing(node_id)
            if node.kind is NodeKind.CONDITION:
                branches = defaultdict(int)
                for e in edges:
                    branches[e.branch] += 1
                if branches["yes"] != 1 or branches["no"] != 1 or len(edges) != 2:
                    issues.append(
                        GraphIssue(
                            node_id=node_id,
                            message="condition needs exactly one 'yes' and one 'no' edge",
                        )
                    )
            elif len(edges) > 1:
                issues.append(
                    GraphIssue(node_id=node_id, message="only conditions may branch")
                )

        try:
            entry = self.entry_node_id()
        except GraphIntegrityError as exc:
            issues.append(GraphIssue(message=str(exc)))
            return issues
        if entry is None:
            return issues

        reachable = self._walk_paths(entry, issues)
        for node_id in sorted(set(self.nodes) - reachable):
            issues.append(GraphIssue(node_id=node_id, message="node is unreachable"))
        return issues

    def _walk_paths(self, entry: str, issues: List[GraphIssue]) -> set:
        reachable: set = set()
        reported: set = set()

        def visit(node_id: str, path: List[str], slots: Dict[Tuple[int, int], str]) -> None:
            if node_id not in self.nodes:
                return
            if node_id in path:
                key = ("cycle", node_id)
                if key not in reported:
                    reported.add(key)
                    cycle = path[path.index(node_id):] + [node_id]
                    issues.append(
                        GraphIssue(node_id=node_id, message=f"cycle: {' -> '.join(cycle)}")
                    )
                return
            reachable.add(node_id)
            node = self.nodes[node_id]
            if node.kind is not NodeKind.CONDITION:
                other = slots.get(node.sort_key)
                if other is not None:
                    key = ("slot",) + tuple(sorted((other, node_id)))
                    if key not in reported:
                        reported.add(key)
                        issues.append(
                            GraphIssue(
                                node_id=node_id,
                                message=(
                                    f"day {node.day_offset} order {node.order_in_day} "
                                    f"is already used by '{other}' on the same path"
                                ),
                            )
                        )
                slots = {**slots, node.sort_key: node_id}
            for edge in self.outgoing(node_id):
                visit(edge.target, path + [node_id], slots)

        visit(entry, [], {})
        return reachable

    def ensure_valid(self) -> None:
        """Raise :class:`GraphIntegrityError` for the first problem found."""
        issues = self.issues()
        if issues:
            logger.warning(
                f"Cadence {self.cadence_id} has {len(issues)} integrity issue(s); "
                f"first: {issues[0].message}"
            )
            raise issues[0].to_error()


_EDITOR_ACTIONS = {
    "action_linkedin_message": (StepType.LINKEDIN_MESSAGE, {"messageTemplate": "message_template"}),
    "action_linkedin_connect": (StepType.LINKEDIN_CONNECT, {"noteText": "note_text"}),
    "action_linkedin_like": (StepType.LINKEDIN_LIKE, {"reactionType": "reaction_type", "postUrl": "post_url"}),
    "action_linkedin_comment": (
        StepType.LINKEDIN_COMMENT,
        {"commentText": "comment_text", "postUrl": "post_url"},
    ),
    "action_send_email": (
        StepType.SEND_EMAIL,
        {"subject": "subject", "bodyTemplate": "body_template"},
    ),
    "action_whatsapp_message": (StepType.WHATSAPP_MESSAGE, {"messageTemplate": "message_template"}),
    "action_call_manual": (StepType.CALL_MANUAL, {"taskDescription": "task_description"}),
    "action_task": (StepType.TASK, {"taskDescription": "task_description"}),
}


def _editor_config(node_type: str, data: Dict[str, Any]) -> Any:
    if node_type in _EDITOR_ACTIONS:
        step_type, fields = _EDITOR_ACTIONS[node_type]
        values = {dest: data[src] for src, dest in fields.items() if data.get(src)}
        return ActionConfig(step_type=step_type, **values)
    if node_type == "delay_wait":
        return DelayConfig(duration=int(data["duration"]), unit=data.get("unit", "days"))
    if node_type == "condition_connection_accepted":
        return ConditionConfig(
            predicate=ConnectionAccepted(), timeout_days=data.get("timeoutDays")
        )
    if node_type == "condition_message_received":
        return ConditionConfig(
            predicate=MessageReceived(keyword_filter=data.get("keywordFilter") or ""),
            timeout_days=data.get("timeoutDays"),
        )
    if node_type == "condition_lead_attribute":
        return ConditionConfig(
            predicate=LeadAttribute(
                field=data["field"],
                operator=data.get("operator", "equals"),
                value=data.get("value") or "",
            )
        )
    if node_type == "condition_time_elapsed":
        return ConditionConfig(
            predicate=TimeElapsed(
                duration=int(data["duration"]), unit=data.get("unit", "days")
            )
        )
    raise ValueError(f"unknown node type '{node_type}'")
