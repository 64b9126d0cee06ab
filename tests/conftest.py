from datetime import datetime, timezone

import pytest

import cadencekit.persistence as persistence
from cadencekit.conditions import MessageReceived
from cadencekit.graph import (
    ActionConfig,
    CadenceGraph,
    CadenceStatus,
    ConditionConfig,
    DelayConfig,
    Edge,
    StepNode,
    StepType,
)
from cadencekit.persistence import InMemoryCadenceRepository

OWNER = "owner-1"
START = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)  # a Monday


@pytest.fixture(autouse=True)
def _reset_repository_singleton(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("CADENCEKIT_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("CADENCEKIT_CONFIG", raising=False)
    monkeypatch.delenv("CADENCEKIT_TRANSPORT", raising=False)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def repo() -> InMemoryCadenceRepository:
    return InMemoryCadenceRepository()


def linkedin_message(node_id: str, day: int, order: int = 0, cadence_id: str = "c1") -> StepNode:
    return StepNode(
        id=node_id,
        cadence_id=cadence_id,
        day_offset=day,
        order_in_day=order,
        config=ActionConfig(
            step_type=StepType.LINKEDIN_MESSAGE,
            message_template="Hi {{first_name}}, step " + node_id,
        ),
    )


def email(node_id: str, day: int, order: int = 0, cadence_id: str = "c1") -> StepNode:
    return StepNode(
        id=node_id,
        cadence_id=cadence_id,
        day_offset=day,
        order_in_day=order,
        config=ActionConfig(
            step_type=StepType.SEND_EMAIL,
            subject="Hello {{company}}",
            body_template="Hi {{first_name}}",
        ),
    )


def delay(node_id: str, day: int, duration: int = 2, unit: str = "days", cadence_id: str = "c1") -> StepNode:
    return StepNode(
        id=node_id,
        cadence_id=cadence_id,
        day_offset=day,
        config=DelayConfig(duration=duration, unit=unit),
    )


def replied_condition(node_id: str, day: int, cadence_id: str = "c1") -> StepNode:
    return StepNode(
        id=node_id,
        cadence_id=cadence_id,
        day_offset=day,
        config=ConditionConfig(predicate=MessageReceived()),
    )


@pytest.fixture
def branching_graph() -> CadenceGraph:
    """intro(day 0) -> replied?(day 0) -> yes: thanks(day 3) / no: nudge(day 5)."""
    return CadenceGraph.build(
        "c1",
        OWNER,
        [
            linkedin_message("intro", 0),
            replied_condition("replied", 0),
            email("thanks", 3),
            linkedin_message("nudge", 5),
        ],
        [
            Edge(source="intro", target="replied"),
            Edge(source="replied", target="thanks", branch="yes"),
            Edge(source="replied", target="nudge", branch="no"),
        ],
        status=CadenceStatus.ACTIVE,
    )


@pytest.fixture
def delay_graph() -> CadenceGraph:
    """intro(day 0) -> wait 2 days -> bump(day 2)."""
    return CadenceGraph.build(
        "c1",
        OWNER,
        [linkedin_message("intro", 0), delay("wait", 0), email("bump", 2)],
        [Edge(source="intro", target="wait"), Edge(source="wait", target="bump")],
        status=CadenceStatus.ACTIVE,
    )
