"""cadencekit: compile outreach cadences into per-lead, idempotent schedules."""

from .accounts import AccountLinkClient, AccountLinker
from .cadences import CadenceService
from .compiler import CompiledStep, Compiler, PathExhausted
from .conditions import ConditionContext, evaluate
from .config import CadenceConfig, load_config
from .contracts import AdvanceResult, DueEntryMessage, ExecutionReport
from .dispatch import ScheduleDispatcher
from .execute import ScheduleExecutor, StepRun
from .graph import (
    ActionConfig,
    CadenceGraph,
    CadenceStatus,
    ConditionConfig,
    DelayConfig,
    Edge,
    StepNode,
    StepType,
)
from .persistence import get_repository
from .progress import LeadProgress
from .readiness import ReadinessVerifier, RetrySchedule
from .schedule import BulkScheduleResult, ScheduleMaterializer, ScheduleRequest
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "AccountLinkClient",
    "AccountLinker",
    "ActionConfig",
    "AdvanceResult",
    "BulkScheduleResult",
    "CadenceConfig",
    "CadenceGraph",
    "CadenceService",
    "CadenceStatus",
    "CompiledStep",
    "Compiler",
    "ConditionConfig",
    "ConditionContext",
    "DelayConfig",
    "DueEntryMessage",
    "Edge",
    "ExecutionReport",
    "LeadProgress",
    "PathExhausted",
    "ReadinessVerifier",
    "RetrySchedule",
    "ScheduleDispatcher",
    "ScheduleExecutor",
    "ScheduleMaterializer",
    "ScheduleRequest",
    "StepNode",
    "StepRun",
    "StepType",
    "evaluate",
    "get_repository",
    "get_transport",
    "load_config",
]
