"""Build/execution pipeline: tool invocation, stages, deadline guard."""

from .guard import ExecutionGuard, GuardedRun, ProcessOutcome
from .invoker import InvocationResult, ToolInvoker
from .locks import ProjectLocks, get_project_locks
from .stages import Stage, StageInput, ToolKind

__all__ = [
    "ExecutionGuard",
    "GuardedRun",
    "InvocationResult",
    "ProcessOutcome",
    "ProjectLocks",
    "Stage",
    "StageInput",
    "ToolInvoker",
    "ToolKind",
    "get_project_locks",
]
