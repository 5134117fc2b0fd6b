"""Remote side of a task: the execution unit and its agent runner."""

from .entrypoint import ExecutionUnit, final_status
from .runner import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    AgentRunnerError,
    FakeAgentRunner,
    TIMEOUT_EXIT_CODE,
)
from .settings import ExecutionUnitSettings

__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "ExecutionUnit",
    "ExecutionUnitSettings",
    "FakeAgentRunner",
    "TIMEOUT_EXIT_CODE",
    "final_status",
]
