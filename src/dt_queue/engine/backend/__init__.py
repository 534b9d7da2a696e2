"""Action executor and repair agent backends."""

from dt_queue.engine.backend.base import (
    ActionExecutor,
    ActionOutcome,
    AgentRunRequest,
    AgentRunResult,
    LookupKind,
)
from dt_queue.engine.backend.cli_agent import AgentRunError, CliAgentRunner
from dt_queue.engine.backend.osascript import JxaScriptRunner, OsascriptActionExecutor
from dt_queue.engine.backend.registry import ActionRegistry

__all__ = [
    "ActionExecutor",
    "ActionOutcome",
    "ActionRegistry",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentRunner",
    "JxaScriptRunner",
    "LookupKind",
    "OsascriptActionExecutor",
]
