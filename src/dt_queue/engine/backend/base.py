"""Backend interfaces: the action executor boundary and repair agent runs."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from dt_queue.engine.models import Action


@dataclass(slots=True)
class ActionOutcome:
    """Reply of one action executor call."""

    success: bool
    result: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def ok(cls, result: dict[str, Any] | None = None) -> ActionOutcome:
        return cls(success=True, result=result or {})

    @classmethod
    def failed(cls, error: str) -> ActionOutcome:
        return cls(success=False, error=error)


class LookupKind(str, Enum):
    """Kinds of identifiers the verifier asks about."""

    RECORD = "record"
    DATABASE = "database"
    PATH = "path"


class ActionExecutor(Protocol):
    """Protocol implemented by action executors."""

    def invoke(self, action: Action, params: dict[str, Any]) -> ActionOutcome:
        """Perform one action against the target application."""

    def exists(self, kind: LookupKind, value: str, database: str | None = None) -> bool:
        """Read-only lookup used by live verification."""

    def is_available(self) -> bool:
        """Whether the target application can be reached right now."""


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run one repair agent attempt."""

    prompt: str
    agent: str
    model: str
    command_template: str
    timeout_seconds: int
    workdir: Path


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the agent runner."""

    exit_code: int
    timed_out: bool
    stdout: str
    stderr: str
