"""Domain models for the task queue and its reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def utc_now_iso() -> str:
    """Current UTC timestamp as ISO-8601 text, the form persisted in the store."""

    return utc_now().isoformat()


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)


class Action(str, Enum):
    """Supported queue actions, one per action executor handler."""

    CREATE = "create"
    DELETE = "delete"
    MOVE = "move"
    MODIFY = "modify"
    REPLICATE = "replicate"
    DUPLICATE = "duplicate"
    CONVERT = "convert"
    TAG_ADD = "tag.add"
    TAG_REMOVE = "tag.remove"
    TAG_MERGE = "tag.merge"
    TAG_RENAME = "tag.rename"
    TAG_DELETE = "tag.delete"
    LINK = "link"
    UNLINK = "unlink"
    ORGANIZE = "organize"
    SUMMARIZE = "summarize"
    SEARCH = "search"
    CHAT = "chat"

    @classmethod
    def parse(cls, value: str) -> Action:
        """Parse an action name, case-insensitively."""

        normalized = value.strip().lower() if isinstance(value, str) else value
        try:
            return cls(normalized)
        except ValueError as error:
            supported = ", ".join(action.value for action in cls)
            raise ValueError(
                f"Unsupported action: {value!r}. Use one of: {supported}.",
            ) from error


class ExecutionMode(str, Enum):
    """Concurrency and failure policy for one run."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"
    TRANSACTIONAL = "transactional"


class ClearScope(str, Enum):
    """Which tasks `clear` removes."""

    COMPLETED = "completed"
    FAILED = "failed"
    ALL = "all"


@dataclass(slots=True, frozen=True)
class VariableRef:
    """Parsed `$<index>.<field>` token."""

    task_index: int
    field_path: tuple[str, ...]

    @property
    def token(self) -> str:
        return f"${self.task_index}.{'.'.join(self.field_path)}"


@dataclass(slots=True)
class TaskSpec:
    """Task as submitted by a caller, before it has an index.

    `depends_on` items are absolute indices or relative `"@k"` batch positions.
    """

    action: Action
    params: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[int | str, ...] = ()


@dataclass(slots=True)
class Task:
    """One queued operation."""

    index: int
    action: Action
    params: dict[str, Any]
    depends_on: tuple[int, ...] = ()
    status: TaskStatus = TaskStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    references: tuple[VariableRef, ...] = ()

    def dependencies(self) -> set[int]:
        """Explicit `dependsOn` edges unioned with variable-reference edges."""

        return set(self.depends_on) | {ref.task_index for ref in self.references}


@dataclass(slots=True)
class QueueEvent:
    """Audit trail entry persisted with the queue."""

    at: str
    event: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Queue:
    """Ordered task list plus queue-level metadata."""

    tasks: list[Task] = field(default_factory=list)
    created_at: str = ""
    default_mode: ExecutionMode = ExecutionMode.SEQUENTIAL
    next_index: int = 1
    events: list[QueueEvent] = field(default_factory=list)

    def pending(self) -> list[Task]:
        return [task for task in self.tasks if task.status == TaskStatus.PENDING]

    def count(self, status: TaskStatus) -> int:
        return sum(1 for task in self.tasks if task.status == status)


@dataclass(slots=True)
class QueueIssue:
    """One validation error or verification issue, addressed by task index."""

    task_index: int | None
    message: str
    ref: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"task_index": self.task_index, "message": self.message}
        if self.ref is not None:
            payload["ref"] = self.ref
        return payload

    def render(self) -> str:
        prefix = f"Task {self.task_index}" if self.task_index is not None else "Queue"
        return f"{prefix}: {self.message}"


@dataclass(slots=True)
class ValidationReport:
    """Structural validation outcome."""

    valid: bool
    errors: list[QueueIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
        }


@dataclass(slots=True)
class VerificationCounts:
    """How many distinct identifiers were looked up, per kind."""

    uuids: int = 0
    paths: int = 0
    databases: int = 0


@dataclass(slots=True)
class VerificationReport:
    """Live verification outcome. Advisory only."""

    valid: bool
    checked: VerificationCounts = field(default_factory=VerificationCounts)
    skipped_references: int = 0
    issues: list[QueueIssue] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        return {
            "valid": self.valid,
            "checked": {
                "uuids": self.checked.uuids,
                "paths": self.checked.paths,
                "databases": self.checked.databases,
            },
            "skipped_references": self.skipped_references,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass(slots=True)
class TaskReport:
    """Per-task line of a run result."""

    index: int
    action: Action
    status: TaskStatus
    params: dict[str, Any]
    dispatched: bool
    result: dict[str, Any] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "index": self.index,
            "action": self.action.value,
            "status": self.status.value,
            "params": self.params,
            "dispatched": self.dispatched,
        }
        if self.result is not None:
            payload["result"] = self.result
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass(slots=True)
class RunSummary:
    """Aggregate counters for one run."""

    completed: int = 0
    failed: int = 0
    skipped: int = 0
    poisoned: int = 0


@dataclass(slots=True)
class RunResult:
    """Overall result of `execute`."""

    success: bool
    mode: ExecutionMode
    dry_run: bool
    summary: RunSummary
    tasks: list[TaskReport] = field(default_factory=list)
    halted_at: int | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "success": self.success,
            "mode": self.mode.value,
            "dry_run": self.dry_run,
            "summary": {
                "completed": self.summary.completed,
                "failed": self.summary.failed,
                "skipped": self.summary.skipped,
                "poisoned": self.summary.poisoned,
            },
            "tasks": [report.to_dict() for report in self.tasks],
        }
        if self.halted_at is not None:
            payload["halted_at"] = self.halted_at
        return payload
