"""Exception taxonomy for the queue engine."""

from __future__ import annotations

from dt_queue.engine.models import QueueIssue, VariableRef


class QueueError(Exception):
    """Base class for queue engine errors."""


class QueueInputError(QueueError):
    """Task input could not be parsed into task specs."""


class QueueStoreError(QueueError):
    """Queue store is unreadable or could not be locked."""


class StructuralError(QueueError):
    """One or more tasks have a malformed action/params shape."""

    def __init__(self, issues: list[QueueIssue]) -> None:
        super().__init__("; ".join(issue.render() for issue in issues) or "Invalid queue")
        self.issues = issues


class CyclicDependencyError(QueueError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: tuple[int, ...]) -> None:
        path = " -> ".join(str(index) for index in cycle)
        super().__init__(f"Cyclic dependency: {path}")
        self.cycle = cycle


class ForwardReferenceError(QueueError):
    """A task depends on a task with an equal or later index."""

    def __init__(self, task_index: int, referenced_index: int, *, via: str) -> None:
        super().__init__(
            f"Task {task_index} references task {referenced_index} via {via}; "
            "references must point to an earlier task.",
        )
        self.task_index = task_index
        self.referenced_index = referenced_index
        self.via = via


class UnresolvedReferenceError(QueueError):
    """A task input cannot be materialized from its producer.

    `ref` is the `$N.field` token, or `dependsOn N` for an explicit dependency.
    """

    def __init__(self, task_index: int, ref: VariableRef | str, reason: str) -> None:
        token = ref.token if isinstance(ref, VariableRef) else ref
        super().__init__(f"Task {task_index}: cannot resolve {token}: {reason}")
        self.task_index = task_index
        self.ref = ref
        self.reason = reason


class ExecutionError(QueueError):
    """The action executor reported failure for one task."""

    def __init__(self, task_index: int, message: str) -> None:
        super().__init__(f"Task {task_index} failed: {message}")
        self.task_index = task_index
        self.message = message


class ExternalSystemUnavailable(QueueError):
    """DEVONthink is not running or cannot be reached."""


class RepairUnavailable(QueueError):
    """The reasoning service produced no usable proposal."""
