"""Dependency graph, execution order and run-time reference binding."""

from __future__ import annotations

import heapq
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from dt_queue.engine.errors import (
    CyclicDependencyError,
    ForwardReferenceError,
    UnresolvedReferenceError,
)
from dt_queue.engine.models import Queue, QueueIssue, Task, TaskStatus
from dt_queue.engine.references import relative_positions, substitute

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DependencyGraph:
    """Edges from each task to the tasks it waits on (explicit and implicit)."""

    edges: dict[int, set[int]] = field(default_factory=dict)

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> DependencyGraph:
        return cls(edges={task.index: task.dependencies() for task in tasks})

    def dependencies(self, index: int) -> set[int]:
        return self.edges.get(index, set())

    def find_cycle(self) -> tuple[int, ...] | None:
        """Return one cycle as `(a, b, ..., a)`, scanning nodes in index order."""

        white, grey, black = 0, 1, 2
        color = dict.fromkeys(self.edges, white)
        for root in sorted(self.edges):
            if color[root] != white:
                continue
            path: list[int] = [root]
            stack: list[Iterable[int]] = [iter(sorted(self.dependencies(root)))]
            color[root] = grey
            while stack:
                advanced = False
                for nxt in stack[-1]:
                    state = color.get(nxt)
                    if state is None:
                        continue
                    if state == grey:
                        start = path.index(nxt)
                        return (*path[start:], nxt)
                    if state == white:
                        color[nxt] = grey
                        path.append(nxt)
                        stack.append(iter(sorted(self.dependencies(nxt))))
                        advanced = True
                        break
                if not advanced:
                    color[path.pop()] = black
                    stack.pop()
        return None


def graph_issues(queue: Queue) -> list[QueueIssue]:
    """Collect every graph violation among the queue's non-terminal tasks."""

    issues: list[QueueIssue] = []
    graph = DependencyGraph.from_tasks(queue.tasks)
    cycle = graph.find_cycle()
    if cycle is not None:
        issues.append(QueueIssue(task_index=cycle[0], message=str(CyclicDependencyError(cycle))))

    present = {task.index for task in queue.tasks}
    for task in queue.tasks:
        if task.status.is_terminal:
            continue
        for dependency in sorted(set(task.depends_on)):
            if dependency >= task.index:
                error = ForwardReferenceError(task.index, dependency, via="dependsOn")
                issues.append(QueueIssue(task.index, str(error), ref=str(dependency)))
        for ref in task.references:
            if ref.task_index >= task.index:
                error = ForwardReferenceError(task.index, ref.task_index, via=ref.token)
                issues.append(QueueIssue(task.index, str(error), ref=ref.token))
            elif ref.task_index not in present:
                issues.append(
                    QueueIssue(
                        task.index,
                        f"{ref.token} refers to task {ref.task_index}, which is no longer "
                        "in the queue",
                        ref=ref.token,
                    ),
                )
        for position in relative_positions(task.params):
            token = f"$@{position}."
            issues.append(
                QueueIssue(
                    task.index,
                    f"relative reference {token!r} was never bound to a queue index",
                    ref=token,
                ),
            )
    return issues


def check_graph(queue: Queue) -> None:
    """Raise the first graph violation: cycles before forward references."""

    graph = DependencyGraph.from_tasks(queue.tasks)
    cycle = graph.find_cycle()
    if cycle is not None:
        raise CyclicDependencyError(cycle)
    for task in queue.tasks:
        if task.status.is_terminal:
            continue
        for dependency in sorted(set(task.depends_on)):
            if dependency >= task.index:
                raise ForwardReferenceError(task.index, dependency, via="dependsOn")
        for ref in task.references:
            if ref.task_index >= task.index:
                raise ForwardReferenceError(task.index, ref.task_index, via=ref.token)


def topological_order(tasks: list[Task]) -> list[Task]:
    """Stable topological order: lowest index first among unconstrained tasks.

    Dependencies outside `tasks` count as already satisfied.
    """

    by_index = {task.index: task for task in tasks}
    waiting: dict[int, set[int]] = {
        task.index: {dep for dep in task.dependencies() if dep in by_index} for task in tasks
    }
    dependents: dict[int, list[int]] = {index: [] for index in by_index}
    for index, deps in waiting.items():
        for dep in deps:
            dependents[dep].append(index)

    ready = [index for index, deps in waiting.items() if not deps]
    heapq.heapify(ready)
    ordered: list[Task] = []
    while ready:
        index = heapq.heappop(ready)
        ordered.append(by_index[index])
        for dependent in dependents[index]:
            waiting[dependent].discard(index)
            if not waiting[dependent]:
                heapq.heappush(ready, dependent)
    if len(ordered) != len(tasks):
        cycle = DependencyGraph.from_tasks(tasks).find_cycle()
        remaining = sorted(set(by_index) - {task.index for task in ordered})
        raise CyclicDependencyError(cycle or tuple(remaining))
    return ordered


def ready_tasks(pending: Iterable[Task], statuses: Mapping[int, TaskStatus]) -> list[Task]:
    """Pending tasks whose dependencies have all reached a terminal state.

    Indices missing from `statuses` were cleared earlier and count as terminal.
    """

    ready: list[Task] = []
    for task in pending:
        if all(
            statuses.get(dep, TaskStatus.COMPLETED).is_terminal for dep in task.dependencies()
        ):
            ready.append(task)
    return sorted(ready, key=lambda task: task.index)


def poison_reason(task: Task, statuses: Mapping[int, TaskStatus]) -> str | None:
    """Why `task` must fail without dispatch, or `None` when it may run."""

    for dependency in sorted(set(task.depends_on)):
        if statuses.get(dependency) == TaskStatus.FAILED:
            return str(
                UnresolvedReferenceError(
                    task.index,
                    f"dependsOn {dependency}",
                    f"task {dependency} failed",
                ),
            )
    for ref in task.references:
        if statuses.get(ref.task_index) == TaskStatus.FAILED:
            return str(UnresolvedReferenceError(task.index, ref, f"task {ref.task_index} failed"))
    return None


def resolve_params(
    task: Task,
    results: Mapping[int, Mapping[str, Any] | None],
    *,
    strict: bool = True,
) -> dict[str, Any]:
    """Materialize `task.params` against completed results.

    Raises `UnresolvedReferenceError` on missing producers or fields unless
    `strict` is false, in which case unresolved tokens stay as written.
    """

    if not task.references:
        return dict(task.params)
    resolved = substitute(task.params, task_index=task.index, results=results, strict=strict)
    logger.debug("Resolved %d reference(s) for task %d", len(task.references), task.index)
    return resolved


def completed_results(queue: Queue) -> dict[int, dict[str, Any] | None]:
    return {
        task.index: (task.result or {})
        for task in queue.tasks
        if task.status == TaskStatus.COMPLETED
    }
