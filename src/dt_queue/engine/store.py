"""File-backed queue store with single-writer locking."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from dt_queue.engine.contracts import queue_from_payload, queue_to_payload, write_json_atomic
from dt_queue.engine.errors import QueueInputError, QueueStoreError
from dt_queue.engine.models import (
    ClearScope,
    ExecutionMode,
    Queue,
    QueueEvent,
    Task,
    TaskSpec,
    TaskStatus,
    utc_now_iso,
)
from dt_queue.engine.references import find_references, relative_positions, rewrite_relative

logger = logging.getLogger(__name__)


def record_event(queue: Queue, event: str, details: dict[str, Any] | None = None) -> None:
    """Append one audit entry to the in-memory queue."""

    queue.events.append(QueueEvent(at=utc_now_iso(), event=event, details=details or {}))


class QueueStore:
    """Durable queue state at one path.

    Every mutation happens under an exclusive `filelock` lock next to the
    store file; writes go through a temp file and an atomic replace.
    """

    def __init__(
        self,
        path: Path,
        *,
        lock_timeout_seconds: float = 10.0,
        default_mode: ExecutionMode = ExecutionMode.SEQUENTIAL,
    ) -> None:
        self.path = path
        self.default_mode = default_mode
        self.lock_timeout_seconds = lock_timeout_seconds
        lock_path = path.with_name(path.name + ".lock")
        self._lock = FileLock(str(lock_path), timeout=lock_timeout_seconds)

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store lock. Reentrant within one thread."""

        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._lock.acquire()
        except Timeout as error:
            raise QueueStoreError(
                f"Queue store {self.path} is locked by another process "
                f"(waited {self.lock_timeout_seconds:g}s)",
            ) from error
        try:
            yield
        finally:
            self._lock.release()

    def load(self) -> Queue:
        """Read persisted state; a missing file yields an empty queue."""

        if not self.path.exists():
            logger.debug("Queue store %s does not exist yet; starting empty", self.path)
            return Queue(created_at=utc_now_iso(), default_mode=self.default_mode)
        try:
            payload = json.loads(self.path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise QueueStoreError(f"Queue store {self.path} is not valid JSON: {error}") from error
        except OSError as error:
            raise QueueStoreError(f"Cannot read queue store {self.path}: {error}") from error
        queue = queue_from_payload(payload, default_mode=self.default_mode)
        if not queue.created_at:
            queue.created_at = utc_now_iso()
        logger.debug("Loaded %d task(s) from %s", len(queue.tasks), self.path)
        return queue

    def save(self, queue: Queue) -> None:
        with self.locked():
            write_json_atomic(self.path, queue_to_payload(queue))
        logger.debug("Saved %d task(s) to %s", len(queue.tasks), self.path)

    def append(self, specs: list[TaskSpec]) -> list[int]:
        """Append tasks after existing ones and return their assigned indices.

        Relative `@k` dependencies and `$@k.field` tokens inside the batch are
        rewritten to the indices assigned here.
        """

        if not specs:
            return []
        with self.locked():
            queue = self.load()
            indices = append_to_queue(queue, specs)
            record_event(queue, "appended", {"indices": indices})
            self.save(queue)
        logger.info("Appended %d task(s) to %s: %s", len(indices), self.path, indices)
        return indices

    def clear(self, scope: ClearScope) -> list[int]:
        """Remove tasks matching `scope`; removed indices are retired, never reused."""

        with self.locked():
            queue = self.load()
            removed = clear_queue(queue, scope)
            record_event(queue, "cleared", {"scope": scope.value, "indices": removed})
            self.save(queue)
        logger.info(
            "Cleared %d task(s) with scope %s from %s",
            len(removed),
            scope.value,
            self.path,
        )
        return removed

    def replace_open_tasks(
        self,
        specs: list[TaskSpec],
        *,
        details: dict[str, Any] | None = None,
    ) -> tuple[list[int], list[int]]:
        """Drop pending and failed tasks, then append `specs` with fresh indices.

        Completed history is kept. Returns `(removed, added)` index lists.
        """

        with self.locked():
            queue = self.load()
            removed = [
                task.index
                for task in queue.tasks
                if task.status in (TaskStatus.PENDING, TaskStatus.FAILED)
            ]
            queue.tasks = [task for task in queue.tasks if task.index not in removed]
            added = append_to_queue(queue, specs)
            record_event(
                queue,
                "repair_applied",
                {**(details or {}), "removed": removed, "added": added},
            )
            self.save(queue)
        logger.warning(
            "Repair applied to %s: removed tasks %s, added tasks %s",
            self.path,
            removed,
            added,
        )
        return removed, added


def append_to_queue(queue: Queue, specs: list[TaskSpec]) -> list[int]:
    """Assign indices and append `specs` to an in-memory queue."""

    start = max(queue.next_index, max((task.index for task in queue.tasks), default=0) + 1)
    index_map = {position: start + position - 1 for position in range(1, len(specs) + 1)}
    created_at = utc_now_iso()

    new_tasks: list[Task] = []
    for position, spec in enumerate(specs, 1):
        for relative in relative_positions(spec.params):
            if relative not in index_map:
                raise QueueInputError(
                    f"Task #{position}: relative reference '$@{relative}' is outside this batch",
                )
        params = rewrite_relative(spec.params, index_map)
        new_tasks.append(
            Task(
                index=index_map[position],
                action=spec.action,
                params=params,
                depends_on=_absolute_depends_on(spec.depends_on, index_map, position=position),
                status=TaskStatus.PENDING,
                created_at=created_at,
                references=find_references(params),
            ),
        )
    queue.tasks.extend(new_tasks)
    queue.next_index = start + len(specs)
    return [task.index for task in new_tasks]


def clear_queue(queue: Queue, scope: ClearScope) -> list[int]:
    if scope == ClearScope.ALL:
        removed = [task.index for task in queue.tasks]
        queue.tasks = []
        return removed
    target = TaskStatus.COMPLETED if scope == ClearScope.COMPLETED else TaskStatus.FAILED
    removed = [task.index for task in queue.tasks if task.status == target]
    queue.tasks = [task for task in queue.tasks if task.status != target]
    return removed


def _absolute_depends_on(
    depends_on: tuple[int | str, ...],
    index_map: dict[int, int],
    *,
    position: int,
) -> tuple[int, ...]:
    resolved: list[int] = []
    for item in depends_on:
        if isinstance(item, str):
            relative = int(item.lstrip("@"))
            if relative not in index_map:
                raise QueueInputError(
                    f"Task #{position}: relative dependency {item!r} is outside this batch",
                )
            value = index_map[relative]
        else:
            value = item
        if value < 1:
            raise QueueInputError(f"Task #{position}: dependsOn index must be >= 1, got {value}")
        if value not in resolved:
            resolved.append(value)
    return tuple(resolved)
