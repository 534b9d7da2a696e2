"""Queue executor: runs pending tasks under a concurrency mode."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

from dt_queue.engine.backend.base import ActionExecutor, ActionOutcome
from dt_queue.engine.errors import ExecutionError, UnresolvedReferenceError
from dt_queue.engine.models import (
    ExecutionMode,
    Queue,
    RunResult,
    RunSummary,
    Task,
    TaskReport,
    TaskStatus,
    utc_now_iso,
)
from dt_queue.engine.resolver import (
    completed_results,
    poison_reason,
    ready_tasks,
    resolve_params,
    topological_order,
)
from dt_queue.engine.store import QueueStore, record_event
from dt_queue.engine.validator import ensure_executable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Prepared:
    """Task cleared for dispatch with its resolved params."""

    task: Task
    params: dict[str, Any]


class QueueExecutor:
    """Executes the pending tasks of one queue store.

    The store lock is held for the whole run and the queue is persisted after
    every task state transition. Worker threads in parallel mode only call the
    action executor; all task mutation happens on the scheduling thread.
    """

    def __init__(
        self,
        *,
        store: QueueStore,
        executor: ActionExecutor,
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be a positive integer")
        self.store = store
        self.executor = executor
        self.max_workers = max_workers

    def run(self, *, mode: ExecutionMode | None = None, dry_run: bool = False) -> RunResult:
        with self.store.locked():
            queue = self.store.load()
            selected_mode = mode or queue.default_mode
            ensure_executable(queue)

            if dry_run:
                return self._dry_run(queue, selected_mode)

            self._reset_interrupted(queue)
            pending = queue.pending()
            logger.info(
                "Starting %s run of %d pending task(s) from %s",
                selected_mode.value,
                len(pending),
                self.store.path,
            )
            record_event(
                queue,
                "run_started",
                {"mode": selected_mode.value, "pending": [task.index for task in pending]},
            )
            self.store.save(queue)

            summary = RunSummary()
            reports: list[TaskReport] = []
            if selected_mode == ExecutionMode.PARALLEL:
                halted_at = self._run_parallel(queue, pending, summary, reports)
            else:
                halted_at = self._run_ordered(
                    queue,
                    pending,
                    summary,
                    reports,
                    halt_on_failure=selected_mode == ExecutionMode.TRANSACTIONAL,
                )

            result = RunResult(
                success=summary.failed == 0 and halted_at is None,
                mode=selected_mode,
                dry_run=False,
                summary=summary,
                tasks=reports,
                halted_at=halted_at,
            )
            record_event(
                queue,
                "run_finished",
                {
                    "mode": selected_mode.value,
                    "success": result.success,
                    "completed": summary.completed,
                    "failed": summary.failed,
                    "skipped": summary.skipped,
                    "poisoned": summary.poisoned,
                },
            )
            self.store.save(queue)
        logger.info(
            "Run finished: %d completed, %d failed (%d poisoned), %d skipped",
            summary.completed,
            summary.failed,
            summary.poisoned,
            summary.skipped,
        )
        return result

    def _dry_run(self, queue: Queue, mode: ExecutionMode) -> RunResult:
        """Plan the run without dispatch; poisoning carries down the order."""

        results = completed_results(queue)
        statuses = {task.index: task.status for task in queue.tasks}
        reports: list[TaskReport] = []
        for task in topological_order(self._schedulable(queue)):
            reason = poison_reason(task, statuses)
            if reason is not None:
                statuses[task.index] = TaskStatus.FAILED
            reports.append(
                TaskReport(
                    index=task.index,
                    action=task.action,
                    status=task.status,
                    params=resolve_params(task, results, strict=False),
                    dispatched=False,
                    error=reason,
                ),
            )
        return RunResult(
            success=not any(report.error for report in reports),
            mode=mode,
            dry_run=True,
            summary=RunSummary(skipped=len(reports)),
            tasks=reports,
        )

    @staticmethod
    def _schedulable(queue: Queue) -> list[Task]:
        return [
            task
            for task in queue.tasks
            if task.status in (TaskStatus.PENDING, TaskStatus.RUNNING)
        ]

    def _reset_interrupted(self, queue: Queue) -> None:
        for task in queue.tasks:
            if task.status == TaskStatus.RUNNING:
                logger.warning("Task %d was left running by an earlier run; resetting", task.index)
                task.status = TaskStatus.PENDING
                task.started_at = None

    def _run_ordered(  # noqa: PLR0913
        self,
        queue: Queue,
        pending: list[Task],
        summary: RunSummary,
        reports: list[TaskReport],
        *,
        halt_on_failure: bool,
    ) -> int | None:
        halted_at: int | None = None
        for task in topological_order(pending):
            if halted_at is not None:
                summary.skipped += 1
                reports.append(_report(task, task.params, dispatched=False))
                continue

            prepared = self._prepare(queue, task, summary, reports)
            if prepared is not None:
                self._mark_running(task)
                self.store.save(queue)
                outcome = _dispatch(self.executor, prepared)
                self._finish(prepared, outcome, summary, reports)
                self.store.save(queue)

            if halt_on_failure and task.status == TaskStatus.FAILED:
                halted_at = task.index
                logger.warning(
                    "Transactional run halted at task %d; remaining tasks stay pending",
                    task.index,
                )
        return halted_at

    def _run_parallel(
        self,
        queue: Queue,
        pending: list[Task],
        summary: RunSummary,
        reports: list[TaskReport],
    ) -> int | None:
        remaining = list(pending)
        wave_number = 0
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while remaining:
                statuses = {task.index: task.status for task in queue.tasks}
                ready = ready_tasks(remaining, statuses)
                if not ready:
                    break
                wave_number += 1
                wave: list[_Prepared] = []
                for task in ready:
                    prepared = self._prepare(queue, task, summary, reports)
                    if prepared is not None:
                        self._mark_running(task)
                        wave.append(prepared)
                self.store.save(queue)

                if wave:
                    logger.info(
                        "Wave %d: dispatching tasks %s",
                        wave_number,
                        [item.task.index for item in wave],
                    )
                    futures = {
                        pool.submit(_dispatch, self.executor, item): item for item in wave
                    }
                    wait(futures)
                    for future, item in sorted(
                        futures.items(),
                        key=lambda pair: pair[1].task.index,
                    ):
                        self._finish(item, future.result(), summary, reports)
                    self.store.save(queue)
                remaining = [task for task in remaining if task.status == TaskStatus.PENDING]

        for task in remaining:
            summary.skipped += 1
            reports.append(_report(task, task.params, dispatched=False))
        return None

    def _prepare(
        self,
        queue: Queue,
        task: Task,
        summary: RunSummary,
        reports: list[TaskReport],
    ) -> _Prepared | None:
        """Poison the task or resolve its params for dispatch."""

        statuses = {item.index: item.status for item in queue.tasks}
        reason = poison_reason(task, statuses)
        if reason is None:
            try:
                return _Prepared(task=task, params=resolve_params(task, completed_results(queue)))
            except UnresolvedReferenceError as error:
                reason = str(error)

        logger.warning("Task %d poisoned: %s", task.index, reason)
        task.status = TaskStatus.FAILED
        task.error = reason
        task.finished_at = utc_now_iso()
        summary.failed += 1
        summary.poisoned += 1
        reports.append(_report(task, task.params, dispatched=False))
        self.store.save(queue)
        return None

    @staticmethod
    def _mark_running(task: Task) -> None:
        logger.info("Dispatching task %d (%s)", task.index, task.action.value)
        task.status = TaskStatus.RUNNING
        task.started_at = utc_now_iso()
        task.error = None

    @staticmethod
    def _finish(
        prepared: _Prepared,
        outcome: ActionOutcome,
        summary: RunSummary,
        reports: list[TaskReport],
    ) -> None:
        task = prepared.task
        task.finished_at = utc_now_iso()
        if outcome.success:
            task.status = TaskStatus.COMPLETED
            task.result = outcome.result or {}
            task.error = None
            summary.completed += 1
            logger.info("Task %d completed", task.index)
        else:
            error = ExecutionError(task.index, outcome.error or "Action executor reported failure")
            task.status = TaskStatus.FAILED
            task.error = error.message
            summary.failed += 1
            logger.warning("%s", error)
        reports.append(_report(task, prepared.params, dispatched=True))


def _dispatch(executor: ActionExecutor, prepared: _Prepared) -> ActionOutcome:
    try:
        return executor.invoke(prepared.task.action, prepared.params)
    except Exception as error:  # noqa: BLE001
        logger.exception("Action executor raised for task %d", prepared.task.index)
        return ActionOutcome.failed(f"{type(error).__name__}: {error}")


def _report(task: Task, params: dict[str, Any], *, dispatched: bool) -> TaskReport:
    return TaskReport(
        index=task.index,
        action=task.action,
        status=task.status,
        params=params,
        dispatched=dispatched,
        result=task.result if task.status == TaskStatus.COMPLETED else None,
        error=task.error,
    )


def execute_queue(
    store: QueueStore,
    executor: ActionExecutor,
    *,
    mode: ExecutionMode | None = None,
    dry_run: bool = False,
    max_workers: int = 4,
) -> RunResult:
    """Validate and run the pending tasks of `store`."""

    return QueueExecutor(store=store, executor=executor, max_workers=max_workers).run(
        mode=mode,
        dry_run=dry_run,
    )
