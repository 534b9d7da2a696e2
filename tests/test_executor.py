from __future__ import annotations

import threading
from typing import Any

import allure
import pytest

from dt_queue.engine.backend.base import ActionOutcome
from dt_queue.engine.errors import CyclicDependencyError, StructuralError
from dt_queue.engine.executor import QueueExecutor, execute_queue
from dt_queue.engine.models import Action, ExecutionMode, TaskSpec, TaskStatus
from dt_queue.engine.store import QueueStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Execution"),
]

RECORD = "5D2B6F1E-8C3A-4E7B-9F10-1A2B3C4D5E6F"
GROUP = "11111111-2222-4333-8444-555555555555"


def _statuses(store: QueueStore) -> dict[int, TaskStatus]:
    return {task.index: task.status for task in store.load().tasks}


def test_sequential_round_trip_binds_result_of_earlier_task(
    store: QueueStore,
    fake_executor,
) -> None:
    fake_executor.results[Action.CREATE] = {"uuid": RECORD, "name": "Note"}
    store.append(
        [
            TaskSpec(Action.CREATE, {"name": "Note", "type": "markdown", "database": "Inbox"}),
            TaskSpec(
                Action.MODIFY,
                {"uuid": "$1.uuid", "comment": "Created as $1.name"},
                depends_on=(1,),
            ),
        ],
    )

    result = execute_queue(store, fake_executor)

    assert result.success
    assert result.mode == ExecutionMode.SEQUENTIAL
    assert fake_executor.actions() == [Action.CREATE, Action.MODIFY]
    assert fake_executor.calls[1][1] == {"uuid": RECORD, "comment": "Created as Note"}
    queue = store.load()
    assert [task.status for task in queue.tasks] == [TaskStatus.COMPLETED] * 2
    assert queue.tasks[0].result == {"uuid": RECORD, "name": "Note"}
    assert queue.tasks[1].params["uuid"] == "$1.uuid"
    assert queue.tasks[0].started_at and queue.tasks[0].finished_at
    assert [event.event for event in queue.events][-2:] == ["run_started", "run_finished"]


def test_parallel_runs_independent_tasks_in_one_wave(store: QueueStore, fake_executor) -> None:
    barrier = threading.Barrier(2, timeout=5)

    def search(params: dict[str, Any]) -> ActionOutcome:
        barrier.wait()
        return ActionOutcome.ok({"uuid": params["query"]})

    fake_executor.handlers[Action.SEARCH] = search
    store.append(
        [
            TaskSpec(Action.SEARCH, {"query": "A"}),
            TaskSpec(Action.SEARCH, {"query": "B"}),
            TaskSpec(
                Action.LINK,
                {"source": "$1.uuid", "target": "$2.uuid"},
                depends_on=(1, 2),
            ),
        ],
    )

    result = QueueExecutor(store=store, executor=fake_executor, max_workers=4).run(
        mode=ExecutionMode.PARALLEL,
    )

    assert result.success
    assert result.summary.completed == 3
    assert fake_executor.actions()[-1] == Action.LINK
    assert fake_executor.calls[-1][1] == {"source": "A", "target": "B"}
    assert [report.index for report in result.tasks] == [1, 2, 3]


def test_parallel_poisons_dependents_of_failed_task_and_runs_the_rest(
    store: QueueStore,
    fake_executor,
) -> None:
    fake_executor.failures[Action.DELETE] = "Record not found"
    store.append(
        [
            TaskSpec(Action.DELETE, {"uuid": RECORD}),
            TaskSpec(Action.SEARCH, {"query": "x"}),
            TaskSpec(Action.MODIFY, {"uuid": "$1.uuid", "comment": "c"}),
            TaskSpec(Action.TAG_RENAME, {"from": "a", "to": "b"}, depends_on=(2,)),
        ],
    )

    result = execute_queue(store, fake_executor, mode=ExecutionMode.PARALLEL)

    assert not result.success
    assert _statuses(store) == {
        1: TaskStatus.FAILED,
        2: TaskStatus.COMPLETED,
        3: TaskStatus.FAILED,
        4: TaskStatus.COMPLETED,
    }
    assert result.summary.failed == 2
    assert result.summary.poisoned == 1
    assert Action.MODIFY not in fake_executor.actions()


def test_transactional_halts_at_first_failure(store: QueueStore, fake_executor) -> None:
    fake_executor.failures[Action.DELETE] = "Permission denied"
    store.append(
        [
            TaskSpec(Action.DELETE, {"uuid": RECORD}),
            TaskSpec(Action.SEARCH, {"query": "q"}),
            TaskSpec(Action.TAG_DELETE, {"tag": "old"}, depends_on=(1,)),
        ],
    )

    result = execute_queue(store, fake_executor, mode=ExecutionMode.TRANSACTIONAL)

    assert not result.success
    assert result.halted_at == 1
    assert result.summary.skipped == 2
    assert fake_executor.actions() == [Action.DELETE]
    assert _statuses(store) == {
        1: TaskStatus.FAILED,
        2: TaskStatus.PENDING,
        3: TaskStatus.PENDING,
    }
    assert store.load().tasks[0].error == "Permission denied"
    assert result.to_dict()["halted_at"] == 1


def test_sequential_continues_past_failure_and_poisons_dependents(
    store: QueueStore,
    fake_executor,
) -> None:
    fake_executor.failures[Action.CREATE] = "Database not found"
    store.append(
        [
            TaskSpec(Action.CREATE, {"name": "n", "type": "txt", "database": "Missing"}),
            TaskSpec(Action.TAG_ADD, {"uuid": "$1.uuid", "tags": ["x"]}),
            TaskSpec(Action.SEARCH, {"query": "independent"}),
        ],
    )

    result = execute_queue(store, fake_executor)

    assert not result.success
    assert fake_executor.actions() == [Action.CREATE, Action.SEARCH]
    queue = store.load()
    assert queue.tasks[1].status == TaskStatus.FAILED
    assert "cannot resolve $1.uuid" in (queue.tasks[1].error or "")
    assert queue.tasks[2].status == TaskStatus.COMPLETED
    poisoned = next(report for report in result.tasks if report.index == 2)
    assert not poisoned.dispatched
    assert result.summary.poisoned == 1


@pytest.mark.parametrize("mode", [ExecutionMode.SEQUENTIAL, ExecutionMode.PARALLEL])
def test_failure_poisons_dependents_transitively(
    store: QueueStore,
    fake_executor,
    mode: ExecutionMode,
) -> None:
    fake_executor.failures[Action.DELETE] = "Record not found"
    store.append(
        [
            TaskSpec(Action.DELETE, {"uuid": RECORD}),
            TaskSpec(Action.SEARCH, {"query": "x"}, depends_on=(1,)),
            TaskSpec(Action.MODIFY, {"uuid": "$2.uuid", "comment": "c"}),
        ],
    )

    result = execute_queue(store, fake_executor, mode=mode)

    assert not result.success
    assert fake_executor.actions() == [Action.DELETE]
    assert _statuses(store) == {1: TaskStatus.FAILED, 2: TaskStatus.FAILED, 3: TaskStatus.FAILED}
    reports = {report.index: report for report in result.tasks}
    assert reports[1].dispatched
    assert not reports[2].dispatched
    assert not reports[3].dispatched
    assert reports[2].error == "Task 2: cannot resolve dependsOn 1: task 1 failed"
    assert reports[3].error == "Task 3: cannot resolve $2.uuid: task 2 failed"
    assert result.summary.failed == 3
    assert result.summary.poisoned == 2


def test_missing_result_field_poisons_consumer(store: QueueStore, fake_executor) -> None:
    fake_executor.results[Action.CREATE] = {"name": "no uuid here"}
    store.append(
        [
            TaskSpec(Action.CREATE, {"name": "n", "type": "txt", "database": "Inbox"}),
            TaskSpec(Action.DELETE, {"uuid": "$1.uuid"}),
        ],
    )

    result = execute_queue(store, fake_executor)

    assert not result.success
    assert _statuses(store) == {1: TaskStatus.COMPLETED, 2: TaskStatus.FAILED}
    assert "no field 'uuid'" in (store.load().tasks[1].error or "")


def test_executor_exception_is_recorded_on_the_task(store: QueueStore, fake_executor) -> None:
    def explode(params: dict[str, Any]) -> ActionOutcome:
        raise RuntimeError("boom")

    fake_executor.handlers[Action.SEARCH] = explode
    store.append(
        [
            TaskSpec(Action.SEARCH, {"query": "q"}),
            TaskSpec(Action.TAG_DELETE, {"tag": "t"}),
        ],
    )

    result = execute_queue(store, fake_executor)

    assert result.summary.failed == 1
    assert result.summary.completed == 1
    assert store.load().tasks[0].error == "RuntimeError: boom"


def test_dry_run_reports_plan_without_dispatch_or_writes(
    store: QueueStore,
    fake_executor,
) -> None:
    store.append(
        [
            TaskSpec(Action.CREATE, {"name": "n", "type": "txt", "database": "Inbox"}),
            TaskSpec(Action.DELETE, {"uuid": "$1.uuid"}),
        ],
    )
    store.append([TaskSpec(Action.MOVE, {"uuid": "$2.uuid", "destination": GROUP})])
    queue = store.load()
    queue.tasks[0].status = TaskStatus.COMPLETED
    queue.tasks[0].result = {"uuid": RECORD}
    store.save(queue)
    before = store.path.read_bytes()

    result = execute_queue(store, fake_executor, dry_run=True)

    assert result.dry_run
    assert result.success
    assert fake_executor.calls == []
    assert store.path.read_bytes() == before
    assert [report.index for report in result.tasks] == [2, 3]
    assert result.tasks[0].params == {"uuid": RECORD}
    assert result.tasks[1].params == {"uuid": "$2.uuid", "destination": GROUP}
    assert result.summary.skipped == 2


def test_dry_run_predicts_transitive_poisoning_like_a_real_run(
    store: QueueStore,
    fake_executor,
) -> None:
    store.append(
        [
            TaskSpec(Action.DELETE, {"uuid": RECORD}),
            TaskSpec(Action.SEARCH, {"query": "x"}, depends_on=(1,)),
            TaskSpec(Action.SEARCH, {"query": "y"}, depends_on=(2,)),
            TaskSpec(Action.TAG_DELETE, {"tag": "old"}),
        ],
    )
    queue = store.load()
    queue.tasks[0].status = TaskStatus.FAILED
    store.save(queue)

    planned = execute_queue(store, fake_executor, dry_run=True)
    actual = execute_queue(store, fake_executor)

    assert not planned.success
    assert [(report.index, report.error) for report in planned.tasks] == [
        (2, "Task 2: cannot resolve dependsOn 1: task 1 failed"),
        (3, "Task 3: cannot resolve dependsOn 2: task 2 failed"),
        (4, None),
    ]
    assert not actual.success
    assert [(report.index, report.error) for report in actual.tasks] == [
        (report.index, report.error) for report in planned.tasks
    ]


def test_task_left_running_is_reset_and_rerun(store: QueueStore, fake_executor) -> None:
    store.append([TaskSpec(Action.SEARCH, {"query": "q"})])
    queue = store.load()
    queue.tasks[0].status = TaskStatus.RUNNING
    store.save(queue)

    result = execute_queue(store, fake_executor)

    assert result.success
    assert fake_executor.actions() == [Action.SEARCH]
    assert _statuses(store) == {1: TaskStatus.COMPLETED}


def test_later_run_resolves_against_stored_results_without_redispatch(
    store: QueueStore,
    fake_executor,
) -> None:
    fake_executor.results[Action.CREATE] = {"uuid": RECORD}
    store.append([TaskSpec(Action.CREATE, {"name": "n", "type": "txt", "database": "Inbox"})])
    execute_queue(store, fake_executor)
    store.append([TaskSpec(Action.TAG_ADD, {"uuid": "$1.uuid", "tags": ["done"]})])

    execute_queue(store, fake_executor)

    assert fake_executor.actions() == [Action.CREATE, Action.TAG_ADD]
    assert fake_executor.calls[1][1] == {"uuid": RECORD, "tags": ["done"]}


def test_structural_errors_block_every_dispatch(store: QueueStore, fake_executor) -> None:
    store.append([TaskSpec(Action.SEARCH, {"query": "ok"}), TaskSpec(Action.DELETE, {})])

    with pytest.raises(StructuralError):
        execute_queue(store, fake_executor)

    assert fake_executor.calls == []
    assert _statuses(store) == {1: TaskStatus.PENDING, 2: TaskStatus.PENDING}


def test_cycle_blocks_every_dispatch(store: QueueStore, fake_executor) -> None:
    store.append(
        [
            TaskSpec(Action.SEARCH, {"query": "ok"}),
            TaskSpec(Action.SEARCH, {"query": "x"}),
        ],
    )
    queue = store.load()
    queue.tasks[0].depends_on = (2,)
    queue.tasks[1].depends_on = (1,)
    store.save(queue)

    with pytest.raises(CyclicDependencyError):
        execute_queue(store, fake_executor)

    assert fake_executor.calls == []


def test_default_mode_comes_from_the_queue(tmp_path, fake_executor) -> None:
    store = QueueStore(tmp_path / "q.json", default_mode=ExecutionMode.TRANSACTIONAL)
    fake_executor.failures[Action.SEARCH] = "nope"
    store.append(
        [
            TaskSpec(Action.SEARCH, {"query": "q"}),
            TaskSpec(Action.TAG_DELETE, {"tag": "t"}),
        ],
    )

    result = execute_queue(store, fake_executor)

    assert result.mode == ExecutionMode.TRANSACTIONAL
    assert result.halted_at == 1
    assert fake_executor.actions() == [Action.SEARCH]


def test_max_workers_must_be_positive(store: QueueStore, fake_executor) -> None:
    with pytest.raises(ValueError, match="max_workers"):
        QueueExecutor(store=store, executor=fake_executor, max_workers=0)
