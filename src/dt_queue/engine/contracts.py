"""File contracts: task input documents and the persisted queue format."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from dt_queue.engine.errors import QueueInputError, QueueStoreError
from dt_queue.engine.models import (
    Action,
    ExecutionMode,
    Queue,
    QueueEvent,
    Task,
    TaskSpec,
    TaskStatus,
)
from dt_queue.engine.references import find_references

STORE_FORMAT_VERSION = 1


def write_json_atomic(path: Path, payload: object) -> None:
    """Persist JSON via temp file + `os.replace` in the target directory."""

    path.parent.mkdir(parents=True, exist_ok=True)
    text = json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.write("\n")
            handle.flush()
            os.fsync(handle.fileno())
        Path(temp_name).replace(path)
    except BaseException:
        Path(temp_name).unlink(missing_ok=True)
        raise


def parse_task_input(text: str, *, source: str = "<input>") -> list[TaskSpec]:
    """Parse a YAML or JSON task document into task specs.

    Accepts a top-level list of tasks or an object wrapping `{"tasks": [...]}`.
    """

    if not text.strip():
        raise QueueInputError(f"No tasks found in {source}")
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError:
        try:
            document = json.loads(text)
        except json.JSONDecodeError as error:
            raise QueueInputError(f"{source} is neither valid YAML nor JSON: {error}") from error

    if isinstance(document, dict) and isinstance(document.get("tasks"), list):
        items = document["tasks"]
    elif isinstance(document, list):
        items = document
    else:
        raise QueueInputError(
            f'{source} must be a list of tasks or an object with a "tasks" list',
        )
    return [task_spec_from_dict(item, position=position) for position, item in enumerate(items, 1)]


def task_spec_from_dict(raw: object, *, position: int) -> TaskSpec:
    """Build one `TaskSpec` from an input mapping. Input `index` fields are ignored."""

    if not isinstance(raw, dict):
        raise QueueInputError(f"Task #{position} must be an object")
    action_raw = raw.get("action")
    if not isinstance(action_raw, str) or not action_raw.strip():
        raise QueueInputError(f"Task #{position} is missing an action")
    try:
        action = Action.parse(action_raw)
    except ValueError as error:
        raise QueueInputError(f"Task #{position}: {error}") from error

    params = raw.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise QueueInputError(f"Task #{position}: params must be an object")

    depends_raw = raw.get("dependsOn", raw.get("depends_on", []))
    return TaskSpec(
        action=action,
        params=dict(params),
        depends_on=_parse_depends_on(depends_raw, position=position),
    )


def _parse_depends_on(raw: object, *, position: int) -> tuple[int | str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (int, str)) and not isinstance(raw, bool):
        raw = [raw]
    if not isinstance(raw, list):
        raise QueueInputError(f"Task #{position}: dependsOn must be a list of task indices")
    parsed: list[int | str] = []
    for item in raw:
        if isinstance(item, bool):
            raise QueueInputError(f"Task #{position}: invalid dependsOn entry {item!r}")
        if isinstance(item, int):
            parsed.append(item)
            continue
        if isinstance(item, str):
            text = item.strip()
            if text.startswith("@") and text[1:].isdigit():
                parsed.append(text)
                continue
            if text.isdigit():
                parsed.append(int(text))
                continue
        raise QueueInputError(f"Task #{position}: invalid dependsOn entry {item!r}")
    return tuple(parsed)


def task_to_dict(task: Task) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "index": task.index,
        "action": task.action.value,
        "params": task.params,
        "dependsOn": list(task.depends_on),
        "status": task.status.value,
        "created_at": task.created_at,
    }
    if task.result is not None:
        payload["result"] = task.result
    if task.error is not None:
        payload["error"] = task.error
    if task.started_at is not None:
        payload["started_at"] = task.started_at
    if task.finished_at is not None:
        payload["finished_at"] = task.finished_at
    return payload


def task_from_dict(raw: object, *, position: int) -> Task:
    """Load one persisted task; `references` are re-derived from params."""

    if not isinstance(raw, dict):
        raise QueueStoreError(f"Stored task #{position} must be an object")
    try:
        action = Action.parse(str(raw.get("action", "")))
        status = TaskStatus(str(raw.get("status", TaskStatus.PENDING.value)))
    except ValueError as error:
        raise QueueStoreError(f"Stored task #{position}: {error}") from error

    index = raw.get("index", position)
    if not isinstance(index, int) or isinstance(index, bool) or index < 1:
        raise QueueStoreError(f"Stored task #{position} has invalid index {index!r}")
    params = raw.get("params") or {}
    if not isinstance(params, dict):
        raise QueueStoreError(f"Stored task {index}: params must be an object")
    depends_raw = raw.get("dependsOn", raw.get("depends_on", [])) or []
    if not isinstance(depends_raw, list) or not all(
        isinstance(item, int) and not isinstance(item, bool) for item in depends_raw
    ):
        raise QueueStoreError(f"Stored task {index}: dependsOn must be a list of integers")
    result = raw.get("result")
    return Task(
        index=index,
        action=action,
        params=params,
        depends_on=tuple(depends_raw),
        status=status,
        result=result if isinstance(result, dict) else None,
        error=_optional_str(raw.get("error")),
        created_at=str(raw.get("created_at") or ""),
        started_at=_optional_str(raw.get("started_at")),
        finished_at=_optional_str(raw.get("finished_at")),
        references=find_references(params),
    )


def queue_to_payload(queue: Queue) -> dict[str, Any]:
    return {
        "version": STORE_FORMAT_VERSION,
        "created_at": queue.created_at,
        "default_mode": queue.default_mode.value,
        "next_index": queue.next_index,
        "tasks": [task_to_dict(task) for task in queue.tasks],
        "events": [
            {"at": event.at, "event": event.event, "details": event.details}
            for event in queue.events
        ],
    }


def queue_from_payload(payload: object, *, default_mode: ExecutionMode) -> Queue:
    """Build a `Queue` from the stored document, a bare list or `{tasks: [...]}`."""

    if isinstance(payload, list):
        payload = {"tasks": payload}
    if not isinstance(payload, dict) or not isinstance(payload.get("tasks", []), list):
        raise QueueStoreError('Queue store must hold a list of tasks or an object with "tasks"')

    tasks = [
        task_from_dict(item, position=position)
        for position, item in enumerate(payload.get("tasks", []), 1)
    ]
    seen: set[int] = set()
    for task in tasks:
        if task.index in seen:
            raise QueueStoreError(f"Queue store holds duplicate task index {task.index}")
        seen.add(task.index)
    tasks.sort(key=lambda task: task.index)

    try:
        mode = ExecutionMode(str(payload.get("default_mode") or default_mode.value))
    except ValueError as error:
        raise QueueStoreError(f"Queue store has unknown default_mode: {error}") from error

    high_water = max((task.index for task in tasks), default=0) + 1
    next_index = payload.get("next_index", high_water)
    if not isinstance(next_index, int) or isinstance(next_index, bool):
        raise QueueStoreError("Queue store next_index must be an integer")

    events = [
        QueueEvent(
            at=str(item.get("at", "")),
            event=str(item.get("event", "")),
            details=item.get("details") if isinstance(item.get("details"), dict) else {},
        )
        for item in payload.get("events", []) or []
        if isinstance(item, dict)
    ]
    return Queue(
        tasks=tasks,
        created_at=str(payload.get("created_at") or ""),
        default_mode=mode,
        next_index=max(next_index, high_water),
        events=events,
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)
