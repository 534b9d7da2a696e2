"""Structural validation of queued tasks: parameter contracts and graph shape."""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from dt_queue.engine.errors import StructuralError
from dt_queue.engine.models import Action, Queue, QueueIssue, Task, ValidationReport
from dt_queue.engine.references import contains_reference, is_reference
from dt_queue.engine.resolver import check_graph, graph_issues

RECORD_UUID_PATTERN = re.compile(
    r"^(?:x-devonthink-item://)?"
    r"[0-9A-Fa-f]{8}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{4}-[0-9A-Fa-f]{12}$",
)

LIST_KEYS = frozenset(
    {
        "uuids",
        "records",
        "destinations",
        "tags",
        "sources",
        "tagsAdd",
        "tagsRemove",
        "tagsReplace",
    },
)
UUID_KEYS = frozenset({"uuid", "destGroupUuid", "promptRecord"})
UUID_LIST_KEYS = frozenset({"uuids", "records"})
MODIFY_FIELDS = (
    "newName",
    "comment",
    "tagsAdd",
    "tagsRemove",
    "tagsReplace",
    "destGroupUuid",
    "customMetadata",
)


@dataclass(slots=True, frozen=True)
class ActionContract:
    """Required parameters for one action; each group is satisfied by any one key."""

    required: tuple[tuple[str, ...], ...]
    uuid_keys: frozenset[str] = frozenset()
    summary: str = ""


ACTION_CONTRACTS: dict[Action, ActionContract] = {
    Action.CREATE: ActionContract(
        required=(("name",), ("type",), ("database", "group")),
        summary="name, type, and database or a UUID group",
    ),
    Action.DELETE: ActionContract(required=(("uuid", "uuids"),), summary="uuid or uuids"),
    Action.MOVE: ActionContract(
        required=(("uuid", "uuids"), ("destination",)),
        summary="uuid or uuids, destination",
    ),
    Action.MODIFY: ActionContract(
        required=(("uuid",), MODIFY_FIELDS),
        summary="uuid plus at least one of " + ", ".join(MODIFY_FIELDS),
    ),
    Action.REPLICATE: ActionContract(
        required=(("uuid",), ("destination", "destinations")),
        summary="uuid, destination or destinations",
    ),
    Action.DUPLICATE: ActionContract(
        required=(("uuid", "uuids"), ("destination",)),
        summary="uuid or uuids, destination",
    ),
    Action.CONVERT: ActionContract(required=(("uuid",),), summary="uuid (to defaults to simple)"),
    Action.TAG_ADD: ActionContract(
        required=(("uuid", "uuids"), ("tags",)),
        summary="uuid or uuids, non-empty tags",
    ),
    Action.TAG_REMOVE: ActionContract(
        required=(("uuid", "uuids"), ("tags",)),
        summary="uuid or uuids, non-empty tags",
    ),
    Action.TAG_MERGE: ActionContract(
        required=(("target",), ("sources",)),
        summary="target, non-empty sources",
    ),
    Action.TAG_RENAME: ActionContract(required=(("from",), ("to",)), summary="from, to"),
    Action.TAG_DELETE: ActionContract(required=(("tag", "tags"),), summary="tag or tags"),
    Action.LINK: ActionContract(
        required=(("source",), ("target", "wiki", "seeAlso", "search", "chat")),
        uuid_keys=frozenset({"source", "target"}),
        summary="source, and target or any of wiki/seeAlso/search/chat",
    ),
    Action.UNLINK: ActionContract(
        required=(("source",),),
        uuid_keys=frozenset({"source", "target"}),
        summary="source (target optional)",
    ),
    Action.ORGANIZE: ActionContract(required=(("uuid", "uuids"),), summary="uuid or uuids"),
    Action.SUMMARIZE: ActionContract(required=(("uuid", "uuids"),), summary="uuid or uuids"),
    Action.SEARCH: ActionContract(required=(("query",),), summary="non-empty query"),
    Action.CHAT: ActionContract(
        required=(("prompt", "promptRecord"),),
        summary="prompt or promptRecord",
    ),
}


def is_record_uuid(value: object) -> bool:
    return isinstance(value, str) and RECORD_UUID_PATTERN.match(value.strip()) is not None


def _is_present(value: object) -> bool:
    if value is None:
        return False
    if isinstance(value, (str, list, dict)):
        return bool(value.strip()) if isinstance(value, str) else bool(value)
    return value is not False


def _check_create(params: Mapping[str, Any]) -> list[str]:
    if _is_present(params.get("database")):
        return []
    group = params.get("group")
    if _is_present(group) and not (is_record_uuid(group) or is_reference(group)):
        return ["group must be a record UUID when database is not given"]
    return []


_EXTRA_CHECKS: dict[Action, Callable[[Mapping[str, Any]], list[str]]] = {
    Action.CREATE: _check_create,
}


def contract_issues(action: Action, params: object) -> list[str]:
    """Messages for every contract violation of one task's params."""

    if not isinstance(params, Mapping):
        return ["params must be an object"]
    contract = ACTION_CONTRACTS[action]
    messages: list[str] = []

    for group in contract.required:
        if not any(_is_present(params.get(key)) for key in group):
            if len(group) == 1:
                messages.append(f"{action.value} requires {group[0]!r}")
            else:
                options = ", ".join(repr(key) for key in group)
                messages.append(f"{action.value} requires one of {options}")

    for key in sorted(LIST_KEYS & params.keys()):
        value = params[key]
        if value is None or is_reference(value):
            continue
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            messages.append(f"{key} must be a list of strings")

    for key in sorted((UUID_KEYS | contract.uuid_keys) & params.keys()):
        value = params[key]
        if value is None or is_reference(value) or contains_reference(value):
            continue
        if not is_record_uuid(value):
            messages.append(f"{key} must be a record UUID, got {value!r}")

    for key in sorted(UUID_LIST_KEYS & params.keys()):
        value = params[key]
        if not isinstance(value, list):
            continue
        invalid = [
            item
            for item in value
            if isinstance(item, str) and not (is_record_uuid(item) or contains_reference(item))
        ]
        if invalid:
            messages.append(f"{key} must hold record UUIDs, got {invalid[0]!r}")

    extra = _EXTRA_CHECKS.get(action)
    if extra is not None:
        messages.extend(extra(params))
    return messages


def task_issues(task: Task) -> list[QueueIssue]:
    messages = contract_issues(task.action, task.params)
    return [QueueIssue(task.index, message) for message in messages]


def validate_queue(queue: Queue) -> ValidationReport:
    """Check every non-terminal task and the dependency graph. Never mutates `queue`."""

    errors: list[QueueIssue] = []
    for task in queue.tasks:
        if task.status.is_terminal:
            continue
        errors.extend(task_issues(task))
    errors.extend(graph_issues(queue))
    return ValidationReport(valid=not errors, errors=errors)


def ensure_executable(queue: Queue) -> None:
    """Pre-flight for execution: graph errors raise first, then structural ones."""

    check_graph(queue)
    report = validate_queue(queue)
    if not report.valid:
        raise StructuralError(report.errors)


def render_contract_table() -> str:
    """Plain-text action contract table, used in repair prompts."""

    return "\n".join(
        f"- {action.value}: {contract.summary}" for action, contract in ACTION_CONTRACTS.items()
    )
