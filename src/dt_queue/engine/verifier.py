"""Live verification of resource identifiers against the running application.

Read-only: every check is an `ActionExecutor.exists` lookup. Identifiers that
still hold variable references are skipped and counted, since they only become
concrete once their producer runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from dt_queue.engine.backend.base import ActionExecutor, LookupKind
from dt_queue.engine.errors import ExternalSystemUnavailable
from dt_queue.engine.models import (
    Action,
    Queue,
    QueueIssue,
    Task,
    TaskStatus,
    VerificationCounts,
    VerificationReport,
)
from dt_queue.engine.references import contains_reference
from dt_queue.engine.validator import is_record_uuid

logger = logging.getLogger(__name__)

_RECORD_KEYS = ("uuid", "destGroupUuid", "promptRecord", "parentUUID")
_RECORD_LIST_KEYS = ("uuids", "records")
_LOCATION_KEYS = ("destination", "group", "groupPath")
_LINK_KEYS = ("source", "target")


@dataclass(slots=True, frozen=True)
class Identifier:
    """One concrete thing to look up."""

    kind: LookupKind
    value: str
    database: str | None = None

    def describe(self) -> str:
        if self.kind == LookupKind.RECORD:
            return f"Record not found: {self.value}"
        if self.kind == LookupKind.DATABASE:
            return f"Database not found: {self.value}"
        return f"Group path not found: {self.value} in database {self.database}"


def collect_identifiers(task: Task) -> tuple[list[Identifier], int]:
    """Identifiers mentioned by one task, plus the count of skipped references."""

    params = task.params
    found: list[Identifier] = []
    skipped = 0
    database = params.get("database") if isinstance(params.get("database"), str) else None
    database_is_concrete = database is not None and not contains_reference(database)

    def add_record(value: object) -> None:
        nonlocal skipped
        if not isinstance(value, str) or not value.strip():
            return
        if contains_reference(value):
            skipped += 1
            return
        found.append(Identifier(LookupKind.RECORD, value.strip()))

    def add_location(value: object) -> None:
        nonlocal skipped
        if not isinstance(value, str) or not value.strip():
            return
        if contains_reference(value):
            skipped += 1
            return
        if is_record_uuid(value):
            found.append(Identifier(LookupKind.RECORD, value.strip()))
        elif value.startswith("/"):
            if database_is_concrete:
                found.append(Identifier(LookupKind.PATH, value, database))
            else:
                skipped += 1

    for key in _RECORD_KEYS:
        add_record(params.get(key))
    for key in _RECORD_LIST_KEYS:
        values = params.get(key)
        if isinstance(values, list):
            for value in values:
                add_record(value)
        elif isinstance(values, str) and contains_reference(values):
            skipped += 1
    for key in _LOCATION_KEYS:
        add_location(params.get(key))
    destinations = params.get("destinations")
    if isinstance(destinations, list):
        for value in destinations:
            add_location(value)
    if task.action in (Action.LINK, Action.UNLINK):
        for key in _LINK_KEYS:
            add_record(params.get(key))

    if database is not None:
        if database_is_concrete:
            found.insert(0, Identifier(LookupKind.DATABASE, database))
        else:
            skipped += 1
    return found, skipped


def verify_queue(
    queue: Queue,
    executor: ActionExecutor,
    *,
    require_running: bool = True,
) -> VerificationReport:
    """Check every identifier of every pending task; each is looked up once."""

    if require_running and not executor.is_available():
        raise ExternalSystemUnavailable(
            "DEVONthink is not running. Please launch DEVONthink and try again.",
        )

    cache: dict[Identifier, bool] = {}
    issues: list[QueueIssue] = []
    skipped_total = 0
    for task in queue.tasks:
        if task.status != TaskStatus.PENDING:
            continue
        identifiers, skipped = collect_identifiers(task)
        skipped_total += skipped
        reported: set[Identifier] = set()
        for identifier in identifiers:
            if identifier not in cache:
                cache[identifier] = executor.exists(
                    identifier.kind,
                    identifier.value,
                    identifier.database,
                )
                logger.debug(
                    "Lookup %s %s -> %s",
                    identifier.kind.value,
                    identifier.value,
                    cache[identifier],
                )
            if not cache[identifier] and identifier not in reported:
                reported.add(identifier)
                issues.append(QueueIssue(task.index, identifier.describe(), ref=identifier.value))

    checked = VerificationCounts(
        uuids=sum(1 for item in cache if item.kind == LookupKind.RECORD),
        paths=sum(1 for item in cache if item.kind == LookupKind.PATH),
        databases=sum(1 for item in cache if item.kind == LookupKind.DATABASE),
    )
    logger.info(
        "Verified %d record(s), %d path(s), %d database(s); %d issue(s)",
        checked.uuids,
        checked.paths,
        checked.databases,
        len(issues),
    )
    return VerificationReport(
        valid=not issues,
        checked=checked,
        skipped_references=skipped_total,
        issues=issues,
    )
