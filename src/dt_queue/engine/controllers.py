"""Controllers for queue CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import rich_click as click

from dt_queue.config import Settings
from dt_queue.engine.backend import (
    ActionExecutor,
    CliAgentRunner,
    JxaScriptRunner,
    OsascriptActionExecutor,
)
from dt_queue.engine.contracts import parse_task_input, task_to_dict
from dt_queue.engine.errors import ExternalSystemUnavailable, QueueError, QueueInputError
from dt_queue.engine.executor import QueueExecutor
from dt_queue.engine.models import (
    Action,
    ClearScope,
    ExecutionMode,
    Queue,
    QueueIssue,
    RunResult,
    Task,
    TaskSpec,
    TaskStatus,
)
from dt_queue.engine.repair import RepairAdvisor, RepairProposal, failure_issues
from dt_queue.engine.routing import resolve_repair_routing
from dt_queue.engine.store import QueueStore
from dt_queue.engine.validator import validate_queue
from dt_queue.engine.verifier import verify_queue

logger = logging.getLogger(__name__)

NOT_RUNNING_MESSAGE = "DEVONthink is not running. Please launch DEVONthink and try again."

ActionExecutorFactory = Callable[[Settings], ActionExecutor]


@dataclass(slots=True)
class QueueStatusCommand:
    """CLI input for queue status and list."""

    store_path: Path | None
    include_completed: bool = False
    json_output: bool = False


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for appending a single task."""

    store_path: Path | None
    action: str
    params: dict[str, Any] = field(default_factory=dict)
    param_assignments: tuple[str, ...] = ()
    depends_on: tuple[int, ...] = ()
    json_output: bool = False


@dataclass(slots=True)
class QueueLoadCommand:
    """CLI input for appending tasks from a YAML or JSON document."""

    store_path: Path | None
    text: str
    source: str
    json_output: bool = False


@dataclass(slots=True)
class QueueCheckCommand:
    """CLI input for validate and verify."""

    store_path: Path | None
    json_output: bool = False


@dataclass(slots=True)
class QueueRepairCommand:
    """CLI input for the repair advisor."""

    store_path: Path | None
    apply: bool
    engine: str | None
    model: str | None
    json_output: bool = False


@dataclass(slots=True)
class QueueExecuteCommand:
    """CLI input for queue execution."""

    store_path: Path | None
    mode: str | None
    dry_run: bool
    verbose: bool
    max_workers: int | None = None
    json_output: bool = False


@dataclass(slots=True)
class QueueClearCommand:
    """CLI input for pruning the store."""

    store_path: Path | None
    scope: str
    json_output: bool = False


@dataclass(slots=True)
class QueueCommandResult:
    """Lines to render plus the exit status the command should report."""

    lines: list[str]
    success: bool


def default_action_executor(settings: Settings) -> ActionExecutor:
    return OsascriptActionExecutor(
        JxaScriptRunner(
            scripts_dir=settings.backend.scripts_dir,
            osascript=settings.backend.osascript,
            timeout_seconds=settings.backend.action_timeout_seconds,
        ),
    )


@contextmanager
def cli_errors() -> Iterator[None]:
    """Turn engine and configuration errors into `click.ClickException`."""

    try:
        yield
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error


class QueueCliController:
    """Coordinates store, validation, verification, repair and execution commands."""

    def __init__(
        self,
        *,
        action_executor_factory: ActionExecutorFactory = default_action_executor,
        agent_runner: CliAgentRunner | None = None,
    ) -> None:
        self.action_executor_factory = action_executor_factory
        self.agent_runner = agent_runner or CliAgentRunner()

    @cli_errors()
    def status(self, command: QueueStatusCommand) -> list[str]:
        """Show tasks, hiding completed ones unless asked."""

        settings = Settings.from_env(store_path=command.store_path)
        store = _store(settings)
        queue = store.load()
        tasks = [
            task
            for task in queue.tasks
            if command.include_completed or task.status != TaskStatus.COMPLETED
        ]
        pending_count = queue.count(TaskStatus.PENDING)

        if command.json_output:
            return [
                _dump_json(
                    {
                        "store": str(store.path),
                        "created_at": queue.created_at,
                        "tasks": [task_to_dict(task) for task in tasks],
                        "pending_count": pending_count,
                    },
                ),
            ]

        lines = [f"Queue: {store.path}"]
        if not tasks:
            lines.append("No tasks in queue." if not queue.tasks else "No open tasks.")
        lines.extend(_task_line(task) for task in tasks)
        counts = " ".join(f"{status.value}={queue.count(status)}" for status in TaskStatus)
        lines.append(f"Tasks: total={len(queue.tasks)} {counts}")
        lines.append(f"pending_count={pending_count}")
        return lines

    @cli_errors()
    def add(self, command: QueueAddCommand) -> list[str]:
        settings = Settings.from_env(store_path=command.store_path)
        try:
            action = Action.parse(command.action)
        except ValueError as error:
            raise QueueInputError(str(error)) from error
        params = dict(command.params)
        params.update(parse_param_assignments(command.param_assignments))
        spec = TaskSpec(action=action, params=params, depends_on=command.depends_on)
        indices = _store(settings).append([spec])

        if command.json_output:
            return [_dump_json({"success": True, "indices": indices})]
        return [f"Task added: index={indices[0]} action={action.value}"]

    @cli_errors()
    def load(self, command: QueueLoadCommand) -> list[str]:
        """Append every task of a YAML or JSON document."""

        settings = Settings.from_env(store_path=command.store_path)
        specs = parse_task_input(command.text, source=command.source)
        indices = _store(settings).append(specs)

        if command.json_output:
            return [_dump_json({"success": True, "added": len(indices), "indices": indices})]
        if not indices:
            return [f"No tasks found in {command.source}"]
        return [f"Loaded {len(indices)} task(s) from {command.source}: indices {indices}"]

    @cli_errors()
    def validate(self, command: QueueCheckCommand) -> QueueCommandResult:
        settings = Settings.from_env(store_path=command.store_path)
        report = validate_queue(_store(settings).load())

        if command.json_output:
            return QueueCommandResult(lines=[_dump_json(report.to_dict())], success=report.valid)
        if report.valid:
            return QueueCommandResult(lines=["Queue is valid."], success=True)
        lines = [f"Queue is invalid: {len(report.errors)} error(s)"]
        lines.extend(_issue_lines(report.errors))
        return QueueCommandResult(lines=lines, success=False)

    @cli_errors()
    def verify(self, command: QueueCheckCommand) -> QueueCommandResult:
        """Look up every concrete identifier of pending tasks in DEVONthink."""

        settings = Settings.from_env(store_path=command.store_path)
        queue = _store(settings).load()
        report = verify_queue(
            queue,
            self.action_executor_factory(settings),
            require_running=settings.backend.require_running,
        )

        if command.json_output:
            return QueueCommandResult(lines=[_dump_json(report.to_dict())], success=report.valid)
        checked = report.checked
        lines = [
            f"Checked: {checked.uuids} records, {checked.paths} paths, "
            f"{checked.databases} databases",
        ]
        if report.skipped_references:
            lines.append(
                f"Skipped {report.skipped_references} identifier(s) that depend on "
                "results of earlier tasks",
            )
        if report.valid:
            lines.append("All referenced resources exist.")
        else:
            lines.append(f"Found {len(report.issues)} issue(s):")
            lines.extend(_issue_lines(report.issues))
        return QueueCommandResult(lines=lines, success=report.valid)

    @cli_errors()
    def repair(self, command: QueueRepairCommand) -> QueueCommandResult:
        """Ask the repair agent for a replacement of open tasks; persist only with `apply`."""

        settings = Settings.from_env(store_path=command.store_path)
        store = _store(settings)
        queue = store.load()
        routing = resolve_repair_routing(
            settings=settings.repair,
            agent_override=command.engine,
            model_override=command.model,
        )

        issues = self._repair_issues(queue, settings)
        outcome = RepairAdvisor(runner=self.agent_runner, routing=routing).propose(queue, issues)
        proposal = outcome.proposal

        applied: dict[str, list[int]] | None = None
        if proposal is not None and command.apply and proposal.valid:
            removed, added = store.replace_open_tasks(
                proposal.tasks,
                details={
                    "agent": proposal.agent,
                    "model": proposal.model,
                    "explanation": proposal.explanation,
                },
            )
            applied = {"removed": removed, "added": added}
        success = not (proposal is not None and command.apply and applied is None)

        if command.json_output:
            payload: dict[str, object] = {
                "message": outcome.message,
                "issues": [issue.to_dict() for issue in issues],
                "proposal": proposal.to_dict() if proposal is not None else None,
                "applied": applied,
            }
            return QueueCommandResult(lines=[_dump_json(payload)], success=success)

        lines = [f"Issues sent for repair: {len(issues)}"]
        lines.extend(_issue_lines(issues))
        if proposal is None:
            lines.append(outcome.message)
            return QueueCommandResult(lines=lines, success=success)

        lines.extend(_proposal_lines(proposal))
        if applied is not None:
            lines.append(
                f"Applied: removed tasks {applied['removed']}, added tasks {applied['added']}",
            )
        elif command.apply:
            lines.append("Proposal not applied: it has validation issues.")
        else:
            lines.append("Dry run: re-run with --apply to replace the open tasks.")
        return QueueCommandResult(lines=lines, success=success)

    @cli_errors()
    def execute(self, command: QueueExecuteCommand) -> QueueCommandResult:
        settings = Settings.from_env(store_path=command.store_path)
        mode = ExecutionMode(command.mode.strip().lower()) if command.mode else None
        executor = self.action_executor_factory(settings)
        if (
            not command.dry_run
            and settings.backend.require_running
            and not executor.is_available()
        ):
            raise ExternalSystemUnavailable(NOT_RUNNING_MESSAGE)

        result = QueueExecutor(
            store=_store(settings),
            executor=executor,
            max_workers=command.max_workers or settings.execution.max_workers,
        ).run(mode=mode, dry_run=command.dry_run)

        if command.json_output:
            return QueueCommandResult(lines=[_dump_json(result.to_dict())], success=result.success)
        return QueueCommandResult(
            lines=_run_lines(result, verbose=command.verbose),
            success=result.success,
        )

    @cli_errors()
    def clear(self, command: QueueClearCommand) -> list[str]:
        settings = Settings.from_env(store_path=command.store_path)
        try:
            scope = ClearScope(command.scope.strip().lower())
        except ValueError as error:
            raise QueueInputError(
                f"Invalid scope: {command.scope!r}. Use completed, failed, or all.",
            ) from error
        removed = _store(settings).clear(scope)

        if command.json_output:
            return [_dump_json({"success": True, "scope": scope.value, "removed": removed})]
        return [f"Cleared {len(removed)} {scope.value} task(s)."]

    def _repair_issues(self, queue: Queue, settings: Settings) -> list[QueueIssue]:
        """Validator issues when the queue is malformed, otherwise live verification issues."""

        report = validate_queue(queue)
        if not report.valid:
            issues = list(report.errors)
        else:
            try:
                issues = verify_queue(
                    queue,
                    self.action_executor_factory(settings),
                    require_running=settings.backend.require_running,
                ).issues
            except ExternalSystemUnavailable as error:
                logger.warning("Skipping live verification before repair: %s", error)
                issues = []
        return issues + failure_issues(queue)


def parse_param_assignments(assignments: tuple[str, ...]) -> dict[str, Any]:
    """Parse repeated `key=value` options; values are JSON when they parse as JSON."""

    params: dict[str, Any] = {}
    for assignment in assignments:
        key, separator, raw_value = assignment.partition("=")
        key = key.strip()
        if not separator or not key:
            raise QueueInputError(f"Invalid --param {assignment!r}: expected key=value")
        try:
            params[key] = json.loads(raw_value)
        except json.JSONDecodeError:
            params[key] = raw_value
    return params


def _store(settings: Settings) -> QueueStore:
    return QueueStore(
        settings.store.path,
        lock_timeout_seconds=settings.store.lock_timeout_seconds,
        default_mode=ExecutionMode(settings.execution.default_mode),
    )


def _dump_json(payload: object) -> str:
    return json.dumps(payload, indent=2, ensure_ascii=False)


def _task_line(task: Task) -> str:
    depends = ",".join(str(index) for index in task.depends_on) or "-"
    line = (
        f"  #{task.index} [{task.status.value}] {task.action.value} "
        f"params={json.dumps(task.params, ensure_ascii=False, sort_keys=True)} "
        f"depends_on={depends}"
    )
    if task.error:
        line += f" error={task.error}"
    return line


def _issue_lines(issues: list[QueueIssue]) -> list[str]:
    return [f"  {issue.render()}" for issue in issues]


def _proposal_lines(proposal: RepairProposal) -> list[str]:
    lines = [
        f"Proposal from {proposal.agent} ({proposal.model}): {len(proposal.tasks)} task(s) "
        f"replacing {proposal.replaces}",
    ]
    if proposal.explanation:
        lines.append(f"Explanation: {proposal.explanation}")
    for position, spec in enumerate(proposal.tasks, 1):
        depends = ",".join(str(item) for item in spec.depends_on) or "-"
        lines.append(
            f"  @{position} {spec.action.value} "
            f"params={json.dumps(spec.params, ensure_ascii=False, sort_keys=True)} "
            f"depends_on={depends}",
        )
    if proposal.issues:
        lines.append(f"Proposal issues: {len(proposal.issues)}")
        lines.extend(_issue_lines(proposal.issues))
    return lines


def _run_lines(result: RunResult, *, verbose: bool) -> list[str]:
    summary = result.summary
    header = "Dry run" if result.dry_run else "Run"
    lines = [
        f"{header} ({result.mode.value}): completed={summary.completed} "
        f"failed={summary.failed} poisoned={summary.poisoned} skipped={summary.skipped}",
    ]
    for report in result.tasks:
        state = report.status.value
        if result.dry_run:
            state = "would fail" if report.error else "would run"
        line = f"  #{report.index} {report.action.value}: {state}"
        if report.error:
            line += f" ({report.error})"
        lines.append(line)
        if verbose:
            lines.append(f"    params={json.dumps(report.params, ensure_ascii=False)}")
            if report.result is not None:
                lines.append(f"    result={json.dumps(report.result, ensure_ascii=False)}")
    if result.halted_at is not None:
        lines.append(f"Halted at task {result.halted_at}; remaining tasks stay pending.")
    lines.append(f"Status: {'success' if result.success else 'failed'}")
    return lines
