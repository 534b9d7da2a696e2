"""CLI entrypoint for dt-queue."""

import logging
import sys
from pathlib import Path
from typing import Any

import rich_click as click

from dt_queue import __version__
from dt_queue.config import SUPPORTED_AGENTS, SUPPORTED_LOG_LEVELS, SUPPORTED_MODES
from dt_queue.engine.controllers import (
    QueueAddCommand,
    QueueCheckCommand,
    QueueClearCommand,
    QueueCliController,
    QueueCommandResult,
    QueueExecuteCommand,
    QueueLoadCommand,
    QueueRepairCommand,
    QueueStatusCommand,
)
from dt_queue.engine.models import Action

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

store_option = click.option(
    "--store",
    "store_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Queue store file. Defaults to DT_QUEUE_STORE_PATH or ~/.dt-queue/queue.json.",
)
json_option = click.option("--json", "json_output", is_flag=True, help="Output raw JSON.")


@click.group()
@click.version_option(version=__version__, prog_name="dt-queue")
@click.option(
    "--log-level",
    type=click.Choice(SUPPORTED_LOG_LEVELS, case_sensitive=False),
    envvar="DT_QUEUE_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def dt_queue(log_level: str) -> None:
    """DEVONthink automation task queue."""

    _configure_logging(log_level)


@dt_queue.group(invoke_without_command=True)
@click.pass_context
def queue(ctx: click.Context) -> None:
    """Build, check, repair and execute the task queue. Defaults to `status`."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(queue_status)


@queue.command("status")
@store_option
@json_option
@click.option("--all", "include_completed", is_flag=True, help="Include completed tasks.")
def queue_status(
    store_path: Path | None = None,
    json_output: bool = False,
    include_completed: bool = False,
) -> None:
    """Show open tasks and the pending count."""

    _emit_lines(
        QUEUE_CONTROLLER.status(
            QueueStatusCommand(
                store_path=store_path,
                include_completed=include_completed,
                json_output=json_output,
            ),
        ),
    )


@queue.command("list")
@store_option
@json_option
def queue_list(store_path: Path | None, json_output: bool) -> None:
    """List every task, completed ones included."""

    _emit_lines(
        QUEUE_CONTROLLER.status(
            QueueStatusCommand(
                store_path=store_path,
                include_completed=True,
                json_output=json_output,
            ),
        ),
    )


@queue.command("add")
@click.argument("action", type=click.Choice([action.value for action in Action]))
@store_option
@json_option
@click.option("--name", default=None, help="Name (create).")
@click.option("--type", "record_type", default=None, help="Record type (create).")
@click.option("--content", default=None, help="Content (create).")
@click.option("--database", default=None, help="Database (create/tag/search).")
@click.option("--group", default=None, help="Parent group UUID or path (create).")
@click.option("--uuid", default=None, help="Target record UUID.")
@click.option("--uuids", multiple=True, help="Target record UUID. Can be repeated.")
@click.option("--destination", default=None, help="Destination (move/duplicate/replicate).")
@click.option("--tags", multiple=True, help="Tag (create/tag.add/tag.remove). Can be repeated.")
@click.option("--source", default=None, help="Source record (link/unlink).")
@click.option("--target", default=None, help="Target (link/tag.merge).")
@click.option("--sources", multiple=True, help="Source tag (tag.merge). Can be repeated.")
@click.option("--from", "from_name", default=None, help="Old tag name (tag.rename).")
@click.option("--to", "to_name", default=None, help="New name (tag.rename) or format (convert).")
@click.option("--tag", default=None, help="Tag to delete (tag.delete).")
@click.option("--query", default=None, help="Search query (search).")
@click.option("--prompt", default=None, help="Prompt (chat).")
@click.option("--prompt-record", default=None, help="Prompt record UUID (chat).")
@click.option("--records", multiple=True, help="Context record UUID (chat). Can be repeated.")
@click.option("--url", default=None, help="Context URL (chat).")
@click.option("--engine", default=None, help="Chat engine (chat).")
@click.option("--model", default=None, help="Chat model (chat).")
@click.option(
    "--temperature",
    type=click.FloatRange(0, 2),
    default=None,
    help="Chat temperature, 0 to 2 (chat).",
)
@click.option("--role", default=None, help="System role (chat).")
@click.option("--mode", type=click.Choice(["auto", "text", "vision"]), help="Chat mode (chat).")
@click.option("--usage", type=click.Choice(["cheapest", "auto", "best"]), help="Usage (chat).")
@click.option(
    "--format",
    "response_format",
    type=click.Choice(["text", "json", "html", "message", "raw"]),
    help="Response format (chat).",
)
@click.option("--no-thinking", is_flag=True, help="Disable reasoning (chat).")
@click.option("--no-tools", is_flag=True, help="Disable tool calls (chat).")
@click.option(
    "--param",
    "param_assignments",
    multiple=True,
    help="Extra parameter as key=value; JSON values are decoded. Can be repeated.",
)
@click.option(
    "--depends-on",
    "depends_on",
    multiple=True,
    type=click.IntRange(min=1),
    help="Index of a task that must finish first. Can be repeated.",
)
def queue_add(  # noqa: PLR0913
    action: str,
    store_path: Path | None,
    json_output: bool,
    param_assignments: tuple[str, ...],
    depends_on: tuple[int, ...],
    **options: Any,
) -> None:
    """Append one task. Values may reference earlier results as `$N.field`."""

    _emit_lines(
        QUEUE_CONTROLLER.add(
            QueueAddCommand(
                store_path=store_path,
                action=action,
                params=_params_from_options(options),
                param_assignments=param_assignments,
                depends_on=depends_on,
                json_output=json_output,
            ),
        ),
    )


@queue.command("load")
@click.argument("file", type=click.File("r", encoding="utf-8"))
@store_option
@json_option
def queue_load(file: Any, store_path: Path | None, json_output: bool) -> None:
    """Append tasks from a YAML or JSON file, or `-` for stdin."""

    source = "<stdin>" if file.name == "<stdin>" else file.name
    _emit_lines(
        QUEUE_CONTROLLER.load(
            QueueLoadCommand(
                store_path=store_path,
                text=file.read(),
                source=source,
                json_output=json_output,
            ),
        ),
    )


@queue.command("validate")
@store_option
@json_option
def queue_validate(store_path: Path | None, json_output: bool) -> None:
    """Check task parameters and the dependency graph without touching DEVONthink."""

    _finish(
        QUEUE_CONTROLLER.validate(
            QueueCheckCommand(store_path=store_path, json_output=json_output),
        ),
        failure_message="Queue validation failed.",
    )


@queue.command("verify")
@store_option
@json_option
def queue_verify(store_path: Path | None, json_output: bool) -> None:
    """Check that records, groups and databases referenced by pending tasks exist."""

    _finish(
        QUEUE_CONTROLLER.verify(
            QueueCheckCommand(store_path=store_path, json_output=json_output),
        ),
        failure_message="Queue verification found issues.",
    )


@queue.command("repair")
@store_option
@json_option
@click.option("--apply", is_flag=True, help="Replace open tasks with the proposal.")
@click.option(
    "--engine",
    type=click.Choice(SUPPORTED_AGENTS, case_sensitive=False),
    default=None,
    help="Repair agent. Defaults to DT_QUEUE_REPAIR_AGENT.",
)
@click.option("--model", default=None, help="Optional explicit model id for the repair agent.")
def queue_repair(
    store_path: Path | None,
    json_output: bool,
    apply: bool,
    engine: str | None,
    model: str | None,
) -> None:
    """Ask an AI agent to propose fixes for invalid or failed tasks."""

    _finish(
        QUEUE_CONTROLLER.repair(
            QueueRepairCommand(
                store_path=store_path,
                apply=apply,
                engine=engine.lower() if engine is not None else None,
                model=model,
                json_output=json_output,
            ),
        ),
        failure_message="Repair proposal was not applied.",
    )


@queue.command("execute")
@click.argument(
    "mode",
    required=False,
    type=click.Choice(SUPPORTED_MODES, case_sensitive=False),
)
@store_option
@json_option
@click.option("--dry-run", is_flag=True, help="Validate and show the plan without dispatching.")
@click.option("--verbose", is_flag=True, help="Show resolved params and results per task.")
@click.option(
    "--max-workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Concurrent tasks per wave in parallel mode. Defaults to DT_QUEUE_MAX_WORKERS.",
)
def queue_execute(  # noqa: PLR0913
    mode: str | None,
    store_path: Path | None,
    json_output: bool,
    dry_run: bool,
    verbose: bool,
    max_workers: int | None,
) -> None:
    """Run pending tasks: sequential (default), parallel or transactional."""

    _finish(
        QUEUE_CONTROLLER.execute(
            QueueExecuteCommand(
                store_path=store_path,
                mode=mode,
                dry_run=dry_run,
                verbose=verbose,
                max_workers=max_workers,
                json_output=json_output,
            ),
        ),
        failure_message="Queue execution did not complete successfully.",
    )


queue.add_command(queue_execute, name="run")


@queue.command("clear")
@store_option
@json_option
@click.option(
    "--scope",
    type=click.Choice(["completed", "failed", "all"], case_sensitive=False),
    default="completed",
    show_default=True,
    help="Which tasks to remove.",
)
@click.option("--all", "clear_all", is_flag=True, help="Alias for --scope all.")
def queue_clear(store_path: Path | None, json_output: bool, scope: str, clear_all: bool) -> None:
    """Remove completed, failed or all tasks from the store."""

    _emit_lines(
        QUEUE_CONTROLLER.clear(
            QueueClearCommand(
                store_path=store_path,
                scope="all" if clear_all else scope,
                json_output=json_output,
            ),
        ),
    )


_OPTION_PARAM_KEYS = {
    "name": "name",
    "record_type": "type",
    "content": "content",
    "database": "database",
    "group": "group",
    "uuid": "uuid",
    "uuids": "uuids",
    "destination": "destination",
    "tags": "tags",
    "source": "source",
    "target": "target",
    "sources": "sources",
    "from_name": "from",
    "to_name": "to",
    "tag": "tag",
    "query": "query",
    "prompt": "prompt",
    "prompt_record": "promptRecord",
    "records": "records",
    "url": "url",
    "engine": "engine",
    "model": "model",
    "temperature": "temperature",
    "role": "role",
    "mode": "mode",
    "usage": "usage",
    "response_format": "format",
}

_DISABLE_FLAG_PARAM_KEYS = {
    "no_thinking": "thinking",
    "no_tools": "toolCalls",
}


def _params_from_options(options: dict[str, Any]) -> dict[str, Any]:
    params: dict[str, Any] = {}
    for option_name, key in _OPTION_PARAM_KEYS.items():
        value = options.get(option_name)
        if value is None or value == ():
            continue
        params[key] = list(value) if isinstance(value, tuple) else value
    for flag_name, key in _DISABLE_FLAG_PARAM_KEYS.items():
        if options.get(flag_name):
            params[key] = False
    return params


def _configure_logging(level: str) -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level.upper())


def _finish(result: QueueCommandResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    dt_queue()
