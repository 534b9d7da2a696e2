from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from dt_queue import __version__
from dt_queue.engine.controllers import QueueCliController, parse_param_assignments
from dt_queue.engine.errors import QueueInputError
from dt_queue.engine.models import Action
from dt_queue.main import dt_queue

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Queue CLI"),
]

RECORD = "5D2B6F1E-8C3A-4E7B-9F10-1A2B3C4D5E6F"


@pytest.fixture()
def cli(monkeypatch, clean_env: Path, fake_executor) -> CliRunner:
    controller = QueueCliController(action_executor_factory=lambda settings: fake_executor)
    monkeypatch.setattr("dt_queue.main.QUEUE_CONTROLLER", controller)
    return CliRunner()


def _invoke(runner: CliRunner, *args: str, input: str | None = None):
    return runner.invoke(dt_queue, ["queue", *args], input=input)


def test_add_then_status_shows_open_tasks(cli: CliRunner) -> None:
    created = _invoke(
        cli,
        "add",
        "create",
        "--name",
        "Note",
        "--type",
        "markdown",
        "--database",
        "Inbox",
    )
    tagged = _invoke(
        cli,
        "add",
        "tag.add",
        "--uuid",
        "$1.uuid",
        "--tags",
        "review",
        "--tags",
        "todo",
        "--depends-on",
        "1",
    )

    assert created.exit_code == 0, created.output
    assert "Task added: index=1 action=create" in created.output
    assert "Task added: index=2 action=tag.add" in tagged.output

    status = _invoke(cli)
    assert status.exit_code == 0, status.output
    assert "#1 [pending] create" in status.output
    assert "depends_on=1" in status.output
    assert "pending_count=2" in status.output

    payload = json.loads(_invoke(cli, "status", "--json").stdout)
    assert payload["pending_count"] == 2
    assert payload["tasks"][1]["params"] == {"uuid": "$1.uuid", "tags": ["review", "todo"]}
    assert payload["tasks"][1]["dependsOn"] == [1]


def test_add_decodes_param_assignments(cli: CliRunner) -> None:
    result = _invoke(
        cli,
        "add",
        "modify",
        "--uuid",
        RECORD,
        "--param",
        "comment=checked",
        "--param",
        'customMetadata={"stage": 2}',
        "--json",
    )

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {"success": True, "indices": [1]}
    task = json.loads(_invoke(cli, "list", "--json").stdout)["tasks"][0]
    assert task["params"] == {"uuid": RECORD, "comment": "checked", "customMetadata": {"stage": 2}}


def test_add_maps_chat_options_to_params(cli: CliRunner) -> None:
    result = _invoke(
        cli,
        "add",
        "chat",
        "--prompt",
        "Summarize",
        "--records",
        RECORD,
        "--temperature",
        "0.3",
        "--role",
        "Librarian",
        "--mode",
        "text",
        "--usage",
        "cheapest",
        "--format",
        "json",
        "--no-thinking",
        "--no-tools",
    )
    out_of_range = _invoke(cli, "add", "chat", "--prompt", "p", "--temperature", "3")

    assert result.exit_code == 0, result.output
    assert json.loads(_invoke(cli, "list", "--json").stdout)["tasks"][0]["params"] == {
        "prompt": "Summarize",
        "records": [RECORD],
        "temperature": 0.3,
        "role": "Librarian",
        "mode": "text",
        "usage": "cheapest",
        "format": "json",
        "thinking": False,
        "toolCalls": False,
    }
    assert out_of_range.exit_code == 2


def test_add_rejects_malformed_param(cli: CliRunner) -> None:
    result = _invoke(cli, "add", "search", "--query", "q", "--param", "oops")

    assert result.exit_code == 1
    assert "expected key=value" in result.output


def test_parse_param_assignments_keeps_non_json_values_as_text() -> None:
    assert parse_param_assignments(("limit=5", "note=a=b", "flag=true")) == {
        "limit": 5,
        "note": "a=b",
        "flag": True,
    }
    with pytest.raises(QueueInputError):
        parse_param_assignments(("=value",))


def test_load_from_stdin_rewrites_relative_references(cli: CliRunner) -> None:
    document = """
- action: create
  params: {name: Note, type: markdown, database: Inbox}
- action: tag.add
  params: {uuid: $@1.uuid, tags: [review]}
  dependsOn: ["@1"]
"""
    _invoke(cli, "add", "search", "--query", "seed")

    result = _invoke(cli, "load", "-", input=document)

    assert result.exit_code == 0, result.output
    assert "Loaded 2 task(s) from <stdin>: indices [2, 3]" in result.output
    tasks = json.loads(_invoke(cli, "list", "--json").stdout)["tasks"]
    assert tasks[2]["params"]["uuid"] == "$2.uuid"
    assert tasks[2]["dependsOn"] == [2]


def test_load_from_file_and_rejects_malformed_documents(cli: CliRunner, tmp_path: Path) -> None:
    good = tmp_path / "tasks.json"
    good.write_text(json.dumps([{"action": "search", "params": {"query": "q"}}]), "utf-8")
    bad = tmp_path / "bad.yaml"
    bad.write_text("- action: teleport\n", "utf-8")

    loaded = _invoke(cli, "load", str(good))
    rejected = _invoke(cli, "load", str(bad))

    assert loaded.exit_code == 0, loaded.output
    assert f"from {good}" in loaded.output
    assert rejected.exit_code == 1
    assert "Unsupported action" in rejected.output


def test_validate_exit_code_follows_report(cli: CliRunner) -> None:
    _invoke(cli, "add", "search", "--query", "q")
    assert "Queue is valid." in _invoke(cli, "validate").output

    _invoke(cli, "add", "delete")
    result = _invoke(cli, "validate")

    assert result.exit_code == 1
    assert "Queue is invalid: 1 error(s)" in result.output
    assert "Task 2: delete requires one of 'uuid', 'uuids'" in result.output
    assert "Queue validation failed." in result.output


def test_verify_reports_missing_records(cli: CliRunner, fake_executor) -> None:
    _invoke(cli, "add", "delete", "--uuid", RECORD)
    _invoke(cli, "add", "tag.add", "--uuid", "$1.uuid", "--tags", "x")

    missing = _invoke(cli, "verify")
    fake_executor.existing.add(RECORD)
    found = _invoke(cli, "verify")

    assert missing.exit_code == 1
    assert "Checked: 1 records, 0 paths, 0 databases" in missing.output
    assert "Skipped 1 identifier(s)" in missing.output
    assert f"Task 1: Record not found: {RECORD}" in missing.output
    assert found.exit_code == 0, found.output
    assert "All referenced resources exist." in found.output


def test_verify_fails_when_application_is_not_running(cli: CliRunner, fake_executor) -> None:
    fake_executor.available = False
    _invoke(cli, "add", "delete", "--uuid", RECORD)

    result = _invoke(cli, "verify")

    assert result.exit_code == 1
    assert "DEVONthink is not running" in result.output


def test_execute_runs_queue_and_reports_resolved_params(cli: CliRunner, fake_executor) -> None:
    fake_executor.results[Action.CREATE] = {"uuid": RECORD}
    _invoke(cli, "add", "create", "--name", "n", "--type", "txt", "--database", "Inbox")
    _invoke(cli, "add", "tag.add", "--uuid", "$1.uuid", "--tags", "done")

    result = _invoke(cli, "execute", "--verbose")

    assert result.exit_code == 0, result.output
    assert "Run (sequential): completed=2 failed=0 poisoned=0 skipped=0" in result.output
    assert f'params={{"uuid": "{RECORD}", "tags": ["done"]}}' in result.output
    assert "Status: success" in result.output
    assert "No open tasks." in _invoke(cli).output


def test_transactional_execute_halts_and_exits_non_zero(cli: CliRunner, fake_executor) -> None:
    fake_executor.failures[Action.DELETE] = "Record not found"
    _invoke(cli, "add", "delete", "--uuid", RECORD)
    _invoke(cli, "add", "search", "--query", "q")

    result = _invoke(cli, "execute", "transactional")

    assert result.exit_code == 1
    assert "#1 delete: failed (Record not found)" in result.output
    assert "Halted at task 1; remaining tasks stay pending." in result.output
    assert "Queue execution did not complete successfully." in result.output
    assert fake_executor.actions() == [Action.DELETE]


def test_run_alias_dry_run_needs_no_application(cli: CliRunner, fake_executor) -> None:
    fake_executor.available = False
    _invoke(cli, "add", "search", "--query", "q")

    result = _invoke(cli, "run", "parallel", "--dry-run")

    assert result.exit_code == 0, result.output
    assert "Dry run (parallel)" in result.output
    assert "#1 search: would run" in result.output
    assert fake_executor.calls == []


def test_dry_run_marks_tasks_doomed_by_earlier_failure(cli: CliRunner, fake_executor) -> None:
    fake_executor.failures[Action.DELETE] = "Record not found"
    _invoke(cli, "add", "delete", "--uuid", RECORD)
    _invoke(cli, "execute")
    _invoke(cli, "add", "search", "--query", "q", "--depends-on", "1")
    _invoke(cli, "add", "tag.add", "--uuid", "$2.uuid", "--tags", "x")

    result = _invoke(cli, "execute", "--dry-run")

    assert result.exit_code == 1
    assert "#2 search: would fail (Task 2: cannot resolve dependsOn 1: task 1 failed)" in (
        result.output
    )
    assert "#3 tag.add: would fail (Task 3: cannot resolve $2.uuid: task 2 failed)" in (
        result.output
    )
    assert "Status: failed" in result.output
    assert fake_executor.actions() == [Action.DELETE]


def test_execute_requires_running_application_unless_disabled(
    cli: CliRunner,
    fake_executor,
    monkeypatch,
) -> None:
    fake_executor.available = False
    _invoke(cli, "add", "search", "--query", "q")

    blocked = _invoke(cli, "execute")
    monkeypatch.setenv("DT_QUEUE_REQUIRE_RUNNING", "false")
    allowed = _invoke(cli, "execute", "--json")

    assert blocked.exit_code == 1
    assert "DEVONthink is not running" in blocked.output
    assert allowed.exit_code == 0, allowed.output
    assert json.loads(allowed.stdout)["summary"]["completed"] == 1


def test_clear_scopes(cli: CliRunner, fake_executor) -> None:
    fake_executor.failures[Action.DELETE] = "nope"
    _invoke(cli, "add", "search", "--query", "q")
    _invoke(cli, "add", "delete", "--uuid", RECORD)
    _invoke(cli, "add", "search", "--query", "later")
    _invoke(cli, "execute")

    assert "Cleared 2 completed task(s)." in _invoke(cli, "clear").output
    assert "Cleared 1 failed task(s)." in _invoke(cli, "clear", "--scope", "failed").output
    assert "No tasks in queue." in _invoke(cli).output
    assert "Cleared 0 all task(s)." in _invoke(cli, "clear", "--all").output


def test_repair_without_issues_has_nothing_to_do(cli: CliRunner, echo_agent: str) -> None:
    _invoke(cli, "add", "search", "--query", "q")

    result = _invoke(cli, "repair")

    assert result.exit_code == 0, result.output
    assert "Issues sent for repair: 0" in result.output
    assert "Queue has no issues to repair." in result.output


def test_repair_proposes_then_applies_replacement(
    cli: CliRunner,
    fake_executor,
    echo_agent: str,
) -> None:
    fake_executor.failures[Action.DELETE] = "Record not found"
    _invoke(cli, "add", "search", "--query", "q")
    _invoke(cli, "add", "delete", "--uuid", RECORD, "--depends-on", "1")
    assert _invoke(cli, "execute").exit_code == 1

    proposed = _invoke(cli, "repair", "--engine", "codex")

    assert proposed.exit_code == 0, proposed.output
    assert "Issues sent for repair: 1" in proposed.output
    assert "Task 2: failed: Record not found" in proposed.output
    assert "Proposal from codex (gpt-5-codex): 1 task(s) replacing [2]" in proposed.output
    assert "Dry run: re-run with --apply" in proposed.output
    assert "#2 [failed] delete" in _invoke(cli).output

    applied = _invoke(cli, "repair", "--apply", "--json")

    assert applied.exit_code == 0, applied.output
    payload = json.loads(applied.stdout)
    assert payload["applied"] == {"removed": [2], "added": [3]}
    assert payload["proposal"]["valid"] is True
    status = _invoke(cli, "list").output
    assert "#1 [completed] search" in status
    assert "#3 [pending] delete" in status
    assert "#2 " not in status


def test_repair_apply_refuses_invalid_proposal(cli: CliRunner, echo_agent: str) -> None:
    _invoke(cli, "add", "delete")

    result = _invoke(cli, "repair", "--apply")

    assert result.exit_code == 1
    assert "Proposal issues: 1" in result.output
    assert "Proposal not applied: it has validation issues." in result.output
    assert "Repair proposal was not applied." in result.output


def test_cli_rejects_unknown_log_level_and_prints_version(cli: CliRunner) -> None:
    bad = cli.invoke(dt_queue, ["--log-level", "chatty", "queue"])
    version = cli.invoke(dt_queue, ["--version"])

    assert bad.exit_code == 2
    assert __version__ in version.output
