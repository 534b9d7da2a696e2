"""Repair advisor: asks a reasoning agent for a corrected task list.

The advisor only returns a proposal. Persisting it is a separate, explicit
step (`QueueStore.replace_open_tasks`) taken by the caller.
"""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dt_queue.engine.backend.base import AgentRunRequest
from dt_queue.engine.backend.cli_agent import AgentRunError, CliAgentRunner
from dt_queue.engine.contracts import task_spec_from_dict, task_to_dict
from dt_queue.engine.errors import QueueInputError, RepairUnavailable
from dt_queue.engine.models import Queue, QueueIssue, TaskSpec, TaskStatus
from dt_queue.engine.proposal_parser import parse_proposal
from dt_queue.engine.routing import RepairRouting
from dt_queue.engine.store import append_to_queue
from dt_queue.engine.validator import render_contract_table, validate_queue

logger = logging.getLogger(__name__)

QUEUE_JSON_BEGIN = "<<<QUEUE_JSON"
QUEUE_JSON_END = "QUEUE_JSON>>>"


@dataclass(slots=True)
class RepairDecision:
    """Whether there is anything to repair."""

    should_repair: bool
    reason: str


@dataclass(slots=True)
class RepairProposal:
    """Replacement for the queue's open (pending and failed) tasks."""

    tasks: list[TaskSpec]
    explanation: str
    agent: str
    model: str
    replaces: list[int] = field(default_factory=list)
    issues: list[QueueIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.issues

    def to_dict(self) -> dict[str, object]:
        return {
            "tasks": [
                {
                    "action": spec.action.value,
                    "params": spec.params,
                    "dependsOn": list(spec.depends_on),
                }
                for spec in self.tasks
            ],
            "explanation": self.explanation,
            "agent": self.agent,
            "model": self.model,
            "replaces": self.replaces,
            "valid": self.valid,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass(slots=True)
class RepairOutcome:
    """Advisor result: a proposal, or a message explaining why there is none."""

    proposal: RepairProposal | None
    message: str


def open_task_indices(queue: Queue) -> list[int]:
    return [
        task.index
        for task in queue.tasks
        if task.status in (TaskStatus.PENDING, TaskStatus.FAILED)
    ]


def failure_issues(queue: Queue) -> list[QueueIssue]:
    """Failed tasks expressed as issues, so the agent sees execution errors too."""

    return [
        QueueIssue(task.index, f"failed: {task.error or 'unknown error'}")
        for task in queue.tasks
        if task.status == TaskStatus.FAILED
    ]


def decide_repair(*, queue: Queue, issues: list[QueueIssue]) -> RepairDecision:
    if not open_task_indices(queue):
        return RepairDecision(should_repair=False, reason="No pending or failed tasks to repair.")
    if not issues and not any(task.status == TaskStatus.FAILED for task in queue.tasks):
        return RepairDecision(should_repair=False, reason="Queue has no issues to repair.")
    return RepairDecision(should_repair=True, reason="Queue has issues or failed tasks.")


def session_context(queue: Queue) -> list[dict[str, Any]]:
    """Identifiers already produced by completed tasks."""

    return [
        {"index": task.index, "action": task.action.value, "result": task.result or {}}
        for task in queue.tasks
        if task.status == TaskStatus.COMPLETED
    ]


def build_repair_prompt(
    *,
    queue: Queue,
    issues: list[QueueIssue],
    context: list[dict[str, Any]],
) -> str:
    queue_json = json.dumps(
        {"tasks": [task_to_dict(task) for task in queue.tasks]},
        ensure_ascii=False,
        indent=2,
    )
    issue_lines = "\n".join(f"- {issue.render()}" for issue in issues) or "- none reported"
    context_json = json.dumps(context, ensure_ascii=False, indent=2)
    return (
        "You are repairing a DEVONthink automation task queue.\n"
        "\n"
        "Propose a replacement for every task whose status is pending or failed.\n"
        "Completed tasks are history: keep them out of your answer, but you may\n"
        "reference their results by absolute index ($N.field, dependsOn: [N]).\n"
        "Inside your answer, refer to other proposed tasks by position:\n"
        '"@k" in dependsOn and "$@k.field" in params (k starts at 1).\n'
        "\n"
        "Action contracts:\n"
        f"{render_contract_table()}\n"
        "\n"
        "Current queue:\n"
        f"{QUEUE_JSON_BEGIN}\n{queue_json}\n{QUEUE_JSON_END}\n"
        "\n"
        "Issues:\n"
        f"{issue_lines}\n"
        "\n"
        "Results of completed tasks:\n"
        f"{context_json}\n"
        "\n"
        "Reply with one JSON object only:\n"
        '{"tasks": [{"action": "...", "params": {}, "dependsOn": []}], '
        '"explanation": "..."}\n'
    )


def validate_proposal(queue: Queue, specs: list[TaskSpec]) -> list[QueueIssue]:
    """Structural issues of `specs` as if they replaced the open tasks of `queue`."""

    trial = Queue(
        tasks=[task for task in queue.tasks if task.status == TaskStatus.COMPLETED],
        created_at=queue.created_at,
        default_mode=queue.default_mode,
        next_index=queue.next_index,
    )
    try:
        append_to_queue(trial, specs)
    except QueueInputError as error:
        return [QueueIssue(None, str(error))]
    return validate_queue(trial).errors


class RepairAdvisor:
    """Formats one request for a reasoning agent and parses its proposal."""

    def __init__(
        self,
        *,
        runner: CliAgentRunner,
        routing: RepairRouting,
        workdir: Path | None = None,
    ) -> None:
        self.runner = runner
        self.routing = routing
        self.workdir = workdir

    def propose(self, queue: Queue, issues: list[QueueIssue]) -> RepairOutcome:
        decision = decide_repair(queue=queue, issues=issues)
        if not decision.should_repair:
            return RepairOutcome(proposal=None, message=decision.reason)
        try:
            return RepairOutcome(
                proposal=self._request_proposal(queue, issues),
                message="Repair proposal available.",
            )
        except RepairUnavailable as error:
            logger.warning("No repair proposal available: %s", error)
            return RepairOutcome(proposal=None, message=f"No proposal available: {error}")

    def _request_proposal(self, queue: Queue, issues: list[QueueIssue]) -> RepairProposal:
        prompt = build_repair_prompt(queue=queue, issues=issues, context=session_context(queue))
        logger.info(
            "Requesting repair proposal from %s (%d issue(s))",
            self.routing.agent,
            len(issues),
        )
        with tempfile.TemporaryDirectory(prefix="dt-queue-repair-", dir=self.workdir) as tmp:
            request = AgentRunRequest(
                prompt=prompt,
                agent=self.routing.agent,
                model=self.routing.model,
                command_template=self.routing.command_template,
                timeout_seconds=self.routing.timeout_seconds,
                workdir=Path(tmp),
            )
            try:
                result = self.runner.run(request)
            except AgentRunError as error:
                raise RepairUnavailable(str(error)) from error

        if result.timed_out:
            raise RepairUnavailable(f"{self.routing.agent} timed out")
        if result.exit_code != 0:
            detail = result.stderr.strip().splitlines()[-1:] or [f"exit code {result.exit_code}"]
            raise RepairUnavailable(f"{self.routing.agent} failed: {detail[0]}")

        parsed = parse_proposal(result.stdout)
        if parsed is None:
            raise RepairUnavailable(f"{self.routing.agent} returned no task list")
        try:
            specs = [
                task_spec_from_dict(item, position=position)
                for position, item in enumerate(parsed.tasks, 1)
            ]
        except QueueInputError as error:
            raise RepairUnavailable(f"Proposal is malformed: {error}") from error

        proposal = RepairProposal(
            tasks=specs,
            explanation=parsed.explanation,
            agent=self.routing.agent,
            model=self.routing.model,
            replaces=open_task_indices(queue),
            issues=validate_proposal(queue, specs),
        )
        logger.info(
            "Received repair proposal with %d task(s) via %s (%d issue(s))",
            len(specs),
            parsed.parser,
            len(proposal.issues),
        )
        return proposal
