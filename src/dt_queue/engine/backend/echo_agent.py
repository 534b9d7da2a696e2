"""Local deterministic repair agent for CLI backend integration tests.

Reads the repair prompt, keeps every open task unchanged and rewrites
references between open tasks into the relative form the proposal expects.
"""

from __future__ import annotations

import argparse
import json
import re
import sys
from pathlib import Path
from typing import Any

from dt_queue.engine.repair import QUEUE_JSON_BEGIN, QUEUE_JSON_END

_ABSOLUTE_TOKEN = re.compile(r"\$(\d+)\.")


def main(argv: list[str] | None = None) -> int:
    """Print a proposal that echoes the queue's open tasks."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    start = prompt.find(QUEUE_JSON_BEGIN)
    end = prompt.find(QUEUE_JSON_END)
    if start == -1 or end == -1:
        sys.stderr.write("queue JSON block not found in prompt\n")
        return 2
    queue = json.loads(prompt[start + len(QUEUE_JSON_BEGIN) : end])

    open_tasks = [task for task in queue["tasks"] if task.get("status") in ("pending", "failed")]
    positions = {task["index"]: position for position, task in enumerate(open_tasks, 1)}
    proposal = {
        "tasks": [_echo_task(task, positions) for task in open_tasks],
        "explanation": f"Echoed {len(open_tasks)} open task(s) unchanged.",
    }
    sys.stdout.write("Here is the corrected queue:\n```json\n")
    sys.stdout.write(json.dumps(proposal, indent=2))
    sys.stdout.write("\n```\n")
    return 0


def _echo_task(task: dict[str, Any], positions: dict[int, int]) -> dict[str, Any]:
    depends_on: list[int | str] = [
        f"@{positions[index]}" if index in positions else index
        for index in task.get("dependsOn", [])
    ]
    return {
        "action": task["action"],
        "params": _relativize(task.get("params", {}), positions),
        "dependsOn": depends_on,
    }


def _relativize(value: Any, positions: dict[int, int]) -> Any:
    if isinstance(value, str):
        return _ABSOLUTE_TOKEN.sub(
            lambda match: (
                f"$@{positions[int(match.group(1))]}."
                if int(match.group(1)) in positions
                else match.group(0)
            ),
            value,
        )
    if isinstance(value, dict):
        return {key: _relativize(item, positions) for key, item in value.items()}
    if isinstance(value, list):
        return [_relativize(item, positions) for item in value]
    return value


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
