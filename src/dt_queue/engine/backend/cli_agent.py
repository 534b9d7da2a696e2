"""Subprocess-based runner for CLI reasoning agents (claude, codex, gemini)."""

from __future__ import annotations

import logging
import os
import shlex
import string
import subprocess
import time
from pathlib import Path
from typing import IO

from dt_queue.engine.backend.base import AgentRunRequest, AgentRunResult

logger = logging.getLogger(__name__)

TIMEOUT_EXIT_CODE = 124


class AgentRunError(RuntimeError):
    """The agent command could not be rendered or started."""


class CliAgentRunner:
    """Execute one agent command template rendered from a repair request."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.workdir.mkdir(parents=True, exist_ok=True)
        prompt_file = request.workdir / "repair_prompt.txt"
        prompt_file.write_text(request.prompt, "utf-8")
        stdout_path = request.workdir / "agent_stdout.txt"
        stderr_path = request.workdir / "agent_stderr.txt"

        run_args, command_head = _build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=prompt_file,
        )

        env = os.environ.copy()
        env["DT_QUEUE_REPAIR_AGENT"] = request.agent
        env["DT_QUEUE_REPAIR_MODEL"] = request.model

        logger.info("Running repair agent %s (model %s)", request.agent, request.model)
        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                exit_code, timed_out = _run_subprocess(
                    run_args=run_args,
                    env=env,
                    cwd=request.workdir,
                    timeout_seconds=request.timeout_seconds,
                    stdout_handle=stdout_handle,
                    stderr_handle=stderr_handle,
                )
        except FileNotFoundError as error:
            raise AgentRunError(f"Agent command not found: {command_head}") from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}") from error

        return AgentRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            stdout=stdout_path.read_text("utf-8"),
            stderr=stderr_path.read_text("utf-8"),
        )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.")
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentRunError("Agent command template must include {prompt} or {prompt_file}.")

    current_os_name = os_name or os.name
    try:
        if current_os_name == "nt":
            rendered = _render_windows_command_template(
                template=stripped,
                values={
                    "model": model,
                    "prompt": prompt,
                    "prompt_file": str(prompt_file),
                },
            ).strip()
            if not rendered:
                raise AgentRunError("Agent command template rendered empty command.")
            return rendered, rendered.split(maxsplit=1)[0]

        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise AgentRunError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("Agent command template rendered empty command.")
    return argv, argv[0]


def _render_windows_command_template(*, template: str, values: dict[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, format_spec, conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        value_text = _apply_string_conversion(values[field_name], conversion, format_spec)
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue
        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _apply_string_conversion(value: str, conversion: str | None, format_spec: str | None) -> str:
    if conversion == "r":
        converted = repr(value)
    elif conversion == "a":
        converted = ascii(value)
    elif conversion in (None, "", "s"):
        converted = str(value)
    else:
        raise ValueError(f"Unsupported format conversion: !{conversion}")
    return format(converted, format_spec) if format_spec else converted


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 0:
            in_double_quotes = not in_double_quotes
    return in_double_quotes


def _run_subprocess(  # noqa: PLR0913
    *,
    run_args: str | list[str],
    env: dict[str, str],
    cwd: Path,
    timeout_seconds: int,
    stdout_handle: IO[str],
    stderr_handle: IO[str],
) -> tuple[int, bool]:
    process = subprocess.Popen(  # noqa: S603
        run_args,
        env=env,
        cwd=cwd,
        stdout=stdout_handle,
        stderr=stderr_handle,
        text=True,
    )
    started = time.monotonic()
    while True:
        returncode = process.poll()
        if returncode is not None:
            return returncode, False
        if time.monotonic() - started >= timeout_seconds:
            logger.warning("Repair agent timed out after %ss", timeout_seconds)
            _terminate_process(process)
            return TIMEOUT_EXIT_CODE, True
        time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
