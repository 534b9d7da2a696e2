"""Runtime configuration for the queue engine, the action backend and repair."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_MODES = ("sequential", "parallel", "transactional")
SUPPORTED_AGENTS = ("claude", "codex", "gemini")
SUPPORTED_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

DEFAULT_STORE_PATH = Path("~/.dt-queue/queue.json")
DEFAULT_SCRIPTS_DIR = Path("~/.dt-queue/jxa")

DEFAULT_REPAIR_COMMAND_TEMPLATES = {
    "claude": "claude -p --model {model} --permission-mode dontAsk -- {prompt}",
    "codex": "codex exec --sandbox read-only --model {model} {prompt}",
    "gemini": "gemini --model {model} --prompt {prompt}",
}
DEFAULT_REPAIR_MODELS = {
    "claude": "sonnet",
    "codex": "gpt-5-codex",
    "gemini": "gemini-2.5-pro",
}


@dataclass(slots=True)
class StoreSettings:
    """Queue store location and locking."""

    path: Path = DEFAULT_STORE_PATH
    lock_timeout_seconds: float = 10.0


@dataclass(slots=True)
class ExecutionSettings:
    """Executor defaults."""

    default_mode: str = "sequential"
    max_workers: int = 4


@dataclass(slots=True)
class BackendSettings:
    """How DEVONthink is reached through JXA scripts."""

    scripts_dir: Path = DEFAULT_SCRIPTS_DIR
    osascript: str = "osascript"
    action_timeout_seconds: int = 60
    require_running: bool = True


@dataclass(slots=True)
class RepairSettings:
    """Repair agent routing."""

    default_agent: str = "claude"
    command_templates: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_REPAIR_COMMAND_TEMPLATES),
    )
    models: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_REPAIR_MODELS))
    timeout_seconds: int = 300


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    store: StoreSettings = field(default_factory=StoreSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    backend: BackendSettings = field(default_factory=BackendSettings)
    repair: RepairSettings = field(default_factory=RepairSettings)
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, store_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        env_store_path = Path(os.getenv("DT_QUEUE_STORE_PATH", str(DEFAULT_STORE_PATH)))
        settings = cls(
            store=StoreSettings(
                path=(store_path or env_store_path).expanduser(),
                lock_timeout_seconds=_env_float("DT_QUEUE_LOCK_TIMEOUT_SECONDS", 10.0),
            ),
            execution=ExecutionSettings(
                default_mode=os.getenv("DT_QUEUE_DEFAULT_MODE", "sequential").strip().lower(),
                max_workers=_env_int("DT_QUEUE_MAX_WORKERS", 4),
            ),
            backend=BackendSettings(
                scripts_dir=Path(
                    os.getenv("DT_QUEUE_SCRIPTS_DIR", str(DEFAULT_SCRIPTS_DIR)),
                ).expanduser(),
                osascript=os.getenv("DT_QUEUE_OSASCRIPT", "osascript"),
                action_timeout_seconds=_env_int("DT_QUEUE_ACTION_TIMEOUT_SECONDS", 60),
                require_running=_env_bool("DT_QUEUE_REQUIRE_RUNNING", default=True),
            ),
            repair=RepairSettings(
                default_agent=os.getenv("DT_QUEUE_REPAIR_AGENT", "claude").strip().lower(),
                command_templates={
                    agent: os.getenv(
                        f"DT_QUEUE_REPAIR_{agent.upper()}_COMMAND",
                        DEFAULT_REPAIR_COMMAND_TEMPLATES[agent],
                    )
                    for agent in SUPPORTED_AGENTS
                },
                models={
                    agent: os.getenv(
                        f"DT_QUEUE_REPAIR_{agent.upper()}_MODEL",
                        DEFAULT_REPAIR_MODELS[agent],
                    )
                    for agent in SUPPORTED_AGENTS
                },
                timeout_seconds=_env_int("DT_QUEUE_REPAIR_TIMEOUT_SECONDS", 300),
            ),
            log_level=os.getenv("DT_QUEUE_LOG_LEVEL", "WARNING").strip().upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise `ValueError` naming the offending env var for invalid values."""

        if self.store.lock_timeout_seconds < 0:
            raise ValueError("DT_QUEUE_LOCK_TIMEOUT_SECONDS must be >= 0.")
        if self.execution.default_mode not in SUPPORTED_MODES:
            raise ValueError(
                f"Invalid DT_QUEUE_DEFAULT_MODE: {self.execution.default_mode!r}. "
                f"Use one of: {', '.join(SUPPORTED_MODES)}.",
            )
        if self.execution.max_workers <= 0:
            raise ValueError("DT_QUEUE_MAX_WORKERS must be a positive integer.")
        if self.backend.action_timeout_seconds <= 0:
            raise ValueError("DT_QUEUE_ACTION_TIMEOUT_SECONDS must be a positive integer.")
        if not self.backend.osascript.strip():
            raise ValueError("DT_QUEUE_OSASCRIPT must not be empty.")
        if self.repair.default_agent not in SUPPORTED_AGENTS:
            raise ValueError(
                f"Invalid DT_QUEUE_REPAIR_AGENT: {self.repair.default_agent!r}. "
                f"Use one of: {', '.join(SUPPORTED_AGENTS)}.",
            )
        for agent in SUPPORTED_AGENTS:
            if not self.repair.command_templates.get(agent, "").strip():
                raise ValueError(f"DT_QUEUE_REPAIR_{agent.upper()}_COMMAND must not be empty.")
            if not self.repair.models.get(agent, "").strip():
                raise ValueError(f"DT_QUEUE_REPAIR_{agent.upper()}_MODEL must not be empty.")
        if self.repair.timeout_seconds <= 0:
            raise ValueError("DT_QUEUE_REPAIR_TIMEOUT_SECONDS must be a positive integer.")
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"Invalid DT_QUEUE_LOG_LEVEL: {self.log_level!r}.")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
