"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from dt_queue.engine.backend.base import ActionOutcome, LookupKind
from dt_queue.engine.models import Action
from dt_queue.engine.store import QueueStore

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m dt_queue.engine.backend.echo_agent --prompt-file {{prompt_file}}"
)


@dataclass
class FakeActionExecutor:
    """In-memory `ActionExecutor`: records calls and replies from canned results."""

    results: dict[Action, dict[str, Any]] = field(default_factory=dict)
    failures: dict[Action, str] = field(default_factory=dict)
    handlers: dict[Action, Callable[[dict[str, Any]], ActionOutcome]] = field(
        default_factory=dict,
    )
    existing: set[str] = field(default_factory=set)
    available: bool = True
    calls: list[tuple[Action, dict[str, Any]]] = field(default_factory=list)
    lookups: list[tuple[LookupKind, str, str | None]] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def invoke(self, action: Action, params: dict[str, Any]) -> ActionOutcome:
        with self._lock:
            self.calls.append((action, params))
        if action in self.handlers:
            return self.handlers[action](params)
        if action in self.failures:
            return ActionOutcome.failed(self.failures[action])
        return ActionOutcome.ok(dict(self.results.get(action, {})))

    def exists(self, kind: LookupKind, value: str, database: str | None = None) -> bool:
        self.lookups.append((kind, value, database))
        key = value if database is None or kind != LookupKind.PATH else f"{database}:{value}"
        return key in self.existing

    def is_available(self) -> bool:
        return self.available

    def actions(self) -> list[Action]:
        return [action for action, _ in self.calls]


@pytest.fixture()
def fake_executor() -> FakeActionExecutor:
    return FakeActionExecutor()


@pytest.fixture()
def store(tmp_path: Path) -> QueueStore:
    return QueueStore(tmp_path / "queue.json", lock_timeout_seconds=1.0)


@pytest.fixture()
def clean_env(monkeypatch, tmp_path: Path) -> Path:
    """Drop DT_QUEUE_* overrides from the developer environment; returns the store path."""

    for name in list(os.environ):
        if name.startswith("DT_QUEUE_"):
            monkeypatch.delenv(name, raising=False)
    store_path = tmp_path / "store" / "queue.json"
    monkeypatch.setenv("DT_QUEUE_STORE_PATH", str(store_path))
    return store_path


@pytest.fixture()
def echo_agent(monkeypatch) -> str:
    """Route every repair engine to the local echo agent module."""

    for agent in ("CLAUDE", "CODEX", "GEMINI"):
        monkeypatch.setenv(f"DT_QUEUE_REPAIR_{agent}_COMMAND", _ECHO_AGENT_COMMAND_TEMPLATE)
    return _ECHO_AGENT_COMMAND_TEMPLATE
