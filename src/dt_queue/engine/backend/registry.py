"""Action to handler registry: the single place where actions get wired."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from dt_queue.engine.backend.base import ActionOutcome
from dt_queue.engine.models import Action

logger = logging.getLogger(__name__)

ActionHandler = Callable[[dict[str, Any]], ActionOutcome]


class ActionRegistry:
    """Maps each `Action` to one handler."""

    def __init__(self) -> None:
        self._handlers: dict[Action, ActionHandler] = {}

    def register(self, action: Action, handler: ActionHandler) -> None:
        if action in self._handlers:
            raise ValueError(f"Handler for {action.value} is already registered")
        self._handlers[action] = handler

    def registered(self) -> tuple[Action, ...]:
        return tuple(action for action in Action if action in self._handlers)

    def missing(self) -> tuple[Action, ...]:
        return tuple(action for action in Action if action not in self._handlers)

    def invoke(self, action: Action, params: dict[str, Any]) -> ActionOutcome:
        handler = self._handlers.get(action)
        if handler is None:
            logger.warning("No handler registered for action %s", action.value)
            return ActionOutcome.failed(f"No handler registered for action {action.value}")
        return handler(params)
