"""Routing resolution for the repair agent."""

from __future__ import annotations

from dataclasses import dataclass

from dt_queue.config import SUPPORTED_AGENTS, RepairSettings


@dataclass(slots=True)
class RepairRouting:
    """Resolved agent, model and command template for one repair request."""

    agent: str
    model: str
    command_template: str
    timeout_seconds: int

    def to_metadata(self) -> dict[str, object]:
        return {
            "agent": self.agent,
            "model": self.model,
            "command_template": self.command_template,
            "timeout_seconds": self.timeout_seconds,
        }


def resolve_repair_routing(
    *,
    settings: RepairSettings,
    agent_override: str | None = None,
    model_override: str | None = None,
) -> RepairRouting:
    """Pick the agent (`--engine` wins over the configured default) and its model."""

    agent = (
        _normalize_agent(agent_override) if agent_override is not None else settings.default_agent
    )
    _validate_supported_agent(agent)
    model = (
        model_override.strip() if model_override is not None else settings.models.get(agent, "")
    )
    if not model:
        raise ValueError(f"Resolved model is empty for agent={agent!r}")
    command_template = settings.command_templates.get(agent, "").strip()
    if not command_template:
        raise ValueError(f"Resolved command template is empty for agent={agent!r}")
    return RepairRouting(
        agent=agent,
        model=model,
        command_template=command_template,
        timeout_seconds=settings.timeout_seconds,
    )


def _normalize_agent(value: str) -> str:
    return value.strip().lower()


def _validate_supported_agent(agent: str) -> None:
    if agent in SUPPORTED_AGENTS:
        return
    raise ValueError(f"Unsupported repair engine: {agent!r}. Use claude, codex, or gemini.")
