"""Runtime configuration for the turn orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(slots=True, frozen=True)
class OrchestratorConfig:
    """Timeouts and feature switches injected into :class:`TurnOrchestrator`.

    ``full_timeout_seconds`` must be strictly greater than
    ``ack_timeout_seconds``; construction fails otherwise.
    """

    ack_timeout_seconds: float = 5.0
    full_timeout_seconds: float = 30.0
    tool_timeout_seconds: float = 20.0
    turn_budget_seconds: float | None = 45.0
    prompt_version: str = "v1"
    production: bool = False
    ack_fallback_text: str = "Model updated."
    knowledge_version: str | None = None
    response_cache_enabled: bool = True

    def __post_init__(self) -> None:
        if self.ack_timeout_seconds <= 0:
            raise ValueError("ack_timeout_seconds must be positive")
        if self.full_timeout_seconds <= self.ack_timeout_seconds:
            raise ValueError("full_timeout_seconds must be greater than ack_timeout_seconds")
        if self.tool_timeout_seconds <= 0:
            raise ValueError("tool_timeout_seconds must be positive")
        if self.turn_budget_seconds is not None and self.turn_budget_seconds <= 0:
            raise ValueError("turn_budget_seconds must be positive when set")

    @classmethod
    def from_settings(cls, settings: Any) -> "OrchestratorConfig":
        """Build the runtime config from a :class:`~decision_coach.services.settings.Settings`."""

        return cls(
            ack_timeout_seconds=settings.ack_timeout_seconds,
            full_timeout_seconds=settings.full_timeout_seconds,
            tool_timeout_seconds=settings.tool_timeout_seconds,
            turn_budget_seconds=settings.turn_budget_seconds,
            prompt_version=settings.prompt_version,
            production=settings.production,
            knowledge_version=settings.knowledge_version,
            response_cache_enabled=settings.response_cache_enabled,
        )


__all__ = ["OrchestratorConfig"]
