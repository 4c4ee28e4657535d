"""In-process telemetry hooks for turn and context events."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Iterable, Mapping, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

_EVENT_LISTENERS: dict[str, list[Callable[[dict[str, Any]], None]]] = {}

CONTEXT_ASSEMBLED = "context.assembled"
CONTEXT_OVER_BUDGET = "context.over_budget"
LLM_ACK_FALLBACK = "llm.ack_fallback"
TURN_COMPLETED = "turn.completed"
TURN_FAILED = "turn.failed"
TURN_REPLAYED = "turn.replayed"


@dataclass(slots=True, frozen=True)
class TurnUsageEvent:
    """Usage record captured once per orchestrated turn."""

    turn_id: str
    route: str
    model: str | None
    prompt_tokens: int
    completion_tokens: int
    tool_names: tuple[str, ...]
    latency_ms: float
    outcome: str
    timestamp: float


class TelemetrySink(Protocol):
    """Receiver of turn usage events."""

    def record(self, event: TurnUsageEvent) -> None:
        ...

    def tail(self, limit: int | None = None) -> Sequence[TurnUsageEvent]:
        ...


class InMemoryTelemetrySink:
    """Bounded in-memory buffer of the most recent usage events."""

    def __init__(self, capacity: int = 200) -> None:
        self._capacity = max(1, int(capacity))
        self._events: Deque[TurnUsageEvent] = deque(maxlen=self._capacity)

    @property
    def capacity(self) -> int:
        return self._capacity

    def record(self, event: TurnUsageEvent) -> None:
        self._events.append(event)

    def tail(self, limit: int | None = None) -> Sequence[TurnUsageEvent]:
        events = list(self._events)
        if limit is None or limit >= len(events):
            return events
        if limit <= 0:
            return []
        return events[-limit:]


@dataclass(slots=True, frozen=True)
class UsageSummary:
    """Aggregate totals over a batch of usage events."""

    turns: int
    prompt_tokens: int
    completion_tokens: int
    degraded_turns: int
    failed_turns: int
    average_latency_ms: float


def summarize_usage(events: Iterable[TurnUsageEvent] | None) -> UsageSummary | None:
    """Return totals for ``events`` or ``None`` when nothing was recorded."""

    items = list(events or ())
    if not items:
        return None
    prompt = sum(max(0, event.prompt_tokens) for event in items)
    completion = sum(max(0, event.completion_tokens) for event in items)
    degraded = sum(1 for event in items if event.outcome == "degraded")
    failed = sum(1 for event in items if event.outcome == "error")
    latency = sum(max(0.0, event.latency_ms) for event in items) / len(items)
    return UsageSummary(
        turns=len(items),
        prompt_tokens=prompt,
        completion_tokens=completion,
        degraded_turns=degraded,
        failed_turns=failed,
        average_latency_ms=round(latency, 3),
    )


def register_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    """Subscribe ``callback`` to ``event_name`` broadcasts."""

    if not event_name:
        raise ValueError("event_name is required")
    listeners = _EVENT_LISTENERS.setdefault(event_name, [])
    if callback not in listeners:
        listeners.append(callback)


def unregister_event_listener(event_name: str, callback: Callable[[dict[str, Any]], None]) -> None:
    listeners = _EVENT_LISTENERS.get(event_name)
    if not listeners:
        return
    try:
        listeners.remove(callback)
    except ValueError:
        return
    if not listeners:
        _EVENT_LISTENERS.pop(event_name, None)


def clear_event_listeners() -> None:
    """Drop every registered listener (test hook)."""

    _EVENT_LISTENERS.clear()


def emit(event_name: str, payload: Mapping[str, Any] | None = None) -> None:
    """Broadcast a structured telemetry event to in-process listeners."""

    if not event_name:
        return
    event_payload = {"event": event_name}
    if payload:
        event_payload.update(payload)
    listeners = list(_EVENT_LISTENERS.get(event_name, ()))
    for callback in listeners:
        try:
            callback(dict(event_payload))
        except Exception:  # pragma: no cover - listeners must not break emitters
            LOGGER.debug("Telemetry listener %s failed", callback, exc_info=True)
    LOGGER.debug("Telemetry emit %s: %s", event_name, event_payload)


__all__ = [
    "CONTEXT_ASSEMBLED",
    "CONTEXT_OVER_BUDGET",
    "LLM_ACK_FALLBACK",
    "TURN_COMPLETED",
    "TURN_FAILED",
    "TURN_REPLAYED",
    "TurnUsageEvent",
    "TelemetrySink",
    "InMemoryTelemetrySink",
    "UsageSummary",
    "summarize_usage",
    "register_event_listener",
    "unregister_event_listener",
    "clear_event_listeners",
    "emit",
]
