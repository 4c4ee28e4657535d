"""Keyword intent classification and the deterministic tool gate."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Mapping

from .types import ConversationContext

__all__ = [
    "GateMatch",
    "DETERMINISTIC_PREREQUISITES",
    "classify_intent",
    "match_deterministic_gate",
    "missing_prerequisite",
    "normalize_message",
    "select_route",
]


def normalize_message(message: str) -> str:
    """Lower-case, drop punctuation and collapse whitespace."""

    lowered = (message or "").lower()
    cleaned = re.sub(r"[^\w\s'-]", " ", lowered)
    return re.sub(r"\s+", " ", cleaned).strip()


# -----------------------------------------------------------------------------
# Deterministic gate
# -----------------------------------------------------------------------------

_POLITE = r"(?:(?:please|can you|could you|let's|lets)\s+)?"
_GATE_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("run_analysis", re.compile(rf"^{_POLITE}(?:run|re-?run)(?:\s+the)?\s+(?:analysis|simulation)(?:\s+again)?(?:\s+please)?$")),
    ("generate_brief", re.compile(rf"^{_POLITE}(?:generate|write|create)(?:\s+(?:a|the))?\s+(?:decision\s+)?brief(?:\s+please)?$")),
    ("explain_results", re.compile(rf"^{_POLITE}explain(?:\s+the)?\s+(?:results|analysis)(?:\s+please)?$")),
    ("draft_graph", re.compile(rf"^{_POLITE}(?:draft|build|create)(?:\s+(?:a|the))?\s+(?:decision\s+)?(?:model|graph)(?:\s+please)?$")),
)


@dataclass(slots=True, frozen=True)
class GateMatch:
    tool: str
    normalized_message: str
    pattern: str


def match_deterministic_gate(message: str) -> GateMatch | None:
    """Return the tool a message maps to exactly, or ``None`` for free-form turns."""

    normalized = normalize_message(message)
    if not normalized:
        return None
    for tool, pattern in _GATE_PATTERNS:
        if pattern.match(normalized):
            return GateMatch(tool=tool, normalized_message=normalized, pattern=pattern.pattern)
    return None


def _has_graph(context: ConversationContext) -> bool:
    return context.has_graph


def _has_analysis(context: ConversationContext) -> bool:
    return context.has_analysis


def _has_framing_seed(context: ConversationContext) -> bool:
    framing = context.framing or {}
    options = framing.get("options")
    return bool(framing.get("goal") or framing.get("brief_text") or (isinstance(options, list) and options))


# Each check returns the name of the missing input.
DETERMINISTIC_PREREQUISITES: Mapping[str, tuple[tuple[str, Callable[[ConversationContext], bool]], ...]] = {
    "run_analysis": (("graph", _has_graph),),
    "edit_graph": (("graph", _has_graph),),
    "explain_results": (("analysis", _has_analysis),),
    "generate_brief": (("graph", _has_graph), ("analysis", _has_analysis)),
    "draft_graph": (("framing", _has_framing_seed),),
}


def missing_prerequisite(tool: str, context: ConversationContext) -> str | None:
    for name, check in DETERMINISTIC_PREREQUISITES.get(tool, ()):
        if not check(context):
            return name
    return None


# -----------------------------------------------------------------------------
# Intent classification
# -----------------------------------------------------------------------------

_INTENT_KEYWORDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("explain", re.compile(r"\b(?:why|explain|what does|how does|what do)\b")),
    ("recommend", re.compile(r"\b(?:should i|should we|recommend|which option|best option|what would you do)\b")),
    ("act", re.compile(r"\b(?:run|add|remove|delete|change|update|draft|generate|fix|edit|rename|connect)\b")),
)


def classify_intent(message: str) -> str:
    """Return ``explain``, ``recommend``, ``act`` or ``conversational``."""

    normalized = normalize_message(message)
    for intent, pattern in _INTENT_KEYWORDS:
        if pattern.search(normalized):
            return intent
    return "conversational"


_TOOL_ROUTES: Mapping[str, str] = {
    "run_analysis": "EXPLAIN_RESULTS",
    "explain_results": "EXPLAIN_RESULTS",
    "draft_graph": "DRAFT_GRAPH",
    "edit_graph": "EDIT_GRAPH",
    "generate_brief": "GENERATE_BRIEF",
}


def select_route(intent: str, context: ConversationContext, tool: str | None = None) -> str:
    """Pick the context route for a turn."""

    if tool is not None and tool in _TOOL_ROUTES:
        return _TOOL_ROUTES[tool]
    if intent == "explain" and context.has_analysis:
        return "EXPLAIN_RESULTS"
    if intent == "act":
        return "EDIT_GRAPH" if context.has_graph else "DRAFT_GRAPH"
    return "CHAT"
