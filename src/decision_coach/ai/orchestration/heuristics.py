"""Deterministic specialists run during the specialize phase.

A specialist inspects the turn and returns a :class:`SpecialistContribution`
of advice lines, next-step candidates, techniques and optional rescue routes.
Specialists never call the model. A failing specialist is logged and reported
as a suppressed trigger; it never fails the turn.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..context.state import ConversationTurn, sequence_items
from .intent import normalize_message
from .types import ConversationContext, SpecialistContribution, SpecialistResult, StageIndicator, SuggestedAction

LOGGER = logging.getLogger(__name__)

__all__ = [
    "ArchetypeSpecialist",
    "ReadinessSpecialist",
    "Specialist",
    "SpecialistInput",
    "StuckDetector",
    "default_specialists",
    "run_specialists",
]


@dataclass(slots=True, frozen=True)
class SpecialistInput:
    message: str
    context: ConversationContext
    turns: tuple[ConversationTurn, ...]
    stage: StageIndicator
    intent: str


@runtime_checkable
class Specialist(Protocol):
    name: str

    def contribute(self, data: SpecialistInput) -> SpecialistContribution | None:
        ...


# -----------------------------------------------------------------------------
# Archetype
# -----------------------------------------------------------------------------

_PRICING_KEYWORDS = (
    "price", "pricing", "discount", "fee", "fees", "rate", "rates", "tariff",
    "subscription", "plan", "tier", "tiers", "revenue", "margin", "margins", "cost", "costs",
)
_ARCHETYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("product_decision", ("product", "feature", "revenue", "retention")),
    ("strategy_decision", ("strategy", "strategic", "long-term", "long term", "bet")),
    ("market_expansion_decision", ("market", "expand", "expansion", "new market")),
    ("product_strategy_decision", ("product strategy", "pivot", "roadmap")),
    ("product_launch_decision", ("launch", "ship", "release", "onboarding", "go live")),
    ("growth_experiment_decision", ("experiment", "growth", "ab test", "a/b test", "kill", "pivot")),
    (
        "product_portfolio_prioritisation",
        ("portfolio", "prioritise", "prioritize", "prioritisation", "prioritization", "bets"),
    ),
)
_PRICING_THRESHOLD = 2


def _graph_labels(graph: Mapping[str, object] | None) -> str:
    if not graph:
        return ""
    labels: list[str] = []
    for node in graph.get("nodes") or ():
        if isinstance(node, Mapping):
            labels.append(str(node.get("label") or node.get("id") or ""))
    return " ".join(labels)


def match_archetype(text: str) -> tuple[str, str] | None:
    """Return ``(archetype, match)`` where match is ``exact`` or ``fuzzy``."""

    haystack = f" {normalize_message(text)} "
    if not haystack.strip():
        return None
    pricing_hits = sum(1 for word in _PRICING_KEYWORDS if re.search(rf"\b{re.escape(word)}\b", haystack))
    if pricing_hits >= _PRICING_THRESHOLD:
        return "pricing_decision", "exact" if pricing_hits >= 3 else "fuzzy"

    best: str | None = None
    best_score = 0
    for archetype, keywords in _ARCHETYPE_KEYWORDS:
        score = sum(1 for keyword in keywords if keyword in haystack)
        if score > best_score:
            best, best_score = archetype, score
    if best is None:
        return None
    return best, "exact" if best_score >= 3 else "fuzzy"


class ArchetypeSpecialist:
    name = "archetype"

    def contribute(self, data: SpecialistInput) -> SpecialistContribution | None:
        framing = data.context.framing or {}
        text = " ".join(
            part
            for part in (str(framing.get("brief_text") or ""), str(framing.get("goal") or ""), data.message, _graph_labels(data.context.graph))
            if part
        )
        match = match_archetype(text)
        if match is None:
            return None
        archetype, quality = match
        return SpecialistContribution(
            name=self.name,
            advice=(f"Decision resembles a {archetype.replace('_', ' ')} ({quality} match).",),
            triggers_fired=(f"archetype:{archetype}",),
            techniques=("archetype_matching",),
        )


# -----------------------------------------------------------------------------
# Readiness
# -----------------------------------------------------------------------------


class ReadinessSpecialist:
    """Checks whether the graph has what an analysis run needs."""

    name = "readiness"

    def contribute(self, data: SpecialistInput) -> SpecialistContribution | None:
        graph = data.context.graph
        if not data.context.has_graph or graph is None:
            return None
        nodes = [node for node in sequence_items(graph.get("nodes")) if isinstance(node, Mapping)]
        kinds = [str(node.get("kind") or "") for node in nodes]
        edges = list(sequence_items(graph.get("edges")))

        gaps: list[str] = []
        if "goal" not in kinds:
            gaps.append("The model has no goal node yet.")
        if kinds.count("option") < 2:
            gaps.append("Add at least two options to compare.")
        if not edges:
            gaps.append("No causal links connect the factors yet.")

        if gaps:
            return SpecialistContribution(
                name=self.name,
                advice=tuple(gaps),
                candidates=("edit_graph",),
                triggers_fired=("readiness:incomplete",),
                techniques=("readiness_assessment",),
            )
        if not data.context.has_analysis:
            return SpecialistContribution(
                name=self.name,
                advice=("The model looks complete enough to analyse.",),
                candidates=("run_analysis",),
                triggers_fired=("readiness:ready",),
                techniques=("readiness_assessment",),
            )
        return None


# -----------------------------------------------------------------------------
# Stuck detection
# -----------------------------------------------------------------------------

_STUCK_PATTERN = re.compile(r"\b(?:i don't know|i dont know|not sure|no idea|stuck|confused|lost)\b")


class StuckDetector:
    """Flags a user who keeps signalling uncertainty and offers rescue routes."""

    name = "stuck"

    def __init__(self, *, threshold: int = 2, window: int = 4) -> None:
        self._threshold = max(1, threshold)
        self._window = max(1, window)

    def contribute(self, data: SpecialistInput) -> SpecialistContribution | None:
        recent = [turn.content for turn in data.turns if turn.role == "user"][-self._window :]
        recent.append(data.message)
        hits = sum(1 for text in recent if _STUCK_PATTERN.search(normalize_message(text)))
        if hits < self._threshold:
            return None
        return SpecialistContribution(
            name=self.name,
            advice=("The user seems stuck; offer a smaller next step.",),
            triggers_fired=("stuck:uncertainty",),
            techniques=("reframing",),
            rescue_routes=self._rescue_routes(data.stage.stage),
        )

    @staticmethod
    def _rescue_routes(stage: str) -> tuple[SuggestedAction, ...]:
        if stage in ("frame", "ideate"):
            return (
                SuggestedAction(
                    label="Start with one option",
                    prompt="Let's describe just one option you are considering.",
                ),
                SuggestedAction(
                    label="Name the outcome",
                    prompt="What outcome would make this decision a success?",
                    role="challenger",
                ),
            )
        return (
            SuggestedAction(
                label="Focus on the biggest driver",
                prompt="Which single factor matters most to the result?",
            ),
            SuggestedAction(
                label="Test an assumption",
                prompt="Which assumption are you least confident about?",
                role="challenger",
            ),
        )


# -----------------------------------------------------------------------------
# Runner
# -----------------------------------------------------------------------------


def default_specialists() -> tuple[Specialist, ...]:
    return (ArchetypeSpecialist(), ReadinessSpecialist(), StuckDetector())


def run_specialists(specialists: Iterable[Specialist], data: SpecialistInput) -> SpecialistResult:
    """Run every specialist and merge their contributions in order."""

    contributions: list[SpecialistContribution] = []
    suppressed: list[str] = []
    for specialist in specialists:
        name = getattr(specialist, "name", type(specialist).__name__)
        try:
            contribution = specialist.contribute(data)
        except Exception:  # heuristics are advisory
            LOGGER.warning("Specialist %s failed", name, exc_info=True)
            suppressed.append(f"specialist_failed:{name}")
            continue
        if contribution is not None:
            contributions.append(contribution)

    return _merge(contributions, suppressed)


def _dedupe(values: Sequence[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(values))


def _merge(contributions: Sequence[SpecialistContribution], suppressed: Sequence[str]) -> SpecialistResult:
    candidates = _dedupe([item for c in contributions for item in c.candidates])
    rescue = tuple(action for c in contributions for action in c.rescue_routes)
    return SpecialistResult(
        advice=tuple(item for c in contributions for item in c.advice),
        candidates=candidates,
        triggers_fired=_dedupe([item for c in contributions for item in c.triggers_fired]),
        triggers_suppressed=tuple(suppressed),
        contributions=tuple(contributions),
        rescue_routes=rescue,
        techniques=_dedupe([item for c in contributions for item in c.techniques]),
        stuck=any(c.rescue_routes for c in contributions),
        disagreement=len(candidates) > 1,
    )
