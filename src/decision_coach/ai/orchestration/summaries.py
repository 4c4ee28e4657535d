"""Convert client-held graph and analysis payloads into decision state."""

from __future__ import annotations

import logging
import math
from typing import Any, Mapping, Sequence

from ..context.state import (
    AnalysisSummary,
    CausalEdge,
    ConversationTurn,
    DecisionState,
    DriverSummary,
    Framing,
    GraphSummary,
    ToolOutput,
    sequence_items,
    string_items,
)
from .types import ConversationContext

LOGGER = logging.getLogger(__name__)

__all__ = [
    "MAX_DRIVERS",
    "build_decision_state",
    "edge_id",
    "extract_analysis_summary",
    "extract_graph_summary",
    "extract_turns",
]

MAX_DRIVERS = 5


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    number = float(value)
    return number if math.isfinite(number) else None


def _mappings(values: Any) -> list[Mapping[str, Any]]:
    if not isinstance(values, Sequence) or isinstance(values, (str, bytes)):
        return []
    return [item for item in values if isinstance(item, Mapping)]


def edge_id(edge: Mapping[str, Any]) -> str:
    explicit = edge.get("id")
    if isinstance(explicit, str) and explicit:
        return explicit
    return f"{edge.get('from', '')}->{edge.get('to', '')}"


def extract_graph_summary(graph: Mapping[str, Any] | None) -> GraphSummary | None:
    if not graph:
        return None
    nodes = _mappings(graph.get("nodes"))
    edges = _mappings(graph.get("edges"))
    goal = next((str(node.get("id")) for node in nodes if node.get("kind") == "goal"), None)
    options = tuple(str(node.get("id")) for node in nodes if node.get("kind") == "option")
    causal = []
    for edge in edges:
        strength = edge.get("strength")
        if isinstance(strength, Mapping):
            strength = strength.get("mean")
        causal.append(
            CausalEdge(
                source_id=str(edge.get("from", "")),
                target_id=str(edge.get("to", "")),
                strength=_number(strength),
            )
        )
    return GraphSummary(
        node_count=len(nodes),
        edge_count=len(edges),
        goal_node_id=goal,
        option_node_ids=options,
        edges=tuple(causal),
        compact_edges=graph.get("compact_edges") if isinstance(graph.get("compact_edges"), str) else None,
    )


def extract_analysis_summary(response: Mapping[str, Any] | None) -> AnalysisSummary | None:
    """Summarise an analysis response: winner, margin, robustness and top drivers."""

    if not response:
        return None

    results = [
        item for item in _mappings(response.get("results")) if _number(item.get("win_probability")) is not None
    ]
    results.sort(key=lambda item: float(item["win_probability"]), reverse=True)

    winner_id = winner_probability = winner_fact = margin = None
    if results:
        top = results[0]
        winner_id = str(top.get("option_id") or top.get("option_label") or "")
        winner_probability = float(top["win_probability"])
        winner_fact = top.get("fact_id")
        if len(results) > 1:
            margin = winner_probability - float(results[1]["win_probability"])

    drivers = []
    for item in _mappings(response.get("factor_sensitivity"))[:MAX_DRIVERS]:
        node = item.get("node_id") or item.get("factor_id") or item.get("label")
        sensitivity = _number(item.get("elasticity", item.get("sensitivity")))
        if not node or sensitivity is None:
            continue
        drivers.append(
            DriverSummary(
                node_id=str(node),
                sensitivity=sensitivity,
                confidence=str(item.get("confidence") or "unknown"),
                fact_id=item.get("fact_id"),
            )
        )

    robustness = response.get("robustness") if isinstance(response.get("robustness"), Mapping) else {}
    fragile = []
    for entry in sequence_items(robustness.get("fragile_edges")):
        if isinstance(entry, Mapping):
            fragile.append(str(entry.get("edge_id") or edge_id(entry)))
        elif isinstance(entry, str):
            fragile.append(entry)

    return AnalysisSummary(
        winner_id=winner_id or None,
        winner_probability=winner_probability,
        winner_fact_id=winner_fact if winner_id else None,
        winning_margin=margin,
        margin_fact_id=response.get("margin_fact_id") if margin is not None else None,
        robustness_level=robustness.get("level"),
        robustness_fact_id=robustness.get("fact_id") if robustness.get("level") else None,
        top_drivers=tuple(drivers),
        fragile_edge_ids=tuple(fragile),
        event_summary=response.get("event_summary") if isinstance(response.get("event_summary"), str) else None,
    )


def extract_turns(messages: Sequence[Mapping[str, Any]]) -> tuple[ConversationTurn, ...]:
    turns: list[ConversationTurn] = []
    for message in messages:
        role = message.get("role")
        if role not in ("user", "assistant"):
            LOGGER.debug("Skipping conversation message with role %r", role)
            continue
        outputs = tuple(
            ToolOutput(
                tool_name=str(output.get("tool_name", "")),
                system_fields=dict(output.get("system_fields") or {}),
                user_originated_fields=dict(output.get("user_originated_fields") or {}),
            )
            for output in _mappings(message.get("tool_outputs"))
        )
        turns.append(ConversationTurn(role=role, content=str(message.get("content") or ""), tool_outputs=outputs))
    return tuple(turns)


def build_decision_state(context: ConversationContext) -> DecisionState:
    framing = context.framing or {}
    return DecisionState(
        graph_summary=extract_graph_summary(context.graph),
        analysis_summary=extract_analysis_summary(context.analysis_response),
        framing=Framing.from_dict(framing) if framing else None,
        user_causal_claims=string_items(framing.get("causal_claims")),
        unresolved_questions=string_items(framing.get("open_questions")),
    )
