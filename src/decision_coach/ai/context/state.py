"""Decision state snapshot types consumed by the context renderer.

These are plain value objects. They carry no behaviour beyond light coercion
and serialisation so that rendering and hashing stay pure functions of their
inputs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

__all__ = [
    "ContextRoute",
    "FabricStage",
    "CONTEXT_ROUTES",
    "FABRIC_STAGES",
    "CausalEdge",
    "GraphSummary",
    "DriverSummary",
    "AnalysisSummary",
    "Framing",
    "ToolOutput",
    "ConversationTurn",
    "DecisionState",
    "sequence_items",
    "string_items",
]

ContextRoute = Literal["CHAT", "DRAFT_GRAPH", "EDIT_GRAPH", "EXPLAIN_RESULTS", "GENERATE_BRIEF"]
FabricStage = Literal["frame", "ideate", "evaluate_pre", "evaluate_post", "decide", "optimise"]

CONTEXT_ROUTES: tuple[str, ...] = ("CHAT", "DRAFT_GRAPH", "EDIT_GRAPH", "EXPLAIN_RESULTS", "GENERATE_BRIEF")
FABRIC_STAGES: tuple[str, ...] = ("frame", "ideate", "evaluate_pre", "evaluate_post", "decide", "optimise")


def _as_tuple(values: Sequence[Any] | None) -> tuple[Any, ...]:
    if values is None:
        return ()
    if isinstance(values, (str, bytes)):
        return (values,)
    return tuple(values)


def sequence_items(value: Any) -> tuple[Any, ...]:
    """Items of a list-valued payload field.

    Lists and tuples are taken as they are, a non-blank string counts as a
    single item, and any other shape yields nothing.
    """
    if isinstance(value, str):
        return (value,) if value.strip() else ()
    if isinstance(value, (list, tuple)):
        return tuple(value)
    return ()


def string_items(value: Any) -> tuple[str, ...]:
    return tuple(str(item) for item in sequence_items(value) if item is not None)


@dataclass(slots=True, frozen=True)
class CausalEdge:
    """Directed edge in the compact causal digest."""

    source_id: str
    target_id: str
    strength: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"source_id": self.source_id, "target_id": self.target_id, "strength": self.strength}


@dataclass(slots=True, frozen=True)
class GraphSummary:
    """Structural counts and identifiers extracted from the decision graph.

    ``compact_edges`` holds whatever digest string an upstream producer built.
    It is kept for round-tripping only; the renderer rebuilds the digest from
    ``edges`` instead of trusting it.
    """

    node_count: int
    edge_count: int
    goal_node_id: str | None = None
    option_node_ids: tuple[str, ...] = ()
    edges: tuple[CausalEdge, ...] = ()
    compact_edges: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "option_node_ids", _as_tuple(self.option_node_ids))
        object.__setattr__(self, "edges", _as_tuple(self.edges))

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_count": self.node_count,
            "edge_count": self.edge_count,
            "goal_node_id": self.goal_node_id,
            "option_node_ids": list(self.option_node_ids),
            "edges": [edge.to_dict() for edge in self.edges],
            "compact_edges": self.compact_edges,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "GraphSummary":
        edges = tuple(
            CausalEdge(
                source_id=str(item.get("source_id", "")),
                target_id=str(item.get("target_id", "")),
                strength=item.get("strength"),
            )
            for item in sequence_items(payload.get("edges"))
            if isinstance(item, Mapping)
        )
        return cls(
            node_count=int(payload.get("node_count", 0)),
            edge_count=int(payload.get("edge_count", 0)),
            goal_node_id=payload.get("goal_node_id"),
            option_node_ids=string_items(payload.get("option_node_ids")),
            edges=edges,
            compact_edges=payload.get("compact_edges"),
        )


@dataclass(slots=True, frozen=True)
class DriverSummary:
    """One sensitivity driver from the analysis."""

    node_id: str
    sensitivity: float
    confidence: str
    fact_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "node_id": self.node_id,
            "sensitivity": self.sensitivity,
            "confidence": self.confidence,
            "fact_id": self.fact_id,
        }


@dataclass(slots=True, frozen=True)
class AnalysisSummary:
    """Condensed analysis outcome.

    Optional numeric fields are ``None`` once truncation removed them; each
    field's ``*_fact_id`` companion is cleared at the same time.
    """

    winner_id: str | None = None
    winner_probability: float | None = None
    winner_fact_id: str | None = None
    winning_margin: float | None = None
    margin_fact_id: str | None = None
    robustness_level: str | None = None
    robustness_fact_id: str | None = None
    top_drivers: tuple[DriverSummary, ...] = ()
    fragile_edge_ids: tuple[str, ...] = ()
    event_summary: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "top_drivers", _as_tuple(self.top_drivers))
        object.__setattr__(self, "fragile_edge_ids", _as_tuple(self.fragile_edge_ids))

    @property
    def is_empty(self) -> bool:
        return (
            self.winner_id is None
            and self.winning_margin is None
            and self.robustness_level is None
            and not self.top_drivers
            and not self.fragile_edge_ids
        )

    def fact_ids(self) -> tuple[str, ...]:
        """Return every fact id still carried by this summary, in render order."""

        ids: list[str] = []
        for candidate in (self.winner_fact_id, self.margin_fact_id, self.robustness_fact_id):
            if candidate:
                ids.append(candidate)
        ids.extend(driver.fact_id for driver in self.top_drivers if driver.fact_id)
        return tuple(ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "winner_id": self.winner_id,
            "winner_probability": self.winner_probability,
            "winner_fact_id": self.winner_fact_id,
            "winning_margin": self.winning_margin,
            "margin_fact_id": self.margin_fact_id,
            "robustness_level": self.robustness_level,
            "robustness_fact_id": self.robustness_fact_id,
            "top_drivers": [driver.to_dict() for driver in self.top_drivers],
            "fragile_edge_ids": list(self.fragile_edge_ids),
            "event_summary": self.event_summary,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AnalysisSummary":
        drivers = tuple(
            DriverSummary(
                node_id=str(item.get("node_id", "")),
                sensitivity=float(item.get("sensitivity", 0.0)),
                confidence=str(item.get("confidence", "unknown")),
                fact_id=item.get("fact_id"),
            )
            for item in sequence_items(payload.get("top_drivers"))
            if isinstance(item, Mapping)
        )
        return cls(
            winner_id=payload.get("winner_id"),
            winner_probability=payload.get("winner_probability"),
            winner_fact_id=payload.get("winner_fact_id"),
            winning_margin=payload.get("winning_margin"),
            margin_fact_id=payload.get("margin_fact_id"),
            robustness_level=payload.get("robustness_level"),
            robustness_fact_id=payload.get("robustness_fact_id"),
            top_drivers=drivers,
            fragile_edge_ids=string_items(payload.get("fragile_edge_ids")),
            event_summary=payload.get("event_summary"),
        )


@dataclass(slots=True, frozen=True)
class Framing:
    """User-authored framing of the decision. Every text field is untrusted."""

    stage: str = "frame"
    goal: str | None = None
    constraints: tuple[str, ...] = ()
    options: tuple[str, ...] = ()
    brief_text: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "constraints", _as_tuple(self.constraints))
        object.__setattr__(self, "options", _as_tuple(self.options))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"stage": self.stage}
        if self.goal is not None:
            payload["goal"] = self.goal
        if self.constraints:
            payload["constraints"] = list(self.constraints)
        if self.options:
            payload["options"] = list(self.options)
        if self.brief_text is not None:
            payload["brief_text"] = self.brief_text
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Framing":
        return cls(
            stage=str(payload.get("stage") or "frame"),
            goal=payload.get("goal"),
            constraints=string_items(payload.get("constraints")),
            options=string_items(payload.get("options")),
            brief_text=payload.get("brief_text"),
        )


@dataclass(slots=True, frozen=True)
class ToolOutput:
    """Output of a previous tool call, split along the trust boundary."""

    tool_name: str
    system_fields: Mapping[str, Any] = field(default_factory=dict)
    user_originated_fields: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool_name": self.tool_name,
            "system_fields": dict(self.system_fields),
            "user_originated_fields": dict(self.user_originated_fields),
        }


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """A single prior turn of the conversation."""

    role: Literal["user", "assistant"]
    content: str
    tool_outputs: tuple[ToolOutput, ...] = ()

    def __post_init__(self) -> None:
        if self.role not in ("user", "assistant"):
            raise ValueError(f"Unsupported conversation role: {self.role!r}")
        object.__setattr__(self, "tool_outputs", _as_tuple(self.tool_outputs))

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "tool_outputs": [output.to_dict() for output in self.tool_outputs],
        }


@dataclass(slots=True, frozen=True)
class DecisionState:
    """Serializable snapshot of everything the renderer may show the model."""

    graph_summary: GraphSummary | None = None
    analysis_summary: AnalysisSummary | None = None
    framing: Framing | None = None
    user_causal_claims: tuple[str, ...] = ()
    unresolved_questions: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "user_causal_claims", _as_tuple(self.user_causal_claims))
        object.__setattr__(self, "unresolved_questions", _as_tuple(self.unresolved_questions))

    def to_dict(self) -> dict[str, Any]:
        return {
            "graph_summary": self.graph_summary.to_dict() if self.graph_summary else None,
            "analysis_summary": self.analysis_summary.to_dict() if self.analysis_summary else None,
            "framing": self.framing.to_dict() if self.framing else None,
            "user_causal_claims": list(self.user_causal_claims),
            "unresolved_questions": list(self.unresolved_questions),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DecisionState":
        graph = payload.get("graph_summary")
        analysis = payload.get("analysis_summary")
        framing = payload.get("framing")
        return cls(
            graph_summary=GraphSummary.from_dict(graph) if isinstance(graph, Mapping) else None,
            analysis_summary=AnalysisSummary.from_dict(analysis) if isinstance(analysis, Mapping) else None,
            framing=Framing.from_dict(framing) if isinstance(framing, Mapping) else None,
            user_causal_claims=string_items(payload.get("user_causal_claims")),
            unresolved_questions=string_items(payload.get("unresolved_questions")),
        )
