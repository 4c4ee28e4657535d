"""Core type definitions for the turn orchestration pipeline.

All types are frozen dataclasses so phase outputs can be shared and replayed
safely. Result types carry an explicit ``outcome`` tag (``ok``, ``degraded`` or
``error``) instead of signalling expected degradations through exceptions.
Provider-specific data travels in an explicit ``extensions`` map.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Mapping, Sequence

from openai.types.chat import ChatCompletionMessageParam

from ..context.assembler import ContextPack
from ..context.hashing import compute_hash
from ..context.state import ConversationTurn, DecisionState

__all__ = [
    # Enumerations
    "Outcome",
    "Phase",
    "PHASE_ORDER",
    "DecisionStage",
    "DECISION_STAGES",
    "SYSTEM_EVENT_TYPES",
    "INTENTS",
    "PROGRESS_KINDS",
    # Request types
    "SystemEvent",
    "ConversationContext",
    "TurnRequest",
    # Model interaction types
    "Message",
    "ToolInvocation",
    "LLMCallResult",
    # Tool results
    "ToolSideEffects",
    "ToolCallRecord",
    "ToolBatchResult",
    # Phase outputs
    "TurnClassification",
    "EnrichedContext",
    "SpecialistContribution",
    "SpecialistResult",
    # Envelope types
    "SuggestedAction",
    "ConversationBlock",
    "StageTransition",
    "StageIndicator",
    "ScienceLedger",
    "ProgressMarker",
    "Lineage",
    "TurnPlan",
    "Observability",
    "EnvelopeError",
    "ResponseEnvelope",
    "TurnResult",
]


# -----------------------------------------------------------------------------
# Enumerations
# -----------------------------------------------------------------------------

Outcome = Literal["ok", "degraded", "error"]

Phase = Literal[
    "classify",
    "enrich",
    "specialize",
    "invoke_llm",
    "execute_tools",
    "assemble_envelope",
    "done",
    "error",
]
PHASE_ORDER: tuple[str, ...] = (
    "classify",
    "enrich",
    "specialize",
    "invoke_llm",
    "execute_tools",
    "assemble_envelope",
    "done",
)

DecisionStage = Literal["frame", "ideate", "evaluate", "decide", "optimise"]
DECISION_STAGES: tuple[str, ...] = ("frame", "ideate", "evaluate", "decide", "optimise")

SYSTEM_EVENT_TYPES: tuple[str, ...] = (
    "patch_accepted",
    "patch_dismissed",
    "feedback_submitted",
    "direct_graph_edit",
    "direct_analysis_run",
)

INTENTS: tuple[str, ...] = ("explain", "recommend", "act", "conversational")
PROGRESS_KINDS: tuple[str, ...] = ("changed_model", "ran_analysis", "added_evidence", "committed", "none")


def _freeze_mapping(value: Mapping[str, Any] | None) -> dict[str, Any]:
    return dict(value) if value else {}


# -----------------------------------------------------------------------------
# Request Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SystemEvent:
    """Client-signalled event that bypasses free-form conversation."""

    event_type: str
    event_id: str | None = None
    details: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"event_type": self.event_type, "event_id": self.event_id, "details": dict(self.details)}


@dataclass(slots=True, frozen=True)
class ConversationContext:
    """Client-held decision context sent with every turn."""

    graph: Mapping[str, Any] | None = None
    analysis_response: Mapping[str, Any] | None = None
    framing: Mapping[str, Any] | None = None
    messages: tuple[Mapping[str, Any], ...] = ()
    scenario_id: str | None = None
    selected_elements: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages or ()))
        object.__setattr__(self, "selected_elements", tuple(self.selected_elements or ()))

    @property
    def has_graph(self) -> bool:
        return bool(self.graph and self.graph.get("nodes"))

    @property
    def has_analysis(self) -> bool:
        return bool(self.analysis_response)


@dataclass(slots=True, frozen=True)
class TurnRequest:
    """Validated inbound turn."""

    message: str
    context: ConversationContext
    scenario_id: str
    client_turn_id: str
    system_event: SystemEvent | None = None


# -----------------------------------------------------------------------------
# Model Interaction Types
# -----------------------------------------------------------------------------

MessageRole = Literal["system", "user", "assistant", "tool"]


@dataclass(slots=True, frozen=True)
class Message:
    """Immutable chat message sent to the provider."""

    role: MessageRole
    content: str

    def to_chat_param(self) -> ChatCompletionMessageParam:
        return {"role": self.role, "content": self.content}  # type: ignore[return-value]

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)


@dataclass(slots=True, frozen=True)
class ToolInvocation:
    """A tool call to execute, chosen by the model or by a deterministic rule."""

    id: str
    name: str
    arguments: Mapping[str, Any] = field(default_factory=dict)
    raw_arguments: str | None = None

    DETERMINISTIC_ID = "deterministic"

    @property
    def is_deterministic(self) -> bool:
        return self.id == self.DETERMINISTIC_ID

    @classmethod
    def deterministic(cls, name: str, arguments: Mapping[str, Any] | None = None) -> "ToolInvocation":
        return cls(id=cls.DETERMINISTIC_ID, name=name, arguments=_freeze_mapping(arguments))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": dict(self.arguments)}


@dataclass(slots=True, frozen=True)
class LLMCallResult:
    """Outcome of the invoke phase.

    ``ok`` carries model output, ``degraded`` carries the acknowledgement
    fallback text, and ``error`` carries ``error_code``/``error_message``.
    """

    outcome: Outcome
    assistant_text: str = ""
    tool_invocations: tuple[ToolInvocation, ...] = ()
    blocks: tuple["ConversationBlock", ...] = ()
    suggested_actions: tuple["SuggestedAction", ...] = ()
    cited_fact_ids: tuple[str, ...] = ()
    diagnostics: str | None = None
    parse_warnings: tuple[str, ...] = ()
    error_code: str | None = None
    error_message: str | None = None
    latency_ms: float = 0.0
    usage: Mapping[str, int] = field(default_factory=dict)
    model: str | None = None
    cached: bool = False
    extensions: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def skipped(cls) -> "LLMCallResult":
        return cls(outcome="ok")

    @classmethod
    def fallback(cls, text: str, *, reason: str, latency_ms: float = 0.0) -> "LLMCallResult":
        return cls(outcome="degraded", assistant_text=text, error_message=reason, latency_ms=latency_ms)

    @classmethod
    def failure(cls, code: str, message: str, *, latency_ms: float = 0.0) -> "LLMCallResult":
        return cls(outcome="error", error_code=code, error_message=message, latency_ms=latency_ms)


# -----------------------------------------------------------------------------
# Tool Results
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSideEffects:
    graph_updated: bool = False
    analysis_ran: bool = False
    brief_generated: bool = False

    def merge(self, other: "ToolSideEffects") -> "ToolSideEffects":
        return ToolSideEffects(
            graph_updated=self.graph_updated or other.graph_updated,
            analysis_ran=self.analysis_ran or other.analysis_ran,
            brief_generated=self.brief_generated or other.brief_generated,
        )

    def to_dict(self) -> dict[str, bool]:
        return {
            "graph_updated": self.graph_updated,
            "analysis_ran": self.analysis_ran,
            "brief_generated": self.brief_generated,
        }


@dataclass(slots=True, frozen=True)
class ToolCallRecord:
    """Record of a single tool execution for observability."""

    call_id: str
    name: str
    success: bool
    duration_ms: float
    error: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "call_id": self.call_id,
            "name": self.name,
            "success": self.success,
            "duration_ms": round(self.duration_ms, 3),
        }
        if self.error:
            payload["error"] = dict(self.error)
        return payload


@dataclass(slots=True, frozen=True)
class ToolBatchResult:
    """Aggregated output of the execute_tools phase."""

    outcome: Outcome = "ok"
    blocks: tuple["ConversationBlock", ...] = ()
    side_effects: ToolSideEffects = field(default_factory=ToolSideEffects)
    assistant_text: str | None = None
    analysis_response: Mapping[str, Any] | None = None
    graph: Mapping[str, Any] | None = None
    tool_latency_ms: float = 0.0
    records: tuple[ToolCallRecord, ...] = ()
    error_code: str | None = None
    error_message: str | None = None

    @classmethod
    def empty(cls) -> "ToolBatchResult":
        return cls()

    @property
    def executed(self) -> bool:
        return bool(self.records)


# -----------------------------------------------------------------------------
# Phase Outputs
# -----------------------------------------------------------------------------

TurnKind = Literal["conversational", "ack", "silent", "deterministic"]


@dataclass(slots=True, frozen=True)
class TurnClassification:
    """Result of the classify phase."""

    kind: TurnKind
    intent: str
    route: str
    stage: "StageIndicator"
    deterministic_tool: str | None = None
    triggers_fired: tuple[str, ...] = ()
    triggers_suppressed: tuple[str, ...] = ()

    @property
    def needs_llm(self) -> bool:
        return self.kind in ("conversational", "ack")


@dataclass(slots=True, frozen=True)
class EnrichedContext:
    """Result of the enrich phase."""

    state: DecisionState
    turns: tuple[ConversationTurn, ...]
    pack: ContextPack
    fabric_stage: str
    canonical_state: str = ""


@dataclass(slots=True, frozen=True)
class SpecialistContribution:
    """Advice produced by one deterministic heuristic."""

    name: str
    advice: tuple[str, ...] = ()
    candidates: tuple[str, ...] = ()
    triggers_fired: tuple[str, ...] = ()
    techniques: tuple[str, ...] = ()
    rescue_routes: tuple["SuggestedAction", ...] = ()


@dataclass(slots=True, frozen=True)
class SpecialistResult:
    """Combined output of the specialize phase."""

    advice: tuple[str, ...] = ()
    candidates: tuple[str, ...] = ()
    triggers_fired: tuple[str, ...] = ()
    triggers_suppressed: tuple[str, ...] = ()
    contributions: tuple[SpecialistContribution, ...] = ()
    rescue_routes: tuple["SuggestedAction", ...] = ()
    techniques: tuple[str, ...] = ()
    stuck: bool = False
    disagreement: bool = False

    @classmethod
    def empty(cls) -> "SpecialistResult":
        return cls()


# -----------------------------------------------------------------------------
# Envelope Types
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SuggestedAction:
    label: str
    prompt: str
    role: Literal["facilitator", "challenger"] = "facilitator"

    def to_dict(self) -> dict[str, str]:
        return {"label": self.label, "prompt": self.prompt, "role": self.role}


@dataclass(slots=True, frozen=True)
class ConversationBlock:
    """Structured content emitted alongside assistant text."""

    block_id: str
    block_type: str
    data: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, block_type: str, data: Mapping[str, Any]) -> "ConversationBlock":
        """Build a block whose id is a content hash of its type and data."""

        block_id = f"blk_{block_type}_{compute_hash({'type': block_type, 'data': dict(data)})}"
        return cls(block_id=block_id, block_type=block_type, data=dict(data))

    def to_dict(self) -> dict[str, Any]:
        return {"block_id": self.block_id, "block_type": self.block_type, "data": dict(self.data)}


@dataclass(slots=True, frozen=True)
class StageTransition:
    from_stage: str
    to_stage: str
    trigger: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.from_stage, "to": self.to_stage, "trigger": self.trigger}


@dataclass(slots=True, frozen=True)
class StageIndicator:
    stage: str
    confidence: Literal["high", "medium", "low"] = "low"
    source: Literal["explicit_event", "inferred"] = "inferred"
    substate: str | None = None
    transition: StageTransition | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stage": self.stage,
            "confidence": self.confidence,
            "source": self.source,
        }
        if self.substate:
            payload["substate"] = self.substate
        if self.transition is not None:
            payload["transition"] = self.transition.to_dict()
        return payload


@dataclass(slots=True, frozen=True)
class ScienceLedger:
    """Claims and techniques the reply relied on, plus detected violations."""

    claims_used: tuple[str, ...] = ()
    techniques_used: tuple[str, ...] = ()
    scope_violations: tuple[str, ...] = ()
    phrasing_violations: tuple[str, ...] = ()

    @property
    def clean(self) -> bool:
        return not self.scope_violations and not self.phrasing_violations

    def to_dict(self) -> dict[str, list[str]]:
        return {
            "claims_used": list(self.claims_used),
            "techniques_used": list(self.techniques_used),
            "scope_violations": list(self.scope_violations),
            "phrasing_violations": list(self.phrasing_violations),
        }


@dataclass(slots=True, frozen=True)
class ProgressMarker:
    kind: str = "none"

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind}


@dataclass(slots=True, frozen=True)
class Lineage:
    context_hash: str
    dsk_version_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"context_hash": self.context_hash, "dsk_version_hash": self.dsk_version_hash}


@dataclass(slots=True, frozen=True)
class TurnPlan:
    selected_tool: str | None = None
    routing: Literal["deterministic", "llm"] = "llm"
    long_running: bool = False
    tool_latency_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "selected_tool": self.selected_tool,
            "routing": self.routing,
            "long_running": self.long_running,
            "tool_latency_ms": self.tool_latency_ms,
        }


@dataclass(slots=True, frozen=True)
class Observability:
    triggers_fired: tuple[str, ...] = ()
    triggers_suppressed: tuple[str, ...] = ()
    intent_classification: str = "conversational"
    specialist_contributions: tuple[str, ...] = ()
    specialist_disagreement: bool = False
    context: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "triggers_fired": list(self.triggers_fired),
            "triggers_suppressed": list(self.triggers_suppressed),
            "intent_classification": self.intent_classification,
            "specialist_contributions": list(self.specialist_contributions),
            "specialist_disagreement": self.specialist_disagreement,
        }
        if self.context:
            payload["context"] = dict(self.context)
        return payload


@dataclass(slots=True, frozen=True)
class EnvelopeError:
    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass(slots=True, frozen=True)
class ResponseEnvelope:
    """The sole response body of a turn."""

    turn_id: str
    assistant_text: str
    lineage: Lineage
    stage_indicator: StageIndicator
    blocks: tuple[ConversationBlock, ...] = ()
    suggested_actions: tuple[SuggestedAction, ...] = ()
    science_ledger: ScienceLedger = field(default_factory=ScienceLedger)
    progress_marker: ProgressMarker = field(default_factory=ProgressMarker)
    observability: Observability = field(default_factory=Observability)
    turn_plan: TurnPlan = field(default_factory=TurnPlan)
    error: EnvelopeError | None = None
    extensions: Mapping[str, Any] = field(default_factory=dict)
    diagnostics: Mapping[str, Any] | None = None
    parse_warnings: tuple[str, ...] | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "turn_id": self.turn_id,
            "assistant_text": self.assistant_text,
            "blocks": [block.to_dict() for block in self.blocks],
            "suggested_actions": [action.to_dict() for action in self.suggested_actions],
            "lineage": self.lineage.to_dict(),
            "stage_indicator": self.stage_indicator.to_dict(),
            "science_ledger": self.science_ledger.to_dict(),
            "progress_marker": self.progress_marker.to_dict(),
            "observability": self.observability.to_dict(),
            "turn_plan": self.turn_plan.to_dict(),
        }
        if self.error is not None:
            payload["error"] = self.error.to_dict()
        if self.extensions:
            payload["extensions"] = dict(self.extensions)
        if self.diagnostics is not None:
            payload["diagnostics"] = dict(self.diagnostics)
        if self.parse_warnings is not None:
            payload["parse_warnings"] = list(self.parse_warnings)
        return payload


@dataclass(slots=True, frozen=True)
class TurnResult:
    """Return value of the orchestrator entry point."""

    envelope: ResponseEnvelope
    http_status: int = 200
    replayed: bool = False

    @property
    def outcome(self) -> Outcome:
        if self.envelope.error is not None:
            return "error"
        return "ok"

    def to_dict(self) -> dict[str, Any]:
        return self.envelope.to_dict()
