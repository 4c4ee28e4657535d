"""Pipeline phase: Assemble Envelope.

Merges model output, tool output and heuristics into the response envelope,
and computes the lineage hash that ties an envelope to the semantic inputs of
its turn.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

from ...context.hashing import canonical_json, compute_string_hash, sha256_hex
from ..errors import SAFE_ERROR_MESSAGE, ErrorCode
from ..response_parser import extract_fact_citations
from ..runtime_config import OrchestratorConfig
from ..science import build_science_ledger
from ..stage import apply_transition, progress_for
from ..types import (
    EnrichedContext,
    EnvelopeError,
    Lineage,
    LLMCallResult,
    Observability,
    ResponseEnvelope,
    SpecialistResult,
    StageIndicator,
    SuggestedAction,
    ToolBatchResult,
    ToolInvocation,
    TurnClassification,
    TurnPlan,
    TurnRequest,
)

__all__ = [
    "assemble_envelope",
    "build_error_envelope",
    "compute_lineage_hash",
    "lineage_for_payload",
    "merge_suggested_actions",
]


def compute_lineage_hash(
    request: TurnRequest,
    *,
    stage: str,
    intent: str,
    route: str,
    prompt_version: str,
) -> str:
    """Digest of the turn's semantic inputs.

    Excludes the client turn id, the conversation history and the system
    event's id and details so retried or replayed turns hash identically.
    """

    context = request.context
    payload = {
        "scenario_id": request.scenario_id,
        "stage": stage,
        "intent": intent,
        "route": route,
        "prompt_version": prompt_version,
        "message": request.message,
        "graph": context.graph,
        "analysis_response": context.analysis_response,
        "framing": context.framing,
        "selected_elements": list(context.selected_elements),
        "event_type": request.system_event.event_type if request.system_event else None,
    }
    return sha256_hex(canonical_json(payload))


def lineage_for_payload(payload: Any) -> str:
    """Lineage hash for a payload that failed validation."""

    if not isinstance(payload, Mapping):
        return sha256_hex(canonical_json({"invalid_payload": type(payload).__name__}))
    stripped = {key: value for key, value in payload.items() if key not in ("client_turn_id", "system_event")}
    context = stripped.get("context")
    if isinstance(context, Mapping):
        stripped["context"] = {key: value for key, value in context.items() if key != "messages"}
    try:
        return sha256_hex(canonical_json(stripped))
    except (TypeError, ValueError):
        return sha256_hex(canonical_json({"invalid_payload": "unserializable"}))


def _dsk_hash(config: OrchestratorConfig) -> str | None:
    if not config.knowledge_version:
        return None
    return compute_string_hash(config.knowledge_version)


def merge_suggested_actions(
    model_actions: Sequence[SuggestedAction],
    rescue_routes: Sequence[SuggestedAction],
) -> tuple[SuggestedAction, ...]:
    """Model suggestions first, then rescue routes whose label is not already used."""

    merged = list(model_actions)
    labels = {action.label.lower() for action in merged}
    for action in rescue_routes:
        if action.label.lower() not in labels:
            merged.append(action)
            labels.add(action.label.lower())
    return tuple(merged)


def _turn_plan(
    invocations: Sequence[ToolInvocation],
    batch: ToolBatchResult,
    *,
    long_running: bool,
) -> TurnPlan:
    if not invocations:
        return TurnPlan()
    first = invocations[0]
    return TurnPlan(
        selected_tool=first.name,
        routing="deterministic" if first.is_deterministic else "llm",
        long_running=long_running,
        tool_latency_ms=round(batch.tool_latency_ms, 3) if batch.executed else None,
    )


def assemble_envelope(
    *,
    turn_id: str,
    request: TurnRequest,
    classification: TurnClassification,
    enriched: EnrichedContext | None,
    specialists: SpecialistResult,
    llm: LLMCallResult,
    invocations: Sequence[ToolInvocation],
    batch: ToolBatchResult,
    config: OrchestratorConfig,
    long_running: bool = False,
    phases: Sequence[str] = (),
) -> ResponseEnvelope:
    """Build the envelope for a turn that reached the assemble phase."""

    assistant_text = batch.assistant_text if batch.assistant_text is not None else llm.assistant_text
    stage = apply_transition(classification.stage, batch.side_effects)

    cited = tuple(dict.fromkeys((*llm.cited_fact_ids, *extract_fact_citations(assistant_text))))
    ledger = build_science_ledger(
        assistant_text=assistant_text,
        cited_fact_ids=cited,
        known_fact_ids=enriched.pack.fact_ids if enriched is not None else (),
        canonical_state=enriched.canonical_state if enriched is not None else "",
        techniques=specialists.techniques,
    )

    context_info: dict[str, Any] = {"route": classification.route}
    if enriched is not None:
        pack = enriched.pack
        context_info.update(
            {
                "route": pack.route,
                "stage": pack.stage,
                "context_hash": pack.context_hash,
                "estimated_tokens": pack.estimated_tokens,
                "within_budget": pack.within_budget,
                "overage_tokens": pack.overage_tokens,
                "truncation_steps": list(pack.truncation_steps),
                "outcome": pack.outcome,
            }
        )

    observability = Observability(
        triggers_fired=tuple(dict.fromkeys((*classification.triggers_fired, *specialists.triggers_fired))),
        triggers_suppressed=tuple(dict.fromkeys((*classification.triggers_suppressed, *specialists.triggers_suppressed))),
        intent_classification=classification.intent,
        specialist_contributions=tuple(contribution.name for contribution in specialists.contributions),
        specialist_disagreement=specialists.disagreement,
        context=context_info,
    )

    extensions: dict[str, Any] = dict(llm.extensions)
    if llm.cached:
        extensions["llm_cache_hit"] = True
    if llm.outcome == "degraded":
        extensions["llm_fallback"] = True
    if batch.analysis_response is not None:
        extensions["analysis_response"] = dict(batch.analysis_response)
    if batch.graph is not None:
        extensions["graph"] = dict(batch.graph)

    diagnostics = None
    parse_warnings = None
    if not config.production:
        diagnostics = {
            "phases": list(phases),
            "model_diagnostics": llm.diagnostics,
            "llm_latency_ms": round(llm.latency_ms, 3),
            "tool_calls": [record.to_dict() for record in batch.records],
            "pack": enriched.pack.to_dict() if enriched is not None else None,
        }
        if llm.parse_warnings:
            parse_warnings = tuple(llm.parse_warnings)

    lineage_hash = compute_lineage_hash(
        request,
        stage=classification.stage.stage,
        intent=classification.intent,
        route=classification.route,
        prompt_version=config.prompt_version,
    )

    return ResponseEnvelope(
        turn_id=turn_id,
        assistant_text=assistant_text,
        lineage=Lineage(context_hash=lineage_hash, dsk_version_hash=_dsk_hash(config)),
        stage_indicator=stage,
        blocks=(*batch.blocks, *llm.blocks),
        suggested_actions=merge_suggested_actions(llm.suggested_actions, specialists.rescue_routes),
        science_ledger=ledger,
        progress_marker=progress_for(batch.side_effects, request.system_event),
        observability=observability,
        turn_plan=_turn_plan(invocations, batch, long_running=long_running),
        extensions=extensions,
        diagnostics=diagnostics,
        parse_warnings=parse_warnings,
    )


def build_error_envelope(
    *,
    turn_id: str,
    code: str,
    internal_message: str,
    lineage_hash: str,
    config: OrchestratorConfig,
    stage: StageIndicator | None = None,
    public_message: str | None = None,
    details: Mapping[str, Any] | None = None,
    phases: Sequence[str] = (),
) -> ResponseEnvelope:
    """Envelope for a turn that ended in error. Internals appear only outside production."""

    if public_message is None:
        public_message = internal_message if code == ErrorCode.INVALID_REQUEST else SAFE_ERROR_MESSAGE
    diagnostics = None
    if not config.production:
        diagnostics = {"phases": list(phases), "error": internal_message, "details": dict(details or {})}
    return ResponseEnvelope(
        turn_id=turn_id,
        assistant_text=SAFE_ERROR_MESSAGE if code != ErrorCode.INVALID_REQUEST else "",
        lineage=Lineage(context_hash=lineage_hash, dsk_version_hash=_dsk_hash(config)),
        stage_indicator=stage or StageIndicator(stage="frame"),
        error=EnvelopeError(code=code, message=public_message),
        diagnostics=diagnostics,
    )
