"""Pipeline phase: Enrich.

Builds the decision state from the client context and assembles the context
pack. Synchronous; its only side effects are logging and telemetry.
"""

from __future__ import annotations

import logging

from ....services import telemetry as telemetry_service
from ...context.assembler import ContextAssembler
from ..stage import fabric_stage
from ..summaries import build_decision_state, extract_turns
from ..types import EnrichedContext, TurnClassification, TurnRequest

__all__ = ["enrich_turn"]

LOGGER = logging.getLogger(__name__)


def enrich_turn(
    request: TurnRequest,
    classification: TurnClassification,
    assembler: ContextAssembler,
    *,
    prompt_version: str,
) -> EnrichedContext:
    context = request.context
    state = build_decision_state(context)
    turns = extract_turns(context.messages)
    stage = fabric_stage(classification.stage.stage, has_analysis=context.has_analysis)
    brief = state.framing.brief_text if state.framing is not None else None

    pack = assembler.assemble(
        prompt_version,
        classification.route,
        stage,
        state,
        turns,
        request.message,
        context.selected_elements,
        brief=brief,
    )

    LOGGER.debug(
        "Enriched turn: route=%s stage=%s tokens=%s within_budget=%s",
        pack.route,
        stage,
        pack.estimated_tokens,
        pack.within_budget,
    )
    payload = {
        "route": pack.route,
        "stage": stage,
        "estimated_tokens": pack.estimated_tokens,
        "truncation_steps": list(pack.truncation_steps),
        "outcome": pack.outcome,
        "context_hash": pack.context_hash,
    }
    telemetry_service.emit(telemetry_service.CONTEXT_ASSEMBLED, payload)
    if not pack.within_budget:
        telemetry_service.emit(telemetry_service.CONTEXT_OVER_BUDGET, {**payload, "overage_tokens": pack.overage_tokens})
    return EnrichedContext(
        state=state, turns=turns, pack=pack, fabric_stage=stage, canonical_state=pack.canonical_state
    )
