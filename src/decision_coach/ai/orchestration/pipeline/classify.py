"""Pipeline phase: Classify.

Decides what kind of turn this is (silent system event, acknowledgement,
deterministic tool run or full conversation), the user's intent, the context
route and the current decision stage.
"""

from __future__ import annotations

import logging

from ..intent import classify_intent, match_deterministic_gate, missing_prerequisite, select_route
from ..stage import infer_stage
from ..types import StageIndicator, TurnClassification, TurnRequest

__all__ = ["SILENT_EVENTS", "classify_turn"]

LOGGER = logging.getLogger(__name__)

SILENT_EVENTS = frozenset({"patch_accepted", "patch_dismissed", "feedback_submitted"})


def _explicit(indicator: StageIndicator) -> StageIndicator:
    return StageIndicator(stage=indicator.stage, confidence=indicator.confidence, source="explicit_event")


def classify_turn(request: TurnRequest) -> TurnClassification:
    """Classify ``request``. Pure; never calls the model."""

    context = request.context
    stage = infer_stage(context)
    event = request.system_event

    if event is not None:
        trigger = f"system_event:{event.event_type}"
        if event.event_type in SILENT_EVENTS:
            return TurnClassification(
                kind="silent", intent="conversational", route="CHAT", stage=_explicit(stage), triggers_fired=(trigger,)
            )
        if event.event_type == "direct_graph_edit":
            return TurnClassification(
                kind="ack", intent="conversational", route="CHAT", stage=_explicit(stage), triggers_fired=(trigger,)
            )
        if event.event_type == "direct_analysis_run":
            return TurnClassification(
                kind="deterministic",
                intent="act",
                route=select_route("act", context, "run_analysis"),
                stage=_explicit(stage),
                deterministic_tool="run_analysis",
                triggers_fired=(trigger,),
            )
        # Unknown event types are rejected by the request schema.
        LOGGER.warning("Unhandled system event %s; treating as silent", event.event_type)
        return TurnClassification(kind="silent", intent="conversational", route="CHAT", stage=stage)

    intent = classify_intent(request.message)
    gate = match_deterministic_gate(request.message)
    if gate is not None:
        missing = missing_prerequisite(gate.tool, context)
        if missing is None:
            return TurnClassification(
                kind="deterministic",
                intent=intent,
                route=select_route(intent, context, gate.tool),
                stage=stage,
                deterministic_tool=gate.tool,
                triggers_fired=(f"gate:{gate.tool}",),
            )
        LOGGER.debug("Gate matched %s but %s is missing; using the model", gate.tool, missing)
        return TurnClassification(
            kind="conversational",
            intent=intent,
            route=select_route(intent, context),
            stage=stage,
            triggers_suppressed=(f"prerequisite:{gate.tool}:{missing}",),
        )

    return TurnClassification(kind="conversational", intent=intent, route=select_route(intent, context), stage=stage)
