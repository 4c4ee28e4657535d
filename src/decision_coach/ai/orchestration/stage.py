"""Decision stage inference, transitions and progress markers."""

from __future__ import annotations

from .types import (
    DECISION_STAGES,
    ConversationContext,
    ProgressMarker,
    StageIndicator,
    StageTransition,
    SystemEvent,
    ToolSideEffects,
)

__all__ = [
    "apply_transition",
    "fabric_stage",
    "infer_stage",
    "normalize_stage",
    "progress_for",
]

# (side effect attribute, allowed source stages, target stage, trigger)
_TRANSITIONS: tuple[tuple[str, tuple[str, ...], str, str], ...] = (
    ("analysis_ran", ("frame", "ideate"), "evaluate", "analysis_completed"),
    ("graph_updated", ("frame",), "ideate", "graph_drafted"),
    ("brief_generated", ("evaluate",), "decide", "brief_generated"),
)


def normalize_stage(value: object) -> str | None:
    """Map a client stage tag onto one of the five envelope stages."""

    if not isinstance(value, str):
        return None
    tag = value.strip().lower()
    if tag in ("evaluate_pre", "evaluate_post"):
        return "evaluate"
    if tag == "optimize":
        return "optimise"
    return tag if tag in DECISION_STAGES else None


def infer_stage(context: ConversationContext) -> StageIndicator:
    """Explicit framing stage wins; otherwise derive the stage from what exists."""

    framing = context.framing or {}
    explicit = normalize_stage(framing.get("stage"))
    if explicit is not None:
        return StageIndicator(stage=explicit, confidence="high", source="inferred")
    if context.has_analysis:
        return StageIndicator(stage="evaluate", confidence="medium", source="inferred")
    if context.has_graph:
        return StageIndicator(stage="ideate", confidence="medium", source="inferred")
    return StageIndicator(stage="frame", confidence="low", source="inferred")


def fabric_stage(stage: str, *, has_analysis: bool) -> str:
    """Return the six-valued rendering stage for an envelope stage."""

    if stage == "evaluate":
        return "evaluate_post" if has_analysis else "evaluate_pre"
    return stage if stage in DECISION_STAGES else "frame"


def apply_transition(indicator: StageIndicator, side_effects: ToolSideEffects) -> StageIndicator:
    """Advance ``indicator`` when a tool side effect completes its stage."""

    for attribute, sources, target, trigger in _TRANSITIONS:
        if getattr(side_effects, attribute) and indicator.stage in sources:
            return StageIndicator(
                stage=target,
                confidence="high",
                source=indicator.source,
                substate=indicator.substate,
                transition=StageTransition(from_stage=indicator.stage, to_stage=target, trigger=trigger),
            )
    return indicator


def progress_for(side_effects: ToolSideEffects, event: SystemEvent | None = None) -> ProgressMarker:
    if side_effects.analysis_ran:
        return ProgressMarker(kind="ran_analysis")
    if side_effects.graph_updated or (event is not None and event.event_type == "patch_accepted"):
        return ProgressMarker(kind="changed_model")
    if side_effects.brief_generated:
        return ProgressMarker(kind="committed")
    return ProgressMarker()
