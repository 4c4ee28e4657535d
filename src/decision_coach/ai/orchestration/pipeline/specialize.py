"""Pipeline phase: Specialize."""

from __future__ import annotations

from typing import Iterable

from ..heuristics import Specialist, SpecialistInput, run_specialists
from ..types import EnrichedContext, SpecialistResult, TurnClassification, TurnRequest

__all__ = ["specialize_turn"]


def specialize_turn(
    specialists: Iterable[Specialist],
    request: TurnRequest,
    classification: TurnClassification,
    enriched: EnrichedContext,
) -> SpecialistResult:
    """Run the deterministic heuristics for conversational turns only."""

    if classification.kind != "conversational":
        return SpecialistResult.empty()
    data = SpecialistInput(
        message=request.message,
        context=request.context,
        turns=enriched.turns,
        stage=classification.stage,
        intent=classification.intent,
    )
    return run_specialists(specialists, data)
