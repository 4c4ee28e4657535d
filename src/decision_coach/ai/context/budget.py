"""Budget allocation and the truncation cascade for zone 3."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Literal, Sequence

from ..utils.tokens import estimate_tokens
from .profiles import BudgetAllocationError, RouteProfile, TokenBudget, check_budget, compute_budget
from .renderer import join_zones, render_zone3
from .state import AnalysisSummary, ConversationTurn, DecisionState

LOGGER = logging.getLogger(__name__)

AllocationOutcome = Literal["ok", "degraded"]

# Ordered analysis trim levels. Each level removes values together with their fact ids.
TRIM_DRIVERS = 1
TRIM_MARGIN = 2
TRIM_WINNER = 3
_TRIM_STEP_NAMES = {
    TRIM_DRIVERS: "trim_analysis:drivers",
    TRIM_MARGIN: "trim_analysis:margin",
    TRIM_WINNER: "trim_analysis:winner",
}


def trim_analysis(summary: AnalysisSummary | None, level: int) -> AnalysisSummary | None:
    """Return ``summary`` reduced to the given trim level.

    Level 1 drops drivers and fragile edges, level 2 also drops the margin and
    level 3 drops the whole summary. A value and its fact id are always removed
    in the same step.
    """

    if summary is None or level <= 0:
        return summary
    if level >= TRIM_WINNER:
        return None
    trimmed = replace(summary, top_drivers=(), fragile_edge_ids=())
    if level >= TRIM_MARGIN:
        trimmed = replace(trimmed, winning_margin=None, margin_fact_id=None)
    return trimmed


@dataclass(slots=True, frozen=True)
class BudgetAllocation:
    """Result of allocating a route's budget. Degraded allocations never raise."""

    budget: TokenBudget
    outcome: AllocationOutcome = "ok"
    error: str | None = None

    @property
    def is_degraded(self) -> bool:
        return self.outcome == "degraded"


@dataclass(slots=True, frozen=True)
class CascadeResult:
    """Best-effort zone 3 after applying as much of the cascade as needed."""

    zone3: str
    state: DecisionState
    estimated_tokens: int
    within_budget: bool
    overage_tokens: int
    steps: tuple[str, ...] = ()

    @property
    def truncation_applied(self) -> bool:
        return bool(self.steps)


class BudgetManager:
    """Allocates per-zone budgets and shrinks zone 3 until the context fits."""

    def __init__(self, *, estimator: Callable[[str], int] = estimate_tokens) -> None:
        self._estimate = estimator

    def estimate(self, text: str) -> int:
        return self._estimate(text)

    def allocate(self, profile: RouteProfile, zone1_tokens: int) -> BudgetAllocation:
        """Compute the zone allocation, degrading to zero zone 2/3 budget on failure."""

        try:
            budget = compute_budget(profile, zone1_tokens)
        except BudgetAllocationError as exc:
            LOGGER.warning("Budget computation failed for %s: %s", profile.route, exc)
            return BudgetAllocation(budget=TokenBudget.degraded(zone1_tokens), outcome="degraded", error=str(exc))
        except (TypeError, ValueError) as exc:
            LOGGER.warning("Budget computation failed for %s: %s", profile.route, exc)
            return BudgetAllocation(budget=TokenBudget.degraded(zone1_tokens), outcome="degraded", error=str(exc))
        return BudgetAllocation(budget=budget)

    def enforce(
        self,
        profile: RouteProfile,
        budget: TokenBudget,
        *,
        zone1: str,
        zone2: str,
        state: DecisionState,
        turns: Sequence[ConversationTurn],
        current_message: str,
        selected_elements: Sequence[str] | None = None,
    ) -> CascadeResult:
        """Render zone 3, applying the truncation cascade while over budget.

        Order: shrink the conversation window one turn at a time (never below
        one), stop echoing selected elements, then trim the analysis summary.
        Returns the smallest rendering reached even when it still does not fit.
        """

        max_turns = profile.max_turns
        echo_selection = True
        current_state = state
        steps: list[str] = []

        def render() -> tuple[str, int]:
            zone3 = render_zone3(
                profile,
                current_state,
                turns,
                current_message,
                selected_elements,
                max_turns=max_turns,
                include_selected_elements=echo_selection,
            )
            return zone3, self._estimate(join_zones(zone1, zone2, zone3))

        zone3, estimated = render()
        if check_budget(estimated, budget).within_budget:
            return self._result(zone3, current_state, estimated, budget, steps)

        visible_turns = min(profile.max_turns, len(turns))
        while max_turns > 1 and visible_turns > 1:
            max_turns = min(max_turns, visible_turns) - 1
            visible_turns = max_turns
            steps.append(f"window:{max_turns}")
            zone3, estimated = render()
            if check_budget(estimated, budget).within_budget:
                return self._result(zone3, current_state, estimated, budget, steps)

        if profile.include_selected_elements and selected_elements:
            echo_selection = False
            steps.append("drop_selected_elements")
            zone3, estimated = render()
            if check_budget(estimated, budget).within_budget:
                return self._result(zone3, current_state, estimated, budget, steps)

        if profile.include_analysis_summary and state.analysis_summary is not None:
            for level in (TRIM_DRIVERS, TRIM_MARGIN, TRIM_WINNER):
                current_state = replace(current_state, analysis_summary=trim_analysis(state.analysis_summary, level))
                steps.append(_TRIM_STEP_NAMES[level])
                zone3, estimated = render()
                if check_budget(estimated, budget).within_budget:
                    return self._result(zone3, current_state, estimated, budget, steps)

        result = self._result(zone3, current_state, estimated, budget, steps)
        LOGGER.warning(
            "Context for %s still over budget after truncation cascade: %s tokens over %s",
            profile.route,
            result.overage_tokens,
            budget.effective_total,
        )
        return result

    @staticmethod
    def _result(
        zone3: str,
        state: DecisionState,
        estimated: int,
        budget: TokenBudget,
        steps: Sequence[str],
    ) -> CascadeResult:
        check = check_budget(estimated, budget)
        return CascadeResult(
            zone3=zone3,
            state=state,
            estimated_tokens=estimated,
            within_budget=check.within_budget,
            overage_tokens=check.overage,
            steps=tuple(steps),
        )


__all__ = [
    "TRIM_DRIVERS",
    "TRIM_MARGIN",
    "TRIM_WINNER",
    "trim_analysis",
    "BudgetAllocation",
    "CascadeResult",
    "BudgetManager",
]
