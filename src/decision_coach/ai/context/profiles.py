"""Route profiles and per-zone token allocation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping

from .state import CONTEXT_ROUTES

__all__ = [
    "SAFETY_FACTOR",
    "RouteProfile",
    "TokenBudget",
    "BudgetCheck",
    "BudgetAllocationError",
    "ROUTE_PROFILES",
    "get_profile",
    "compute_budget",
    "check_budget",
]

SAFETY_FACTOR = 0.9


class BudgetAllocationError(ValueError):
    """Raised when a profile cannot produce a non-negative zone allocation."""

    def __init__(self, route: str, zone3: int) -> None:
        super().__init__(f"Route {route} leaves a negative zone 3 allocation ({zone3} tokens)")
        self.route = route
        self.zone3 = zone3


@dataclass(slots=True, frozen=True)
class RouteProfile:
    """Fixed rendering and budget policy for one interaction route."""

    route: str
    max_turns: int
    include_graph_summary: bool
    include_full_graph: bool
    include_analysis_summary: bool
    include_full_analysis: bool
    include_archetypes: bool
    include_selected_elements: bool
    token_budget: int
    zone2_budget: int

    def __post_init__(self) -> None:
        if self.route not in CONTEXT_ROUTES:
            raise ValueError(f"Unknown route: {self.route!r}")
        if self.max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        if self.token_budget < 0 or self.zone2_budget < 0:
            raise ValueError("token allocations must be non-negative")

    def to_dict(self) -> dict[str, Any]:
        return {
            "route": self.route,
            "max_turns": self.max_turns,
            "include_graph_summary": self.include_graph_summary,
            "include_full_graph": self.include_full_graph,
            "include_analysis_summary": self.include_analysis_summary,
            "include_full_analysis": self.include_full_analysis,
            "include_archetypes": self.include_archetypes,
            "include_selected_elements": self.include_selected_elements,
            "token_budget": self.token_budget,
            "zone2_budget": self.zone2_budget,
        }


@dataclass(slots=True, frozen=True)
class TokenBudget:
    """Per-zone token allocation derived from a route profile."""

    zone1: int
    zone2: int
    zone3: int
    safety_margin: int
    effective_total: int

    @classmethod
    def degraded(cls, zone1: int) -> "TokenBudget":
        """Allocation used when the configured profile cannot be honoured."""

        return cls(zone1=zone1, zone2=0, zone3=0, safety_margin=0, effective_total=0)

    def to_dict(self) -> dict[str, int]:
        return {
            "zone1": self.zone1,
            "zone2": self.zone2,
            "zone3": self.zone3,
            "safety_margin": self.safety_margin,
            "effective_total": self.effective_total,
        }


@dataclass(slots=True, frozen=True)
class BudgetCheck:
    within_budget: bool
    overage: int


ROUTE_PROFILES: Mapping[str, RouteProfile] = {
    "CHAT": RouteProfile(
        route="CHAT",
        max_turns=3,
        include_graph_summary=True,
        include_full_graph=False,
        include_analysis_summary=True,
        include_full_analysis=False,
        include_archetypes=False,
        include_selected_elements=False,
        token_budget=8000,
        zone2_budget=500,
    ),
    "DRAFT_GRAPH": RouteProfile(
        route="DRAFT_GRAPH",
        max_turns=2,
        include_graph_summary=False,
        include_full_graph=False,
        include_analysis_summary=False,
        include_full_analysis=False,
        include_archetypes=True,
        include_selected_elements=False,
        token_budget=8000,
        zone2_budget=800,
    ),
    "EDIT_GRAPH": RouteProfile(
        route="EDIT_GRAPH",
        max_turns=3,
        include_graph_summary=True,
        include_full_graph=True,
        include_analysis_summary=False,
        include_full_analysis=False,
        include_archetypes=False,
        include_selected_elements=True,
        token_budget=12000,
        zone2_budget=600,
    ),
    "EXPLAIN_RESULTS": RouteProfile(
        route="EXPLAIN_RESULTS",
        max_turns=2,
        include_graph_summary=True,
        include_full_graph=False,
        include_analysis_summary=True,
        include_full_analysis=True,
        include_archetypes=False,
        include_selected_elements=True,
        token_budget=10000,
        zone2_budget=500,
    ),
    "GENERATE_BRIEF": RouteProfile(
        route="GENERATE_BRIEF",
        max_turns=1,
        include_graph_summary=True,
        include_full_graph=False,
        include_analysis_summary=True,
        include_full_analysis=True,
        include_archetypes=False,
        include_selected_elements=False,
        token_budget=12000,
        zone2_budget=600,
    ),
}


def get_profile(route: str) -> RouteProfile:
    """Return the profile for ``route`` or raise ``KeyError`` when unknown."""

    try:
        return ROUTE_PROFILES[route]
    except KeyError:
        raise KeyError(f"No route profile registered for {route!r}") from None


def compute_budget(profile: RouteProfile, zone1_tokens: int) -> TokenBudget:
    """Split the profile's effective budget across the three zones.

    The effective total is ``floor(token_budget * 0.9)``; zone 1 is charged at its
    measured size and zone 2 at the profile's fixed allocation. Zone 3 gets the
    remainder.

    Raises:
        BudgetAllocationError: when the remainder for zone 3 would be negative.
    """

    effective_total = math.floor(profile.token_budget * SAFETY_FACTOR)
    zone1 = max(0, int(zone1_tokens))
    zone2 = profile.zone2_budget
    zone3 = effective_total - zone1 - zone2
    if zone3 < 0:
        raise BudgetAllocationError(profile.route, zone3)
    return TokenBudget(
        zone1=zone1,
        zone2=zone2,
        zone3=zone3,
        safety_margin=profile.token_budget - effective_total,
        effective_total=effective_total,
    )


def check_budget(estimated_tokens: int, budget: TokenBudget) -> BudgetCheck:
    overage = max(0, estimated_tokens - budget.effective_total)
    return BudgetCheck(within_budget=overage == 0, overage=overage)
