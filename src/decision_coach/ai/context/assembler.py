"""Context assembler: renders the zones, enforces the budget and hashes the result.

:meth:`ContextAssembler.assemble` never raises. Budget misconfiguration yields a
degraded pack and unexpected failures yield an ``error`` pack, both flagged
``within_budget=False`` with a positive overage so callers can tell them apart
from a healthy assembly without try/except.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Mapping, Sequence

from .budget import BudgetManager
from .hashing import (
    CacheBoundary,
    canonical_json,
    compute_cache_boundary,
    compute_hash,
    compute_string_hash,
    hash_clarification_answers,
    hash_config,
    hash_prompt_content,
    sha256_hex,
)
from .profiles import ROUTE_PROFILES, RouteProfile, TokenBudget
from .renderer import join_zones, render_canonical_state, render_zone1, render_zone2, render_zone3, wrap_untrusted
from .state import FABRIC_STAGES, ConversationTurn, DecisionState

LOGGER = logging.getLogger(__name__)

PackOutcome = Literal["ok", "degraded", "error"]

CAPABILITIES: tuple[str, ...] = (
    "draft_graph",
    "decision_review",
    "clarify",
    "repair",
    "bias_check",
    "explain_graph",
)
RETRIEVAL_MODES: tuple[str, ...] = ("none", "memory", "evidence", "both")

DEFAULT_ARCHETYPES: tuple[str, ...] = (
    "pricing_decision",
    "product_decision",
    "strategy_decision",
    "market_expansion_decision",
    "product_strategy_decision",
    "product_launch_decision",
    "growth_experiment_decision",
    "product_portfolio_prioritisation",
)


@dataclass(slots=True, frozen=True)
class AssemblerConfig:
    """Explicit assembler configuration, injected instead of read from the environment."""

    enabled: bool = True
    capability: str = "decision_review"
    model_route: str = "default"
    model_id: str = "gpt-4o-mini"
    seed: int = 0
    retrieval_mode: str = "none"
    archetypes: tuple[str, ...] = DEFAULT_ARCHETYPES
    generation_config: Mapping[str, Any] = field(default_factory=dict)
    config_hash_keys: tuple[str, ...] = ()
    profiles: Mapping[str, RouteProfile] = field(default_factory=lambda: dict(ROUTE_PROFILES))
    fallback_route: str = "CHAT"

    def __post_init__(self) -> None:
        if self.capability not in CAPABILITIES:
            raise ValueError(f"Unknown capability: {self.capability!r}")
        if self.retrieval_mode not in RETRIEVAL_MODES:
            raise ValueError(f"Unknown retrieval mode: {self.retrieval_mode!r}")
        if self.fallback_route not in self.profiles:
            raise ValueError(f"Fallback route {self.fallback_route!r} has no profile")
        object.__setattr__(self, "archetypes", tuple(self.archetypes))
        object.__setattr__(self, "config_hash_keys", tuple(self.config_hash_keys))


@dataclass(slots=True, frozen=True)
class ContextPack:
    """Immutable output of one assembly. Cached only by ``context_hash``."""

    zone1: str
    zone2: str
    zone3: str
    full_context: str
    estimated_tokens: int
    route: str
    stage: str
    prompt_version: str
    capability: str
    model_route: str
    model_id: str
    seed: int
    retrieval_mode: str
    brief_hash: str
    prompt_hash: str
    config_hash: str
    context_hash: str
    budget: TokenBudget
    within_budget: bool
    overage_tokens: int
    clarification_hash: str | None = None
    seed_graph_hash: str | None = None
    retrieval_hash: str | None = None
    cache_boundary: CacheBoundary | None = None
    truncation_steps: tuple[str, ...] = ()
    fact_ids: tuple[str, ...] = ()
    canonical_state: str = ""
    outcome: PackOutcome = "ok"
    error: str | None = None

    @property
    def truncation_applied(self) -> bool:
        return bool(self.truncation_steps)

    @property
    def system_prompt(self) -> str:
        """Zones 1 and 2: the cacheable prefix sent as the system message."""

        if not self.zone1 and not self.zone2:
            return ""
        return f"{self.zone1}\n\n{self.zone2}"

    def hashes(self) -> dict[str, str | None]:
        return {
            "brief_hash": self.brief_hash,
            "prompt_hash": self.prompt_hash,
            "config_hash": self.config_hash,
            "clarification_hash": self.clarification_hash,
            "seed_graph_hash": self.seed_graph_hash,
            "retrieval_hash": self.retrieval_hash,
            "context_hash": self.context_hash,
        }

    def to_dict(self, *, include_text: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "route": self.route,
            "stage": self.stage,
            "prompt_version": self.prompt_version,
            "capability": self.capability,
            "model_route": self.model_route,
            "model_id": self.model_id,
            "seed": self.seed,
            "retrieval_mode": self.retrieval_mode,
            "estimated_tokens": self.estimated_tokens,
            "budget": self.budget.to_dict(),
            "within_budget": self.within_budget,
            "overage_tokens": self.overage_tokens,
            "truncation_applied": self.truncation_applied,
            "truncation_steps": list(self.truncation_steps),
            "cache_boundary": self.cache_boundary.to_dict() if self.cache_boundary else None,
            "outcome": self.outcome,
            **self.hashes(),
        }
        if self.error:
            payload["error"] = self.error
        if include_text:
            payload.update({"zone1": self.zone1, "zone2": self.zone2, "zone3": self.zone3})
        return payload


class ContextAssembler:
    """Builds :class:`ContextPack` objects for a configured model and capability."""

    def __init__(self, config: AssemblerConfig | None = None, *, budget_manager: BudgetManager | None = None) -> None:
        self._config = config or AssemblerConfig()
        self._budget = budget_manager or BudgetManager()

    @property
    def config(self) -> AssemblerConfig:
        return self._config

    def assemble(
        self,
        prompt_version: str,
        route: str,
        stage: str,
        state: DecisionState,
        turns: Sequence[ConversationTurn],
        current_message: str,
        selected_elements: Sequence[str] | None = None,
        *,
        brief: str | None = None,
        clarification_answers: Iterable[Mapping[str, Any]] | None = None,
        seed_graph: Any = None,
        retrieval: Any = None,
    ) -> ContextPack:
        """Assemble the three zones for one turn. Never raises."""

        config = self._config
        if not config.enabled:
            return self._passthrough(prompt_version, route, stage, current_message, brief)
        try:
            return self._assemble(
                prompt_version,
                route,
                stage,
                state,
                turns,
                current_message,
                selected_elements,
                brief=brief,
                clarification_answers=clarification_answers,
                seed_graph=seed_graph,
                retrieval=retrieval,
            )
        except Exception as exc:  # assembly must always produce a pack
            LOGGER.exception("Context assembly failed for route %s", route)
            return self._failed_pack(prompt_version, route, stage, current_message, brief, exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _assemble(
        self,
        prompt_version: str,
        route: str,
        stage: str,
        state: DecisionState,
        turns: Sequence[ConversationTurn],
        current_message: str,
        selected_elements: Sequence[str] | None,
        *,
        brief: str | None,
        clarification_answers: Iterable[Mapping[str, Any]] | None,
        seed_graph: Any,
        retrieval: Any,
    ) -> ContextPack:
        config = self._config
        outcome: PackOutcome = "ok"
        problems: list[str] = []

        profile = config.profiles.get(route)
        if profile is None:
            LOGGER.warning("Unknown route %r; falling back to %s", route, config.fallback_route)
            problems.append(f"unknown route {route!r}")
            outcome = "degraded"
            route = config.fallback_route
            profile = config.profiles[route]
        if stage not in FABRIC_STAGES:
            LOGGER.warning("Unknown stage %r; rendering as frame", stage)
            problems.append(f"unknown stage {stage!r}")
            stage = "frame"

        zone1 = render_zone1(prompt_version)
        zone2 = render_zone2(route, stage, config.archetypes if profile.include_archetypes else None)
        allocation = self._budget.allocate(profile, self._budget.estimate(zone1))

        if allocation.is_degraded:
            outcome = "degraded"
            problems.append(allocation.error or "budget allocation failed")
            zone3 = render_zone3(profile, state, turns, current_message, selected_elements)
            full_context = join_zones(zone1, zone2, zone3)
            estimated = self._budget.estimate(full_context)
            rendered_state = state
            within_budget = False
            overage = max(1, estimated)
            steps: tuple[str, ...] = ()
        else:
            cascade = self._budget.enforce(
                profile,
                allocation.budget,
                zone1=zone1,
                zone2=zone2,
                state=state,
                turns=turns,
                current_message=current_message,
                selected_elements=selected_elements,
            )
            zone3 = cascade.zone3
            full_context = join_zones(zone1, zone2, zone3)
            estimated = cascade.estimated_tokens
            rendered_state = cascade.state
            within_budget = cascade.within_budget
            overage = cascade.overage_tokens
            steps = cascade.steps
            if not within_budget:
                outcome = "degraded"

        fact_ids: tuple[str, ...] = ()
        if profile.include_analysis_summary and rendered_state.analysis_summary is not None:
            fact_ids = rendered_state.analysis_summary.fact_ids()
        canonical_state = render_canonical_state(profile, rendered_state) or ""

        return self._finalize(
            zone1=zone1,
            zone2=zone2,
            zone3=zone3,
            full_context=full_context,
            estimated=estimated,
            route=route,
            stage=stage,
            prompt_version=prompt_version,
            budget=allocation.budget,
            within_budget=within_budget,
            overage=overage,
            steps=steps,
            fact_ids=fact_ids,
            canonical_state=canonical_state,
            outcome=outcome,
            error="; ".join(problems) or None,
            brief=brief if brief is not None else current_message,
            clarification_answers=clarification_answers,
            seed_graph=seed_graph if seed_graph is not None else state.graph_summary,
            retrieval=retrieval,
        )

    def _finalize(
        self,
        *,
        zone1: str,
        zone2: str,
        zone3: str,
        full_context: str,
        estimated: int,
        route: str,
        stage: str,
        prompt_version: str,
        budget: TokenBudget,
        within_budget: bool,
        overage: int,
        steps: tuple[str, ...],
        fact_ids: tuple[str, ...],
        canonical_state: str,
        outcome: PackOutcome,
        error: str | None,
        brief: str,
        clarification_answers: Iterable[Mapping[str, Any]] | None,
        seed_graph: Any,
        retrieval: Any,
    ) -> ContextPack:
        config = self._config
        brief_hash = compute_string_hash(brief)
        prompt_hash = hash_prompt_content(f"{zone1}\n\n{zone2}")
        config_hash = hash_config(config.generation_config, extra_keys=config.config_hash_keys)
        clarification_hash = hash_clarification_answers(clarification_answers)
        seed_graph_hash = compute_hash(seed_graph) if seed_graph is not None else None
        retrieval_hash = compute_hash(retrieval) if retrieval is not None else None
        boundary = compute_cache_boundary(
            prompt_hash=prompt_hash,
            config_hash=config_hash,
            brief_hash=brief_hash,
            seed_graph_hash=seed_graph_hash,
            clarification_hash=clarification_hash,
            retrieval_hash=retrieval_hash,
        )
        context_hash = sha256_hex(
            canonical_json(
                {
                    "full_context": full_context,
                    "route": route,
                    "stage": stage,
                    "prompt_version": prompt_version,
                    "capability": config.capability,
                    "model_route": config.model_route,
                    "model_id": config.model_id,
                    "seed": config.seed,
                    "retrieval_mode": config.retrieval_mode,
                    "brief_hash": brief_hash,
                    "prompt_hash": prompt_hash,
                    "config_hash": config_hash,
                    "clarification_hash": clarification_hash,
                    "seed_graph_hash": seed_graph_hash,
                    "retrieval_hash": retrieval_hash,
                }
            )
        )
        return ContextPack(
            zone1=zone1,
            zone2=zone2,
            zone3=zone3,
            full_context=full_context,
            estimated_tokens=estimated,
            route=route,
            stage=stage,
            prompt_version=prompt_version,
            capability=config.capability,
            model_route=config.model_route,
            model_id=config.model_id,
            seed=config.seed,
            retrieval_mode=config.retrieval_mode,
            brief_hash=brief_hash,
            prompt_hash=prompt_hash,
            config_hash=config_hash,
            context_hash=context_hash,
            budget=budget,
            within_budget=within_budget,
            overage_tokens=overage,
            clarification_hash=clarification_hash,
            seed_graph_hash=seed_graph_hash,
            retrieval_hash=retrieval_hash,
            cache_boundary=boundary,
            truncation_steps=steps,
            fact_ids=fact_ids,
            canonical_state=canonical_state,
            outcome=outcome,
            error=error,
        )

    def _passthrough(
        self, prompt_version: str, route: str, stage: str, current_message: str, brief: str | None
    ) -> ContextPack:
        config = self._config
        return ContextPack(
            zone1="",
            zone2="",
            zone3="",
            full_context="",
            estimated_tokens=0,
            route=route,
            stage=stage,
            prompt_version=prompt_version,
            capability=config.capability,
            model_route=config.model_route,
            model_id=config.model_id,
            seed=config.seed,
            retrieval_mode=config.retrieval_mode,
            brief_hash=compute_string_hash(str(brief if brief is not None else current_message)),
            prompt_hash="",
            config_hash=hash_config(config.generation_config, extra_keys=config.config_hash_keys),
            context_hash="",
            budget=TokenBudget(zone1=0, zone2=0, zone3=0, safety_margin=0, effective_total=0),
            within_budget=True,
            overage_tokens=0,
        )

    def _failed_pack(
        self,
        prompt_version: str,
        route: str,
        stage: str,
        current_message: str,
        brief: str | None,
        exc: Exception,
    ) -> ContextPack:
        zone1 = render_zone1(str(prompt_version))
        zone3 = wrap_untrusted(f"[current_user_message]: {current_message}")
        full_context = join_zones(zone1, "", zone3)
        estimated = self._budget.estimate(full_context)
        return self._finalize(
            zone1=zone1,
            zone2="",
            zone3=zone3,
            full_context=full_context,
            estimated=estimated,
            route=str(route),
            stage=str(stage),
            prompt_version=str(prompt_version),
            budget=TokenBudget.degraded(self._budget.estimate(zone1)),
            within_budget=False,
            overage=max(1, estimated),
            steps=(),
            fact_ids=(),
            canonical_state="",
            outcome="error",
            error=f"{type(exc).__name__}: {exc}",
            brief=str(brief if brief is not None else current_message),
            clarification_answers=None,
            seed_graph=None,
            retrieval=None,
        )


__all__ = [
    "CAPABILITIES",
    "RETRIEVAL_MODES",
    "DEFAULT_ARCHETYPES",
    "PackOutcome",
    "AssemblerConfig",
    "ContextPack",
    "ContextAssembler",
]
