"""Tests for route profiles, budget allocation and the truncation cascade."""

from __future__ import annotations

import pytest

from decision_coach.ai.context import (
    AnalysisSummary,
    BudgetAllocationError,
    BudgetManager,
    ConversationTurn,
    DecisionState,
    DriverSummary,
    RouteProfile,
    TokenBudget,
    check_budget,
    compute_budget,
    get_profile,
    trim_analysis,
)


def _analysis() -> AnalysisSummary:
    return AnalysisSummary(
        winner_id="opt_raise",
        winner_probability=0.723,
        winner_fact_id="f_win_raise",
        winning_margin=0.152,
        margin_fact_id="f_margin",
        robustness_level="moderate",
        robustness_fact_id="f_rob",
        top_drivers=(
            DriverSummary("fac_churn", 0.1847, "high", "f_drv_churn"),
            DriverSummary("fac_price", 0.092, "medium", "f_drv_price"),
        ),
        fragile_edge_ids=("fac_churn->goal_revenue",),
    )


def _budget(effective_total: int) -> TokenBudget:
    return TokenBudget(zone1=0, zone2=0, zone3=effective_total, safety_margin=0, effective_total=effective_total)


def _tiny_profile(route: str = "CHAT", token_budget: int = 1000) -> RouteProfile:
    base = get_profile(route).to_dict()
    base["token_budget"] = token_budget
    return RouteProfile(**base)


# =============================================================================
# Profiles and allocation
# =============================================================================


class TestProfiles:
    @pytest.mark.parametrize(
        ("route", "max_turns", "budget"),
        [("CHAT", 3, 8000), ("DRAFT_GRAPH", 2, 8000), ("EDIT_GRAPH", 3, 12000),
         ("EXPLAIN_RESULTS", 2, 10000), ("GENERATE_BRIEF", 1, 12000)],
    )
    def test_profile_table(self, route, max_turns, budget):
        profile = get_profile(route)

        assert profile.max_turns == max_turns
        assert profile.token_budget == budget

    def test_unknown_route_raises_key_error(self):
        with pytest.raises(KeyError):
            get_profile("SMALL_TALK")

    def test_profile_validation(self):
        base = get_profile("CHAT").to_dict()

        with pytest.raises(ValueError):
            RouteProfile(**{**base, "route": "SMALL_TALK"})
        with pytest.raises(ValueError):
            RouteProfile(**{**base, "max_turns": 0})


class TestComputeBudget:
    def test_effective_total_applies_safety_factor(self):
        budget = compute_budget(get_profile("CHAT"), 1200)

        assert budget.effective_total == 7200
        assert budget.safety_margin == 800
        assert budget.zone1 == 1200
        assert budget.zone2 == 500
        assert budget.zone3 == 5500

    def test_negative_zone3_raises(self):
        with pytest.raises(BudgetAllocationError) as excinfo:
            compute_budget(_tiny_profile(), 800)

        assert excinfo.value.zone3 == -400

    def test_allocate_degrades_instead_of_raising(self):
        allocation = BudgetManager().allocate(_tiny_profile(), 800)

        assert allocation.is_degraded
        assert allocation.budget.zone2 == 0
        assert allocation.budget.zone3 == 0
        assert allocation.error

    def test_check_budget(self):
        assert check_budget(100, _budget(100)).within_budget is True
        check = check_budget(130, _budget(100))
        assert check.within_budget is False
        assert check.overage == 30


# =============================================================================
# Truncation cascade
# =============================================================================


class TestTruncationCascade:
    def test_no_truncation_when_within_budget(self):
        manager = BudgetManager(estimator=lambda text: 10)

        result = manager.enforce(
            get_profile("CHAT"), _budget(100), zone1="", zone2="", state=DecisionState(), turns=[], current_message="hi"
        )

        assert result.steps == ()
        assert result.within_budget
        assert not result.truncation_applied

    def test_window_shrinks_one_turn_at_a_time(self):
        manager = BudgetManager(estimator=lambda text: text.count("LONGTURN"))
        turns = [ConversationTurn("assistant", f"LONGTURN {index}") for index in range(5)]

        result = manager.enforce(
            get_profile("CHAT"), _budget(1), zone1="", zone2="", state=DecisionState(), turns=turns, current_message="hi"
        )

        assert result.steps == ("window:2", "window:1")
        assert result.within_budget
        assert "LONGTURN 4" in result.zone3
        assert "LONGTURN 3" not in result.zone3

    def test_values_and_fact_ids_are_removed_together(self):
        manager = BudgetManager(estimator=lambda text: text.count("(fact_id:") + text.count("Selected elements"))
        state = DecisionState(analysis_summary=_analysis())

        result = manager.enforce(
            get_profile("EXPLAIN_RESULTS"),
            _budget(2),
            zone1="",
            zone2="",
            state=state,
            turns=[],
            current_message="why?",
            selected_elements=["fac_churn"],
        )

        assert result.steps == ("drop_selected_elements", "trim_analysis:drivers", "trim_analysis:margin")
        assert result.within_budget
        assert "f_margin" not in result.zone3
        assert "margin:" not in result.zone3
        assert "f_drv_churn" not in result.zone3
        assert "winner: opt_raise at 72.3% (fact_id: f_win_raise)" in result.zone3
        assert result.state.analysis_summary is not None
        assert result.state.analysis_summary.fact_ids() == ("f_win_raise", "f_rob")

    def test_best_effort_result_when_still_over_budget(self):
        manager = BudgetManager(estimator=lambda text: 1000)
        state = DecisionState(analysis_summary=_analysis())

        result = manager.enforce(
            get_profile("CHAT"),
            _budget(10),
            zone1="",
            zone2="",
            state=state,
            turns=[ConversationTurn("user", "a"), ConversationTurn("assistant", "b")],
            current_message="hi",
        )

        assert result.within_budget is False
        assert result.overage_tokens == 990
        assert result.steps == (
            "window:1",
            "trim_analysis:drivers",
            "trim_analysis:margin",
            "trim_analysis:winner",
        )
        assert result.state.analysis_summary is None


class TestTrimAnalysis:
    def test_levels(self):
        summary = _analysis()

        drivers = trim_analysis(summary, 1)
        margin = trim_analysis(summary, 2)

        assert drivers is not None and drivers.top_drivers == () and drivers.fragile_edge_ids == ()
        assert drivers.margin_fact_id == "f_margin"
        assert margin is not None and margin.winning_margin is None and margin.margin_fact_id is None
        assert margin.winner_fact_id == "f_win_raise"
        assert trim_analysis(summary, 3) is None
        assert trim_analysis(summary, 0) is summary
        assert trim_analysis(None, 2) is None
