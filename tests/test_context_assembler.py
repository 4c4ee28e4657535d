"""Tests for the context assembler."""

from __future__ import annotations

from dataclasses import replace

import pytest

from decision_coach.ai.context import (
    AnalysisSummary,
    AssemblerConfig,
    ContextAssembler,
    ConversationTurn,
    DecisionState,
    DriverSummary,
    Framing,
    GraphSummary,
    RouteProfile,
    get_profile,
)
from decision_coach.ai.orchestration.science import build_science_ledger


@pytest.fixture
def state() -> DecisionState:
    return DecisionState(
        graph_summary=GraphSummary(
            node_count=4, edge_count=2, goal_node_id="goal_revenue", option_node_ids=("opt_raise", "opt_hold")
        ),
        analysis_summary=AnalysisSummary(
            winner_id="opt_raise",
            winner_probability=0.723,
            winner_fact_id="f_win_raise",
            robustness_level="moderate",
            robustness_fact_id="f_rob",
            top_drivers=(DriverSummary("fac_churn", 0.1847, "high", "f_drv_churn"),),
        ),
        framing=Framing(stage="ideate", goal="Grow revenue"),
    )


@pytest.fixture
def turns() -> list[ConversationTurn]:
    return [ConversationTurn("user", "Should we raise prices?"), ConversationTurn("assistant", "Let's model it.")]


def _assemble(assembler: ContextAssembler, state: DecisionState, turns, **overrides):
    args = {
        "prompt_version": "v1",
        "route": "CHAT",
        "stage": "ideate",
        "state": state,
        "turns": turns,
        "current_message": "What drives the result?",
    }
    args.update(overrides)
    return assembler.assemble(**args)


class TestAssembly:
    def test_pack_contents(self, state, turns):
        pack = _assemble(ContextAssembler(), state, turns)

        assert pack.outcome == "ok"
        assert pack.within_budget
        assert pack.overage_tokens == 0
        assert pack.full_context == f"{pack.zone1}\n\n{pack.zone2}\n\n{pack.zone3}"
        assert pack.system_prompt == f"{pack.zone1}\n\n{pack.zone2}"
        assert pack.fact_ids == ("f_win_raise", "f_rob", "f_drv_churn")
        assert pack.estimated_tokens > 0
        assert len(pack.context_hash) == 64
        assert pack.cache_boundary is not None

    def test_assembly_is_deterministic(self, state, turns):
        first = _assemble(ContextAssembler(), state, turns)
        second = _assemble(ContextAssembler(), state, list(turns))

        assert first == second

    @pytest.mark.parametrize(
        "overrides",
        [
            {"current_message": "Something else"},
            {"stage": "decide"},
            {"route": "EXPLAIN_RESULTS"},
            {"prompt_version": "v2"},
        ],
    )
    def test_context_hash_tracks_inputs(self, state, turns, overrides):
        base = _assemble(ContextAssembler(), state, turns)

        assert _assemble(ContextAssembler(), state, turns, **overrides).context_hash != base.context_hash

    def test_context_hash_tracks_config(self, state, turns):
        base = _assemble(ContextAssembler(), state, turns)
        reseeded = _assemble(ContextAssembler(AssemblerConfig(seed=7)), state, turns)
        other_model = _assemble(ContextAssembler(AssemblerConfig(model_id="other")), state, turns)
        clarifier = _assemble(ContextAssembler(AssemblerConfig(capability="clarify")), state, turns)
        fast = _assemble(ContextAssembler(AssemblerConfig(model_route="fast")), state, turns)

        assert reseeded.context_hash != base.context_hash
        assert other_model.context_hash != base.context_hash
        assert clarifier.context_hash != base.context_hash
        assert fast.context_hash != base.context_hash
        assert reseeded.full_context == base.full_context

    def test_cache_prefix_is_shared_across_messages(self, state, turns):
        first = _assemble(ContextAssembler(), state, turns)
        second = _assemble(ContextAssembler(), state, turns, current_message="Another question")

        assert first.cache_boundary.cache_prefix_key == second.cache_boundary.cache_prefix_key
        assert first.cache_boundary.dynamic_suffix_key != second.cache_boundary.dynamic_suffix_key

    def test_clarification_answers_change_hashes(self, state, turns):
        base = _assemble(ContextAssembler(), state, turns)
        answered = _assemble(
            ContextAssembler(), state, turns, clarification_answers=[{"question_id": "q1", "answer": "yes"}]
        )

        assert base.clarification_hash is None
        assert answered.clarification_hash is not None
        assert answered.context_hash != base.context_hash

    def test_to_dict_hides_text_unless_asked(self, state, turns):
        pack = _assemble(ContextAssembler(), state, turns)

        assert "zone3" not in pack.to_dict()
        assert pack.to_dict(include_text=True)["zone3"] == pack.zone3
        assert pack.to_dict()["context_hash"] == pack.context_hash


class TestDegradedAssembly:
    def test_unknown_route_falls_back_to_chat(self, state, turns):
        pack = _assemble(ContextAssembler(), state, turns, route="SMALL_TALK")

        assert pack.route == "CHAT"
        assert pack.outcome == "degraded"
        assert "unknown route" in (pack.error or "")

    def test_unknown_stage_renders_as_frame(self, state, turns):
        pack = _assemble(ContextAssembler(), state, turns, stage="brainstorm")

        assert pack.stage == "frame"
        assert "Current stage: frame" in pack.zone2

    def test_misconfigured_budget_degrades(self, state, turns):
        tiny = RouteProfile(**{**get_profile("CHAT").to_dict(), "token_budget": 100})
        assembler = ContextAssembler(AssemblerConfig(profiles={"CHAT": tiny}))

        pack = _assemble(assembler, state, turns)

        assert pack.outcome == "degraded"
        assert pack.within_budget is False
        assert pack.overage_tokens > 0
        assert pack.budget.zone3 == 0

    def test_failures_produce_error_pack(self, turns):
        pack = _assemble(ContextAssembler(), None, turns)

        assert pack.outcome == "error"
        assert pack.within_budget is False
        assert pack.overage_tokens > 0
        assert "AttributeError" in (pack.error or "")
        assert "What drives the result?" in pack.zone3

    def test_disabled_assembler_passes_through(self, state, turns):
        pack = _assemble(ContextAssembler(AssemblerConfig(enabled=False)), state, turns)

        assert pack.full_context == ""
        assert pack.context_hash == ""
        assert pack.within_budget
        assert pack.outcome == "ok"

    def test_over_budget_after_cascade_is_degraded(self, state):
        long_turns = [ConversationTurn("assistant", "word " * 4000) for _ in range(3)]
        small = RouteProfile(**{**get_profile("CHAT").to_dict(), "token_budget": 4000})
        assembler = ContextAssembler(AssemblerConfig(profiles={"CHAT": small}))

        pack = _assemble(assembler, replace(state, analysis_summary=None), long_turns)

        assert pack.outcome == "degraded"
        assert pack.within_budget is False
        assert pack.truncation_steps[:2] == ("window:2", "window:1")

    def test_trimmed_analysis_is_absent_from_canonical_state(self, state):
        long_turns = [ConversationTurn("assistant", "word " * 4000) for _ in range(3)]
        small = RouteProfile(**{**get_profile("CHAT").to_dict(), "token_budget": 4000})
        assembler = ContextAssembler(AssemblerConfig(profiles={"CHAT": small}))

        pack = _assemble(assembler, state, long_turns)
        ledger = build_science_ledger(
            assistant_text="Raising wins at 72.3% (f_win_raise).",
            cited_fact_ids=("f_win_raise",),
            known_fact_ids=pack.fact_ids,
            canonical_state=pack.canonical_state,
        )

        assert "trim_analysis:winner" in pack.truncation_steps
        assert pack.fact_ids == ()
        assert "72.3%" not in pack.canonical_state
        assert "graph: 4 nodes" in pack.canonical_state
        assert ledger.scope_violations == ("unknown_fact:f_win_raise", "ungrounded_value:72.3%")


class TestConfigValidation:
    def test_rejects_unknown_capability(self):
        with pytest.raises(ValueError):
            AssemblerConfig(capability="telepathy")

    def test_rejects_unknown_retrieval_mode(self):
        with pytest.raises(ValueError):
            AssemblerConfig(retrieval_mode="psychic")
