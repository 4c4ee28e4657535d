"""Tests for the built-in decision tools."""

from __future__ import annotations

from typing import Any, Mapping

import pytest

from helpers import FakeAnalysisEngine, FakeGraphDrafter, FakeGraphEditor

from decision_coach.ai.orchestration import ToolError
from decision_coach.ai.orchestration.errors import ErrorCode
from decision_coach.ai.orchestration.summaries import extract_analysis_summary
from decision_coach.ai.orchestration.tools import (
    BUILTIN_TOOL_SPECS,
    ToolContext,
    build_default_registry,
    detect_constraint_tension,
    explain_analysis,
)
from decision_coach.ai.orchestration.types import ConversationContext


def _ctx(message: str = "go", **context: Any) -> ToolContext:
    return ToolContext(message=message, context=ConversationContext(**context), turn_id="t1")


async def _run(registry, name: str, arguments: Mapping[str, Any], ctx: ToolContext):
    return await registry.get_required(name).execute(arguments, ctx)


def test_builtin_specs():
    assert set(BUILTIN_TOOL_SPECS) == {"run_analysis", "draft_graph", "edit_graph", "explain_results", "generate_brief"}
    assert BUILTIN_TOOL_SPECS["run_analysis"].long_running
    assert BUILTIN_TOOL_SPECS["draft_graph"].long_running
    assert not BUILTIN_TOOL_SPECS["explain_results"].long_running
    assert build_default_registry().list_names() == list(BUILTIN_TOOL_SPECS)


# =============================================================================
# run_analysis
# =============================================================================


class TestRunAnalysis:
    @pytest.mark.asyncio
    async def test_runs_engine_and_reports_facts(self, sample_graph, sample_analysis):
        engine = FakeAnalysisEngine(sample_analysis)
        registry = build_default_registry(analysis_engine=engine)

        outcome = await _run(registry, "run_analysis", {"seed": 7}, _ctx(graph=sample_graph))

        assert engine.calls == [(sample_graph, {"seed": 7})]
        assert outcome.side_effects.analysis_ran is True
        assert outcome.analysis_response == sample_analysis
        block = outcome.blocks[0]
        assert block.block_type == "fact"
        assert block.data["winner_id"] == "opt_raise"
        assert "f_win_raise" in block.data["fact_ids"]
        assert "%" not in outcome.assistant_text

    @pytest.mark.asyncio
    async def test_requires_graph(self, sample_analysis):
        registry = build_default_registry(analysis_engine=FakeAnalysisEngine(sample_analysis))

        with pytest.raises(ToolError) as excinfo:
            await _run(registry, "run_analysis", {}, _ctx())

        assert excinfo.value.error_code == ErrorCode.PREREQUISITE_MISSING
        assert excinfo.value.details == {"missing": "graph"}

    @pytest.mark.asyncio
    async def test_unconfigured_engine(self, sample_graph):
        with pytest.raises(ToolError) as excinfo:
            await _run(build_default_registry(), "run_analysis", {}, _ctx(graph=sample_graph))

        assert excinfo.value.error_code == ErrorCode.TOOL_UNAVAILABLE


# =============================================================================
# draft_graph / edit_graph
# =============================================================================


class TestGraphTools:
    @pytest.mark.asyncio
    async def test_draft_prefers_explicit_brief(self, sample_graph, sample_framing):
        drafter = FakeGraphDrafter(sample_graph)
        registry = build_default_registry(graph_drafter=drafter)

        outcome = await _run(registry, "draft_graph", {"brief": "Pricing call"}, _ctx(framing=sample_framing))

        assert drafter.briefs == ["Pricing call"]
        assert outcome.graph == sample_graph
        assert outcome.side_effects.graph_updated is True
        assert outcome.blocks[0].data["patch_type"] == "full_draft"
        assert outcome.assistant_text.startswith("I've drafted a model with 4 factors.")

    @pytest.mark.asyncio
    async def test_draft_falls_back_to_framing_then_message(self, sample_graph, sample_framing):
        drafter = FakeGraphDrafter(sample_graph)
        registry = build_default_registry(graph_drafter=drafter)

        await _run(registry, "draft_graph", {}, _ctx(framing=sample_framing))
        await _run(registry, "draft_graph", {}, _ctx("Help me pick a vendor"))

        assert drafter.briefs == ["Should we raise prices on the pro plan?", "Help me pick a vendor"]

    @pytest.mark.asyncio
    async def test_edit_proposes_patch_without_side_effects(self, sample_graph):
        editor = FakeGraphEditor([{"op": "add_edge", "from": "opt_hold", "to": "fac_churn"}])
        registry = build_default_registry(graph_editor=editor)

        outcome = await _run(registry, "edit_graph", {"edit_description": "link hold to churn"}, _ctx(graph=sample_graph))

        assert editor.instructions == ["link hold to churn"]
        assert outcome.blocks[0].data == {
            "patch_type": "edit",
            "operations": [{"op": "add_edge", "from": "opt_hold", "to": "fac_churn"}],
        }
        assert outcome.assistant_text == "I've proposed 1 change(s) to the model."
        assert outcome.side_effects.graph_updated is False

    @pytest.mark.asyncio
    async def test_edit_uses_editor_summary(self, sample_graph):
        registry = build_default_registry(graph_editor=FakeGraphEditor([{"op": "remove_node"}], summary="Removed one factor."))

        outcome = await _run(registry, "edit_graph", {}, _ctx("drop it", graph=sample_graph))

        assert outcome.assistant_text == "Removed one factor."

    @pytest.mark.asyncio
    async def test_edit_with_no_operations(self, sample_graph):
        registry = build_default_registry(graph_editor=FakeGraphEditor([]))

        outcome = await _run(registry, "edit_graph", {}, _ctx("hmm", graph=sample_graph))

        assert outcome.blocks == ()
        assert outcome.assistant_text == "I couldn't find a change to make from that description."


# =============================================================================
# explain_results / generate_brief
# =============================================================================


class TestExplainAndBrief:
    @pytest.mark.asyncio
    async def test_explain_cites_facts(self, sample_analysis):
        outcome = await _run(build_default_registry(), "explain_results", {}, _ctx(analysis_response=sample_analysis))

        assert outcome.assistant_text.startswith(
            "Under this model, opt_raise comes out ahead with a 72.3% chance of being best (fact_id: f_win_raise)."
        )
        refs = [ref["fact_id"] for ref in outcome.blocks[0].data["supporting_refs"]]
        assert refs == ["f_win_raise", "f_margin", "f_rob", "f_drv_churn", "f_drv_price"]

    def test_focus_limits_explanation(self, sample_analysis):
        summary = extract_analysis_summary(sample_analysis)

        text, cited = explain_analysis(summary, focus="robustness")

        assert text.startswith("The result is rated moderate for robustness")
        assert cited == ("f_rob",)

    @pytest.mark.asyncio
    async def test_explain_requires_analysis(self):
        with pytest.raises(ToolError) as excinfo:
            await _run(build_default_registry(), "explain_results", {}, _ctx())

        assert excinfo.value.details == {"missing": "analysis"}

    @pytest.mark.asyncio
    async def test_explain_appends_constraint_tension(self, sample_analysis):
        analysis = {
            **sample_analysis,
            "constraint_analysis": {
                "joint_probability": 0.2,
                "per_constraint": [{"probability": 0.6}, {"probability": 0.8}],
            },
        }

        outcome = await _run(build_default_registry(), "explain_results", {}, _ctx(analysis_response=analysis))

        assert "constraints appear to be in tension" in outcome.assistant_text

    @pytest.mark.asyncio
    async def test_brief(self, sample_graph, sample_analysis, sample_framing):
        ctx = _ctx(graph=sample_graph, analysis_response=sample_analysis, framing=sample_framing)

        outcome = await _run(build_default_registry(), "generate_brief", {}, ctx)

        block = outcome.blocks[0]
        assert block.block_type == "brief"
        assert block.data["recommendation"] == "opt_raise"
        assert block.data["goal"] == "Grow revenue"
        assert "constraint_note" not in block.data
        assert outcome.side_effects.brief_generated is True
        assert outcome.assistant_text == "Here is your decision brief."

    @pytest.mark.asyncio
    async def test_brief_requires_graph(self, sample_analysis):
        with pytest.raises(ToolError) as excinfo:
            await _run(build_default_registry(), "generate_brief", {}, _ctx(analysis_response=sample_analysis))

        assert excinfo.value.details == {"missing": "graph"}


@pytest.mark.parametrize(
    ("analysis", "expected"),
    [
        (None, False),
        ({"constraint_analysis": {"joint_probability": 0.5, "per_constraint": [{"probability": 0.6}]}}, False),
        ({"constraint_analysis": {"joint_probability": 0.3, "per_constraint": [{"probability": 0.6}]}}, True),
        ({"constraint_analysis": {"joint_probability": 0.3, "per_constraint": []}}, False),
        ({"constraint_analysis": {"joint_probability": 0, "per_constraint": [{"probability": 0.6}]}}, False),
    ],
)
def test_detect_constraint_tension(analysis, expected):
    assert (detect_constraint_tension(analysis) is not None) is expected
