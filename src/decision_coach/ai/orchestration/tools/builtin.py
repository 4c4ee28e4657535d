"""Built-in decision tools and their external collaborators.

``run_analysis``, ``draft_graph`` and ``edit_graph`` delegate to injected
engines. ``explain_results`` and ``generate_brief`` are computed locally from
the analysis summary so they never need a second model call.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ...context.renderer import render_margin, render_probability, render_sensitivity
from ...context.state import AnalysisSummary, sequence_items, string_items
from ..errors import ErrorCode, ToolError
from ..summaries import extract_analysis_summary
from ..types import ConversationBlock, ToolSideEffects
from .registry import ToolRegistry
from .types import ToolContext, ToolOutcome, ToolSpec

LOGGER = logging.getLogger(__name__)

__all__ = [
    "AnalysisEngine",
    "GraphDrafter",
    "GraphEditor",
    "BUILTIN_TOOL_SPECS",
    "CONSTRAINT_TENSION_THRESHOLD",
    "build_default_registry",
    "detect_constraint_tension",
    "explain_analysis",
]

CONSTRAINT_TENSION_THRESHOLD = 0.7


# -----------------------------------------------------------------------------
# Collaborators
# -----------------------------------------------------------------------------


@runtime_checkable
class AnalysisEngine(Protocol):
    async def run(self, graph: Mapping[str, Any], *, options: Mapping[str, Any]) -> Mapping[str, Any]:
        """Run the probabilistic analysis and return the analysis response."""
        ...


@runtime_checkable
class GraphDrafter(Protocol):
    async def draft(self, brief: str, *, framing: Mapping[str, Any] | None) -> Mapping[str, Any]:
        """Return a new decision graph drafted from ``brief``."""
        ...


@runtime_checkable
class GraphEditor(Protocol):
    async def edit(
        self,
        graph: Mapping[str, Any],
        instruction: str,
        *,
        selected_elements: Sequence[str],
    ) -> Mapping[str, Any]:
        """Return ``{"operations": [...], "summary": str}`` describing a proposed patch."""
        ...


# -----------------------------------------------------------------------------
# Specs
# -----------------------------------------------------------------------------

_NO_ARGS: Mapping[str, Any] = {"type": "object", "properties": {}, "additionalProperties": False}

BUILTIN_TOOL_SPECS: Mapping[str, ToolSpec] = {
    "run_analysis": ToolSpec(
        name="run_analysis",
        description="Run the probabilistic analysis on the current decision model.",
        parameters={
            "type": "object",
            "properties": {"seed": {"type": "integer", "minimum": 0}},
            "additionalProperties": False,
        },
        long_running=True,
    ),
    "draft_graph": ToolSpec(
        name="draft_graph",
        description="Draft a new decision model from the user's description of the decision.",
        parameters={
            "type": "object",
            "properties": {"brief": {"type": "string", "minLength": 1, "maxLength": 20_000}},
            "additionalProperties": False,
        },
        long_running=True,
    ),
    "edit_graph": ToolSpec(
        name="edit_graph",
        description="Propose changes to the current decision model.",
        parameters={
            "type": "object",
            "properties": {"edit_description": {"type": "string", "minLength": 1, "maxLength": 4_000}},
            "additionalProperties": False,
        },
    ),
    "explain_results": ToolSpec(
        name="explain_results",
        description="Explain the latest analysis results, optionally focusing on one aspect.",
        parameters={
            "type": "object",
            "properties": {"focus": {"enum": ["winner", "drivers", "robustness"]}},
            "additionalProperties": False,
        },
    ),
    "generate_brief": ToolSpec(
        name="generate_brief",
        description="Generate a shareable decision brief from the model and analysis.",
        parameters=_NO_ARGS,
    ),
}


# -----------------------------------------------------------------------------
# Explanation helpers
# -----------------------------------------------------------------------------


def detect_constraint_tension(response: Mapping[str, Any] | None) -> str | None:
    """Return a note when the joint constraint probability is far below the weakest constraint."""

    analysis = (response or {}).get("constraint_analysis")
    if not isinstance(analysis, Mapping):
        return None
    joint = analysis.get("joint_probability")
    if not isinstance(joint, (int, float)) or isinstance(joint, bool) or joint <= 0:
        return None
    individual = [
        entry.get("probability")
        for entry in sequence_items(analysis.get("per_constraint"))
        if isinstance(entry, Mapping) and isinstance(entry.get("probability"), (int, float))
    ]
    if not individual:
        return None
    if joint < min(individual) * CONSTRAINT_TENSION_THRESHOLD:
        return (
            f"The constraints appear to be in tension: the joint probability ({render_probability(joint)}) "
            "is well below the individual constraint probabilities."
        )
    return None


def _cite(fact_id: str | None) -> str:
    return f" (fact_id: {fact_id})" if fact_id else ""


def explain_analysis(summary: AnalysisSummary, *, focus: str | None = None) -> tuple[str, tuple[str, ...]]:
    """Narrate ``summary`` and return the text with the fact ids it cites."""

    sentences: list[str] = []
    cited: list[str] = []

    if focus in (None, "winner") and summary.winner_id and summary.winner_probability is not None:
        sentences.append(
            f"Under this model, {summary.winner_id} comes out ahead with a "
            f"{render_probability(summary.winner_probability)} chance of being best{_cite(summary.winner_fact_id)}."
        )
        if summary.winner_fact_id:
            cited.append(summary.winner_fact_id)
        if summary.winning_margin is not None:
            sentences.append(
                f"Its lead over the next option is {render_margin(summary.winning_margin)}{_cite(summary.margin_fact_id)}."
            )
            if summary.margin_fact_id:
                cited.append(summary.margin_fact_id)

    if focus in (None, "robustness") and summary.robustness_level:
        sentences.append(f"The result is rated {summary.robustness_level} for robustness{_cite(summary.robustness_fact_id)}.")
        if summary.robustness_fact_id:
            cited.append(summary.robustness_fact_id)
        if summary.fragile_edge_ids:
            sentences.append(f"Fragile links: {', '.join(summary.fragile_edge_ids)}.")

    if focus in (None, "drivers") and summary.top_drivers:
        parts = []
        for driver in summary.top_drivers:
            parts.append(f"{driver.node_id} ({render_sensitivity(driver.sensitivity)}){_cite(driver.fact_id)}")
            if driver.fact_id:
                cited.append(driver.fact_id)
        sentences.append(f"The factors that move the result most are {', '.join(parts)}.")

    if not sentences:
        sentences.append("The analysis has nothing to report for that yet.")
    return " ".join(sentences), tuple(dict.fromkeys(cited))


def _require_graph(ctx: ToolContext) -> Mapping[str, Any]:
    if not ctx.context.has_graph or ctx.context.graph is None:
        raise ToolError(ErrorCode.PREREQUISITE_MISSING, "There is no decision model yet.", {"missing": "graph"})
    return ctx.context.graph


def _require_analysis(ctx: ToolContext) -> tuple[Mapping[str, Any], AnalysisSummary]:
    response = ctx.context.analysis_response
    summary = extract_analysis_summary(response)
    if response is None or summary is None or summary.is_empty:
        raise ToolError(ErrorCode.PREREQUISITE_MISSING, "There are no analysis results yet.", {"missing": "analysis"})
    return response, summary


# -----------------------------------------------------------------------------
# Handlers
# -----------------------------------------------------------------------------


class _AnalysisTool:
    def __init__(self, engine: AnalysisEngine | None) -> None:
        self._engine = engine

    async def __call__(self, arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
        graph = _require_graph(ctx)
        if self._engine is None:
            raise ToolError(ErrorCode.TOOL_UNAVAILABLE, "Analysis service is not configured.")
        response = dict(await self._engine.run(graph, options=dict(arguments)))
        summary = extract_analysis_summary(response) or AnalysisSummary()
        block = ConversationBlock.create(
            "fact",
            {
                "winner_id": summary.winner_id,
                "winner_probability": summary.winner_probability,
                "winning_margin": summary.winning_margin,
                "robustness_level": summary.robustness_level,
                "fact_ids": list(summary.fact_ids()),
            },
        )
        return ToolOutcome(
            blocks=(block,),
            assistant_text="The analysis has finished. Ask me to explain the results whenever you're ready.",
            side_effects=ToolSideEffects(analysis_ran=True),
            analysis_response=response,
        )


class _DraftTool:
    def __init__(self, drafter: GraphDrafter | None) -> None:
        self._drafter = drafter

    async def __call__(self, arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
        if self._drafter is None:
            raise ToolError(ErrorCode.TOOL_UNAVAILABLE, "Model drafting is not configured.")
        framing = ctx.context.framing or {}
        brief = str(arguments.get("brief") or framing.get("brief_text") or ctx.message).strip()
        if not brief:
            raise ToolError(ErrorCode.INVALID_ARGUMENTS, "A description of the decision is required.")
        graph = dict(await self._drafter.draft(brief, framing=ctx.context.framing))
        node_count = len(sequence_items(graph.get("nodes")))
        block = ConversationBlock.create("graph_patch", {"patch_type": "full_draft", "graph": graph})
        return ToolOutcome(
            blocks=(block,),
            assistant_text=f"I've drafted a model with {node_count} factors. Take a look and adjust anything that seems off.",
            side_effects=ToolSideEffects(graph_updated=True),
            graph=graph,
        )


class _EditTool:
    def __init__(self, editor: GraphEditor | None) -> None:
        self._editor = editor

    async def __call__(self, arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
        graph = _require_graph(ctx)
        if self._editor is None:
            raise ToolError(ErrorCode.TOOL_UNAVAILABLE, "Model editing is not configured.")
        instruction = str(arguments.get("edit_description") or ctx.message)
        proposal = await self._editor.edit(graph, instruction, selected_elements=ctx.context.selected_elements)
        operations = [dict(op) for op in proposal.get("operations") or () if isinstance(op, Mapping)]
        if not operations:
            return ToolOutcome(assistant_text="I couldn't find a change to make from that description.")
        block = ConversationBlock.create("graph_patch", {"patch_type": "edit", "operations": operations})
        summary = proposal.get("summary")
        text = summary if isinstance(summary, str) and summary else f"I've proposed {len(operations)} change(s) to the model."
        return ToolOutcome(blocks=(block,), assistant_text=text)


def _explain_results(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    response, summary = _require_analysis(ctx)
    text, cited = explain_analysis(summary, focus=arguments.get("focus"))
    tension = detect_constraint_tension(response)
    if tension:
        text = f"{text} {tension}"
    block = ConversationBlock.create(
        "commentary",
        {"content": text, "supporting_refs": [{"fact_id": fact} for fact in cited]},
    )
    return ToolOutcome(blocks=(block,), assistant_text=text)


def _generate_brief(arguments: Mapping[str, Any], ctx: ToolContext) -> ToolOutcome:
    _require_graph(ctx)
    response, summary = _require_analysis(ctx)
    framing = ctx.context.framing or {}
    explanation, cited = explain_analysis(summary)
    sections = {
        "goal": framing.get("goal"),
        "options": list(string_items(framing.get("options"))),
        "constraints": list(string_items(framing.get("constraints"))),
        "recommendation": summary.winner_id,
        "analysis": explanation,
        "constraint_note": detect_constraint_tension(response),
        "fact_ids": list(cited),
    }
    block = ConversationBlock.create("brief", {key: value for key, value in sections.items() if value})
    return ToolOutcome(
        blocks=(block,),
        assistant_text="Here is your decision brief.",
        side_effects=ToolSideEffects(brief_generated=True),
    )


def build_default_registry(
    *,
    analysis_engine: AnalysisEngine | None = None,
    graph_drafter: GraphDrafter | None = None,
    graph_editor: GraphEditor | None = None,
) -> ToolRegistry:
    """Registry with every built-in tool. Missing collaborators make their tool fail as unavailable."""

    registry = ToolRegistry()
    registry.register_function(BUILTIN_TOOL_SPECS["run_analysis"], _AnalysisTool(analysis_engine))
    registry.register_function(BUILTIN_TOOL_SPECS["draft_graph"], _DraftTool(graph_drafter))
    registry.register_function(BUILTIN_TOOL_SPECS["edit_graph"], _EditTool(graph_editor))
    registry.register_function(BUILTIN_TOOL_SPECS["explain_results"], _explain_results)
    registry.register_function(BUILTIN_TOOL_SPECS["generate_brief"], _generate_brief)
    return registry
