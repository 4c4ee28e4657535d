"""Pipeline phase: Execute Tools.

Runs the turn's tool invocations in order and folds their outcomes into one
:class:`ToolBatchResult`. The cancellation token is checked before every
tool; once it fires no further tool starts.
"""

from __future__ import annotations

import logging
from typing import Sequence

from ..errors import ErrorCode
from ..tools.executor import ToolExecutor
from ..tools.types import ToolContext
from ..types import ConversationBlock, ToolBatchResult, ToolCallRecord, ToolInvocation, ToolSideEffects

__all__ = ["RECOVERABLE_TOOL_ERRORS", "execute_tools"]

LOGGER = logging.getLogger(__name__)

# Failures the user can fix by supplying more input; they degrade the turn instead of failing it.
RECOVERABLE_TOOL_ERRORS = frozenset({ErrorCode.PREREQUISITE_MISSING, ErrorCode.INVALID_ARGUMENTS})


async def execute_tools(
    executor: ToolExecutor,
    invocations: Sequence[ToolInvocation],
    context: ToolContext,
    *,
    timeout: float | None = None,
) -> ToolBatchResult:
    """Execute ``invocations`` sequentially.

    Raises:
        TurnCancelled: When the turn is cancelled before a tool starts.
    """
    if not invocations:
        return ToolBatchResult.empty()

    blocks: list[ConversationBlock] = []
    records: list[ToolCallRecord] = []
    side_effects = ToolSideEffects()
    assistant_text: str | None = None
    analysis_response = None
    graph = None
    latency_ms = 0.0
    outcome = "ok"

    for invocation in invocations:
        execution = await executor.execute(invocation, context, timeout=timeout)
        records.append(execution.record)
        latency_ms += execution.record.duration_ms

        if execution.error is not None:
            error = execution.error
            if error.error_code in RECOVERABLE_TOOL_ERRORS:
                LOGGER.info("Tool %s could not run: %s", invocation.name, error.message)
                outcome = "degraded"
                if assistant_text is None:
                    assistant_text = error.message
                continue
            LOGGER.warning("Tool %s failed with %s; stopping tool execution", invocation.name, error.error_code)
            return ToolBatchResult(
                outcome="error",
                blocks=tuple(blocks),
                side_effects=side_effects,
                assistant_text=assistant_text,
                analysis_response=analysis_response,
                graph=graph,
                tool_latency_ms=latency_ms,
                records=tuple(records),
                error_code=error.error_code,
                error_message=error.message,
            )

        result = execution.outcome
        if result is None:
            continue
        blocks.extend(result.blocks)
        side_effects = side_effects.merge(result.side_effects)
        if result.assistant_text is not None:
            assistant_text = result.assistant_text
        if result.analysis_response is not None:
            analysis_response = result.analysis_response
        if result.graph is not None:
            graph = result.graph

    return ToolBatchResult(
        outcome=outcome,  # type: ignore[arg-type]
        blocks=tuple(blocks),
        side_effects=side_effects,
        assistant_text=assistant_text,
        analysis_response=analysis_response,
        graph=graph,
        tool_latency_ms=latency_ms,
        records=tuple(records),
    )
