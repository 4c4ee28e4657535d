"""Tests for the tool executor."""

from __future__ import annotations

import asyncio

import pytest

from decision_coach.ai.orchestration import CancellationToken, ToolError, TurnCancelled
from decision_coach.ai.orchestration.errors import ErrorCode
from decision_coach.ai.orchestration.tools import (
    ExecutorConfig,
    ToolContext,
    ToolExecutor,
    ToolOutcome,
    ToolRegistry,
    ToolSpec,
)
from decision_coach.ai.orchestration.types import ConversationContext, ToolInvocation

_SPEC = ToolSpec(
    name="echo",
    description="Echo",
    parameters={"type": "object", "properties": {"text": {"type": "string"}}, "additionalProperties": False},
)


def _context(token: CancellationToken | None = None) -> ToolContext:
    return ToolContext(message="hi", context=ConversationContext(), turn_id="t1", cancel_token=token)


def _executor(handler, *, timeout: float | None = 1.0) -> ToolExecutor:
    registry = ToolRegistry()
    registry.register_function(_SPEC, handler)
    return ToolExecutor(registry, ExecutorConfig(default_timeout=timeout))


class TestSuccess:
    @pytest.mark.asyncio
    async def test_sync_handler(self):
        executor = _executor(lambda arguments, ctx: ToolOutcome(assistant_text=arguments["text"]))

        execution = await executor.execute(ToolInvocation("call_1", "echo", {"text": "hello"}), _context())

        assert execution.succeeded
        assert execution.outcome.assistant_text == "hello"
        assert execution.record.success is True
        assert execution.record.call_id == "call_1"

    @pytest.mark.asyncio
    async def test_async_handler(self):
        async def handler(arguments, ctx):
            await asyncio.sleep(0)
            return ToolOutcome(assistant_text="async")

        execution = await _executor(handler).execute(ToolInvocation("call_1", "echo", {}), _context())

        assert execution.outcome.assistant_text == "async"


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        execution = await _executor(lambda a, c: ToolOutcome()).execute(
            ToolInvocation("call_1", "missing", {}), _context()
        )

        assert not execution.succeeded
        assert execution.error.error_code == ErrorCode.TOOL_NOT_FOUND
        assert execution.record.error["error"] == ErrorCode.TOOL_NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalid_arguments(self):
        called = []
        executor = _executor(lambda a, c: called.append(a) or ToolOutcome())

        execution = await executor.execute(ToolInvocation("call_1", "echo", {"text": 5}), _context())

        assert execution.error.error_code == ErrorCode.INVALID_ARGUMENTS
        assert called == []

    @pytest.mark.asyncio
    async def test_timeout(self):
        async def slow(arguments, ctx):
            await asyncio.sleep(1)
            return ToolOutcome()

        execution = await _executor(slow, timeout=0.01).execute(ToolInvocation("call_1", "echo", {}), _context())

        assert execution.error.error_code == ErrorCode.TOOL_TIMEOUT

    @pytest.mark.asyncio
    async def test_tool_error_passes_through(self):
        def handler(arguments, ctx):
            raise ToolError(ErrorCode.PREREQUISITE_MISSING, "no graph", {"missing": "graph"})

        execution = await _executor(handler).execute(ToolInvocation("call_1", "echo", {}), _context())

        assert execution.error.error_code == ErrorCode.PREREQUISITE_MISSING
        assert execution.record.error == {"error": "prerequisite_missing", "message": "no graph", "details": {"missing": "graph"}}

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_wrapped(self):
        def handler(arguments, ctx):
            raise RuntimeError("kaboom")

        execution = await _executor(handler).execute(ToolInvocation("call_1", "echo", {}), _context())

        assert execution.error.error_code == ErrorCode.TOOL_EXECUTION_FAILED
        assert execution.error.message == "kaboom"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_token_raises_before_running(self):
        token = CancellationToken()
        token.cancel("client went away")
        called = []

        with pytest.raises(TurnCancelled):
            await _executor(lambda a, c: called.append(a) or ToolOutcome()).execute(
                ToolInvocation("call_1", "echo", {}), _context(token)
            )

        assert called == []

    @pytest.mark.asyncio
    async def test_deadline_bounds_tool_timeout(self):
        now = [0.0]
        token = CancellationToken(deadline=0.01, clock=lambda: now[0])

        async def slow(arguments, ctx):
            await asyncio.sleep(1)
            return ToolOutcome()

        execution = await _executor(slow, timeout=30.0).execute(ToolInvocation("call_1", "echo", {}), _context(token))

        assert execution.error.error_code == ErrorCode.TOOL_TIMEOUT


class TestCancellationToken:
    def test_budget_and_remaining(self):
        now = [100.0]
        token = CancellationToken.with_budget(5.0, clock=lambda: now[0])

        assert token.remaining() == 5.0
        assert token.bounded_timeout(10.0) == 5.0
        now[0] = 105.0
        assert token.cancelled
        assert token.reason == "deadline exceeded"
        with pytest.raises(TurnCancelled):
            token.raise_if_cancelled()

    def test_unbounded_token(self):
        token = CancellationToken.with_budget(None)

        assert token.remaining() is None
        assert token.bounded_timeout(3.0) == 3.0
        assert not token.cancelled

    def test_first_cancel_reason_wins(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")

        assert token.reason == "first"
