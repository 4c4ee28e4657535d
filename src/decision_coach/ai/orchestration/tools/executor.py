"""Tool executor for the orchestration pipeline.

Runs one tool invocation with argument validation, a per-call timeout and the
turn's cancellation token. Every expected failure is converted into a
:class:`ToolError` carried by :class:`ToolExecution`; only cancellation
propagates.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from ..errors import ErrorCode, ToolError
from ..types import ToolCallRecord, ToolInvocation
from .registry import ToolRegistry
from .types import ToolContext, ToolOutcome

__all__ = [
    "ExecutorConfig",
    "ToolExecution",
    "ToolExecutor",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Default timeout for tool execution in seconds.
        log_arguments: Whether to log tool arguments (may contain user text).
    """

    default_timeout: float | None = 20.0
    log_arguments: bool = False


@dataclass(slots=True, frozen=True)
class ToolExecution:
    record: ToolCallRecord
    outcome: ToolOutcome | None = None
    error: ToolError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.outcome is not None


class ToolExecutor:
    """Executes tool invocations against a :class:`ToolRegistry`."""

    def __init__(self, registry: ToolRegistry, config: ExecutorConfig | None = None) -> None:
        self._registry = registry
        self._config = config or ExecutorConfig()

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    async def execute(
        self,
        invocation: ToolInvocation,
        context: ToolContext,
        *,
        timeout: float | None = None,
    ) -> ToolExecution:
        """Execute ``invocation``.

        Raises:
            TurnCancelled: If the turn was cancelled before the tool started.
        """
        token = context.cancel_token
        if token is not None:
            token.raise_if_cancelled()

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", invocation.name, invocation.id, dict(invocation.arguments))
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", invocation.name, invocation.id)

        start_time = time.perf_counter()
        tool = self._registry.get(invocation.name)
        if tool is None:
            LOGGER.warning("Tool %s not found or disabled", invocation.name)
            return self._failure(
                invocation,
                start_time,
                ToolError(ErrorCode.TOOL_NOT_FOUND, f"Tool '{invocation.name}' is not available"),
            )

        problems = self._registry.validate_arguments(invocation.name, invocation.arguments)
        if problems:
            return self._failure(
                invocation,
                start_time,
                ToolError(ErrorCode.INVALID_ARGUMENTS, problems[0], {"errors": problems}),
            )

        effective_timeout = timeout if timeout is not None else self._config.default_timeout
        if token is not None and effective_timeout is not None:
            effective_timeout = token.bounded_timeout(effective_timeout)

        try:
            if effective_timeout is not None and effective_timeout > 0:
                outcome = await asyncio.wait_for(tool.execute(invocation.arguments, context), timeout=effective_timeout)
            else:
                outcome = await tool.execute(invocation.arguments, context)
        except asyncio.TimeoutError:
            LOGGER.warning("Tool %s timed out (timeout=%.1fs)", invocation.name, effective_timeout or 0.0)
            return self._failure(
                invocation,
                start_time,
                ToolError(ErrorCode.TOOL_TIMEOUT, f"Tool '{invocation.name}' timed out"),
            )
        except ToolError as exc:
            LOGGER.warning("Tool %s failed: %s", invocation.name, exc)
            return self._failure(invocation, start_time, exc)
        except Exception as exc:
            LOGGER.warning("Tool %s raised unexpectedly", invocation.name, exc_info=True)
            return self._failure(
                invocation,
                start_time,
                ToolError(ErrorCode.TOOL_EXECUTION_FAILED, str(exc) or type(exc).__name__),
            )

        duration_ms = (time.perf_counter() - start_time) * 1000
        LOGGER.debug("Tool %s completed in %.1fms", invocation.name, duration_ms)
        record = ToolCallRecord(call_id=invocation.id, name=invocation.name, success=True, duration_ms=duration_ms)
        return ToolExecution(record=record, outcome=outcome)

    @staticmethod
    def _failure(invocation: ToolInvocation, start_time: float, error: ToolError) -> ToolExecution:
        duration_ms = (time.perf_counter() - start_time) * 1000
        record = ToolCallRecord(
            call_id=invocation.id,
            name=invocation.name,
            success=False,
            duration_ms=duration_ms,
            error=error.to_dict(),
        )
        return ToolExecution(record=record, error=error)
