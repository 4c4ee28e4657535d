"""Tool system types for the orchestration pipeline."""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Protocol, runtime_checkable

from ..cancellation import CancellationToken
from ..types import ConversationBlock, ConversationContext, ToolSideEffects

__all__ = [
    "ToolSpec",
    "ToolContext",
    "ToolOutcome",
    "ToolHandler",
    "Tool",
    "SimpleTool",
]


# -----------------------------------------------------------------------------
# Tool Specification
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """Specification for a tool's interface.

    Attributes:
        name: Unique identifier for the tool.
        description: Description shown to the model.
        parameters: JSON Schema for the tool's arguments.
        long_running: Whether clients should show a progress indicator.
    """

    name: str
    description: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    long_running: bool = False

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else {
                    "type": "object",
                    "properties": {},
                },
            },
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": dict(self.parameters) if self.parameters else {},
            "long_running": self.long_running,
        }


# -----------------------------------------------------------------------------
# Execution context and outcome
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolContext:
    """Turn data a tool may read. Tools never see the raw request payload."""

    message: str
    context: ConversationContext
    turn_id: str
    cancel_token: CancellationToken | None = None


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """What a tool produced."""

    blocks: tuple[ConversationBlock, ...] = ()
    assistant_text: str | None = None
    side_effects: ToolSideEffects = field(default_factory=ToolSideEffects)
    analysis_response: Mapping[str, Any] | None = None
    graph: Mapping[str, Any] | None = None


ToolHandler = Callable[[Mapping[str, Any], ToolContext], "ToolOutcome | Awaitable[ToolOutcome]"]


# -----------------------------------------------------------------------------
# Tool Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class Tool(Protocol):
    @property
    def name(self) -> str:
        ...

    @property
    def spec(self) -> ToolSpec:
        ...

    async def execute(self, arguments: Mapping[str, Any], context: ToolContext) -> ToolOutcome:
        """Run the tool. Raise :class:`~..errors.ToolError` for expected failures."""
        ...


@dataclass
class SimpleTool:
    """Tool wrapping a plain (sync or async) handler callable."""

    spec: ToolSpec
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.spec.name

    async def execute(self, arguments: Mapping[str, Any], context: ToolContext) -> ToolOutcome:
        result = self.handler(arguments, context)
        if inspect.isawaitable(result):
            result = await result
        return result  # type: ignore[return-value]
