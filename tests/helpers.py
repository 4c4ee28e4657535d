"""Shared test helpers and stub classes.

This module contains reusable fakes used across multiple test files.
Import from here instead of duplicating these classes in individual test files.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Mapping, Sequence

from decision_coach.ai.client import ChatResult, ToolCallRequest


def chat_reply(
    content: str = "",
    *,
    tool_calls: Sequence[tuple[str, Mapping[str, Any]]] = (),
    model: str = "test-model",
    usage: Mapping[str, int] | None = None,
) -> ChatResult:
    """Build a :class:`ChatResult` with JSON-encoded tool call arguments."""

    calls = tuple(
        ToolCallRequest(id=f"call_{index}", name=name, arguments=json.dumps(dict(arguments)))
        for index, (name, arguments) in enumerate(tool_calls)
    )
    return ChatResult(
        content=content,
        tool_calls=calls,
        finish_reason="tool_calls" if calls else "stop",
        model=model,
        usage=dict(usage or {"prompt_tokens": 100, "completion_tokens": 20, "total_tokens": 120}),
    )


def envelope_reply(text: str, *, actions: Sequence[tuple[str, str, str]] = (), diagnostics: str = "route=chat") -> str:
    """Render a well-formed tagged model reply."""

    action_xml = "".join(
        f"<action><role>{role}</role><label>{label}</label><message>{message}</message></action>"
        for role, label, message in actions
    )
    return (
        f"<diagnostics>{diagnostics}</diagnostics>"
        f"<response><assistant_text>{text}</assistant_text>"
        f"<suggested_actions>{action_xml}</suggested_actions></response>"
    )


class FakeModelClient:
    """Scripted stand-in for :class:`~decision_coach.ai.client.AIClient`.

    ``replies`` are consumed in order by both call shapes. An entry may be a
    :class:`ChatResult`, a string (wrapped as plain content), an exception
    instance (raised) or a float (sleep that long, forcing a timeout).
    """

    def __init__(self, replies: Sequence[Any] = (), *, model: str = "test-model") -> None:
        self._replies = list(replies)
        self._model = model
        self.chat_calls: list[dict[str, Any]] = []
        self.tool_calls: list[dict[str, Any]] = []
        self.closed = False

    @property
    def model(self) -> str:
        return self._model

    async def chat(self, messages: Sequence[Mapping[str, Any]], *, timeout: float) -> ChatResult:
        self.chat_calls.append({"messages": [dict(message) for message in messages], "timeout": timeout})
        return await self._next(timeout)

    async def chat_with_tools(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        *,
        timeout: float,
    ) -> ChatResult:
        self.tool_calls.append(
            {"messages": [dict(message) for message in messages], "tools": list(tools), "timeout": timeout}
        )
        return await self._next(timeout)

    async def aclose(self) -> None:
        self.closed = True

    @property
    def call_count(self) -> int:
        return len(self.chat_calls) + len(self.tool_calls)

    async def _next(self, timeout: float) -> ChatResult:
        reply = self._replies.pop(0) if self._replies else chat_reply("OK")
        if isinstance(reply, BaseException):
            raise reply
        if isinstance(reply, float):
            return await asyncio.wait_for(asyncio.sleep(reply, result=chat_reply("late")), timeout=timeout)
        if isinstance(reply, str):
            return chat_reply(reply)
        return reply


class FakeAnalysisEngine:
    """Returns a canned analysis response and remembers the graphs it saw."""

    def __init__(self, response: Mapping[str, Any]) -> None:
        self._response = dict(response)
        self.calls: list[tuple[Mapping[str, Any], Mapping[str, Any]]] = []

    async def run(self, graph: Mapping[str, Any], *, options: Mapping[str, Any]) -> Mapping[str, Any]:
        self.calls.append((graph, dict(options)))
        return dict(self._response)


class FakeGraphDrafter:
    def __init__(self, graph: Mapping[str, Any]) -> None:
        self._graph = dict(graph)
        self.briefs: list[str] = []

    async def draft(self, brief: str, *, framing: Mapping[str, Any] | None) -> Mapping[str, Any]:
        self.briefs.append(brief)
        return dict(self._graph)


class FakeGraphEditor:
    def __init__(self, operations: Sequence[Mapping[str, Any]], summary: str | None = None) -> None:
        self._operations = [dict(op) for op in operations]
        self._summary = summary
        self.instructions: list[str] = []

    async def edit(
        self,
        graph: Mapping[str, Any],
        instruction: str,
        *,
        selected_elements: Sequence[str],
    ) -> Mapping[str, Any]:
        self.instructions.append(instruction)
        return {"operations": list(self._operations), "summary": self._summary}
