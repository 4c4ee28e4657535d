"""Pipeline phase: Invoke LLM.

Two call shapes with separate timeouts:

* the acknowledgement path (``invoke_ack``) makes one short, tool-less call and
  degrades to fixed fallback text on any provider failure or timeout;
* the full path (``invoke_full``) makes one tool-enabled call and reports
  failures as an ``error`` :class:`LLMCallResult`.

Neither function raises for provider problems. Only cancellation propagates.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

from ....services import telemetry as telemetry_service
from ...client import ChatResult, ProviderError
from ..cancellation import CancellationToken
from ..errors import ErrorCode
from ..response_cache import LLMResponseCache, response_cache_key
from ..response_parser import parse_model_reply
from ..runtime_config import OrchestratorConfig
from ..types import EnrichedContext, LLMCallResult, Message, SpecialistResult, ToolInvocation

__all__ = [
    "ACK_SYSTEM_PROMPT",
    "ACK_USER_PROMPT",
    "ModelClient",
    "build_full_messages",
    "invoke_ack",
    "invoke_full",
    "parse_tool_invocations",
]

LOGGER = logging.getLogger(__name__)

ACK_SYSTEM_PROMPT = "Briefly acknowledge a graph edit made by the user."
ACK_USER_PROMPT = "The user edited the graph directly."


@runtime_checkable
class ModelClient(Protocol):
    """The two provider call shapes the pipeline consumes. :class:`AIClient` conforms."""

    @property
    def model(self) -> str:
        ...

    async def chat(self, messages: Sequence[Mapping[str, Any]], *, timeout: float) -> ChatResult:
        ...

    async def chat_with_tools(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        *,
        timeout: float,
    ) -> ChatResult:
        ...


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000


def _timeout(config_value: float, token: CancellationToken | None) -> float:
    if token is None:
        return config_value
    return token.bounded_timeout(config_value)


# -----------------------------------------------------------------------------
# Acknowledgement path
# -----------------------------------------------------------------------------


async def invoke_ack(
    client: ModelClient,
    *,
    config: OrchestratorConfig,
    cancel_token: CancellationToken | None = None,
) -> LLMCallResult:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()
    messages = [Message.system(ACK_SYSTEM_PROMPT).to_chat_param(), Message.user(ACK_USER_PROMPT).to_chat_param()]
    started = time.perf_counter()
    try:
        result = await client.chat(messages, timeout=_timeout(config.ack_timeout_seconds, cancel_token))
    except asyncio.TimeoutError:
        return _ack_fallback(config, "timeout", started)
    except ProviderError as exc:
        return _ack_fallback(config, f"provider error: {exc}", started)
    except Exception as exc:
        LOGGER.debug("Acknowledgement call raised unexpectedly", exc_info=True)
        return _ack_fallback(config, f"{type(exc).__name__}: {exc}", started)

    text = (result.content or "").strip()
    if not text:
        return _ack_fallback(config, "empty response", started)
    return LLMCallResult(
        outcome="ok",
        assistant_text=text,
        latency_ms=_elapsed_ms(started),
        usage=dict(result.usage),
        model=result.model,
    )


def _ack_fallback(config: OrchestratorConfig, reason: str, started: float) -> LLMCallResult:
    LOGGER.warning("Acknowledgement call degraded to fallback text (%s)", reason)
    telemetry_service.emit(telemetry_service.LLM_ACK_FALLBACK, {"reason": reason})
    return LLMCallResult.fallback(config.ack_fallback_text, reason=reason, latency_ms=_elapsed_ms(started))


# -----------------------------------------------------------------------------
# Full path
# -----------------------------------------------------------------------------


def build_full_messages(enriched: EnrichedContext, specialists: SpecialistResult) -> list[dict[str, Any]]:
    """System prefix (zones 1 and 2), specialist advice, then the dynamic zone."""

    pack = enriched.pack
    messages: list[dict[str, Any]] = []
    if pack.system_prompt:
        messages.append(dict(Message.system(pack.system_prompt).to_chat_param()))
    if specialists.advice:
        advice = "\n".join(f"- {line}" for line in specialists.advice)
        messages.append(dict(Message.system(f"<coaching_notes>\n{advice}\n</coaching_notes>").to_chat_param()))
    messages.append(dict(Message.user(pack.zone3).to_chat_param()))
    return messages


def parse_tool_invocations(result: ChatResult) -> tuple[tuple[ToolInvocation, ...], tuple[str, ...]]:
    """Decode tool call arguments. Undecodable arguments become empty with a warning."""

    invocations: list[ToolInvocation] = []
    warnings: list[str] = []
    for call in result.tool_calls:
        arguments: Mapping[str, Any] = {}
        if call.arguments:
            try:
                decoded = json.loads(call.arguments)
            except json.JSONDecodeError:
                warnings.append(f"Tool call {call.name} had malformed arguments; ignored")
            else:
                if isinstance(decoded, Mapping):
                    arguments = decoded
                else:
                    warnings.append(f"Tool call {call.name} arguments were not an object; ignored")
        invocations.append(ToolInvocation(id=call.id, name=call.name, arguments=dict(arguments), raw_arguments=call.arguments))
    return tuple(invocations), tuple(warnings)


async def invoke_full(
    client: ModelClient,
    enriched: EnrichedContext,
    specialists: SpecialistResult,
    tools: Sequence[Mapping[str, Any]],
    *,
    config: OrchestratorConfig,
    cache: LLMResponseCache | None = None,
    cancel_token: CancellationToken | None = None,
) -> LLMCallResult:
    if cancel_token is not None:
        cancel_token.raise_if_cancelled()

    messages = build_full_messages(enriched, specialists)
    key = response_cache_key(model=client.model, messages=messages, tools=tools) if cache is not None else None
    started = time.perf_counter()

    result: ChatResult | None = cache.get(key) if cache is not None and key is not None else None
    cached = result is not None
    if result is not None:
        LOGGER.debug("LLM response cache hit")
    else:
        try:
            result = await client.chat_with_tools(
                messages,
                tools,
                timeout=_timeout(config.full_timeout_seconds, cancel_token),
            )
        except asyncio.TimeoutError:
            LOGGER.warning("Full reasoning call timed out after %.1fs", config.full_timeout_seconds)
            return LLMCallResult.failure(ErrorCode.LLM_TIMEOUT, "model call timed out", latency_ms=_elapsed_ms(started))
        except ProviderError as exc:
            LOGGER.warning("Full reasoning call failed: %s", exc)
            return LLMCallResult.failure(ErrorCode.PIPELINE_ERROR, str(exc), latency_ms=_elapsed_ms(started))
        except Exception as exc:
            LOGGER.warning("Full reasoning call raised unexpectedly", exc_info=True)
            return LLMCallResult.failure(
                ErrorCode.PIPELINE_ERROR,
                f"{type(exc).__name__}: {exc}",
                latency_ms=_elapsed_ms(started),
            )
        if cache is not None and key is not None:
            cache.store(key, result)

    parsed = parse_model_reply(result.content)
    invocations, tool_warnings = parse_tool_invocations(result)
    return LLMCallResult(
        outcome="ok",
        assistant_text=parsed.assistant_text,
        tool_invocations=invocations,
        blocks=parsed.blocks,
        suggested_actions=parsed.suggested_actions,
        cited_fact_ids=parsed.cited_fact_ids,
        diagnostics=parsed.diagnostics,
        parse_warnings=parsed.parse_warnings + tool_warnings,
        latency_ms=_elapsed_ms(started),
        usage=dict(result.usage),
        model=result.model,
        cached=cached,
        extensions={"finish_reason": result.finish_reason} if result.finish_reason else {},
    )
