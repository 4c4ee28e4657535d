"""Async LLM provider client built around OpenAI-compatible endpoints.

The client exposes the two call shapes the orchestrator consumes: a plain chat
call and a tool-enabled chat call. Both take a timeout and return a
:class:`ChatResult`; transport failures surface as :class:`ProviderError` and
timeouts as :class:`asyncio.TimeoutError`.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Iterable, Mapping, Protocol, Sequence, cast, runtime_checkable

import httpx
from openai import APIConnectionError, APIError, APIStatusError, AsyncOpenAI, RateLimitError
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolChoiceOptionParam,
    ChatCompletionToolParam,
)
import tiktoken
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .utils.tokens import estimate_tokens

LOGGER = logging.getLogger(__name__)
_DEFAULT_ENCODING = "cl100k_base"
_RETRYABLE_STATUS_FLOOR = 500


@runtime_checkable
class TokenCounterProtocol(Protocol):
    """Tokenizer used for usage accounting."""

    model_name: str | None

    def count(self, text: str) -> int:
        ...

    def estimate(self, text: str) -> int:
        """Byte-heuristic count, identical to the one budgeting uses."""
        ...


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (APIConnectionError, RateLimitError, httpx.TimeoutException)):
        return True
    if isinstance(exc, APIStatusError):
        return exc.status_code >= _RETRYABLE_STATUS_FLOOR
    return False


class ProviderError(RuntimeError):
    """Raised when the provider call fails after transport retries."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ApproxByteCounter:
    """Counts tokens with :func:`estimate_tokens`; exact and estimate agree."""

    def __init__(self, *, model_name: str | None = None) -> None:
        self.model_name = model_name

    def count(self, text: str) -> int:
        return estimate_tokens(text)

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


def _resolve_encoding(model_name: str, encoding_name: str | None) -> tiktoken.Encoding:
    if encoding_name:
        return tiktoken.get_encoding(encoding_name)
    try:
        return tiktoken.encoding_for_model(model_name)
    except KeyError:
        LOGGER.debug("No tiktoken mapping for %s; using %s", model_name, _DEFAULT_ENCODING)
        return tiktoken.get_encoding(_DEFAULT_ENCODING)


class TiktokenCounter:
    """Exact counts from the tiktoken encoding of ``model_name``."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("TiktokenCounter needs a model name")
        self.model_name = model_name
        self._encoding = _resolve_encoding(model_name, encoding_name)

    @property
    def encoding_name(self) -> str:
        return self._encoding.name

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._encoding.encode(text, disallowed_special=()))

    def estimate(self, text: str) -> int:
        return estimate_tokens(text)


def _model_key(model_name: str | None) -> str:
    return (model_name or "").strip().lower()


class TokenCounterRegistry:
    """Per-model token counters; unknown models get the byte counter."""

    _instance: ClassVar[TokenCounterRegistry | None] = None

    def __init__(self, *, default: TokenCounterProtocol | None = None) -> None:
        self._default = default or ApproxByteCounter()
        self._by_model: dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> TokenCounterRegistry:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_global_instance(cls) -> None:
        """Forget the process-wide registry. Test hook."""

        cls._instance = None

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = _model_key(model_name)
        if not key:
            raise ValueError("Cannot register a token counter without a model name")
        self._by_model[key] = counter

    def has(self, model_name: str | None) -> bool:
        return _model_key(model_name) in self._by_model

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        return self._by_model.get(_model_key(model_name), self._default)

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 60.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False

    @classmethod
    def from_settings(cls, settings: Any) -> "ClientSettings":
        """Build client settings from a :class:`~decision_coach.services.settings.Settings`."""

        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            organization=settings.organization,
            request_timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            retry_min_seconds=settings.retry_min_seconds,
            retry_max_seconds=settings.retry_max_seconds,
            debug_logging=settings.debug_logging,
        )


@dataclass(slots=True, frozen=True)
class ToolCallRequest:
    """A tool invocation requested by the model, arguments still JSON-encoded."""

    id: str
    name: str
    arguments: str

    def to_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass(slots=True, frozen=True)
class ChatResult:
    """Normalised completion returned by both call shapes."""

    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    finish_reason: str | None = None
    model: str | None = None
    usage: Mapping[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "finish_reason": self.finish_reason,
            "model": self.model,
            "usage": dict(self.usage),
        }


class AIClient:
    """Async client providing the plain and tool-enabled chat calls with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        timeout: float,
        max_tokens: int | None = None,
    ) -> ChatResult:
        """Run a chat completion without tools, bounded by ``timeout`` seconds."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=None,
            tool_choice=None,
            max_tokens=max_tokens,
        )
        return await asyncio.wait_for(self._complete(payload), timeout=timeout)

    async def chat_with_tools(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        tools: Sequence[ChatCompletionToolParam],
        *,
        timeout: float,
        tool_choice: ChatCompletionToolChoiceOptionParam | None = "auto",
        max_tokens: int | None = None,
    ) -> ChatResult:
        """Run a tool-enabled chat completion, bounded by ``timeout`` seconds."""

        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            tool_choice=tool_choice if tools else None,
            max_tokens=max_tokens,
        )
        return await asyncio.wait_for(self._complete(payload), timeout=timeout)

    def count_tokens(self, text: str, *, model: str | None = None, estimate_only: bool = False) -> int:
        counter = self._token_registry.get(model or self._settings.model)
        return counter.estimate(text) if estimate_only else counter.count(text)

    async def aclose(self) -> None:
        """Release the HTTP connection pool held by the OpenAI client."""

        await self._client.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _complete(self, payload: Mapping[str, Any]) -> ChatResult:
        LOGGER.debug(
            "Chat completion: model=%s messages=%s tools=%s",
            payload.get("model"),
            len(payload.get("messages", ())),
            len(payload.get("tools", ())),
        )
        if self._settings.debug_logging:
            LOGGER.debug("Chat payload:\n%s", json.dumps(payload, ensure_ascii=False, indent=2, default=str))
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.chat.completions.create(**payload)
        except APIStatusError as exc:
            raise ProviderError(f"Provider returned HTTP {exc.status_code}", status_code=exc.status_code) from exc
        except (APIError, httpx.HTTPError) as exc:
            raise ProviderError(f"Provider call failed: {exc}") from exc
        return self._normalize_response(response)

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        # tenacity owns retries; the SDK's own retry loop stays off.
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=dict(settings.default_headers or {}) or None,
        )

    def _register_default_token_counter(self) -> None:
        model_name = self._settings.model.strip() if self._settings.model else ""
        if not model_name or self._token_registry.has(model_name):
            return
        counter: TokenCounterProtocol
        try:
            counter = TiktokenCounter(model_name)
        except Exception as exc:  # tiktoken fetches encodings on first use
            LOGGER.warning("tiktoken unavailable for %s (%s); counting tokens by bytes", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self._token_registry.register(model_name, counter)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_is_retryable),
        )

    @staticmethod
    def _coerce_messages(
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
    ) -> list[ChatCompletionMessageParam]:
        coerced = [cast(ChatCompletionMessageParam, dict(message)) for message in messages]
        if not coerced:
            raise ValueError("A chat call needs at least one message")
        return coerced

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Sequence[ChatCompletionToolParam] | None,
        tool_choice: ChatCompletionToolChoiceOptionParam | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        optional = {
            "tools": list(tools) if tools else None,
            "tool_choice": tool_choice or None,
            "temperature": self._settings.temperature,
            "max_tokens": max_tokens,
        }
        payload: dict[str, Any] = {"model": self._settings.model, "messages": list(messages)}
        payload.update({key: value for key, value in optional.items() if value is not None})
        return payload

    @staticmethod
    def _normalize_response(response: Any) -> ChatResult:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ProviderError("Provider returned no choices")
        choice = choices[0]
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None) or ""
        tool_calls: list[ToolCallRequest] = []
        for index, call in enumerate(getattr(message, "tool_calls", None) or ()):
            function = getattr(call, "function", None)
            name = getattr(function, "name", None)
            if not name:
                continue
            tool_calls.append(
                ToolCallRequest(
                    id=getattr(call, "id", None) or f"call_{index}",
                    name=name,
                    arguments=getattr(function, "arguments", None) or "{}",
                )
            )
        usage_obj = getattr(response, "usage", None)
        usage: dict[str, int] = {}
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
            value = getattr(usage_obj, key, None)
            if isinstance(value, int):
                usage[key] = value
        return ChatResult(
            content=content,
            tool_calls=tuple(tool_calls),
            finish_reason=getattr(choice, "finish_reason", None),
            model=getattr(response, "model", None),
            usage=usage,
        )


__all__ = [
    "ProviderError",
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "ClientSettings",
    "ToolCallRequest",
    "ChatResult",
    "AIClient",
]
