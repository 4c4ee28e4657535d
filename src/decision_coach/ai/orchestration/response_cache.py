"""Bounded cache of provider responses keyed by their semantic inputs."""

from __future__ import annotations

import copy
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Any, Callable, Mapping, Sequence

from ...services import telemetry as telemetry_service
from ..client import ChatResult
from ..context.hashing import canonical_json, sha256_hex

__all__ = ["LLMResponseCache", "response_cache_key"]


def response_cache_key(
    *,
    model: str | None,
    messages: Sequence[Mapping[str, Any]],
    tools: Sequence[Mapping[str, Any]] | None = None,
    call_shape: str = "tools",
) -> str:
    """Canonical hash over everything that determines a provider response."""

    return sha256_hex(
        canonical_json(
            {
                "model": model,
                "messages": [dict(message) for message in messages],
                "tools": [dict(tool) for tool in tools or ()],
                "call_shape": call_shape,
            }
        )
    )


@dataclass(slots=True)
class _CacheEntry:
    key: str
    result: ChatResult
    created_at: float


class LLMResponseCache:
    """LRU cache of :class:`ChatResult` objects.

    Results are deep-copied on store and on read so callers can never mutate
    the cached value.
    """

    def __init__(
        self,
        *,
        max_entries: int = 128,
        ttl_seconds: float | None = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_entries = max(1, int(max_entries))
        self._ttl_seconds = None if ttl_seconds is None else max(0.0, float(ttl_seconds))
        self._entries: "OrderedDict[str, _CacheEntry]" = OrderedDict()
        self._lock = RLock()
        self._clock = clock

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> ChatResult | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._ttl_seconds and now - entry.created_at >= self._ttl_seconds:
                self._entries.pop(key, None)
                telemetry_service.emit("llm.cache_expired", {"key": key[:12]})
                return None
            self._entries.move_to_end(key)
            result = self._copy_result(entry.result)
        telemetry_service.emit("llm.cache_hit", {"key": key[:12]})
        return result

    def store(self, key: str, result: ChatResult) -> None:
        entry = _CacheEntry(key=key, result=self._copy_result(result), created_at=self._clock())
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            self._enforce_capacity_locked()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def _enforce_capacity_locked(self) -> None:
        while len(self._entries) > self._max_entries:
            evicted, _ = self._entries.popitem(last=False)
            telemetry_service.emit("llm.cache_evicted", {"key": evicted[:12]})

    @staticmethod
    def _copy_result(result: ChatResult) -> ChatResult:
        return copy.deepcopy(result)
