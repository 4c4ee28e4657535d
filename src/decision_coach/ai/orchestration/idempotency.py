"""Idempotency store keyed by the client-supplied turn id."""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from threading import RLock
from typing import Callable, Protocol, runtime_checkable

from .types import TurnResult

LOGGER = logging.getLogger(__name__)

__all__ = ["IdempotencyStore", "InMemoryIdempotencyStore"]


@runtime_checkable
class IdempotencyStore(Protocol):
    """Collaborator used to deduplicate retried and concurrent turns.

    ``set_if_absent`` is atomic: the first writer wins and every later writer
    for the same turn id gets the first writer's result back.
    """

    async def get(self, turn_id: str) -> TurnResult | None:
        ...

    async def set_if_absent(self, turn_id: str, result: TurnResult) -> TurnResult:
        ...

    def get_inflight(self, turn_id: str) -> "asyncio.Future[TurnResult] | None":
        ...

    def register_inflight(self, turn_id: str, future: "asyncio.Future[TurnResult]") -> "asyncio.Future[TurnResult]":
        ...

    def clear_inflight(self, turn_id: str, future: "asyncio.Future[TurnResult]") -> None:
        ...


@dataclass(slots=True)
class _StoredResult:
    result: TurnResult
    stored_at: float


class InMemoryIdempotencyStore:
    """Process-local store with TTL expiry and a bounded number of entries."""

    def __init__(
        self,
        *,
        ttl_seconds: float | None = 600.0,
        max_entries: int = 1_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = None if ttl_seconds is None else max(0.0, float(ttl_seconds))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._results: "OrderedDict[str, _StoredResult]" = OrderedDict()
        self._inflight: dict[str, asyncio.Future[TurnResult]] = {}
        self._lock = RLock()

    async def get(self, turn_id: str) -> TurnResult | None:
        with self._lock:
            return self._get_locked(turn_id)

    async def set_if_absent(self, turn_id: str, result: TurnResult) -> TurnResult:
        with self._lock:
            existing = self._get_locked(turn_id)
            if existing is not None:
                LOGGER.debug("Turn %s already recorded; keeping first result", turn_id)
                return existing
            self._results[turn_id] = _StoredResult(result=result, stored_at=self._clock())
            self._enforce_capacity_locked()
            return result

    def get_inflight(self, turn_id: str) -> "asyncio.Future[TurnResult] | None":
        with self._lock:
            future = self._inflight.get(turn_id)
            if future is not None and future.done() and future.cancelled():
                self._inflight.pop(turn_id, None)
                return None
            return future

    def register_inflight(self, turn_id: str, future: "asyncio.Future[TurnResult]") -> "asyncio.Future[TurnResult]":
        """Register ``future`` unless another run already owns ``turn_id``; return the owner."""

        with self._lock:
            current = self._inflight.get(turn_id)
            if current is not None and not current.cancelled():
                return current
            self._inflight[turn_id] = future
            return future

    def clear_inflight(self, turn_id: str, future: "asyncio.Future[TurnResult]") -> None:
        with self._lock:
            if self._inflight.get(turn_id) is future:
                self._inflight.pop(turn_id, None)

    def clear(self) -> None:
        """Forget every stored and in-flight turn (test hook)."""

        with self._lock:
            self._results.clear()
            self._inflight.clear()

    def _get_locked(self, turn_id: str) -> TurnResult | None:
        stored = self._results.get(turn_id)
        if stored is None:
            return None
        if self._ttl_seconds and self._clock() - stored.stored_at >= self._ttl_seconds:
            self._results.pop(turn_id, None)
            return None
        return stored.result

    def _enforce_capacity_locked(self) -> None:
        while len(self._results) > self._max_entries:
            self._results.popitem(last=False)
