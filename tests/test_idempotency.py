"""Tests for the in-memory idempotency store."""

from __future__ import annotations

import asyncio

import pytest

from decision_coach.ai.orchestration import InMemoryIdempotencyStore, IdempotencyStore
from decision_coach.ai.orchestration.types import Lineage, ResponseEnvelope, StageIndicator, TurnResult


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _result(text: str) -> TurnResult:
    envelope = ResponseEnvelope(
        turn_id=text,
        assistant_text=text,
        lineage=Lineage(context_hash="0" * 64),
        stage_indicator=StageIndicator(stage="frame"),
    )
    return TurnResult(envelope=envelope)


def test_store_satisfies_protocol():
    assert isinstance(InMemoryIdempotencyStore(), IdempotencyStore)


@pytest.mark.asyncio
async def test_first_writer_wins():
    store = InMemoryIdempotencyStore()

    first = await store.set_if_absent("scn:1", _result("first"))
    second = await store.set_if_absent("scn:1", _result("second"))

    assert first.envelope.assistant_text == "first"
    assert second.envelope.assistant_text == "first"
    assert (await store.get("scn:1")).envelope.assistant_text == "first"


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    clock = _Clock()
    store = InMemoryIdempotencyStore(ttl_seconds=10, clock=clock)
    await store.set_if_absent("scn:1", _result("first"))

    clock.now = 9.9
    assert await store.get("scn:1") is not None
    clock.now = 10.0
    assert await store.get("scn:1") is None


@pytest.mark.asyncio
async def test_capacity_evicts_oldest():
    store = InMemoryIdempotencyStore(max_entries=2)
    for index in range(3):
        await store.set_if_absent(f"scn:{index}", _result(str(index)))

    assert await store.get("scn:0") is None
    assert await store.get("scn:2") is not None


@pytest.mark.asyncio
async def test_inflight_registration_returns_owner():
    store = InMemoryIdempotencyStore()
    loop = asyncio.get_running_loop()
    owner = loop.create_future()
    latecomer = loop.create_future()

    assert store.register_inflight("scn:1", owner) is owner
    assert store.register_inflight("scn:1", latecomer) is owner
    assert store.get_inflight("scn:1") is owner

    store.clear_inflight("scn:1", latecomer)
    assert store.get_inflight("scn:1") is owner
    store.clear_inflight("scn:1", owner)
    assert store.get_inflight("scn:1") is None


@pytest.mark.asyncio
async def test_cancelled_inflight_is_replaced():
    store = InMemoryIdempotencyStore()
    loop = asyncio.get_running_loop()
    stale = loop.create_future()
    store.register_inflight("scn:1", stale)
    stale.cancel()

    fresh = loop.create_future()

    assert store.get_inflight("scn:1") is None
    assert store.register_inflight("scn:1", fresh) is fresh
