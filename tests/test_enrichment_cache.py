"""Tests for the per-conversation enrichment cache."""

import asyncio

import pytest

from voicebatch.core.errors import EnrichmentFailure, TransportError, TransportErrorKind
from voicebatch.services.enrichment_cache import EnrichmentCache, EntryState

from conftest import FakeVendor, conversation


@pytest.mark.asyncio
async def test_concurrent_ensure_fetches_once():
    vendor = FakeVendor(conversations={"conv-1": conversation("conv-1")})
    vendor.conversation_gate = asyncio.Event()
    cache = EnrichmentCache(vendor.fetch_conversation)

    tasks = [asyncio.create_task(cache.ensure("conv-1")) for _ in range(5)]
    await asyncio.sleep(0)
    assert cache.state("conv-1") == EntryState.IN_FLIGHT

    vendor.conversation_gate.set()
    records = await asyncio.gather(*tasks)

    assert vendor.conversation_calls["conv-1"] == 1
    assert all(r is records[0] for r in records)
    assert cache.state("conv-1") == EntryState.PRESENT


@pytest.mark.asyncio
async def test_present_entry_is_not_fetched_again():
    vendor = FakeVendor(conversations={"conv-1": conversation("conv-1")})
    cache = EnrichmentCache(vendor.fetch_conversation)

    await cache.ensure("conv-1")
    await cache.ensure("conv-1")

    assert vendor.conversation_calls["conv-1"] == 1
    assert cache.get("conv-1").summary == "Customer confirmed the appointment"


@pytest.mark.asyncio
async def test_failure_is_retried_on_next_ensure():
    unavailable = TransportError(TransportErrorKind.UNAVAILABLE, "upstream timeout")
    vendor = FakeVendor(conversations={"conv-1": [unavailable, conversation("conv-1")]})
    cache = EnrichmentCache(vendor.fetch_conversation)

    with pytest.raises(EnrichmentFailure) as exc:
        await cache.ensure("conv-1")
    assert exc.value.cause is unavailable
    assert cache.state("conv-1") == EntryState.FAILED
    assert cache.get("conv-1") is None

    record = await cache.ensure("conv-1")
    assert record.conversation_id == "conv-1"
    assert vendor.conversation_calls["conv-1"] == 2
    assert cache.stats()["present"] == 1


@pytest.mark.asyncio
async def test_waiters_share_the_failure():
    vendor = FakeVendor(conversations={"conv-1": TransportError(TransportErrorKind.NOT_FOUND, "gone")})
    vendor.conversation_gate = asyncio.Event()
    cache = EnrichmentCache(vendor.fetch_conversation)

    first = asyncio.create_task(cache.ensure("conv-1"))
    second = asyncio.create_task(cache.ensure("conv-1"))
    await asyncio.sleep(0)
    vendor.conversation_gate.set()

    results = await asyncio.gather(first, second, return_exceptions=True)
    assert all(isinstance(r, EnrichmentFailure) for r in results)
    assert all(r.cause.kind == TransportErrorKind.NOT_FOUND for r in results)
    assert vendor.conversation_calls["conv-1"] == 1


@pytest.mark.asyncio
async def test_in_flight_fetches_are_bounded():
    active = 0
    peak = 0
    release = asyncio.Event()

    async def fetch(conversation_id):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await release.wait()
        active -= 1
        return conversation(conversation_id)

    cache = EnrichmentCache(fetch, max_in_flight=2)
    tasks = [asyncio.create_task(cache.ensure(f"conv-{i}")) for i in range(6)]
    await asyncio.sleep(0)
    release.set()
    await asyncio.gather(*tasks)

    assert peak == 2
    assert cache.fetch_count == 6


@pytest.mark.asyncio
async def test_release_discards_late_results():
    vendor = FakeVendor(conversations={"conv-1": conversation("conv-1")})
    vendor.conversation_gate = asyncio.Event()
    cache = EnrichmentCache(vendor.fetch_conversation)

    task = asyncio.create_task(cache.ensure("conv-1"))
    await asyncio.sleep(0)
    cache.release()
    vendor.conversation_gate.set()
    await task

    assert cache.state("conv-1") == EntryState.ABSENT


@pytest.mark.asyncio
async def test_missing_conversation_is_given_up():
    vendor = FakeVendor(conversations={"conv-gone": TransportError(TransportErrorKind.NOT_FOUND, "gone", 404)})
    cache = EnrichmentCache(vendor.fetch_conversation, max_attempts=5)

    with pytest.raises(EnrichmentFailure) as exc:
        await cache.ensure("conv-gone")
    assert exc.value.final

    with pytest.raises(EnrichmentFailure) as exc:
        await cache.ensure("conv-gone")
    assert exc.value.final
    assert vendor.conversation_calls["conv-gone"] == 1
    assert cache.stats()["given_up"] == 1


@pytest.mark.asyncio
async def test_attempt_budget_ends_retries():
    vendor = FakeVendor(conversations={"conv-1": TransportError(TransportErrorKind.UNAVAILABLE, "timeout")})
    cache = EnrichmentCache(vendor.fetch_conversation, max_attempts=3)

    outcomes = []
    for _ in range(5):
        with pytest.raises(EnrichmentFailure) as exc:
            await cache.ensure("conv-1")
        outcomes.append(exc.value.final)

    assert outcomes == [False, False, True, True, True]
    assert vendor.conversation_calls["conv-1"] == 3


@pytest.mark.asyncio
async def test_rate_limit_costs_no_attempt():
    throttled = TransportError(TransportErrorKind.RATE_LIMITED, "slow down", 429, retry_after=7)
    vendor = FakeVendor(conversations={"conv-1": throttled})
    cache = EnrichmentCache(vendor.fetch_conversation, max_attempts=1)

    for _ in range(3):
        with pytest.raises(EnrichmentFailure) as exc:
            await cache.ensure("conv-1")
        assert not exc.value.final
        assert exc.value.rate_limited
        assert exc.value.retry_after == 7

    assert vendor.conversation_calls["conv-1"] == 3
