"""Tests for the per-campaign polling state machine."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from voicebatch.core.errors import TransportError, TransportErrorKind
from voicebatch.schemas.batch import FinalStatus, OverallState, RecipientState
from voicebatch.schemas.events import EventKind
from voicebatch.services.campaign_poller import CampaignPoller, PollState
from voicebatch.services.subscriber_hub import SubscriberHub

from conftest import FakeVendor, batch, conversation, drain, recipient

COMPLETED = RecipientState.COMPLETED


def make_poller(vendor, scheduler, settings, archive=None):
    hub = SubscriberHub(settings.SUBSCRIBER_QUEUE_SIZE)
    poller = CampaignPoller("b1", vendor, hub, scheduler, settings=settings, archive=archive)
    poller.start()
    return poller, hub


def test_start_registers_interval_job(scheduler, settings):
    poller, _ = make_poller(FakeVendor(statuses=[batch("b1")]), scheduler, settings)

    assert poller.state == PollState.POLLING
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == "batch_b1"
    assert kwargs["trigger"] == "interval"
    assert kwargs["seconds"] == settings.POLL_INTERVAL_SECONDS
    assert kwargs["max_instances"] == 1
    assert kwargs["next_run_time"] is not None


@pytest.mark.asyncio
async def test_partial_enrichment_then_completion(scheduler, settings):
    vendor = FakeVendor(
        statuses=[
            batch("b1", recipient("r1"), recipient("r2"), recipient("r3")),
            batch(
                "b1",
                recipient("r1", COMPLETED, "conv-1"),
                recipient("r2", COMPLETED, "conv-2"),
                recipient("r3", COMPLETED, "conv-3"),
                vendor_status="completed",
            ),
        ],
        conversations={
            "conv-1": conversation("conv-1"),
            "conv-2": conversation("conv-2"),
            "conv-3": [TransportError(TransportErrorKind.UNAVAILABLE, "timeout"), conversation("conv-3")],
        },
    )
    archive = MagicMock()
    archive.save = AsyncMock()
    poller, hub = make_poller(vendor, scheduler, settings, archive=archive)
    subscription = hub.subscribe("b1", poller.snapshot)

    await poller.poll_cycle()
    assert poller.snapshot.counts()["pending"] == 3

    await poller.poll_cycle()
    enriched = [r.recipient_id for r in poller.snapshot.recipients if r.enriched]
    assert sorted(enriched) == ["r1", "r2"]
    assert poller.snapshot.recipient("r3").enrichment_pending
    assert poller.snapshot.overall_state == OverallState.RUNNING
    assert poller.state == PollState.POLLING

    await poller.poll_cycle()
    assert poller.state == PollState.STOPPED
    assert poller.final_status == FinalStatus.COMPLETED

    events = drain(subscription)
    assert [e.kind for e in events] == [
        EventKind.CONNECTED,
        EventKind.STATUS_UPDATE,
        EventKind.STATUS_UPDATE,
        EventKind.STATUS_UPDATE,
        EventKind.BATCH_COMPLETED,
    ]
    final = events[-1].snapshot
    assert final.overall_state == OverallState.COMPLETED
    assert all(r.enriched for r in final.recipients)
    assert vendor.conversation_calls == {"conv-1": 1, "conv-2": 1, "conv-3": 2}

    scheduler.remove_job.assert_called_with("batch_b1")
    archive.save.assert_awaited_once_with(final, FinalStatus.COMPLETED)


@pytest.mark.asyncio
async def test_status_failures_degrade_the_campaign(scheduler, settings):
    vendor = FakeVendor(statuses=[TransportError(TransportErrorKind.UNAVAILABLE, "maintenance", status_code=503)])
    poller, hub = make_poller(vendor, scheduler, settings)
    subscription = hub.subscribe("b1", poller.snapshot)

    for _ in range(settings.MAX_STATUS_FAILURES):
        await poller.poll_cycle()

    assert poller.state == PollState.STOPPED
    assert poller.final_status == FinalStatus.DEGRADED
    assert poller.snapshot.degraded
    assert "degraded after 5 consecutive status failures" in poller.snapshot.error

    events = drain(subscription)
    kinds = [e.kind for e in events]
    assert kinds[0] == EventKind.CONNECTED
    assert kinds[1:-1] == [EventKind.ERROR] * (settings.MAX_STATUS_FAILURES - 1)
    assert kinds[-1] == EventKind.BATCH_COMPLETED
    assert events[-1].final_status == FinalStatus.DEGRADED

    # No further polling, and stopping is a no-op
    await poller.poll_cycle()
    assert vendor.status_calls == settings.MAX_STATUS_FAILURES
    assert await poller.stop() is False
    assert poller.final_status == FinalStatus.DEGRADED


@pytest.mark.asyncio
async def test_success_resets_failure_count(scheduler, settings):
    unavailable = TransportError(TransportErrorKind.UNAVAILABLE, "timeout")
    vendor = FakeVendor(statuses=[unavailable, unavailable, batch("b1", recipient("r1")), unavailable])
    poller, _ = make_poller(vendor, scheduler, settings)

    for _ in range(4):
        await poller.poll_cycle()

    assert poller.consecutive_failures == 1
    assert poller.state == PollState.POLLING


@pytest.mark.asyncio
async def test_rate_limit_postpones_next_poll(scheduler, settings):
    vendor = FakeVendor(statuses=[TransportError(TransportErrorKind.RATE_LIMITED, "slow down", 429, retry_after=12)])
    poller, _ = make_poller(vendor, scheduler, settings)

    await poller.poll_cycle()

    scheduler.modify_job.assert_called_once()
    assert scheduler.modify_job.call_args.args[0] == "batch_b1"
    assert "next_run_time" in scheduler.modify_job.call_args.kwargs
    assert poller.consecutive_failures == 1


@pytest.mark.asyncio
async def test_stop_waits_for_running_cycle(scheduler, settings):
    vendor = FakeVendor(statuses=[batch("b1", recipient("r1", RecipientState.IN_PROGRESS))])
    vendor.status_gate = asyncio.Event()
    poller, hub = make_poller(vendor, scheduler, settings)
    subscription = hub.subscribe("b1", poller.snapshot)

    cycle = asyncio.create_task(poller.poll_cycle())
    await asyncio.sleep(0)
    stop = asyncio.create_task(poller.stop())
    await asyncio.sleep(0)
    assert poller.state == PollState.POLLING

    vendor.status_gate.set()
    await cycle
    assert await stop is True

    assert poller.state == PollState.STOPPED
    assert poller.final_status == FinalStatus.CANCELLED
    events = drain(subscription)
    assert [e.kind for e in events] == [EventKind.CONNECTED, EventKind.BATCH_COMPLETED]
    assert events[-1].final_status == FinalStatus.CANCELLED


@pytest.mark.asyncio
async def test_archive_failure_does_not_block_teardown(scheduler, settings):
    archive = MagicMock()
    archive.save = AsyncMock(side_effect=RuntimeError("database is locked"))
    vendor = FakeVendor(statuses=[batch("b1", recipient("r1", RecipientState.FAILED))])
    poller, _ = make_poller(vendor, scheduler, settings, archive=archive)

    await poller.poll_cycle()

    assert poller.state == PollState.STOPPED
    assert poller.describe()["final_status"] == "completed"


@pytest.mark.asyncio
async def test_missing_conversation_still_completes(scheduler, settings):
    vendor = FakeVendor(
        statuses=[batch("b1", recipient("r1", COMPLETED, "conv-gone"), vendor_status="completed")],
        conversations={"conv-gone": TransportError(TransportErrorKind.NOT_FOUND, "gone", 404)},
    )
    poller, hub = make_poller(vendor, scheduler, settings)
    subscription = hub.subscribe("b1", poller.snapshot)

    for _ in range(3):
        await poller.poll_cycle()

    assert poller.state == PollState.STOPPED
    assert poller.final_status == FinalStatus.COMPLETED
    events = drain(subscription)
    assert events[-1].kind == EventKind.BATCH_COMPLETED
    r1 = events[-1].snapshot.recipient("r1")
    assert not r1.enriched
    assert r1.enrichment_error
    assert vendor.conversation_calls == {"conv-gone": 1}


@pytest.mark.asyncio
async def test_unfetchable_conversation_stops_after_attempt_budget(scheduler, settings):
    settings = settings.model_copy(update={"MAX_ENRICHMENT_ATTEMPTS": 3})
    vendor = FakeVendor(
        statuses=[batch("b1", recipient("r1", COMPLETED, "conv-1"))],
        conversations={"conv-1": TransportError(TransportErrorKind.UNAVAILABLE, "timeout")},
    )
    poller, _ = make_poller(vendor, scheduler, settings)

    for _ in range(10):
        await poller.poll_cycle()

    assert poller.final_status == FinalStatus.COMPLETED
    assert vendor.conversation_calls["conv-1"] == 3
    assert poller.cycles == 3


@pytest.mark.asyncio
async def test_rate_limited_enrichment_postpones_next_poll(scheduler, settings):
    vendor = FakeVendor(
        statuses=[batch("b1", recipient("r1", COMPLETED, "conv-1"))],
        conversations={"conv-1": TransportError(TransportErrorKind.RATE_LIMITED, "slow down", 429, retry_after=45)},
    )
    poller, _ = make_poller(vendor, scheduler, settings)

    await poller.poll_cycle()

    assert poller.state == PollState.POLLING
    scheduler.modify_job.assert_called_once()
    assert scheduler.modify_job.call_args.args[0] == "batch_b1"
    assert poller.consecutive_failures == 0


@pytest.mark.asyncio
async def test_stop_during_final_cycle_reports_completion(scheduler, settings):
    vendor = FakeVendor(statuses=[batch("b1", recipient("r1", RecipientState.FAILED))])
    vendor.status_gate = asyncio.Event()
    poller, hub = make_poller(vendor, scheduler, settings)
    subscription = hub.subscribe("b1", poller.snapshot)

    cycle = asyncio.create_task(poller.poll_cycle())
    await asyncio.sleep(0)
    stop = asyncio.create_task(poller.stop())
    await asyncio.sleep(0)

    vendor.status_gate.set()
    await cycle
    assert await stop is False

    assert poller.final_status == FinalStatus.COMPLETED
    events = drain(subscription)
    assert events[-1].kind == EventKind.BATCH_COMPLETED
    assert events[-1].final_status == FinalStatus.COMPLETED
