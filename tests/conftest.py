"""Shared pytest fixtures and vendor doubles."""

import asyncio
from typing import Optional
from unittest.mock import MagicMock

import pytest

from voicebatch.core.config import Settings
from voicebatch.schemas.batch import (
    BatchStatus,
    EnrichmentRecord,
    RecipientState,
    RecipientStatus,
    TranscriptTurn,
)


def recipient(recipient_id: str, state: RecipientState = RecipientState.PENDING, conversation_id: Optional[str] = None):
    return RecipientStatus(
        recipient_id=recipient_id,
        phone_number=f"+1555000{recipient_id[-1]}",
        state=state,
        conversation_id=conversation_id,
        vendor_status=state.value,
    )


def batch(campaign_id: str, *recipients: RecipientStatus, vendor_status: str = "in_progress", name: str = "Spring outreach"):
    return BatchStatus(
        campaign_id=campaign_id,
        name=name,
        vendor_agent_id="agent-1",
        vendor_status=vendor_status,
        recipients=list(recipients),
    )


def conversation(conversation_id: str, summary: str = "Customer confirmed the appointment"):
    return EnrichmentRecord(
        conversation_id=conversation_id,
        duration_seconds=42.0,
        summary=summary,
        transcript=[
            TranscriptTurn(speaker="agent", message="Hello, this is a reminder call.", timestamp_offset=0),
            TranscriptTurn(speaker="user", message="Thanks, I'll be there.", timestamp_offset=3.5),
        ],
    )


class FakeVendor:
    """
    Scripted stand-in for VendorClient.

    `statuses` is consumed one entry per status call and the last entry
    repeats. A conversation outcome may be a record, an exception or a list
    of those consumed in order.
    """

    def __init__(self, statuses=None, conversations=None):
        self.statuses = list(statuses or [])
        self.conversations = dict(conversations or {})
        self.status_calls = 0
        self.conversation_calls: dict[str, int] = {}
        self.status_gate: Optional[asyncio.Event] = None
        self.conversation_gate: Optional[asyncio.Event] = None
        self.batches: list[dict] = []
        self.retried: list[str] = []
        self.cancelled: list[str] = []
        self.closed = False

    async def fetch_status(self, campaign_id: str) -> BatchStatus:
        self.status_calls += 1
        if self.status_gate is not None:
            await self.status_gate.wait()
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def fetch_conversation(self, conversation_id: str) -> EnrichmentRecord:
        self.conversation_calls[conversation_id] = self.conversation_calls.get(conversation_id, 0) + 1
        if self.conversation_gate is not None:
            await self.conversation_gate.wait()
        outcome = self.conversations[conversation_id]
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def list_batches(self) -> list[dict]:
        return self.batches

    async def retry_batch(self, campaign_id: str) -> dict:
        self.retried.append(campaign_id)
        return {"id": campaign_id, "status": "in_progress"}

    async def cancel_batch(self, campaign_id: str) -> dict:
        self.cancelled.append(campaign_id)
        return {"id": campaign_id, "status": "cancelled"}

    async def close(self):
        self.closed = True


@pytest.fixture
def settings():
    """Settings with small limits so scenarios run in a few cycles."""
    return Settings(
        VENDOR_API_KEY="test-key",
        POLL_INTERVAL_SECONDS=1,
        MAX_STATUS_FAILURES=5,
        RATE_LIMIT_BACKOFF_SECONDS=30,
        MAX_INFLIGHT_FETCHES=4,
        MAX_ENRICHMENT_ATTEMPTS=5,
        SUBSCRIBER_QUEUE_SIZE=10,
        SESSION_RETENTION_SECONDS=60,
    )


@pytest.fixture
def scheduler():
    """APScheduler stand-in; cycles are driven by the tests."""
    mock = MagicMock()
    mock.running = True
    return mock


@pytest.fixture
def vendor():
    return FakeVendor()


def drain(subscription) -> list:
    """Events already queued on a subscription, without waiting."""
    events = []
    while not subscription._queue.empty():
        item = subscription._queue.get_nowait()
        if not hasattr(item, "kind"):
            break
        events.append(item)
    return events
