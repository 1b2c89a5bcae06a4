"""
Fan-out of snapshot diffs and lifecycle events to live subscribers.

Publishing never awaits: every subscriber owns a bounded queue and one that
falls behind is dropped instead of slowing the poller or the other
subscribers.
"""
import asyncio
import itertools
import logging
from typing import Optional

from voicebatch.schemas.batch import CampaignSnapshot, FinalStatus, SnapshotDiff
from voicebatch.schemas.events import EventKind, StreamEvent

logger = logging.getLogger(__name__)

_CLOSED = object()
_ids = itertools.count(1)


class Subscription:
    """One live channel for a campaign; iterate it to receive events."""

    def __init__(self, campaign_id: str, queue_size: int):
        self.id = next(_ids)
        self.campaign_id = campaign_id
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size + 2)
        self._limit = queue_size
        self.closed = False
        self.dropped = False

    def offer(self, event: StreamEvent) -> bool:
        if self.closed:
            return False
        if self._queue.qsize() >= self._limit:
            return False
        self._queue.put_nowait(event)
        return True

    def close(self, final_event: Optional[StreamEvent] = None):
        if self.closed:
            return
        self.closed = True
        # Two slots past the limit are reserved for the final event and the marker
        if final_event is not None:
            self._queue.put_nowait(final_event)
        self._queue.put_nowait(_CLOSED)

    def _clear(self):
        while not self._queue.empty():
            self._queue.get_nowait()

    def drop(self, reason: str):
        """Discard undelivered events and close the channel."""
        self._clear()
        self.dropped = True
        self.close(StreamEvent(
            kind=EventKind.ERROR,
            campaign_id=self.campaign_id,
            message="Subscriber dropped",
            error=reason,
        ))

    async def get(self) -> Optional[StreamEvent]:
        """Next event, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Leave the marker for any later reader
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class SubscriberHub:
    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: dict[str, list[Subscription]] = {}

    def subscribers(self, campaign_id: str) -> tuple:
        return tuple(self._subscribers.get(campaign_id, ()))

    def subscribe(self, campaign_id: str, snapshot: CampaignSnapshot) -> Subscription:
        subscription = Subscription(campaign_id, self.queue_size)
        subscription.offer(StreamEvent(
            kind=EventKind.CONNECTED,
            campaign_id=campaign_id,
            snapshot=snapshot,
            message="Connected to batch status stream",
        ))
        self._subscribers.setdefault(campaign_id, []).append(subscription)
        logger.info(f"Subscriber {subscription.id} joined batch {campaign_id}")
        return subscription

    def subscribe_closed(self, campaign_id: str, snapshot: CampaignSnapshot, final_status: FinalStatus) -> Subscription:
        """Subscription for a campaign that already finished: connected, then terminal."""
        subscription = Subscription(campaign_id, self.queue_size)
        subscription.offer(StreamEvent(
            kind=EventKind.CONNECTED,
            campaign_id=campaign_id,
            snapshot=snapshot,
            message="Connected to batch status stream",
        ))
        subscription.close(self._terminal_event(campaign_id, snapshot, final_status))
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscribers = self._subscribers.get(subscription.campaign_id)
        if subscribers and subscription in subscribers:
            # Replace rather than mutate so a copy being iterated stays intact
            self._subscribers[subscription.campaign_id] = [s for s in subscribers if s is not subscription]
            logger.info(f"Subscriber {subscription.id} left batch {subscription.campaign_id}")
        subscription.close()

    def _deliver(self, campaign_id: str, event: StreamEvent):
        for subscription in self.subscribers(campaign_id):
            if not subscription.offer(event):
                logger.warning(
                    f"Dropping slow subscriber {subscription.id} on batch {campaign_id}"
                )
                subscription.drop("Subscriber could not keep up with batch updates")
                self.unsubscribe(subscription)

    def publish(self, campaign_id: str, diff: SnapshotDiff):
        self._deliver(campaign_id, StreamEvent(
            kind=EventKind.STATUS_UPDATE,
            campaign_id=campaign_id,
            diff=diff,
        ))

    def publish_error(self, campaign_id: str, message: str, error: Optional[str] = None):
        self._deliver(campaign_id, StreamEvent(
            kind=EventKind.ERROR,
            campaign_id=campaign_id,
            message=message,
            error=error,
        ))

    def _terminal_event(self, campaign_id: str, snapshot: CampaignSnapshot, final_status: FinalStatus) -> StreamEvent:
        return StreamEvent(
            kind=EventKind.BATCH_COMPLETED,
            campaign_id=campaign_id,
            snapshot=snapshot,
            final_status=final_status,
            error=snapshot.error,
        )

    def publish_terminal(self, campaign_id: str, snapshot: CampaignSnapshot, final_status: FinalStatus):
        subscribers = self._subscribers.pop(campaign_id, [])
        event = self._terminal_event(campaign_id, snapshot, final_status)
        for subscription in subscribers:
            subscription.close(event)
        logger.info(f"Closed {len(subscribers)} subscriber(s) on batch {campaign_id} ({final_status.value})")

    def subscriber_count(self, campaign_id: Optional[str] = None) -> int:
        if campaign_id is not None:
            return len(self._subscribers.get(campaign_id, ()))
        return sum(len(subs) for subs in self._subscribers.values())
