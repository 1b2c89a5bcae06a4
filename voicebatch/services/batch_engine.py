"""
Public entry point of the batch status engine.

The engine owns no global state: the registry of tracking sessions, the
subscriber hub, the vendor client and the scheduler are handed to it, and
the FastAPI app keeps the engine on `app.state`.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

from voicebatch.core.config import Settings, settings as default_settings
from voicebatch.core.errors import NotTracked, TransportError
from voicebatch.schemas.batch import CampaignSnapshot, utcnow
from voicebatch.services.campaign_poller import CampaignPoller, PollState
from voicebatch.services.subscriber_hub import SubscriberHub, Subscription

logger = logging.getLogger(__name__)

ACTIVE_BATCH_STATUSES = {"pending", "initiated", "in_progress", "in-progress"}


@dataclass
class TrackingHandle:
    campaign_id: str
    poller: CampaignPoller
    created_at: datetime = field(default_factory=utcnow)

    @property
    def state(self) -> PollState:
        return self.poller.state

    @property
    def snapshot(self) -> CampaignSnapshot:
        return self.poller.snapshot


class TrackingRegistry:
    """Process-wide map of campaign id to its tracking session."""

    def __init__(self):
        self._handles: dict[str, TrackingHandle] = {}

    def get(self, campaign_id: str) -> Optional[TrackingHandle]:
        return self._handles.get(campaign_id)

    def put(self, handle: TrackingHandle):
        self._handles[handle.campaign_id] = handle

    def remove(self, campaign_id: str):
        self._handles.pop(campaign_id, None)

    def handles(self) -> list[TrackingHandle]:
        return list(self._handles.values())

    def __contains__(self, campaign_id: str) -> bool:
        return campaign_id in self._handles

    def __len__(self) -> int:
        return len(self._handles)


class BatchStatusEngine:
    def __init__(
        self,
        registry: TrackingRegistry,
        vendor,
        scheduler,
        settings: Settings = default_settings,
        hub: Optional[SubscriberHub] = None,
        archive=None,
    ):
        self.registry = registry
        self.vendor = vendor
        self.scheduler = scheduler
        self.settings = settings
        self.hub = hub or SubscriberHub(settings.SUBSCRIBER_QUEUE_SIZE)
        self.archive = archive

    def start(self):
        """Start the scheduler and the housekeeping jobs."""
        if not self.scheduler.running:
            self.scheduler.start()
        self.scheduler.add_job(
            self.prune_expired,
            trigger="interval",
            seconds=self.settings.PRUNE_INTERVAL_SECONDS,
            id="prune_batch_sessions",
            replace_existing=True,
        )
        if self.settings.AUTO_TRACK_ACTIVE_BATCHES:
            self.scheduler.add_job(
                self.discover_active_batches,
                trigger="interval",
                seconds=self.settings.DISCOVERY_INTERVAL_SECONDS,
                id="discover_active_batches",
                next_run_time=datetime.now(timezone.utc),
                replace_existing=True,
            )

    async def shutdown(self):
        for handle in self.registry.handles():
            await handle.poller.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.vendor.close()

    def start_tracking(self, campaign_id: str) -> TrackingHandle:
        handle = self.registry.get(campaign_id)
        if handle is not None and handle.state != PollState.STOPPED:
            return handle

        poller = CampaignPoller(
            campaign_id,
            self.vendor,
            self.hub,
            self.scheduler,
            settings=self.settings,
            archive=self.archive,
        )
        handle = TrackingHandle(campaign_id=campaign_id, poller=poller)
        self.registry.put(handle)
        poller.start()
        return handle

    async def stop_tracking(self, campaign_id: str) -> bool:
        handle = self.registry.get(campaign_id)
        if handle is None:
            return False
        return await handle.poller.stop()

    def _require(self, campaign_id: str) -> TrackingHandle:
        handle = self.registry.get(campaign_id)
        if handle is None:
            raise NotTracked(campaign_id)
        return handle

    def subscribe(self, campaign_id: str) -> Subscription:
        poller = self._require(campaign_id).poller
        if poller.state in (PollState.DRAINING, PollState.STOPPED):
            return self.hub.subscribe_closed(campaign_id, poller.snapshot, poller.final_status)
        return self.hub.subscribe(campaign_id, poller.snapshot)

    def unsubscribe(self, subscription: Subscription):
        self.hub.unsubscribe(subscription)

    async def refresh(self, campaign_id: str) -> CampaignSnapshot:
        poller = self._require(campaign_id).poller
        await poller.refresh()
        return poller.snapshot

    async def current_snapshot(self, campaign_id: str) -> CampaignSnapshot:
        handle = self.registry.get(campaign_id)
        if handle is not None:
            return handle.snapshot
        if self.archive is not None:
            snapshot = await self.archive.load(campaign_id)
            if snapshot is not None:
                return snapshot
        raise NotTracked(campaign_id)

    async def notify_conversation_finished(self, conversation_id: str, campaign_id: Optional[str] = None) -> list[str]:
        """
        Webhook trigger: poll the owning batch now rather than at its next
        interval. When the owner is unknown every polling batch is refreshed.
        """
        polling = [h for h in self.registry.handles() if h.state == PollState.POLLING]
        targets = [h for h in polling if h.campaign_id == campaign_id]
        if not targets:
            targets = [h for h in polling if conversation_id in h.snapshot.conversation_ids()]
        if not targets:
            targets = polling
        for handle in targets:
            await handle.poller.refresh()
        logger.info(f"Conversation {conversation_id} finished, refreshed {len(targets)} batch(es)")
        return [h.campaign_id for h in targets]

    async def list_batches(self) -> list[dict]:
        return await self.vendor.list_batches()

    async def retry_batch(self, campaign_id: str) -> dict:
        """Ask the vendor to redial failed recipients and track the batch afresh."""
        result = await self.vendor.retry_batch(campaign_id)
        # Recipients move out of failed again, so the old session cannot follow them
        await self.stop_tracking(campaign_id)
        self.start_tracking(campaign_id)
        return result

    async def cancel_batch(self, campaign_id: str) -> dict:
        result = await self.vendor.cancel_batch(campaign_id)
        handle = self.registry.get(campaign_id)
        if handle is not None and handle.state == PollState.POLLING:
            await handle.poller.refresh()
        return result

    async def discover_active_batches(self) -> list[str]:
        try:
            batches = await self.vendor.list_batches()
        except TransportError as e:
            logger.warning(f"Could not list workspace batches: {e}")
            return []

        started = []
        for batch in batches:
            campaign_id = batch.get("id")
            status = (batch.get("status") or "").lower()
            if not campaign_id or status not in ACTIVE_BATCH_STATUSES:
                continue
            if campaign_id in self.registry:
                continue
            self.start_tracking(campaign_id)
            started.append(campaign_id)
        if started:
            logger.info(f"Started tracking {len(started)} active batch(es) found in the workspace")
        return started

    async def prune_expired(self) -> int:
        cutoff = utcnow() - timedelta(seconds=self.settings.SESSION_RETENTION_SECONDS)
        expired = [
            h.campaign_id for h in self.registry.handles()
            if h.state == PollState.STOPPED and h.poller.stopped_at and h.poller.stopped_at <= cutoff
        ]
        for campaign_id in expired:
            self.registry.remove(campaign_id)
        if expired:
            logger.info(f"Pruned {len(expired)} finished batch session(s)")
        return len(expired)

    def stats(self) -> dict:
        handles = self.registry.handles()
        return {
            "tracked": len(handles),
            "polling": sum(1 for h in handles if h.state == PollState.POLLING),
            "subscribers": self.hub.subscriber_count(),
            "poll_interval_seconds": self.settings.POLL_INTERVAL_SECONDS,
            "sessions": [h.poller.describe() for h in handles],
            "last_check": utcnow().isoformat(),
        }
