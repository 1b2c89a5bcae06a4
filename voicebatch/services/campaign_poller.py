"""
Per-campaign polling session.

A poller owns everything one tracked batch needs: its enrichment cache, the
merger, the latest snapshot and an APScheduler interval job. It moves
through starting -> polling -> draining -> stopped exactly once.
"""
import asyncio
import enum
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

from apscheduler.jobstores.base import JobLookupError

from voicebatch.core.config import Settings, settings as default_settings
from voicebatch.core.errors import CampaignDegraded, TransportError, TransportErrorKind
from voicebatch.schemas.batch import CampaignSnapshot, FinalStatus, OverallState, utcnow
from voicebatch.services.enrichment_cache import EnrichmentCache
from voicebatch.services.snapshot_merger import SnapshotMerger
from voicebatch.services.subscriber_hub import SubscriberHub

logger = logging.getLogger(__name__)


class PollState(str, enum.Enum):
    STARTING = "starting"
    POLLING = "polling"
    DRAINING = "draining"
    STOPPED = "stopped"


class CampaignPoller:
    def __init__(
        self,
        campaign_id: str,
        vendor,
        hub: SubscriberHub,
        scheduler,
        settings: Settings = default_settings,
        archive=None,
    ):
        self.campaign_id = campaign_id
        self.vendor = vendor
        self.hub = hub
        self.scheduler = scheduler
        self.settings = settings
        self.archive = archive

        self.cache = EnrichmentCache(
            vendor.fetch_conversation,
            max_in_flight=settings.MAX_INFLIGHT_FETCHES,
            max_attempts=settings.MAX_ENRICHMENT_ATTEMPTS,
        )
        self.merger = SnapshotMerger(self.cache)
        self.snapshot = CampaignSnapshot(campaign_id=campaign_id)

        self.state = PollState.STARTING
        self.final_status: Optional[FinalStatus] = None
        self.consecutive_failures = 0
        self.cycles = 0
        self.started_at = utcnow()
        self.stopped_at: Optional[datetime] = None

        self.job_id = f"batch_{campaign_id}"
        self._cycle_lock = asyncio.Lock()
        self._stop_requested = False

    @property
    def is_live(self) -> bool:
        return self.state in (PollState.STARTING, PollState.POLLING)

    def start(self):
        """Register the interval job; the first cycle runs immediately."""
        if self.state != PollState.STARTING:
            return
        self.scheduler.add_job(
            self.poll_cycle,
            trigger="interval",
            seconds=self.settings.POLL_INTERVAL_SECONDS,
            id=self.job_id,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.state = PollState.POLLING
        logger.info(
            f"Tracking batch {self.campaign_id} every {self.settings.POLL_INTERVAL_SECONDS}s"
        )

    async def poll_cycle(self):
        if self.state != PollState.POLLING or self._stop_requested:
            return
        async with self._cycle_lock:
            if self.state != PollState.POLLING or self._stop_requested:
                return
            try:
                status = await self.vendor.fetch_status(self.campaign_id)
            except TransportError as e:
                await self._on_status_failure(e)
                return
            except Exception as e:
                logger.exception(f"Unexpected error fetching status for batch {self.campaign_id}")
                await self._on_status_failure(TransportError(TransportErrorKind.UNKNOWN, str(e)))
                return

            self.consecutive_failures = 0
            result = await self.merger.merge(self.snapshot, status)
            self.snapshot = result.snapshot
            self.cycles += 1

            completed = result.snapshot.overall_state == OverallState.COMPLETED
            if self._stop_requested and not completed:
                logger.info(f"Batch {self.campaign_id}: stop requested during cycle, not publishing")
                return

            if not result.diff.is_empty:
                self.hub.publish(self.campaign_id, result.diff)
            if result.pending_enrichment:
                logger.info(
                    f"Batch {self.campaign_id}: {result.pending_enrichment} recipient(s) waiting for enrichment"
                )
            if completed:
                # A stop that raced with the final cycle finds the poller already stopped
                await self._drain(FinalStatus.COMPLETED)
            elif result.rate_limited:
                self._backoff(result.retry_after or self.settings.RATE_LIMIT_BACKOFF_SECONDS)

    async def _on_status_failure(self, error: TransportError):
        self.consecutive_failures += 1
        limit = self.settings.MAX_STATUS_FAILURES
        logger.warning(
            f"Status poll failed for batch {self.campaign_id} "
            f"({self.consecutive_failures}/{limit}): {error}"
        )
        if self.consecutive_failures >= limit:
            degraded = CampaignDegraded(self.campaign_id, self.consecutive_failures, error)
            logger.error(str(degraded))
            self.snapshot = self.snapshot.model_copy(update={
                "degraded": True,
                "error": str(degraded),
                "computed_at": utcnow(),
            })
            await self._drain(FinalStatus.DEGRADED)
            return

        self.hub.publish_error(
            self.campaign_id,
            f"Status poll failed (attempt {self.consecutive_failures}/{limit})",
            str(error),
        )
        if error.kind == TransportErrorKind.RATE_LIMITED:
            self._backoff(error.retry_after or self.settings.RATE_LIMIT_BACKOFF_SECONDS)

    def _backoff(self, seconds: float):
        logger.info(f"Batch {self.campaign_id}: rate limited, next poll in {seconds}s")
        try:
            self.scheduler.modify_job(
                self.job_id, next_run_time=datetime.now(timezone.utc) + timedelta(seconds=seconds)
            )
        except JobLookupError:
            pass

    def _remove_job(self):
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass

    async def _drain(self, final_status: FinalStatus):
        self.state = PollState.DRAINING
        self.final_status = final_status
        self._remove_job()
        self.hub.publish_terminal(self.campaign_id, self.snapshot, final_status)
        if self.archive is not None:
            try:
                await self.archive.save(self.snapshot, final_status)
            except Exception:
                logger.exception(f"Failed to archive final snapshot of batch {self.campaign_id}")
        self.cache.release()
        self.state = PollState.STOPPED
        self.stopped_at = utcnow()
        logger.info(f"Batch {self.campaign_id} stopped ({final_status.value}) after {self.cycles} cycle(s)")

    async def refresh(self):
        """Run a cycle now instead of waiting for the next interval."""
        await self.poll_cycle()

    async def stop(self) -> bool:
        """
        Cancel tracking. A cycle already talking to the vendor is allowed to
        finish first; returns False when the poller had already stopped.
        """
        if self.state in (PollState.DRAINING, PollState.STOPPED) or self._stop_requested:
            return False
        self._stop_requested = True
        self._remove_job()
        async with self._cycle_lock:
            if self.state in (PollState.DRAINING, PollState.STOPPED):
                return False
            await self._drain(FinalStatus.CANCELLED)
        return True

    def describe(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "state": self.state.value,
            "overall_state": self.snapshot.overall_state.value,
            "final_status": self.final_status.value if self.final_status else None,
            "cycles": self.cycles,
            "consecutive_failures": self.consecutive_failures,
            "subscribers": self.hub.subscriber_count(self.campaign_id),
            "recipients": self.snapshot.counts(),
            "enrichment": self.cache.stats(),
            "started_at": self.started_at.isoformat(),
            "stopped_at": self.stopped_at.isoformat() if self.stopped_at else None,
        }
