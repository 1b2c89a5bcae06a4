"""
Merges the vendor's latest recipient list with cached enrichment into one
campaign snapshot and computes the diff against the previous snapshot.

Merging is monotonic: a terminal recipient stays terminal, a known
conversation id is never dropped and populated enrichment is carried forward.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from voicebatch.core.errors import EnrichmentFailure
from voicebatch.schemas.batch import (
    BatchStatus,
    CampaignSnapshot,
    OverallState,
    RecipientState,
    RecipientStatus,
    RecipientView,
    SnapshotDiff,
    utcnow,
)
from voicebatch.services.enrichment_cache import EnrichmentCache

logger = logging.getLogger(__name__)

TERMINAL_BATCH_STATUSES = {"completed", "failed", "cancelled", "canceled"}


@dataclass
class MergeResult:
    snapshot: CampaignSnapshot
    diff: SnapshotDiff
    pending_enrichment: int = 0
    # Set when a conversation fetch was rate limited; retry_after is the longest wait asked for
    rate_limited: bool = False
    retry_after: Optional[float] = None


def reconcile_recipient(
    campaign_id: str, previous: Optional[RecipientView], current: RecipientStatus
) -> RecipientView:
    """Base fields for one recipient, never moving backwards."""
    if previous is None:
        return RecipientView(**current.model_dump())

    state = current.state
    vendor_status = current.vendor_status or previous.vendor_status
    if previous.state.is_terminal and state != previous.state:
        logger.warning(
            f"Batch {campaign_id}: recipient {current.recipient_id} reported as {state.value} "
            f"after being {previous.state.value}, keeping {previous.state.value}"
        )
        state = previous.state
        vendor_status = previous.vendor_status
    elif state.progress < previous.state.progress:
        logger.info(
            f"Batch {campaign_id}: recipient {current.recipient_id} reported as {state.value} "
            f"after being {previous.state.value}, keeping {previous.state.value}"
        )
        state = previous.state
        vendor_status = previous.vendor_status

    conversation_id = current.conversation_id or previous.conversation_id
    if previous.conversation_id and current.conversation_id and previous.conversation_id != current.conversation_id:
        logger.warning(
            f"Batch {campaign_id}: recipient {current.recipient_id} conversation changed from "
            f"{previous.conversation_id} to {current.conversation_id}, keeping the first one"
        )
        conversation_id = previous.conversation_id

    return previous.model_copy(update={
        "phone_number": current.phone_number or previous.phone_number,
        "state": state,
        "vendor_status": vendor_status,
        "conversation_id": conversation_id,
    })


def apply_diff(snapshot: Optional[CampaignSnapshot], diff: SnapshotDiff) -> CampaignSnapshot:
    """Replays one diff on top of a snapshot (or on top of nothing)."""
    recipients = {r.recipient_id: r for r in snapshot.recipients} if snapshot else {}
    for recipient in diff.changed:
        recipients[recipient.recipient_id] = recipient
    return CampaignSnapshot(
        campaign_id=diff.campaign_id,
        name=diff.name,
        vendor_agent_id=diff.vendor_agent_id,
        overall_state=diff.overall_state,
        recipients=list(recipients.values()),
        computed_at=diff.computed_at,
    )


def compute_diff(previous: Optional[CampaignSnapshot], snapshot: CampaignSnapshot) -> SnapshotDiff:
    old = {r.recipient_id: r for r in previous.recipients} if previous else {}
    changed = [r for r in snapshot.recipients if old.get(r.recipient_id) != r]
    header_changed = previous is None or (
        previous.name != snapshot.name
        or previous.vendor_agent_id != snapshot.vendor_agent_id
        or previous.overall_state != snapshot.overall_state
    )
    return SnapshotDiff(
        campaign_id=snapshot.campaign_id,
        name=snapshot.name,
        vendor_agent_id=snapshot.vendor_agent_id,
        overall_state=snapshot.overall_state,
        changed=changed,
        computed_at=snapshot.computed_at,
        header_changed=header_changed,
    )


class SnapshotMerger:
    def __init__(self, cache: EnrichmentCache):
        self.cache = cache

    async def _enrich(self, recipient: RecipientView) -> tuple[RecipientView, Optional[EnrichmentFailure]]:
        if (
            recipient.enriched
            or recipient.enrichment_error
            or recipient.state != RecipientState.COMPLETED
            or not recipient.conversation_id
        ):
            return recipient, None
        try:
            record = await self.cache.ensure(recipient.conversation_id)
        except EnrichmentFailure as e:
            if e.final:
                logger.warning(
                    f"Reporting recipient {recipient.recipient_id} without enrichment: {e.cause}"
                )
                return recipient.model_copy(update={
                    "enrichment_pending": False,
                    "enrichment_error": str(e.cause),
                }), e
            logger.info(f"Enrichment pending for recipient {recipient.recipient_id}: {e.cause}")
            return recipient.model_copy(update={"enrichment_pending": True}), e
        return recipient.with_enrichment(record), None

    async def merge(self, previous: Optional[CampaignSnapshot], status: BatchStatus) -> MergeResult:
        campaign_id = previous.campaign_id if previous else status.campaign_id
        old = {r.recipient_id: r for r in previous.recipients} if previous else {}

        base = []
        seen = set()
        for current in status.recipients:
            if current.recipient_id in seen:
                continue
            seen.add(current.recipient_id)
            base.append(reconcile_recipient(campaign_id, old.get(current.recipient_id), current))
        # Recipients the vendor stopped listing are kept as last observed
        for recipient_id, recipient in old.items():
            if recipient_id not in seen:
                base.append(recipient)

        enriched = await asyncio.gather(*(self._enrich(r) for r in base))
        recipients = [recipient for recipient, _ in enriched]
        pending = sum(1 for r in recipients if r.enrichment_pending)
        throttled = [failure for _, failure in enriched if failure is not None and failure.rate_limited]
        retry_after = max((f.retry_after for f in throttled if f.retry_after), default=None)

        snapshot = CampaignSnapshot(
            campaign_id=campaign_id,
            name=status.name or (previous.name if previous else None),
            vendor_agent_id=status.vendor_agent_id or (previous.vendor_agent_id if previous else None),
            overall_state=self._overall_state(previous, status, recipients, pending),
            recipients=recipients,
            computed_at=utcnow(),
        )
        return MergeResult(
            snapshot=snapshot,
            diff=compute_diff(previous, snapshot),
            pending_enrichment=pending,
            rate_limited=bool(throttled),
            retry_after=retry_after,
        )

    def _overall_state(self, previous, status: BatchStatus, recipients: list, pending: int) -> OverallState:
        if previous and previous.overall_state == OverallState.COMPLETED:
            return OverallState.COMPLETED
        if pending:
            return OverallState.RUNNING
        if recipients and all(r.state.is_terminal for r in recipients):
            return OverallState.COMPLETED
        # A cancelled or finished batch can leave recipients that will never move
        if (status.vendor_status or "").lower() in TERMINAL_BATCH_STATUSES:
            return OverallState.COMPLETED
        return OverallState.RUNNING
