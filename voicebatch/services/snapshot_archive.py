"""
Keeps the terminal snapshot of every batch so the status query still answers
once the in-memory session is gone.
"""
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select

from voicebatch.models import BatchSnapshot
from voicebatch.schemas.batch import CampaignSnapshot, FinalStatus, OverallState, RecipientView

logger = logging.getLogger(__name__)


class SnapshotArchive:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def save(self, snapshot: CampaignSnapshot, final_status: FinalStatus):
        row = BatchSnapshot(
            campaign_id=snapshot.campaign_id,
            name=snapshot.name,
            vendor_agent_id=snapshot.vendor_agent_id,
            overall_state=snapshot.overall_state.value,
            final_status=final_status.value,
            degraded=snapshot.degraded,
            error=snapshot.error,
            recipients=[r.model_dump(mode="json") for r in snapshot.recipients],
            computed_at=snapshot.computed_at.timestamp(),
            archived_at=int(time.time() * 1000),  # milliseconds timestamp
        )
        async with self.session_factory() as session:
            try:
                await session.merge(row)
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        logger.info(f"Archived final snapshot of batch {snapshot.campaign_id} ({final_status.value})")

    async def load(self, campaign_id: str) -> Optional[CampaignSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(BatchSnapshot).where(BatchSnapshot.campaign_id == campaign_id)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return CampaignSnapshot(
            campaign_id=row.campaign_id,
            name=row.name,
            vendor_agent_id=row.vendor_agent_id,
            overall_state=OverallState(row.overall_state),
            recipients=[RecipientView(**r) for r in row.recipients or []],
            computed_at=datetime.fromtimestamp(row.computed_at or 0, tz=timezone.utc),
            degraded=bool(row.degraded),
            error=row.error,
        )
