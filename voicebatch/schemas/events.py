import json
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional

from voicebatch.schemas.batch import CampaignSnapshot, SnapshotDiff, FinalStatus, utcnow

class EventKind(str, Enum):
    CONNECTED = "connected"
    STATUS_UPDATE = "status-update"
    BATCH_COMPLETED = "batch-completed"
    ERROR = "error"

class StreamEvent(BaseModel):
    kind: EventKind
    campaign_id: str
    timestamp: datetime = Field(default_factory=utcnow)
    snapshot: Optional[CampaignSnapshot] = None
    diff: Optional[SnapshotDiff] = None
    final_status: Optional[FinalStatus] = None
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.kind == EventKind.BATCH_COMPLETED

    def payload(self) -> dict:
        body = {
            "campaign_id": self.campaign_id,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.snapshot is not None:
            body["data"] = self.snapshot.model_dump(mode="json")
        elif self.diff is not None:
            body["data"] = self.diff.model_dump(mode="json")
        if self.final_status is not None:
            body["final_status"] = self.final_status.value
        if self.message is not None:
            body["message"] = self.message
        if self.error is not None:
            body["error"] = self.error
        return body

    def to_sse(self) -> dict:
        """Shape expected by sse_starlette's EventSourceResponse."""
        return {"event": self.kind.value, "data": json.dumps(self.payload())}
