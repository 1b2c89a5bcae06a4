# Batch call schemas
from datetime import datetime, timezone
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, List

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class RecipientState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RecipientState.COMPLETED, RecipientState.FAILED)

    @property
    def progress(self) -> int:
        """Ordering used to keep non-terminal states from moving backwards."""
        return 0 if self == RecipientState.PENDING else 1 if self == RecipientState.IN_PROGRESS else 2

class OverallState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"

class FinalStatus(str, Enum):
    COMPLETED = "completed"
    DEGRADED = "degraded"
    CANCELLED = "cancelled"

class RecipientStatus(BaseModel):
    recipient_id: str
    phone_number: Optional[str] = None
    state: RecipientState = RecipientState.PENDING
    conversation_id: Optional[str] = None
    vendor_status: Optional[str] = None

class TranscriptTurn(BaseModel):
    speaker: str
    message: str = ""
    timestamp_offset: Optional[float] = None

class AudioArtifact(BaseModel):
    url: str
    size_bytes: Optional[int] = None
    content_type: Optional[str] = None
    file_name: Optional[str] = None
    uploaded_at: Optional[str] = None

class EnrichmentRecord(BaseModel):
    conversation_id: str
    duration_seconds: Optional[float] = None
    summary: Optional[str] = None
    transcript: List[TranscriptTurn] = []
    audio: Optional[AudioArtifact] = None

class BatchStatus(BaseModel):
    """Raw vendor view of one batch, before enrichment."""
    campaign_id: str
    name: Optional[str] = None
    vendor_agent_id: Optional[str] = None
    vendor_status: Optional[str] = None
    recipients: List[RecipientStatus] = []

class RecipientView(RecipientStatus):
    duration_seconds: Optional[float] = None
    summary: Optional[str] = None
    transcript: List[TranscriptTurn] = []
    audio: Optional[AudioArtifact] = None
    enriched: bool = False
    enrichment_pending: bool = False
    # Set once enrichment has been given up; the recipient is reported base-only
    enrichment_error: Optional[str] = None

    def with_enrichment(self, record: EnrichmentRecord) -> "RecipientView":
        return self.model_copy(update={
            "duration_seconds": record.duration_seconds,
            "summary": record.summary,
            "transcript": list(record.transcript),
            "audio": record.audio,
            "enriched": True,
            "enrichment_pending": False,
            "enrichment_error": None,
        })

class CampaignSnapshot(BaseModel):
    campaign_id: str
    name: Optional[str] = None
    vendor_agent_id: Optional[str] = None
    overall_state: OverallState = OverallState.RUNNING
    recipients: List[RecipientView] = []
    computed_at: datetime = Field(default_factory=utcnow)
    degraded: bool = False
    error: Optional[str] = None

    def recipient(self, recipient_id: str) -> Optional[RecipientView]:
        return next((r for r in self.recipients if r.recipient_id == recipient_id), None)

    def conversation_ids(self) -> set[str]:
        return {r.conversation_id for r in self.recipients if r.conversation_id}

    def counts(self) -> dict:
        counts = {state.value: 0 for state in RecipientState}
        for recipient in self.recipients:
            counts[recipient.state.value] += 1
        counts["total"] = len(self.recipients)
        return counts

class SnapshotDiff(BaseModel):
    """Recipients whose observable fields changed since the previous snapshot."""
    campaign_id: str
    name: Optional[str] = None
    vendor_agent_id: Optional[str] = None
    overall_state: OverallState = OverallState.RUNNING
    changed: List[RecipientView] = []
    computed_at: datetime = Field(default_factory=utcnow)
    header_changed: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.changed and not self.header_changed
