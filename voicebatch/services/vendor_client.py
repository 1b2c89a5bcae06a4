"""
Thin typed client over the vendor's batch-calling and conversation endpoints.

Failures are classified into TransportError kinds and passed through; retry
policy belongs to the callers.
"""
import httpx
import logging
from typing import Optional

from voicebatch.core.config import Settings, settings as default_settings
from voicebatch.core.errors import TransportError, TransportErrorKind
from voicebatch.schemas.batch import (
    AudioArtifact,
    BatchStatus,
    EnrichmentRecord,
    RecipientState,
    RecipientStatus,
    TranscriptTurn,
)
from voicebatch.utils.httpx import get_httpx_base_url, get_httpx_headers

logger = logging.getLogger(__name__)

RECIPIENT_STATES = {
    "pending": RecipientState.PENDING,
    "queued": RecipientState.PENDING,
    "scheduled": RecipientState.PENDING,
    "initiated": RecipientState.IN_PROGRESS,
    "dialing": RecipientState.IN_PROGRESS,
    "ringing": RecipientState.IN_PROGRESS,
    "in_progress": RecipientState.IN_PROGRESS,
    "in-progress": RecipientState.IN_PROGRESS,
    "completed": RecipientState.COMPLETED,
    "finished": RecipientState.COMPLETED,
    "ended": RecipientState.COMPLETED,
    "done": RecipientState.COMPLETED,
    "failed": RecipientState.FAILED,
    "cancelled": RecipientState.FAILED,
    "canceled": RecipientState.FAILED,
    "voicemail": RecipientState.FAILED,
    "no_answer": RecipientState.FAILED,
    "no-answer": RecipientState.FAILED,
    "busy": RecipientState.FAILED,
}

# Conversation statuses for which the vendor has not finished post-call analysis
PROCESSING_CONVERSATION_STATUSES = {"initiated", "in-progress", "in_progress", "processing"}


def parse_recipient_state(raw: Optional[str]) -> RecipientState:
    if not raw:
        return RecipientState.PENDING
    state = RECIPIENT_STATES.get(raw.lower())
    if state is None:
        logger.warning(f"Unknown recipient status '{raw}', treating as in progress")
        return RecipientState.IN_PROGRESS
    return state


def parse_batch_status(campaign_id: str, data: dict) -> BatchStatus:
    recipients = []
    for item in data.get("recipients") or []:
        recipient_id = item.get("id") or item.get("phone_number")
        if not recipient_id:
            logger.warning(f"Skipping recipient without id or phone number in batch {campaign_id}")
            continue
        recipients.append(RecipientStatus(
            recipient_id=str(recipient_id),
            phone_number=item.get("phone_number"),
            state=parse_recipient_state(item.get("status")),
            conversation_id=item.get("conversation_id") or None,
            vendor_status=item.get("status"),
        ))
    return BatchStatus(
        campaign_id=data.get("id") or campaign_id,
        name=data.get("name"),
        vendor_agent_id=data.get("agent_id"),
        vendor_status=data.get("status"),
        recipients=recipients,
    )


def parse_conversation(conversation_id: str, data: dict) -> EnrichmentRecord:
    metadata = data.get("metadata") or {}
    analysis = data.get("analysis") or {}
    transcript = [
        TranscriptTurn(
            speaker=turn.get("role") or "unknown",
            message=turn.get("message") or "",
            timestamp_offset=turn.get("time_in_call_secs"),
        )
        for turn in data.get("transcript") or []
    ]
    audio = None
    audio_data = data.get("audio")
    if audio_data and (audio_data.get("url") or audio_data.get("gcs_url")):
        audio = AudioArtifact(
            url=audio_data.get("url") or audio_data.get("gcs_url"),
            size_bytes=audio_data.get("size"),
            content_type=audio_data.get("content_type"),
            file_name=audio_data.get("file_name") or audio_data.get("gcs_file_name"),
            uploaded_at=audio_data.get("uploaded_at"),
        )
    return EnrichmentRecord(
        conversation_id=conversation_id,
        duration_seconds=metadata.get("call_duration_secs"),
        summary=analysis.get("transcript_summary"),
        transcript=transcript,
        audio=audio,
    )


def classify_response(response: httpx.Response) -> TransportError:
    detail = response.text or "Unknown Error"
    status = response.status_code
    if status == 404:
        return TransportError(TransportErrorKind.NOT_FOUND, detail, status_code=status)
    if status == 429:
        retry_after = None
        header = response.headers.get("Retry-After")
        if header:
            try:
                retry_after = float(header)
            except ValueError:
                retry_after = None
        return TransportError(TransportErrorKind.RATE_LIMITED, detail, status_code=status, retry_after=retry_after)
    if status >= 500:
        return TransportError(TransportErrorKind.UNAVAILABLE, detail, status_code=status)
    return TransportError(TransportErrorKind.UNKNOWN, detail, status_code=status)


class VendorClient:
    def __init__(self, settings: Settings = default_settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=get_httpx_base_url(settings),
            headers=get_httpx_headers(settings),
            timeout=settings.VENDOR_TIMEOUT_SECONDS,
        )

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs):
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(TransportErrorKind.UNAVAILABLE, f"Timed out calling {path}: {e}") from e
        except httpx.TransportError as e:
            raise TransportError(TransportErrorKind.UNAVAILABLE, f"Network error calling {path}: {e}") from e

        if response.status_code != 200 and response.status_code != 201:
            raise classify_response(response)
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(
                TransportErrorKind.UNKNOWN, f"Invalid JSON from {path}", status_code=response.status_code
            ) from e

    async def fetch_status(self, campaign_id: str) -> BatchStatus:
        data = await self._request("GET", f"/convai/batch-calling/{campaign_id}")
        return parse_batch_status(campaign_id, data)

    async def fetch_conversation(self, conversation_id: str) -> EnrichmentRecord:
        data = await self._request("GET", f"/convai/conversations/{conversation_id}")
        status = (data.get("status") or "").lower()
        if status in PROCESSING_CONVERSATION_STATUSES:
            raise TransportError(
                TransportErrorKind.UNAVAILABLE,
                f"Conversation {conversation_id} is still {status}",
            )
        return parse_conversation(conversation_id, data)

    async def list_batches(self) -> list[dict]:
        data = await self._request("GET", "/convai/batch-calling/workspace")
        if isinstance(data, list):
            return data
        # The workspace listing has been returned under different keys
        for key in ("batch_calls", "batches"):
            if isinstance(data.get(key), list):
                return data[key]
        return []

    async def retry_batch(self, campaign_id: str) -> dict:
        return await self._request("POST", f"/convai/batch-calling/{campaign_id}/retry", json={})

    async def cancel_batch(self, campaign_id: str) -> dict:
        return await self._request("POST", f"/convai/batch-calling/{campaign_id}/cancel", json={})
