from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel
from typing import Optional
import logging

from voicebatch.routers.batch_calls import get_engine
from voicebatch.schemas.base import ResponseBase
from voicebatch.services.batch_engine import BatchStatusEngine

logger = logging.getLogger(__name__)

router = APIRouter()

class ConversationWebhook(BaseModel):
    type: Optional[str] = None
    conversation_id: Optional[str] = None
    batch_id: Optional[str] = None
    data: Optional[dict] = None

    def resolve_conversation_id(self) -> Optional[str]:
        return self.conversation_id or (self.data or {}).get("conversation_id")

    def resolve_batch_id(self) -> Optional[str]:
        return self.batch_id or (self.data or {}).get("batch_id")

@router.post("/elevenlabs", response_model=ResponseBase)
async def conversation_finished(webhook: ConversationWebhook, engine: BatchStatusEngine = Depends(get_engine)):
    """
    Post-call webhook from the vendor. Triggers an immediate poll of the
    batch that owns the conversation; periodic polling continues regardless.
    """
    conversation_id = webhook.resolve_conversation_id()
    if not conversation_id:
        raise HTTPException(status_code=400, detail="conversation_id is required")
    try:
        refreshed = await engine.notify_conversation_finished(conversation_id, webhook.resolve_batch_id())
        return ResponseBase(
            success=True,
            message="Webhook processed",
            data={"conversation_id": conversation_id, "refreshed": refreshed},
        )
    except Exception as e:
        logger.error(f"Error processing webhook for conversation {conversation_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/ping", response_model=ResponseBase)
async def ping():
    return ResponseBase(success=True, message="Webhook endpoint is reachable")
