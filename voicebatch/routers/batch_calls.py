from fastapi import APIRouter, HTTPException, Depends, Request
from sse_starlette.sse import EventSourceResponse

from voicebatch.core.errors import NotTracked, TransportError, TransportErrorKind
from voicebatch.schemas.base import ResponseBase
from voicebatch.services.batch_engine import BatchStatusEngine

router = APIRouter()

TRANSPORT_STATUS_CODES = {
    TransportErrorKind.NOT_FOUND: 404,
    TransportErrorKind.RATE_LIMITED: 429,
    TransportErrorKind.UNAVAILABLE: 502,
    TransportErrorKind.UNKNOWN: 502,
}

def get_engine(request: Request) -> BatchStatusEngine:
    return request.app.state.engine

def transport_http_error(e: TransportError) -> HTTPException:
    return HTTPException(status_code=TRANSPORT_STATUS_CODES[e.kind], detail=str(e))

@router.get("/")
async def list_batch_calls(engine: BatchStatusEngine = Depends(get_engine)):
    try:
        return await engine.list_batches()
    except TransportError as e:
        raise transport_http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/monitoring/stats")
async def get_monitoring_stats(engine: BatchStatusEngine = Depends(get_engine)):
    return engine.stats()

@router.post("/{campaign_id}/track", response_model=ResponseBase)
async def start_tracking(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    handle = engine.start_tracking(campaign_id)
    return ResponseBase(
        success=True,
        message=f"Tracking batch {campaign_id}",
        data={"campaign_id": campaign_id, "state": handle.state.value},
    )

@router.delete("/{campaign_id}/track", response_model=ResponseBase)
async def stop_tracking(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    try:
        stopped = await engine.stop_tracking(campaign_id)
        return ResponseBase(
            success=True,
            message=f"Stopped tracking batch {campaign_id}" if stopped else f"Batch {campaign_id} was not being polled",
            data={"campaign_id": campaign_id, "stopped": stopped},
        )
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/{campaign_id}/status")
async def get_batch_status(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    try:
        snapshot = await engine.current_snapshot(campaign_id)
        return ResponseBase(
            success=True,
            message="Batch status retrieved",
            data=snapshot.model_dump(mode="json"),
        )
    except NotTracked as e:
        raise HTTPException(status_code=404, detail=str(e))
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.get("/{campaign_id}/status/stream")
async def stream_batch_status(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    """
    Server-Sent Events stream of a batch.

    Events: `connected` (full snapshot), `status-update` (changed recipients),
    `error` (non-fatal) and `batch-completed` (final snapshot, then the
    stream ends). Connecting to a batch nobody tracks yet starts tracking it.
    A client disconnect cancels the generator, which unsubscribes it.
    """
    if campaign_id not in engine.registry:
        engine.start_tracking(campaign_id)
    subscription = engine.subscribe(campaign_id)

    async def event_generator():
        try:
            async for event in subscription:
                yield event.to_sse()
        finally:
            engine.unsubscribe(subscription)

    return EventSourceResponse(event_generator(), ping=engine.settings.SSE_PING_SECONDS)

@router.post("/{campaign_id}/refresh")
async def refresh_batch_status(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    try:
        snapshot = await engine.refresh(campaign_id)
        return ResponseBase(
            success=True,
            message="Batch status refreshed",
            data=snapshot.model_dump(mode="json"),
        )
    except NotTracked as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/{campaign_id}/retry")
async def retry_batch_call(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    try:
        data = await engine.retry_batch(campaign_id)
        return ResponseBase(success=True, message=f"Batch {campaign_id} retried", data=data)
    except TransportError as e:
        raise transport_http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))

@router.post("/{campaign_id}/cancel")
async def cancel_batch_call(campaign_id: str, engine: BatchStatusEngine = Depends(get_engine)):
    try:
        data = await engine.cancel_batch(campaign_id)
        return ResponseBase(success=True, message=f"Batch {campaign_id} cancelled", data=data)
    except TransportError as e:
        raise transport_http_error(e)
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
