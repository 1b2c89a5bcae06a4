from fastapi import APIRouter, Depends
from voicebatch.schemas.base import ResponseBase
from voicebatch.routers.batch_calls import get_engine

router = APIRouter()

@router.get("/health", response_model=ResponseBase)
async def health_check(engine = Depends(get_engine)):
    """Health check endpoint."""
    return ResponseBase(
        success=True,
        message="Service is healthy",
        data={
            "scheduler_running": engine.scheduler.running,
            "tracked": len(engine.registry),
        },
    )
