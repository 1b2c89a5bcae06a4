from fastapi import APIRouter
from voicebatch.core.config import settings
from voicebatch.routers import (
    health,
    batch_calls,
    webhook,
)

api_router = APIRouter(prefix=settings.API_V1_STR)

api_router.include_router(health.router, tags=["health"])
api_router.include_router(batch_calls.router, prefix="/batch-calls", tags=["batch_calls"])
api_router.include_router(webhook.router, prefix="/webhook", tags=["webhook"])
