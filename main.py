from apscheduler.schedulers.asyncio import AsyncIOScheduler
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import asyncio

from voicebatch.core.config import settings
from voicebatch.core.database import Base, engine, BackgroundSessionLocal
from voicebatch.utils.log import configure_logging
from voicebatch.routers.api import api_router
from voicebatch.services.batch_engine import BatchStatusEngine, TrackingRegistry
from voicebatch.services.snapshot_archive import SnapshotArchive
from voicebatch.services.vendor_client import VendorClient
import voicebatch.models  # noqa: F401  registers the tables on Base.metadata

async def init_models():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Log to console and ./log before anything else starts
    configure_logging()

    # Initialize database
    await init_models()

    # Create scheduler with the current event loop
    loop = asyncio.get_running_loop()
    scheduler = AsyncIOScheduler(event_loop=loop)

    batch_engine = BatchStatusEngine(
        TrackingRegistry(),
        VendorClient(settings),
        scheduler,
        settings=settings,
        archive=SnapshotArchive(BackgroundSessionLocal),
    )
    app.state.engine = batch_engine

    # Starts the scheduler with the prune (and optional discovery) jobs
    batch_engine.start()

    yield

    # Cancel every tracked batch, stop the scheduler and close the vendor client
    await batch_engine.shutdown()
    await engine.dispose()

app = FastAPI(
    title=settings.APP_NAME,
    description="Batch call status monitoring and streaming API",
    version="0.1.0",
    lifespan=lifespan
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(api_router)

@app.get("/")
async def root():
    return {"message": f"Welcome to the {settings.APP_NAME} API"}

import uvicorn

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)
