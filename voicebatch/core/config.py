import os
from dotenv import load_dotenv
from pydantic import BaseModel

# Load environment variables from .env file
load_dotenv()

def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"

class Settings(BaseModel):
    """Application settings."""
    APP_NAME: str = "Voice Batch Monitor"
    API_V1_STR: str = "/api/v1"
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./voicebatch.db")
    ALLOWED_ORIGINS: list[str] = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:8000").split(",")

    # Conversational-call vendor (ElevenLabs ConvAI)
    VENDOR_BASE_URL: str = os.getenv("VENDOR_BASE_URL", "https://api.elevenlabs.io/v1")
    VENDOR_API_KEY: str = os.getenv("VENDOR_API_KEY", "")
    VENDOR_TIMEOUT_SECONDS: float = float(os.getenv("VENDOR_TIMEOUT_SECONDS", "10"))

    # Polling
    POLL_INTERVAL_SECONDS: float = float(os.getenv("POLL_INTERVAL_SECONDS", "15"))
    MAX_STATUS_FAILURES: int = int(os.getenv("MAX_STATUS_FAILURES", "5"))
    RATE_LIMIT_BACKOFF_SECONDS: float = float(os.getenv("RATE_LIMIT_BACKOFF_SECONDS", "30"))
    MAX_INFLIGHT_FETCHES: int = int(os.getenv("MAX_INFLIGHT_FETCHES", "4"))
    MAX_ENRICHMENT_ATTEMPTS: int = int(os.getenv("MAX_ENRICHMENT_ATTEMPTS", "5"))

    # Sessions and subscribers
    SUBSCRIBER_QUEUE_SIZE: int = int(os.getenv("SUBSCRIBER_QUEUE_SIZE", "100"))
    SESSION_RETENTION_SECONDS: float = float(os.getenv("SESSION_RETENTION_SECONDS", "3600"))
    PRUNE_INTERVAL_SECONDS: float = float(os.getenv("PRUNE_INTERVAL_SECONDS", "60"))
    SSE_PING_SECONDS: int = int(os.getenv("SSE_PING_SECONDS", "30"))

    # Workspace discovery of batches started elsewhere
    AUTO_TRACK_ACTIVE_BATCHES: bool = _env_bool("AUTO_TRACK_ACTIVE_BATCHES")
    DISCOVERY_INTERVAL_SECONDS: float = float(os.getenv("DISCOVERY_INTERVAL_SECONDS", "60"))

settings = Settings()
