from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from voicebatch.core.config import settings

DATABASE_URL = settings.DATABASE_URL

def build_engine(database_url: str):
    options = {"future": True, "pool_pre_ping": True}
    if not database_url.startswith("sqlite"):
        options.update(
            pool_size=20,
            max_overflow=30,
            pool_timeout=30,
            pool_recycle=1800,  # Recycle connections after 30 minutes
        )
    return create_async_engine(database_url, **options)

def build_session_factory(bind):
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False  # Prevent expired object issues
    )

engine = build_engine(DATABASE_URL)

# Background session factory used by the engine's jobs
BackgroundSessionLocal = build_session_factory(engine)

Base = declarative_base()
