from pathlib import Path

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base
from cvpipeline.config import get_settings

settings = get_settings()

# Create async engine
engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    pool_pre_ping=True,  # Detect and recycle stale/broken connections
    pool_recycle=300,  # Recycle connections every 5 minutes
)

# Create session factory
AsyncSessionLocal = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncSession:
    """Yield a session, rolling back if the caller raises."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def _ensure_sqlite_dir(db_url: str) -> None:
    """SQLite will not create the parent directory of its database file."""
    prefix = "sqlite+aiosqlite:///"
    if not db_url.startswith(prefix):
        return
    db_path = db_url[len(prefix):]
    if db_path and db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)


async def init_db(bind=None):
    """Create all database tables"""
    # Import models to register them with Base
    from cvpipeline.models import submission  # noqa: F401

    if bind is None:
        _ensure_sqlite_dir(str(settings.database_url))
        bind = engine

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
