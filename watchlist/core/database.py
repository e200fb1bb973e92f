"""Database setup with async SQLAlchemy for the tracked stock store."""
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from watchlist.core.config import settings
from pathlib import Path
import logging
import re

logger = logging.getLogger(__name__)

# Mask password in database URL for logging
def mask_db_url(url: str) -> str:
    """Mask password in database URL for safe logging."""
    return re.sub(r'://([^:]+):([^@]+)@', r'://\1:****@', url)


def is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def build_engine_args(url: str) -> dict:
    """Engine options; connection pool sizing only applies to server databases."""
    engine_args = {
        "echo": settings.log_level == "DEBUG",  # Log all SQL if DEBUG
    }
    if not is_sqlite(url):
        engine_args.update({
            "pool_pre_ping": True,  # Verify connections before using
            "pool_size": 10,
            "max_overflow": 20,
            "pool_timeout": 30,
            "pool_recycle": 3600,
        })
    return engine_args


logger.info(f"Connecting to database: {mask_db_url(settings.database_url)}")

engine = create_async_engine(
    settings.database_url,
    **build_engine_args(settings.database_url)
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def _ensure_sqlite_dir(url: str):
    """Create the directory of a file-backed SQLite database."""
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).parent.mkdir(parents=True, exist_ok=True)


async def init_db():
    """Initialize database tables."""
    logger.info("Initializing database tables...")

    # Register models on Base.metadata
    from watchlist.models import tracked_stock  # noqa: F401

    if is_sqlite(settings.database_url):
        _ensure_sqlite_dir(settings.database_url)

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database tables: {str(e)}", exc_info=True)
        logger.debug(f"Database URL (masked): {mask_db_url(settings.database_url)}")
        raise
