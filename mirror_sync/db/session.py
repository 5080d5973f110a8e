import logging
from typing import AsyncGenerator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from mirror_sync.core.config import get_settings
from mirror_sync.db.base import Base
import mirror_sync.models  # noqa: F401  registers tables on Base.metadata

logger = logging.getLogger(__name__)

settings = get_settings()

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    bind=engine,
    autoflush=False,
    expire_on_commit=False
)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency that provides an async DB session
    and ensures it's closed after the request.
    """
    async with async_session_factory() as session:
        yield session


async def init_db(bind: AsyncEngine = engine) -> None:
    """
    Create all tables based on models.
    Production deployments are expected to manage the schema with migrations.
    """
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("created all tables")


async def check_db_connection(session_factory: async_sessionmaker[AsyncSession] = async_session_factory) -> dict:
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return {"success": True}
    except Exception as e:
        logger.error(f"database connectivity check failed: {e}", exc_info=True)
        return {"success": False, "error": str(e)}
