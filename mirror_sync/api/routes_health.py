import logging
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from mirror_sync.db.session import get_db_session

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", summary="Liveness check")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    """Liveness of the API process plus database connectivity."""
    try:
        await db.execute(text("SELECT 1"))
        database = {"success": True}
    except Exception as e:
        logger.error(f"health check could not reach the database: {e}", exc_info=True)
        database = {"success": False, "error": str(e)}
    return {"status": "ok" if database["success"] else "degraded", "database": database}
