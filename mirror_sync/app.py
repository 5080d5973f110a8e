import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from mirror_sync.api import routes_health, routes_mirror, routes_orders
from mirror_sync.core.config import settings
from mirror_sync.core.exceptions import MirrorSyncError
from mirror_sync.core.idempotency import IdempotencyGuard
from mirror_sync.core.logging_config import configure_logging
from mirror_sync.db import session
from mirror_sync.services.idempotency_service import IdempotencyStore
from mirror_sync.workers.mirror_worker import build_mirror_worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.LOG_LEVEL)
    if settings.ENV == "development":
        await session.init_db()

    redis = Redis.from_url(settings.REDIS_URL,
                           decode_responses=True,
                           socket_connect_timeout=settings.IDEMPOTENCY_REDIS_TIMEOUT_SECONDS,
                           socket_timeout=settings.IDEMPOTENCY_REDIS_TIMEOUT_SECONDS)
    app.state.redis = redis
    app.state.idempotency_guard = IdempotencyGuard(
        IdempotencyStore(session.async_session_factory, ttl=timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS)),
        redis=redis,
        lock_ttl_seconds=settings.IDEMPOTENCY_LOCK_TTL_SECONDS,
        redis_cooldown_seconds=settings.IDEMPOTENCY_REDIS_COOLDOWN_SECONDS,
    )
    worker = build_mirror_worker(settings, session.async_session_factory, health_check=session.check_db_connection)
    app.state.mirror_worker = worker
    if settings.MIRROR_WORKER_AUTOSTART:
        await worker.start()
    logger.info(f"{settings.PROJECT_NAME} started ({settings.ENV})")
    yield
    logger.info("shutting down")
    await worker.stop()
    await worker.client.close()
    await redis.aclose()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.PROJECT_VERSION,
        description="Mirror node sync and idempotent order API for the carbon marketplace",
        lifespan=lifespan
    )

    app.include_router(routes_health.router)

    app.include_router(
        routes_mirror.router,
        prefix="/api/v1"
    )

    app.include_router(
        routes_orders.router,
        prefix="/api/v1"
    )

    @app.exception_handler(MirrorSyncError)
    async def mirror_sync_error_handler(request, ex: MirrorSyncError):
        if ex.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {ex.message}")
        return JSONResponse(status_code=ex.status_code, content=ex.to_content())

    return app


app = create_app()
