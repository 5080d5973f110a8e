"""
Idempotency guard for mutating endpoints.

A POST/PUT carrying ``x-idempotency-key`` runs its handler at most once per
(key, body) while the stored record is alive:

- first request: the handler runs, and its response is stored after it has
  been sent (background task);
- same key, same body, same endpoint: the stored response is replayed and the
  handler is not called;
- same key, anything else different: 409 IDEMPOTENCY_CONFLICT.

While the first request is executing, a short Redis lock on the key turns a
concurrent duplicate into 409 IDEMPOTENCY_IN_PROGRESS. Storage or Redis faults
never block a request: they are logged and the request runs unprotected. After
a Redis fault the lock is skipped for ``redis_cooldown_seconds``, so an outage
costs one timeout rather than one per request.
"""
import logging
import time
from typing import Awaitable, Callable, Optional
from fastapi import Header, Request, Response
from fastapi.routing import APIRoute
from redis.asyncio import Redis
from starlette.background import BackgroundTask, BackgroundTasks
from mirror_sync.core.config import get_settings
from mirror_sync.core.exceptions import (
    IdempotencyConflictError,
    IdempotencyInProgressError,
    InvalidIdempotencyKeyError,
    MissingIdempotencyKeyError,
)
from mirror_sync.models.idempotency_key import IdempotencyKey
from mirror_sync.services.idempotency_service import IdempotencyStore, StoredResponse, compute_request_hash

logger = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "x-idempotency-key"
REPLAY_HEADER = "x-idempotent-replay"
GUARDED_METHODS = ("POST", "PUT")

Handler = Callable[[Request], Awaitable[Response]]


class IdempotencyGuard:
    def __init__(self,
                 store: IdempotencyStore,
                 redis: Optional[Redis] = None,
                 lock_ttl_seconds: int = 30,
                 redis_cooldown_seconds: float = 30.0):
        self.store = store
        self.redis = redis
        self.lock_ttl_seconds = lock_ttl_seconds
        self.redis_cooldown_seconds = redis_cooldown_seconds
        self._redis_down_until = 0.0

    async def __call__(self, request: Request, handler: Handler) -> Response:
        if request.method not in GUARDED_METHODS:
            return await handler(request)
        key = request.headers.get(IDEMPOTENCY_HEADER)
        if not key:
            return await handler(request)

        body = await request.body()
        request_hash = compute_request_hash(body)
        endpoint = request.url.path
        method = request.method

        try:
            record = await self.store.find_active(key)
        except Exception as e:
            logger.error(f"idempotency lookup failed for key {key} ({method} {endpoint}), "
                         f"continuing without protection: {e}", exc_info=True)
            return await handler(request)
        if record is not None:
            return self._replay_or_reject(record, key, request_hash, endpoint, method)

        if not await self._acquire_lock(key):
            logger.warning(f"idempotency key {key} is already being processed ({method} {endpoint})")
            raise IdempotencyInProgressError()

        try:
            # the first request may have finished between the lookup and the lock
            record = await self.store.find_active(key)
        except Exception as e:
            logger.error(f"idempotency re-check failed for key {key}: {e}", exc_info=True)
            record = None
        if record is not None:
            await self._release_lock(key)
            return self._replay_or_reject(record, key, request_hash, endpoint, method)

        try:
            response = await handler(request)
        except Exception:
            await self._release_lock(key)
            raise

        body_bytes = getattr(response, "body", None)
        if body_bytes is None or response.status_code >= 500:
            # streaming or server-side failure: let the client retry for real
            await self._release_lock(key)
            return response

        stored = StoredResponse(
            key=key,
            request_hash=request_hash,
            endpoint=endpoint,
            method=method,
            response_body=bytes(body_bytes).decode("utf-8", errors="replace"),
            status_code=response.status_code,
            media_type=response.media_type,
            # set by authentication middleware; client headers are not trusted for it
            user_id=getattr(request.state, "user_id", None),
        )
        self._after_response(response, BackgroundTask(self._save_and_release, stored))
        return response

    def _replay_or_reject(self, record: IdempotencyKey, key: str, request_hash: str, endpoint: str, method: str) -> Response:
        if record.request_hash != request_hash or record.endpoint != endpoint or record.method != method:
            logger.warning(f"idempotency key {key} reused with a different request "
                           f"({method} {endpoint}, first used on {record.method} {record.endpoint})")
            raise IdempotencyConflictError()
        logger.info(f"replaying stored response for idempotency key {key} ({method} {endpoint})")
        return Response(
            content=record.response_body,
            status_code=record.status_code,
            media_type=record.media_type,
            headers={REPLAY_HEADER: "true"},
        )

    @staticmethod
    def _after_response(response: Response, task: BackgroundTask):
        if response.background is None:
            response.background = task
        else:
            response.background = BackgroundTasks(tasks=[response.background, task])

    async def _save_and_release(self, stored: StoredResponse):
        try:
            await self.store.save(stored)
        except Exception as e:
            logger.error(f"failed to save idempotency response for key {stored.key} "
                         f"({stored.method} {stored.endpoint}): {e}", exc_info=True)
        finally:
            await self._release_lock(stored.key)

    def _lock_key(self, key: str) -> str:
        return f"idempotency:lock:{key}"

    def _redis_available(self) -> bool:
        return self.redis is not None and time.monotonic() >= self._redis_down_until

    def _mark_redis_down(self):
        self._redis_down_until = time.monotonic() + self.redis_cooldown_seconds
        logger.warning(f"skipping idempotency locks for {self.redis_cooldown_seconds}s after a redis failure")

    async def _acquire_lock(self, key: str) -> bool:
        if not self._redis_available():
            return True
        try:
            acquired = await self.redis.set(self._lock_key(key), "1", nx=True, ex=self.lock_ttl_seconds)
            return bool(acquired)
        except Exception as e:
            logger.error(f"failed to take idempotency lock for key {key}, continuing without it: {e}", exc_info=True)
            self._mark_redis_down()
            return True

    async def _release_lock(self, key: str):
        if not self._redis_available():
            return
        try:
            await self.redis.delete(self._lock_key(key))
        except Exception as e:
            logger.error(f"failed to release idempotency lock for key {key}: {e}", exc_info=True)
            self._mark_redis_down()


class IdempotentRoute(APIRoute):
    """APIRoute whose handler runs through the app's IdempotencyGuard, when one is configured."""

    def get_route_handler(self) -> Handler:
        route_handler = super().get_route_handler()

        async def guarded_handler(request: Request) -> Response:
            guard: Optional[IdempotencyGuard] = getattr(request.app.state, "idempotency_guard", None)
            if guard is None:
                return await route_handler(request)
            return await guard(request, route_handler)

        return guarded_handler


async def require_idempotency_key(x_idempotency_key: Optional[str] = Header(None, alias=IDEMPOTENCY_HEADER)) -> str:
    """Dependency for endpoints where the key is mandatory rather than opt-in."""
    if not x_idempotency_key:
        raise MissingIdempotencyKeyError()
    min_length = get_settings().IDEMPOTENCY_KEY_MIN_LENGTH
    if len(x_idempotency_key) < min_length:
        raise InvalidIdempotencyKeyError(min_length)
    return x_idempotency_key
