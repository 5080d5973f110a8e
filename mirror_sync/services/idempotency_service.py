import hashlib
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from sqlalchemy import case, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from mirror_sync.models.idempotency_key import IdempotencyKey

logger = logging.getLogger(__name__)


def compute_request_hash(body: bytes) -> str:
    """sha256 of the request body; JSON bodies are normalized (sorted keys, compact separators) first."""
    if not body:
        normalized = b"{}"
    else:
        try:
            normalized = json.dumps(json.loads(body), sort_keys=True, separators=(",", ":")).encode()
        except ValueError:
            normalized = body
    return hashlib.sha256(normalized).hexdigest()


@dataclass
class StoredResponse:
    key: str
    request_hash: str
    endpoint: str
    method: str
    response_body: str
    status_code: int
    media_type: Optional[str] = None
    user_id: Optional[str] = None


class IdempotencyStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession], ttl: timedelta = timedelta(hours=24)):
        self.session_factory = session_factory
        self.ttl = ttl

    async def find_active(self, key: str) -> Optional[IdempotencyKey]:
        """Unexpired record for ``key``. An expired record is dropped so the key can be reused."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            await db.execute(
                delete(IdempotencyKey)
                .where(IdempotencyKey.key == key)
                .where(IdempotencyKey.expires_at <= now)
            )
            await db.commit()
            result = await db.execute(select(IdempotencyKey).where(IdempotencyKey.key == key))
            return result.scalar_one_or_none()

    async def save(self, response: StoredResponse) -> bool:
        """False when another request already stored this key."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            try:
                db.add(IdempotencyKey(
                    key=response.key,
                    request_hash=response.request_hash,
                    endpoint=response.endpoint,
                    method=response.method,
                    response_body=response.response_body,
                    media_type=response.media_type,
                    status_code=response.status_code,
                    user_id=response.user_id,
                    created_at=now,
                    expires_at=now + self.ttl,
                ))
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()
                logger.warning(f"idempotency key {response.key} was stored by a concurrent request")
                return False

    async def sweep_expired(self) -> int:
        """Delete every expired record, returns how many were removed."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            result = await db.execute(delete(IdempotencyKey).where(IdempotencyKey.expires_at <= now))
            await db.commit()
        logger.info(f"removed {result.rowcount} expired idempotency keys")
        return result.rowcount

    async def expired_breakdown(self) -> List[Dict]:
        """Expired records grouped by (method, endpoint), largest first."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            result = await db.execute(
                select(IdempotencyKey.method, IdempotencyKey.endpoint, func.count().label("count"))
                .where(IdempotencyKey.expires_at <= now)
                .group_by(IdempotencyKey.method, IdempotencyKey.endpoint)
                .order_by(func.count().desc())
            )
            return [{"method": row.method, "endpoint": row.endpoint, "count": row.count} for row in result]

    async def stats(self) -> Dict:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as db:
            totals = (await db.execute(
                select(
                    func.count().label("total"),
                    func.coalesce(func.sum(case((IdempotencyKey.expires_at > now, 1), else_=0)), 0).label("active"),
                    func.min(IdempotencyKey.created_at).label("oldest"),
                    func.max(IdempotencyKey.created_at).label("newest"),
                )
            )).one()
            endpoints = await db.execute(
                select(IdempotencyKey.method, IdempotencyKey.endpoint, func.count().label("count"))
                .group_by(IdempotencyKey.method, IdempotencyKey.endpoint)
                .order_by(func.count().desc())
            )
            users = await db.execute(
                select(IdempotencyKey.user_id, func.count().label("count"))
                .where(IdempotencyKey.user_id.is_not(None))
                .group_by(IdempotencyKey.user_id)
                .order_by(func.count().desc())
                .limit(10)
            )
            return {
                "total_keys": totals.total,
                "active_keys": totals.active,
                "expired_keys": totals.total - totals.active,
                "oldest_key": totals.oldest,
                "newest_key": totals.newest,
                "endpoints": [{"method": r.method, "endpoint": r.endpoint, "count": r.count} for r in endpoints],
                "top_users": [{"user_id": r.user_id, "count": r.count} for r in users],
            }
