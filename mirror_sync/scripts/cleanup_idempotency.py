"""
Remove expired idempotency keys.

Run with: python -m mirror_sync.scripts.cleanup_idempotency [--dry-run]
"""
import argparse
import asyncio
import logging
from datetime import timedelta
from mirror_sync.core.config import get_settings
from mirror_sync.core.logging_config import configure_logging
from mirror_sync.db.session import async_session_factory
from mirror_sync.services.idempotency_service import IdempotencyStore

logger = logging.getLogger(__name__)


async def cleanup(store: IdempotencyStore, dry_run: bool = False) -> int:
    breakdown = await store.expired_breakdown()
    expired = sum(row["count"] for row in breakdown)
    if dry_run:
        print(f"{expired} expired idempotency keys would be removed")
        for row in breakdown:
            print(f"   {row['method']} {row['endpoint']}: {row['count']}")
        return expired

    removed = await store.sweep_expired()
    print(f"removed {removed} expired idempotency keys")
    return removed


async def main(argv=None):
    parser = argparse.ArgumentParser(description="Remove expired idempotency keys")
    parser.add_argument("--dry-run", action="store_true", help="only report what would be removed")
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    store = IdempotencyStore(async_session_factory, ttl=timedelta(hours=settings.IDEMPOTENCY_TTL_HOURS))
    try:
        await cleanup(store, dry_run=args.dry_run)
    except Exception as e:
        logger.error(f"idempotency cleanup failed: {e}", exc_info=True)
        raise


if __name__ == "__main__":
    asyncio.run(main())
