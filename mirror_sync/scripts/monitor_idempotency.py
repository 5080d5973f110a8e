"""
Print a usage report of the idempotency key table.

Run with: python -m mirror_sync.scripts.monitor_idempotency
"""
import asyncio
import logging
from mirror_sync.core.config import get_settings
from mirror_sync.core.logging_config import configure_logging
from mirror_sync.db.session import async_session_factory
from mirror_sync.services.idempotency_service import IdempotencyStore

logger = logging.getLogger(__name__)


def format_report(stats: dict) -> str:
    lines = [
        "Idempotency keys",
        f"   total:   {stats['total_keys']}",
        f"   active:  {stats['active_keys']}",
        f"   expired: {stats['expired_keys']}",
        f"   oldest:  {stats['oldest_key'] or '-'}",
        f"   newest:  {stats['newest_key'] or '-'}",
    ]
    if stats["endpoints"]:
        lines.append("By endpoint")
        lines.extend(f"   {row['method']} {row['endpoint']}: {row['count']}" for row in stats["endpoints"])
    if stats["top_users"]:
        lines.append("Top users")
        lines.extend(f"   {row['user_id']}: {row['count']}" for row in stats["top_users"])
    return "\n".join(lines)


async def main():
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    try:
        stats = await IdempotencyStore(async_session_factory).stats()
    except Exception as e:
        logger.error(f"failed to collect idempotency stats: {e}", exc_info=True)
        raise
    print(format_report(stats))


if __name__ == "__main__":
    asyncio.run(main())
