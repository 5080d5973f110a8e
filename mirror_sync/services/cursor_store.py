import logging
from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from mirror_sync.models.topic_cursor import TopicCursor
from mirror_sync.services.event_store import EventStore

logger = logging.getLogger(__name__)


class CursorStore:
    """
    Durable per-topic "last processed sequence number".

    Callers must only ``set`` a sequence once the event carrying it has been
    appended to the EventStore. Lower values are refused.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], event_store: Optional[EventStore] = None):
        self.session_factory = session_factory
        self.event_store = event_store

    async def get(self, topic_id: str) -> int:
        async with self.session_factory() as db:
            result = await db.execute(select(TopicCursor).where(TopicCursor.topic_id == topic_id))
            cursor = result.scalar_one_or_none()
        if cursor is not None:
            return cursor.sequence_number
        if self.event_store is not None:
            # no cursor row yet: resume from whatever is already in the event log
            last_sequence = await self.event_store.last_sequence(topic_id)
            if last_sequence is not None:
                return last_sequence
        return 0

    async def set(self, topic_id: str, sequence_number: int) -> bool:
        """Returns False when the write was refused because it would move the cursor backwards."""
        if sequence_number < 0:
            raise ValueError("sequence_number must be >= 0")
        async with self.session_factory() as db:
            async with db.begin():
                result = await db.execute(
                    select(TopicCursor).where(TopicCursor.topic_id == topic_id).with_for_update()
                )
                cursor = result.scalar_one_or_none()
                if cursor is None:
                    db.add(TopicCursor(topic_id=topic_id, sequence_number=sequence_number))
                elif sequence_number < cursor.sequence_number:
                    logger.warning(
                        f"refusing to move cursor for topic {topic_id} backwards "
                        f"from {cursor.sequence_number} to {sequence_number}")
                    return False
                elif sequence_number > cursor.sequence_number:
                    cursor.sequence_number = sequence_number
            return True
