import logging
from typing import Optional
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from mirror_sync.core.exceptions import EventStoreError
from mirror_sync.models.mirror_event import MirrorEvent
from mirror_sync.services.decoder import DecodedEnvelope

logger = logging.getLogger(__name__)


def build_event_id(topic_id: str, sequence_number: int) -> str:
    return f"{topic_id}-{sequence_number}"


class EventStore:
    """
    Append-only store of mirror events.

    Idempotency is guaranteed by the unique constraint on
    (topic_id, sequence_number): a duplicate insert raises IntegrityError,
    which is rolled back and answered with the row that already exists.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def get(self, topic_id: str, sequence_number: int) -> Optional[MirrorEvent]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(MirrorEvent)
                .where(MirrorEvent.topic_id == topic_id)
                .where(MirrorEvent.sequence_number == sequence_number)
            )
            return result.scalar_one_or_none()

    async def last_sequence(self, topic_id: str) -> Optional[int]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(func.max(MirrorEvent.sequence_number)).where(MirrorEvent.topic_id == topic_id)
            )
            return result.scalar_one_or_none()

    async def append(self,
                     topic_id: str,
                     sequence_number: int,
                     envelope: DecodedEnvelope,
                     consensus_timestamp: str,
                     running_hash: str,
                     topic_name: Optional[str] = None) -> MirrorEvent:
        event = MirrorEvent(
            event_id=build_event_id(topic_id, sequence_number),
            topic_id=topic_id,
            topic_name=topic_name,
            sequence_number=sequence_number,
            consensus_timestamp=consensus_timestamp,
            running_hash=running_hash,
            message_content=envelope.raw_text,
            parsed_message=envelope.payload,
            message_type=envelope.message_type,
            lot_id=envelope.lot_id,
            order_id=envelope.order_id,
            proof_type=envelope.proof_type,
            user_id=envelope.user_id,
        )
        try:
            async with self.session_factory() as db:
                try:
                    db.add(event)
                    await db.commit()
                    await db.refresh(event)
                    return event
                except IntegrityError:
                    # already stored by an earlier poll or a previous run
                    await db.rollback()
            existing = await self.get(topic_id, sequence_number)
        except Exception as e:
            logger.error(f"failed to store event {topic_id}-{sequence_number}: {e}", exc_info=True)
            raise EventStoreError(topic_id, sequence_number) from e
        if existing is None:
            logger.error(f"event {topic_id}-{sequence_number} conflicted on insert but could not be read back")
            raise EventStoreError(topic_id, sequence_number)
        logger.info(f"event {topic_id}-{sequence_number} already stored, skipping")
        return existing
