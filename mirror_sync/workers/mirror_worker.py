"""
Mirror worker: tails the consensus topics on the mirror node and records every
message as a MirrorEvent, then fans out the derived-entity updates.

Ordering per message is decode -> store -> dispatch -> advance the in-memory
cursor; the durable cursor is written once per topic per poll, and only up to
the last message that was stored. A failed store stops the topic for this poll
so the message is fetched again next time (at-least-once).

Run standalone with: python -m mirror_sync.workers.mirror_worker
"""
import asyncio
import logging
import os
import resource
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from mirror_sync.core.config import Settings
from mirror_sync.core.exceptions import EventStoreError
from mirror_sync.services.cursor_store import CursorStore
from mirror_sync.services.decoder import decode
from mirror_sync.services.dispatcher import EventDispatcher
from mirror_sync.services.entity_updater import SqlEntityUpdater
from mirror_sync.services.event_store import EventStore
from mirror_sync.services.mirror_client import MirrorNodeClient, RetryPolicy

logger = logging.getLogger(__name__)


class WorkerStatus(str, Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"


@dataclass(frozen=True)
class WorkerConfig:
    topics: Dict[str, str]  # topic name -> topic id, polled in this order
    poll_interval: float = 30.0
    page_size: int = 100
    retry_policy: RetryPolicy = RetryPolicy()
    mirror_node_url: str = "https://testnet.mirrornode.hedera.com"
    request_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "WorkerConfig":
        return cls(
            topics=dict(settings.monitored_topics),
            poll_interval=settings.MIRROR_POLL_INTERVAL,
            page_size=settings.MIRROR_MAX_MESSAGES,
            retry_policy=RetryPolicy(
                max_attempts=settings.MIRROR_MAX_RETRIES,
                backoff_seconds=settings.MIRROR_RETRY_BACKOFF,
            ),
            mirror_node_url=settings.MIRROR_NODE_URL,
            request_timeout=settings.MIRROR_REQUEST_TIMEOUT,
        )


@dataclass
class WorkerState:
    status: WorkerStatus = WorkerStatus.STOPPED
    cursors: Dict[str, int] = field(default_factory=dict)
    persisted_cursors: Dict[str, int] = field(default_factory=dict)
    started_at: Optional[float] = None
    last_poll_at: Optional[datetime] = None
    polls_completed: int = 0

    @property
    def is_running(self) -> bool:
        return self.status is WorkerStatus.RUNNING


@dataclass
class TopicPollResult:
    topic_name: str
    topic_id: str
    fetched: int = 0
    stored: int = 0
    cursor: int = 0
    error: Optional[str] = None


class MirrorWorker:
    def __init__(self,
                 config: WorkerConfig,
                 client: MirrorNodeClient,
                 event_store: EventStore,
                 cursor_store: CursorStore,
                 dispatcher: EventDispatcher,
                 health_check: Optional[Callable[[], Awaitable[dict]]] = None):
        self.config = config
        self.client = client
        self.event_store = event_store
        self.cursor_store = cursor_store
        self.dispatcher = dispatcher
        self.health_check = health_check
        self.state = WorkerState()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    async def start(self):
        if self.state.status is not WorkerStatus.STOPPED:
            logger.info(f"mirror worker is already {self.state.status.value.lower()}")
            return
        logger.info("starting mirror worker")
        self.state.status = WorkerStatus.STARTING
        await self.load_cursors()
        if self.state.status is not WorkerStatus.STARTING:
            logger.info("mirror worker was stopped while starting, not launching the poll loop")
            return
        self._stop_event = asyncio.Event()
        self.state.started_at = time.monotonic()
        self.state.status = WorkerStatus.RUNNING
        self._task = asyncio.create_task(self._run(), name="mirror-worker")

    async def stop(self):
        if self.state.status in (WorkerStatus.STOPPED, WorkerStatus.STOPPING):
            return
        logger.info("stopping mirror worker")
        self.state.status = WorkerStatus.STOPPING
        self._stop_event.set()
        if self._task is not None:
            # an in-flight poll is allowed to finish
            await self._task
            self._task = None
        self.state.status = WorkerStatus.STOPPED
        logger.info("mirror worker stopped")

    async def load_cursors(self):
        for topic_name, topic_id in self.config.topics.items():
            try:
                self.state.cursors[topic_id] = await self.cursor_store.get(topic_id)
            except Exception as e:
                logger.error(f"failed to load cursor for {topic_name} ({topic_id}), starting from 0: {e}", exc_info=True)
                self.state.cursors[topic_id] = 0
            self.state.persisted_cursors[topic_id] = self.state.cursors[topic_id]
            logger.info(f"initialized {topic_name} ({topic_id}) from sequence {self.state.cursors[topic_id]}")

    async def _run(self):
        loop = asyncio.get_running_loop()
        while not self._stop_event.is_set():
            started = loop.time()
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"mirror worker poll error: {e}", exc_info=True)
            # fixed cadence; an overrunning poll is followed immediately by the next one
            delay = max(0.0, self.config.poll_interval - (loop.time() - started))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

    async def poll_once(self) -> List[TopicPollResult]:
        """One pass over every monitored topic, sequentially."""
        results = []
        for topic_name, topic_id in self.config.topics.items():
            try:
                results.append(await self.process_topic(topic_name, topic_id))
            except Exception as e:
                logger.error(f"error processing {topic_name} ({topic_id}) messages: {e}", exc_info=True)
                results.append(TopicPollResult(topic_name=topic_name,
                                               topic_id=topic_id,
                                               cursor=self.state.cursors.get(topic_id, 0),
                                               error=str(e)))
        self.state.last_poll_at = datetime.now(timezone.utc)
        self.state.polls_completed += 1
        return results

    async def process_topic(self, topic_name: str, topic_id: str) -> TopicPollResult:
        cursor = self.state.cursors.setdefault(topic_id, 0)
        result = TopicPollResult(topic_name=topic_name, topic_id=topic_id, cursor=cursor)
        messages = await self.client.fetch_messages(topic_id, cursor + 1, self.config.page_size)
        result.fetched = len(messages)
        if messages:
            logger.info(f"processing {len(messages)} new messages for {topic_name}")
        try:
            for message in messages:
                if message.sequence_number <= self.state.cursors[topic_id]:
                    continue
                envelope = decode(message)
                try:
                    event = await self.event_store.append(
                        topic_id=topic_id,
                        sequence_number=message.sequence_number,
                        envelope=envelope,
                        consensus_timestamp=message.consensus_timestamp,
                        running_hash=message.running_hash,
                        topic_name=topic_name,
                    )
                except EventStoreError as e:
                    logger.error(f"stopping {topic_name} at sequence {message.sequence_number}, "
                                 f"it will be retried next poll: {e.message}")
                    result.error = e.message
                    break
                result.stored += 1
                outcome = await self.dispatcher.dispatch(envelope, event)
                self.state.cursors[topic_id] = message.sequence_number
                logger.info(f"stored event {topic_name} seq={message.sequence_number} "
                            f"type={envelope.message_type or 'unknown'} lotId={envelope.lot_id} "
                            f"orderId={envelope.order_id} dispatch={outcome.value}")
        finally:
            result.cursor = self.state.cursors[topic_id]
            if result.cursor > self.state.persisted_cursors.get(topic_id, 0):
                await self._persist_cursor(topic_id, result)
        if messages:
            logger.info(f"processed {result.stored} messages for {topic_name}, last sequence: {result.cursor}")
        return result

    async def _persist_cursor(self, topic_id: str, result: TopicPollResult):
        try:
            await self.cursor_store.set(topic_id, result.cursor)
            self.state.persisted_cursors[topic_id] = result.cursor
        except Exception as e:
            # in-memory cursor stays ahead; the next poll writes it again
            logger.error(f"failed to persist cursor {result.cursor} for topic {topic_id}: {e}", exc_info=True)
            result.error = result.error or f"failed to persist cursor: {e}"

    def get_status(self) -> dict:
        usage = resource.getrusage(resource.RUSAGE_SELF)
        uptime = time.monotonic() - self.state.started_at if self.state.started_at and self.state.is_running else 0.0
        return {
            "is_running": self.state.is_running,
            "state": self.state.status.value,
            "last_processed_sequence": dict(self.state.cursors),
            "monitored_topics": dict(self.config.topics),
            "poll_interval": self.config.poll_interval,
            "page_size": self.config.page_size,
            "mirror_node_url": self.config.mirror_node_url,
            "last_poll_at": self.state.last_poll_at.isoformat() if self.state.last_poll_at else None,
            "polls_completed": self.state.polls_completed,
            "uptime": round(uptime, 3),
            "pid": os.getpid(),
            "max_rss_kb": usage.ru_maxrss,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def get_health_status(self) -> dict:
        try:
            status = self.get_status()
            database = await self.health_check() if self.health_check else {"success": True}
            healthy = bool(database.get("success"))
            return {
                "success": healthy,
                "status": "healthy" if healthy else "unhealthy",
                "worker": status,
                "database": database,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except Exception as e:
            logger.error(f"mirror worker health check failed: {e}", exc_info=True)
            return {
                "success": False,
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }


def build_mirror_worker(settings: Settings,
                        session_factory: async_sessionmaker[AsyncSession],
                        client: Optional[MirrorNodeClient] = None,
                        health_check: Optional[Callable[[], Awaitable[dict]]] = None) -> MirrorWorker:
    config = WorkerConfig.from_settings(settings)
    event_store = EventStore(session_factory)
    return MirrorWorker(
        config=config,
        client=client or MirrorNodeClient(config.mirror_node_url,
                                          retry_policy=config.retry_policy,
                                          timeout=config.request_timeout),
        event_store=event_store,
        cursor_store=CursorStore(session_factory, event_store=event_store),
        dispatcher=EventDispatcher(SqlEntityUpdater(session_factory)),
        health_check=health_check,
    )


async def main():
    from mirror_sync.core.config import get_settings
    from mirror_sync.core.logging_config import configure_logging
    from mirror_sync.db.session import async_session_factory, check_db_connection

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    worker = build_mirror_worker(settings, async_session_factory, health_check=check_db_connection)
    shutdown = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown.set)

    logger.info("starting mirror worker as standalone process")
    await worker.start()
    await shutdown.wait()
    logger.info("received shutdown signal, shutting down gracefully")
    await worker.stop()
    await worker.client.close()


if __name__ == "__main__":
    asyncio.run(main())
