import base64
import json
from functools import partial
from typing import Dict, List, Optional, Set, Union
import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from mirror_sync.app import create_app
from mirror_sync.core.idempotency import IdempotencyGuard
from mirror_sync.db.base import Base
from mirror_sync.db.session import check_db_connection, get_db_session
from mirror_sync.services.cursor_store import CursorStore
from mirror_sync.services.dispatcher import EventDispatcher
from mirror_sync.services.entity_updater import SqlEntityUpdater
from mirror_sync.services.event_store import EventStore
from mirror_sync.services.idempotency_service import IdempotencyStore
from mirror_sync.services.mirror_client import MirrorNodeClient, RetryPolicy
from mirror_sync.workers.mirror_worker import MirrorWorker, WorkerConfig
import mirror_sync.models  # noqa: F401

MIRROR_URL = "https://mirror.test"
TOPICS = {"ORDERS": "0.0.1001", "PROOFS": "0.0.1002"}


def encode_message(payload: Union[dict, str]) -> str:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class FakeMirrorNode:
    """In-memory stand-in for the mirror node REST API, served through httpx.MockTransport."""

    def __init__(self):
        self.topics: Dict[str, List[dict]] = {}
        self.failing: Set[str] = set()
        self.requests: List[httpx.Request] = []

    def publish(self, topic_id: str, sequence_number: int, payload: Union[dict, str]):
        self.topics.setdefault(topic_id, []).append({
            "consensus_timestamp": f"1700000000.{sequence_number:09d}",
            "topic_id": topic_id,
            "message": encode_message(payload),
            "running_hash": f"hash-{sequence_number}",
            "sequence_number": sequence_number,
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        topic_id = request.url.path.split("/")[4]
        if topic_id in self.failing:
            return httpx.Response(503, json={"_status": {"messages": [{"message": "unavailable"}]}})
        from_sequence = int(request.url.params["sequencenumber"].split(":")[1])
        limit = int(request.url.params["limit"])
        messages = sorted((m for m in self.topics.get(topic_id, []) if m["sequence_number"] >= from_sequence),
                          key=lambda m: m["sequence_number"])
        return httpx.Response(200, json={"messages": messages[:limit], "links": {"next": None}})

    def client(self) -> MirrorNodeClient:
        return MirrorNodeClient(
            MIRROR_URL,
            retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
            client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler), base_url=MIRROR_URL),
        )


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the idempotency lock."""

    def __init__(self, fail: bool = False):
        self.values: Dict[str, str] = {}
        self.fail = fail
        self.set_calls = 0
        self.delete_calls = 0

    async def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None):
        self.set_calls += 1
        if self.fail:
            raise ConnectionError("redis is down")
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        self.delete_calls += 1
        if self.fail:
            raise ConnectionError("redis is down")
        return sum(1 for key in keys if self.values.pop(key, None) is not None)


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'mirror_sync_test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def db_session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def event_store(db_session_factory):
    return EventStore(db_session_factory)


@pytest.fixture
def cursor_store(db_session_factory, event_store):
    return CursorStore(db_session_factory, event_store=event_store)


@pytest.fixture
def mirror_node():
    return FakeMirrorNode()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
async def worker(db_session_factory, event_store, cursor_store, mirror_node):
    config = WorkerConfig(
        topics=dict(TOPICS),
        poll_interval=0.05,
        retry_policy=RetryPolicy(max_attempts=2, backoff_seconds=0),
        mirror_node_url=MIRROR_URL,
    )
    worker = MirrorWorker(
        config=config,
        client=mirror_node.client(),
        event_store=event_store,
        cursor_store=cursor_store,
        dispatcher=EventDispatcher(SqlEntityUpdater(db_session_factory)),
        health_check=partial(check_db_connection, db_session_factory),
    )
    yield worker
    await worker.stop()
    await worker.client.close()


@pytest.fixture
def idempotency_store(db_session_factory):
    return IdempotencyStore(db_session_factory)


@pytest.fixture
def app(db_session_factory, idempotency_store, fake_redis, worker):
    app = create_app()

    async def override_db_session():
        async with db_session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    app.state.idempotency_guard = IdempotencyGuard(idempotency_store, redis=fake_redis)
    app.state.mirror_worker = worker
    return app


@pytest.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
