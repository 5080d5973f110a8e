import asyncio
import json
from datetime import datetime, timedelta, timezone
import pytest
from sqlalchemy import func, select, update
from starlette.requests import Request
from starlette.responses import JSONResponse
from mirror_sync.core.exceptions import IdempotencyInProgressError
from mirror_sync.core.idempotency import IdempotencyGuard
from mirror_sync.models.idempotency_key import IdempotencyKey
from mirror_sync.models.order import Order
from mirror_sync.services.idempotency_service import IdempotencyStore, StoredResponse, compute_request_hash
from mirror_sync.tests.conftest import FakeRedis

KEY = "order-key-0001-abcdef"
ORDER = {"order_id": "ORD-1", "lot_id": "LOT-1", "buyer_id": "buyer-1", "tons": "12.5"}


async def count_orders(session_factory) -> int:
    async with session_factory() as db:
        return await db.scalar(select(func.count()).select_from(Order))


async def expire_key(session_factory, key):
    async with session_factory() as db:
        await db.execute(
            update(IdempotencyKey)
            .where(IdempotencyKey.key == key)
            .values(expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        )
        await db.commit()


class BrokenStore:
    async def find_active(self, key):
        raise RuntimeError("idempotency table unavailable")

    async def save(self, response):
        raise RuntimeError("idempotency table unavailable")


def test_request_hash_ignores_key_order_and_whitespace():
    assert compute_request_hash(b'{"a": 1, "b": 2}') == compute_request_hash(b'{"b":2,"a":1}')
    assert compute_request_hash(b"") == compute_request_hash(b"{}")
    assert compute_request_hash(b'{"a": 1}') != compute_request_hash(b'{"a": 2}')
    assert compute_request_hash(b"not json") == compute_request_hash(b"not json")


async def test_replay_returns_identical_response_and_runs_once(client, db_session_factory):
    first = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    second = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})

    assert first.status_code == 201
    assert second.status_code == 201
    assert second.content == first.content
    assert second.headers["content-type"] == first.headers["content-type"]
    assert second.headers["x-idempotent-replay"] == "true"
    assert await count_orders(db_session_factory) == 1


async def test_same_key_different_body_conflicts(client, db_session_factory):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    response = await client.post("/api/v1/orders", json={**ORDER, "order_id": "ORD-2"},
                                 headers={"x-idempotency-key": KEY})

    assert response.status_code == 409
    assert response.json()["code"] == "IDEMPOTENCY_CONFLICT"
    assert await count_orders(db_session_factory) == 1


async def test_same_key_on_other_endpoint_conflicts(client):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    response = await client.put("/api/v1/orders/ORD-1", json=ORDER, headers={"x-idempotency-key": KEY})
    assert response.status_code == 409
    assert response.json()["code"] == "IDEMPOTENCY_CONFLICT"


async def test_expired_key_is_processed_as_new(client, db_session_factory, idempotency_store):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    await expire_key(db_session_factory, KEY)

    response = await client.post("/api/v1/orders", json={**ORDER, "order_id": "ORD-2"},
                                 headers={"x-idempotency-key": KEY})

    assert response.status_code == 201
    assert response.json()["order_id"] == "ORD-2"
    assert await count_orders(db_session_factory) == 2
    record = await idempotency_store.find_active(KEY)
    assert record is not None
    assert record.request_hash == compute_request_hash(response.request.content)
    assert record.expires_at.replace(tzinfo=timezone.utc) > datetime.now(timezone.utc)


async def test_missing_key_is_rejected(client, db_session_factory):
    response = await client.post("/api/v1/orders", json=ORDER)
    assert response.status_code == 400
    assert response.json() == {
        "error": "Bad Request",
        "message": "x-idempotency-key header is required for this endpoint",
        "code": "MISSING_IDEMPOTENCY_KEY",
    }
    assert await count_orders(db_session_factory) == 0


async def test_short_key_is_rejected(client, idempotency_store):
    response = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": "too-short"})
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_IDEMPOTENCY_KEY"
    assert await idempotency_store.find_active("too-short") is None


async def test_key_is_optional_on_put(client):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    first = await client.put("/api/v1/orders/ORD-1", json={"status": "ESCROWED"})
    second = await client.put("/api/v1/orders/ORD-1", json={"status": "DELIVERED"})
    assert first.status_code == second.status_code == 200
    assert second.json()["status"] == "DELIVERED"
    assert "x-idempotent-replay" not in second.headers


async def test_put_with_key_is_replayed(client):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    headers = {"x-idempotency-key": "put-key-0001-abcdef"}
    first = await client.put("/api/v1/orders/ORD-1", json={"status": "ESCROWED"}, headers=headers)
    # state changes in between; the replay must not see it
    await client.put("/api/v1/orders/ORD-1", json={"status": "CANCELLED"})
    second = await client.put("/api/v1/orders/ORD-1", json={"status": "ESCROWED"}, headers=headers)
    assert second.content == first.content
    assert second.json()["status"] == "ESCROWED"


async def test_error_responses_are_not_stored(client, idempotency_store):
    response = await client.put("/api/v1/orders/ORD-404", json={"status": "SETTLED"},
                                headers={"x-idempotency-key": "put-key-0404-abcdef"})
    assert response.status_code == 404
    assert response.json()["code"] == "ORDER_NOT_FOUND"
    assert await idempotency_store.find_active("put-key-0404-abcdef") is None


async def test_storage_fault_passes_request_through(app, client, db_session_factory):
    app.state.idempotency_guard = IdempotencyGuard(BrokenStore(), redis=FakeRedis())
    response = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    assert response.status_code == 201
    assert await count_orders(db_session_factory) == 1


async def test_request_in_flight_is_rejected(client, fake_redis, db_session_factory):
    fake_redis.values[f"idempotency:lock:{KEY}"] = "1"
    response = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    assert response.status_code == 409
    assert response.json()["code"] == "IDEMPOTENCY_IN_PROGRESS"
    assert await count_orders(db_session_factory) == 0


async def test_lock_is_released_after_response(client, fake_redis):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    assert fake_redis.values == {}


async def test_redis_outage_does_not_block_requests(app, client, idempotency_store, db_session_factory):
    app.state.idempotency_guard = IdempotencyGuard(idempotency_store, redis=FakeRedis(fail=True))
    first = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    second = await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    assert first.status_code == second.status_code == 201
    assert second.content == first.content
    assert await count_orders(db_session_factory) == 1


async def test_redis_outage_is_not_retried_during_cooldown(app, client, idempotency_store):
    redis = FakeRedis(fail=True)
    app.state.idempotency_guard = IdempotencyGuard(idempotency_store, redis=redis, redis_cooldown_seconds=60)
    for key in ("outage-key-0001-abcdef", "outage-key-0002-abcdef"):
        response = await client.post("/api/v1/orders", json={**ORDER, "order_id": key},
                                     headers={"x-idempotency-key": key})
        assert response.status_code == 201
    assert redis.set_calls == 1
    assert redis.delete_calls == 0


async def test_redis_is_tried_again_after_cooldown(app, client, idempotency_store):
    redis = FakeRedis(fail=True)
    app.state.idempotency_guard = IdempotencyGuard(idempotency_store, redis=redis, redis_cooldown_seconds=0)
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY})
    redis.fail = False
    await client.post("/api/v1/orders", json={**ORDER, "order_id": "ORD-2"},
                      headers={"x-idempotency-key": "order-key-0002-abcdef"})
    assert redis.set_calls == 2
    assert redis.values == {}


def make_request(body: bytes, key: str = KEY) -> Request:
    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": "POST",
        "scheme": "http",
        "server": ("test", 80),
        "path": "/api/v1/orders",
        "root_path": "",
        "query_string": b"",
        "headers": [(b"x-idempotency-key", key.encode()), (b"content-type", b"application/json")],
    }
    return Request(scope, receive)


async def test_concurrent_duplicate_is_rejected_then_replayed(idempotency_store, fake_redis):
    guard = IdempotencyGuard(idempotency_store, redis=fake_redis)
    body = json.dumps(ORDER).encode()
    release = asyncio.Event()
    calls = []

    async def handler(request):
        calls.append(request)
        await release.wait()
        return JSONResponse({"order_id": "ORD-1"}, status_code=201)

    first = asyncio.create_task(guard(make_request(body), handler))
    while not calls:
        await asyncio.sleep(0.01)

    with pytest.raises(IdempotencyInProgressError):
        await guard(make_request(body), handler)

    release.set()
    response = await first
    await response.background()
    replay = await guard(make_request(body), handler)

    assert len(calls) == 1
    assert replay.status_code == 201
    assert replay.body == response.body
    assert replay.headers["x-idempotent-replay"] == "true"
    assert fake_redis.values == {}


async def test_user_id_header_is_not_trusted(client, idempotency_store):
    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY, "x-user-id": "someone-else"})
    record = await idempotency_store.find_active(KEY)
    assert record.user_id is None


async def test_user_id_comes_from_request_state(app, client, idempotency_store):
    @app.middleware("http")
    async def authenticate(request, call_next):
        request.state.user_id = "user-42"
        return await call_next(request)

    await client.post("/api/v1/orders", json=ORDER, headers={"x-idempotency-key": KEY, "x-user-id": "someone-else"})
    record = await idempotency_store.find_active(KEY)
    assert record.user_id == "user-42"


async def test_save_reports_duplicate_key(idempotency_store):
    response = StoredResponse(key=KEY, request_hash="h", endpoint="/api/v1/orders", method="POST",
                              response_body="{}", status_code=201, media_type="application/json")
    assert await idempotency_store.save(response) is True
    assert await idempotency_store.save(response) is False


async def test_sweep_removes_only_expired(db_session_factory):
    store = IdempotencyStore(db_session_factory, ttl=timedelta(hours=24))
    for key in ("expired-key-0001-abcdef", "expired-key-0002-abcdef", "active-key-0001-abcdef"):
        await store.save(StoredResponse(key=key, request_hash="h", endpoint="/api/v1/orders", method="POST",
                                        response_body="{}", status_code=201, user_id="user-1"))
    await expire_key(db_session_factory, "expired-key-0001-abcdef")
    await expire_key(db_session_factory, "expired-key-0002-abcdef")

    assert await store.expired_breakdown() == [{"method": "POST", "endpoint": "/api/v1/orders", "count": 2}]
    stats = await store.stats()
    assert (stats["total_keys"], stats["active_keys"], stats["expired_keys"]) == (3, 1, 2)
    assert stats["top_users"] == [{"user_id": "user-1", "count": 3}]

    assert await store.sweep_expired() == 2
    assert await store.sweep_expired() == 0
    assert await store.find_active("active-key-0001-abcdef") is not None
