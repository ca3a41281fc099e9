from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from notifyhub.apps.api.main import create_app
from notifyhub.core.errors import TransientDeliveryError
from notifyhub.persistence.stores.memory import InMemoryNotificationStore
from notifyhub.providers.push.simulated import SimulatedPushGateway
from notifyhub.services.runtime import Runtime
from notifyhub.tests.utils.fake_redis import FakeRedis, fake_redis_factory
from notifyhub.tests.utils.settings import RecordingSleep, make_settings


class _DownGateway(SimulatedPushGateway):
    async def send_to_user(self, user_id, message):  # noqa: ANN001
        raise TransientDeliveryError("fcm unavailable")


async def _client(runtime: Runtime) -> AsyncClient:
    # ASGITransport skips lifespan, so start the runtime explicitly.
    await runtime.start()
    return AsyncClient(transport=ASGITransport(app=create_app(runtime)), base_url="http://test")


def _runtime(*, gateway_cls=SimulatedPushGateway, fake_redis: FakeRedis | None = None, **overrides) -> Runtime:  # noqa: ANN001
    settings = make_settings(**overrides)
    store = InMemoryNotificationStore()
    return Runtime(
        settings,
        store=store,
        gateway=gateway_cls(store),
        redis_factory=fake_redis_factory(fake_redis or FakeRedis()),
        sleep=RecordingSleep(),
        run_consumers=False,
    )


@pytest.mark.asyncio
async def test_inbox_pagination_reports_unread_totals() -> None:
    runtime = _runtime(delivery_mode="inline")
    ids = [
        (await runtime.store.create_notification(recipient="7", title=f"n{index}", body="b")).id
        for index in range(10)
    ]
    for notification_id in ids[:2]:
        await runtime.store.mark_as_read(notification_id, "7")

    async with await _client(runtime) as client:
        response = await client.get("/api/notifications/user/7", params={"page": 1, "limit": 5})
        unread = await client.get("/api/notifications/user/7", params={"unreadOnly": "true", "limit": 20})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    page = payload["notifications"]
    assert len(page["notifications"]) == 5
    assert page["totalCount"] == 10
    assert page["hasMore"] is True
    assert page["unreadCount"] == 8
    assert page["notifications"][0]["userId"] == "7"
    assert unread.json()["notifications"]["totalCount"] == 8
    await runtime.stop()


@pytest.mark.asyncio
async def test_subscribe_send_read_and_delete_flow() -> None:
    runtime = _runtime(delivery_mode="inline")

    async with await _client(runtime) as client:
        subscribed = await client.post(
            "/api/notifications/subscribe", json={"userId": 11, "token": "tok-11", "deviceType": "ios"}
        )
        assert subscribed.status_code == 200
        assert subscribed.json()["subscription"]["deviceType"] == "ios"

        sent = await client.post(
            "/api/notifications/send",
            json={"userId": 11, "title": "Order shipped", "body": "On its way", "data": {"orderId": 5}, "type": "order"},
        )
        assert sent.status_code == 200
        body = sent.json()
        assert body["success"] is True
        assert body["status"] == "sent"
        assert body["queued"] is False
        assert body["result"]["simulation"] is True
        notification_id = body["notificationId"]

        read = await client.put(f"/api/notifications/{notification_id}/read", json={"userId": "11"})
        assert read.status_code == 200
        assert read.json()["notification"]["read"] is True

        stats = await client.get("/api/notifications/user/11/stats")
        assert stats.json()["stats"]["byType"] == {"order": 1}

        wrong_owner = await client.request(
            "DELETE", f"/api/notifications/{notification_id}", json={"userId": "12"}
        )
        assert wrong_owner.status_code == 404
        deleted = await client.delete(f"/api/notifications/{notification_id}", params={"userId": "11"})
        assert deleted.status_code == 200

        unsubscribed = await client.delete("/api/notifications/unsubscribe/tok-11")
        assert unsubscribed.status_code == 200
        again = await client.delete("/api/notifications/unsubscribe/tok-11")
        assert again.status_code == 404
    await runtime.stop()


@pytest.mark.asyncio
async def test_error_envelopes() -> None:
    runtime = _runtime(delivery_mode="inline")

    async with await _client(runtime) as client:
        missing = await client.post("/api/notifications/send", json={"userId": "1", "body": "no title"})
        no_tokens = await client.post("/api/notifications/send", json={"userId": "1", "title": "t", "body": "b"})
        malformed = await client.post("/api/notifications/send", json={"userId": "1", "data": "nope"})
        bad_limit = await client.get("/api/notifications/user/1", params={"limit": 1000})
        not_owned = await client.put("/api/notifications/notif_missing/read", json={"userId": "1"})

    assert missing.status_code == 400
    assert missing.json() == {"success": False, "error": "BAD_REQUEST", "message": "title is required"}
    assert no_tokens.status_code == 404
    assert no_tokens.json()["error"] == "NO_DELIVERY_TARGET"
    assert malformed.status_code == 400
    assert malformed.json()["error"] == "VALIDATION_ERROR"
    assert bad_limit.status_code == 400
    assert not_owned.status_code == 404
    assert not_owned.json()["error"] == "NOT_FOUND"
    await runtime.stop()


@pytest.mark.asyncio
async def test_exhausted_inline_delivery_returns_500_with_attempts() -> None:
    runtime = _runtime(gateway_cls=_DownGateway, delivery_mode="inline")
    await runtime.controller.subscribe("3", "tok-3")

    async with await _client(runtime) as client:
        response = await client.post("/api/notifications/send", json={"userId": "3", "title": "t", "body": "b"})

    assert response.status_code == 500
    payload = response.json()
    assert payload["error"] == "DELIVERY_FAILED"
    assert payload["details"]["attempts"] == 3
    job = await runtime.store.get_notification(payload["details"]["notificationId"])
    assert job.status == "failed"
    await runtime.stop()


@pytest.mark.asyncio
async def test_bulk_send_reports_partial_failures() -> None:
    runtime = _runtime(delivery_mode="inline")
    await runtime.controller.subscribe("1", "tok-1")

    async with await _client(runtime) as client:
        response = await client.post(
            "/api/notifications/send-bulk", json={"userIds": [1, 2], "title": "t", "body": "b"}
        )
        empty = await client.post("/api/notifications/send-bulk", json={"userIds": [], "title": "t", "body": "b"})

    assert response.status_code == 200
    payload = response.json()
    assert [item["userId"] for item in payload["results"]] == ["1"]
    assert [item["userId"] for item in payload["errors"]] == ["2"]
    assert empty.status_code == 400
    await runtime.stop()


@pytest.mark.asyncio
async def test_queued_send_and_broadcast() -> None:
    runtime = _runtime()
    await runtime.controller.subscribe("5", "tok-5")

    async with await _client(runtime) as client:
        sent = await client.post(
            "/api/notifications/send", json={"userId": "5", "title": "t", "body": "b", "priority": "high"}
        )
        broadcast = await client.post(
            "/api/notifications/broadcast", json={"topic": "news", "title": "Headline", "body": "Story"}
        )

    assert sent.status_code == 200
    assert sent.json()["queued"] is True
    assert sent.json()["queueName"] == "priority-queue"
    assert sent.json()["status"] == "pending"
    assert broadcast.json()["queueName"] == "notification-queue"
    await runtime.stop()


@pytest.mark.asyncio
async def test_health_and_ops_endpoints() -> None:
    fake_redis = FakeRedis()
    runtime = _runtime(fake_redis=fake_redis)

    async with await _client(runtime) as client:
        await runtime.broker.set_worker_heartbeat()
        health = await client.get("/health")
        stats = await client.get("/ops/queues")
        queue_health = await client.get("/ops/queues/health")
        letters = await client.get("/ops/queues/email-queue/dead-letters")
        replay = await client.post("/ops/queues/email-queue/dead-letters/replay", json={})
        unknown = await client.get("/ops/queues/sms-queue/dead-letters")

        fake_redis.unreachable = True
        degraded = await client.get("/health")
        fake_redis.unreachable = False

    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["deliveryMode"] == "queue"
    assert stats.json()["overview"]["queues"] == 4
    assert stats.json()["databasePool"] is None
    assert health.json()["workerStale"] is False
    assert queue_health.json()["status"] == "healthy"
    assert letters.json() == {"queue": "email-queue", "items": []}
    assert replay.json() == {"queue": "email-queue", "replayed": 0}
    assert unknown.status_code == 404
    assert unknown.json()["error"] == "UNKNOWN_QUEUE"
    assert degraded.status_code == 200
    assert degraded.json()["status"] == "degraded"
    await runtime.stop()


@pytest.mark.asyncio
async def test_health_is_degraded_without_broker() -> None:
    runtime = _runtime(fake_redis=FakeRedis(unreachable=True))

    async with await _client(runtime) as client:
        response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["deliveryMode"] == "inline"
    await runtime.stop()


@pytest.mark.asyncio
async def test_health_is_degraded_when_worker_heartbeat_is_stale() -> None:
    fake_redis = FakeRedis()
    runtime = _runtime(fake_redis=fake_redis, worker_heartbeat_stale_after_s=60)

    async with await _client(runtime) as client:
        missing = await client.get("/health")
        await runtime.broker.set_worker_heartbeat(timestamp=datetime.now(timezone.utc) - timedelta(seconds=120))
        old = await client.get("/health")
        await runtime.broker.set_worker_heartbeat()
        fresh = await client.get("/health")

    assert missing.json()["status"] == "degraded"
    assert missing.json()["workerStale"] is True
    assert missing.json()["workerHeartbeat"] is None
    assert old.json()["status"] == "degraded"
    assert old.json()["workerHeartbeatAgeS"] >= 120
    assert fresh.json()["status"] == "healthy"
    assert fresh.json()["workerStale"] is False
    await runtime.stop()


@pytest.mark.asyncio
async def test_inline_mode_health_ignores_missing_worker_heartbeat() -> None:
    runtime = _runtime(delivery_mode="inline")

    async with await _client(runtime) as client:
        response = await client.get("/health")

    assert response.json()["status"] == "healthy"
    assert response.json()["workerStale"] is False
    await runtime.stop()


@pytest.mark.asyncio
async def test_topic_subscribe_and_unsubscribe_routes() -> None:
    runtime = _runtime(delivery_mode="inline")
    await runtime.store.create_subscription("7", "tok-1", "ios")
    await runtime.store.create_subscription("7", "tok-2", "web")

    async with await _client(runtime) as client:
        joined = await client.post("/api/notifications/topics/news/subscribe", json={"userId": "7"})
        left = await client.post("/api/notifications/topics/news/unsubscribe", json={"userId": 7})
        no_tokens = await client.post("/api/notifications/topics/news/subscribe", json={"userId": "8"})
        missing_user = await client.post("/api/notifications/topics/news/subscribe", json={})

    assert joined.status_code == 200
    assert joined.json()["topic"] == "news"
    assert joined.json()["result"]["deliveredCount"] == 2
    assert left.status_code == 200
    assert left.json()["result"]["deliveredCount"] == 2
    assert no_tokens.status_code == 404
    assert no_tokens.json()["error"] == "NO_DELIVERY_TARGET"
    assert missing_user.status_code == 400
    await runtime.stop()
