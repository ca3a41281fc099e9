from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from notifyhub.core.errors import InvalidStatusTransitionError, NotFoundError
from notifyhub.domain.models import DeviceToken, NotificationJob
from notifyhub.persistence.db import Database
from notifyhub.persistence.stores.sql import SqlNotificationStore
from notifyhub.tests.utils.settings import make_settings


@pytest.fixture
async def sql_store(tmp_path) -> SqlNotificationStore:
    db = Database.from_settings(make_settings(), database_url=f"sqlite+aiosqlite:///{tmp_path / 'notify.db'}")
    store = SqlNotificationStore(db)
    await store.create_schema()
    yield store
    await store.close()


async def _age(store: SqlNotificationStore, notification_id: str, days: int) -> None:
    async with store._db.session() as session:
        await session.execute(
            update(NotificationJob)
            .where(NotificationJob.id == notification_id)
            .values(created_at=datetime.now(timezone.utc) - timedelta(days=days))
        )
        await session.commit()


@pytest.mark.asyncio
async def test_subscription_upsert_reactivates_deactivated_token(sql_store: SqlNotificationStore) -> None:
    first = await sql_store.create_subscription("u1", "tok-1", "android")
    assert await sql_store.remove_invalid_tokens(["tok-1"], user_id="u1", reason="provider_invalid") == 1
    assert await sql_store.get_user_tokens("u1") == []

    again = await sql_store.create_subscription("u1", "tok-1", "ios")

    assert again.id == first.id
    assert again.active is True
    assert again.device_type == "ios"
    assert again.deactivated_reason is None
    assert await sql_store.get_user_tokens("u1") == ["tok-1"]


@pytest.mark.asyncio
async def test_concurrent_subscribes_leave_one_active_row(sql_store: SqlNotificationStore) -> None:
    rows = await asyncio.gather(*(sql_store.create_subscription("u1", "tok-1", "web") for _ in range(8)))

    assert len({row.id for row in rows}) == 1
    assert len(await sql_store.get_user_subscriptions("u1")) == 1
    async with sql_store._db.session() as session:
        stored = (await session.execute(select(DeviceToken).where(DeviceToken.user_id == "u1"))).scalars().all()
    assert len(stored) == 1
    assert stored[0].active is True


@pytest.mark.asyncio
async def test_pool_stats_report_counters(sql_store: SqlNotificationStore) -> None:
    stats = sql_store.pool_stats()

    assert set(stats) == {"size", "checked_out", "checked_in", "overflow"}


@pytest.mark.asyncio
async def test_unsubscribe_only_touches_active_rows(sql_store: SqlNotificationStore) -> None:
    await sql_store.create_subscription("u1", "tok-1")
    await sql_store.create_subscription("u2", "tok-1")

    assert await sql_store.delete_subscription("tok-1") is True
    assert await sql_store.delete_subscription("tok-1") is False
    assert await sql_store.get_user_tokens("u2") == []


@pytest.mark.asyncio
async def test_pagination_and_unread_counts(sql_store: SqlNotificationStore) -> None:
    ids = [
        (await sql_store.create_notification(recipient="7", title=f"t{index}", body="b")).id for index in range(10)
    ]
    for notification_id in ids[:2]:
        assert await sql_store.mark_as_read(notification_id, "7") is not None

    first = await sql_store.get_user_notifications("7", page=1, limit=5)
    assert len(first.notifications) == 5
    assert first.total_count == 10
    assert first.has_more is True
    assert first.unread_count == 8

    last = await sql_store.get_user_notifications("7", page=2, limit=5)
    assert last.has_more is False

    unread = await sql_store.get_user_notifications("7", page=1, limit=20, unread_only=True)
    assert unread.total_count == 8
    assert all(not row.read for row in unread.notifications)


@pytest.mark.asyncio
async def test_status_lifecycle_and_attempt_counter(sql_store: SqlNotificationStore) -> None:
    job = await sql_store.create_notification(recipient="u1", title="t", body="b", data={"k": 1})

    assert await sql_store.record_delivery_attempt(job.id) == 1
    assert await sql_store.record_delivery_attempt(job.id) == 2
    sent = await sql_store.update_notification_status(job.id, "sent")
    assert sent.status == "sent"
    assert sent.attempt_count == 2

    # Repeating the terminal status is a no-op; leaving it is rejected.
    assert (await sql_store.update_notification_status(job.id, "sent")).status == "sent"
    with pytest.raises(InvalidStatusTransitionError):
        await sql_store.update_notification_status(job.id, "pending")
    with pytest.raises(NotFoundError):
        await sql_store.record_delivery_attempt("notif_missing")


@pytest.mark.asyncio
async def test_stats_group_by_type_and_status(sql_store: SqlNotificationStore) -> None:
    promo = await sql_store.create_notification(recipient="u1", title="t", body="b", type="promo")
    await sql_store.create_notification(recipient="u1", title="t", body="b", type="order")
    await sql_store.create_notification(recipient="u2", title="t", body="b", type="order")
    await sql_store.update_notification_status(promo.id, "sent")
    await sql_store.mark_as_read(promo.id, "u1")

    stats = await sql_store.get_notification_stats("u1")

    assert stats.to_dict() == {
        "total": 2,
        "read": 1,
        "unread": 1,
        "byType": {"promo": 1, "order": 1},
        "byStatus": {"sent": 1, "pending": 1},
    }


@pytest.mark.asyncio
async def test_cleanup_keeps_recent_pending_and_dead_lettered(sql_store: SqlNotificationStore) -> None:
    old_sent = await sql_store.create_notification(recipient="u1", title="t", body="b")
    old_pending = await sql_store.create_notification(recipient="u1", title="t", body="b")
    old_dead = await sql_store.create_notification(recipient="u1", title="t", body="b")
    recent = await sql_store.create_notification(recipient="u1", title="t", body="b")
    await sql_store.update_notification_status(old_sent.id, "sent")
    await sql_store.update_notification_status(old_dead.id, "dead_lettered")
    await sql_store.update_notification_status(recent.id, "sent")
    for row in (old_sent, old_pending, old_dead):
        await _age(sql_store, row.id, 45)

    assert await sql_store.cleanup_old_notifications(30) == 1

    assert await sql_store.get_notification(old_sent.id) is None
    assert await sql_store.get_notification(old_pending.id) is not None
    assert await sql_store.get_notification(old_dead.id) is not None
    assert await sql_store.get_notification(recent.id) is not None


@pytest.mark.asyncio
async def test_delete_and_mark_read_require_ownership(sql_store: SqlNotificationStore) -> None:
    job = await sql_store.create_notification(recipient="u1", title="t", body="b")

    assert await sql_store.mark_as_read(job.id, "u2") is None
    assert await sql_store.delete_notification(job.id, "u2") is False
    assert await sql_store.delete_notification(job.id, "u1") is True
    assert await sql_store.ping() is True
