from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from itertools import count
from typing import Any, Callable, Iterable

from notifyhub.core.errors import NotFoundError
from notifyhub.domain.models import DeviceToken, NotificationJob
from notifyhub.domain.state import check_transition
from notifyhub.persistence.stores.base import (
    RETAINED_STATUSES,
    NotificationPage,
    NotificationStats,
    _utc_now,
    build_notification,
    build_subscription,
    normalize_paging,
)


class InMemoryNotificationStore:
    """Dict-backed store for tests and single-process local runs.

    Every method completes without yielding to the event loop, so each
    mutation is atomic with respect to other coroutines.
    """

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or _utc_now
        self._notifications: dict[str, NotificationJob] = {}
        self._order: dict[str, int] = {}
        self._subscriptions: dict[tuple[str, str], DeviceToken] = {}
        self._seq = count()

    async def create_notification(
        self,
        *,
        recipient: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
        type: str = "general",
        channel: str = "push",
        priority: str = "normal",
        recipient_kind: str = "user",
        queue_name: str | None = None,
    ) -> NotificationJob:
        row = build_notification(
            recipient=recipient,
            title=title,
            body=body,
            data=data,
            type=type,
            channel=channel,
            priority=priority,
            recipient_kind=recipient_kind,
            queue_name=queue_name,
            now=self._clock(),
        )
        self._notifications[row.id] = row
        self._order[row.id] = next(self._seq)
        return row

    async def get_notification(self, notification_id: str) -> NotificationJob | None:
        return self._notifications.get(notification_id)

    def _require(self, notification_id: str) -> NotificationJob:
        row = self._notifications.get(notification_id)
        if row is None:
            raise NotFoundError(f"notification {notification_id} not found")
        return row

    async def update_notification_status(
        self, notification_id: str, status: str, *, last_error: str | None = None
    ) -> NotificationJob:
        row = self._require(notification_id)
        if not check_transition(row.status, status):
            return row
        row.status = status
        if last_error is not None:
            row.last_error = last_error
        row.updated_at = self._clock()
        return row

    async def record_delivery_attempt(self, notification_id: str) -> int:
        row = self._require(notification_id)
        row.attempt_count += 1
        row.updated_at = self._clock()
        return row.attempt_count

    async def attach_message(self, notification_id: str, *, queue_name: str, message_id: str) -> None:
        row = self._require(notification_id)
        row.queue_name = queue_name
        row.message_id = message_id
        row.updated_at = self._clock()

    async def get_user_notifications(
        self, user_id: str, *, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> NotificationPage:
        page, limit = normalize_paging(page, limit)
        owned = [row for row in self._notifications.values() if row.recipient == user_id]
        unread_count = sum(1 for row in owned if not row.read)
        if unread_only:
            owned = [row for row in owned if not row.read]
        owned.sort(key=lambda row: (row.created_at, self._order[row.id]), reverse=True)
        start = (page - 1) * limit
        items = owned[start : start + limit]
        return NotificationPage(
            notifications=items,
            total_count=len(owned),
            page=page,
            limit=limit,
            has_more=start + len(items) < len(owned),
            unread_count=unread_count,
        )

    async def mark_as_read(self, notification_id: str, user_id: str) -> NotificationJob | None:
        row = self._notifications.get(notification_id)
        if row is None or row.recipient != user_id:
            return None
        if not row.read:
            now = self._clock()
            row.read = True
            row.read_at = now
            row.updated_at = now
        return row

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        row = self._notifications.get(notification_id)
        if row is None or row.recipient != user_id:
            return False
        del self._notifications[notification_id]
        self._order.pop(notification_id, None)
        return True

    async def create_subscription(self, user_id: str, token: str, device_type: str = "web") -> DeviceToken:
        key = (user_id, token)
        existing = self._subscriptions.get(key)
        if existing is not None:
            existing.active = True
            existing.device_type = device_type
            existing.deactivated_reason = None
            existing.updated_at = self._clock()
            return existing
        row = build_subscription(user_id=user_id, token=token, device_type=device_type, now=self._clock())
        self._subscriptions[key] = row
        return row

    async def delete_subscription(self, token: str) -> bool:
        changed = 0
        for row in self._subscriptions.values():
            if row.token == token and row.active:
                row.active = False
                row.deactivated_reason = "unsubscribed"
                row.updated_at = self._clock()
                changed += 1
        return changed > 0

    async def get_user_tokens(self, user_id: str) -> list[str]:
        return [row.token for row in await self.get_user_subscriptions(user_id)]

    async def get_user_subscriptions(self, user_id: str) -> list[DeviceToken]:
        rows = [row for row in self._subscriptions.values() if row.user_id == user_id and row.active]
        rows.sort(key=lambda row: row.created_at)
        return rows

    async def remove_invalid_tokens(
        self, tokens: Iterable[str], *, user_id: str | None = None, reason: str = "invalid"
    ) -> int:
        targets = set(tokens)
        changed = 0
        for row in self._subscriptions.values():
            if row.token not in targets or not row.active:
                continue
            if user_id is not None and row.user_id != user_id:
                continue
            row.active = False
            row.deactivated_reason = reason
            row.updated_at = self._clock()
            changed += 1
        return changed

    async def get_notification_stats(self, user_id: str) -> NotificationStats:
        owned = [row for row in self._notifications.values() if row.recipient == user_id]
        read = sum(1 for row in owned if row.read)
        return NotificationStats(
            total=len(owned),
            read=read,
            unread=len(owned) - read,
            by_type=dict(Counter(row.type for row in owned)),
            by_status=dict(Counter(row.status for row in owned)),
        )

    async def cleanup_old_notifications(self, days_old: int = 30) -> int:
        cutoff = self._clock() - timedelta(days=days_old)
        stale = [
            row.id
            for row in self._notifications.values()
            if row.created_at < cutoff and row.status not in RETAINED_STATUSES
        ]
        for notification_id in stale:
            del self._notifications[notification_id]
            self._order.pop(notification_id, None)
        return len(stale)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
