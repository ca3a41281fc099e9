from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol

from notifyhub.core.errors import InvalidRequestError
from notifyhub.domain.models import (
    DeviceToken,
    NotificationJob,
    new_notification_id,
    new_subscription_id,
    notification_to_dict,
)
from notifyhub.domain.state import NotificationStatus


# Retention sweeps skip jobs still in flight or parked for operator review.
RETAINED_STATUSES = frozenset({NotificationStatus.PENDING.value, NotificationStatus.DEAD_LETTERED.value})
MAX_PAGE_SIZE = 100


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NotificationPage:
    notifications: list[NotificationJob]
    total_count: int
    page: int
    limit: int
    has_more: bool
    unread_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "notifications": [notification_to_dict(row) for row in self.notifications],
            "totalCount": self.total_count,
            "page": self.page,
            "limit": self.limit,
            "hasMore": self.has_more,
            "unreadCount": self.unread_count,
        }


@dataclass
class NotificationStats:
    total: int = 0
    read: int = 0
    unread: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_status: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "read": self.read,
            "unread": self.unread,
            "byType": dict(self.by_type),
            "byStatus": dict(self.by_status),
        }


def normalize_paging(page: int, limit: int) -> tuple[int, int]:
    if page < 1:
        raise InvalidRequestError("page must be >= 1")
    if limit < 1:
        raise InvalidRequestError("limit must be >= 1")
    return page, min(limit, MAX_PAGE_SIZE)


def build_notification(
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
    now: datetime | None = None,
) -> NotificationJob:
    # Populate every column explicitly so unflushed rows are complete too.
    created = now or _utc_now()
    return NotificationJob(
        id=new_notification_id(),
        recipient=recipient,
        recipient_kind=recipient_kind,
        channel=channel,
        type=type or "general",
        priority=priority,
        title=title,
        body=body,
        data=dict(data or {}),
        status=NotificationStatus.PENDING.value,
        attempt_count=0,
        queue_name=queue_name,
        message_id=None,
        last_error=None,
        read=False,
        created_at=created,
        updated_at=created,
        read_at=None,
    )


def build_subscription(*, user_id: str, token: str, device_type: str, now: datetime | None = None) -> DeviceToken:
    created = now or _utc_now()
    return DeviceToken(
        id=new_subscription_id(),
        user_id=user_id,
        token=token,
        device_type=device_type,
        active=True,
        deactivated_reason=None,
        created_at=created,
        updated_at=created,
    )


class NotificationStore(Protocol):
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
        ...

    async def get_notification(self, notification_id: str) -> NotificationJob | None:
        ...

    async def update_notification_status(
        self, notification_id: str, status: str, *, last_error: str | None = None
    ) -> NotificationJob:
        ...

    async def record_delivery_attempt(self, notification_id: str) -> int:
        ...

    async def attach_message(self, notification_id: str, *, queue_name: str, message_id: str) -> None:
        ...

    async def get_user_notifications(
        self, user_id: str, *, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> NotificationPage:
        ...

    async def mark_as_read(self, notification_id: str, user_id: str) -> NotificationJob | None:
        ...

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        ...

    async def create_subscription(self, user_id: str, token: str, device_type: str = "web") -> DeviceToken:
        ...

    async def delete_subscription(self, token: str) -> bool:
        ...

    async def get_user_tokens(self, user_id: str) -> list[str]:
        ...

    async def get_user_subscriptions(self, user_id: str) -> list[DeviceToken]:
        ...

    async def remove_invalid_tokens(
        self, tokens: Iterable[str], *, user_id: str | None = None, reason: str = "invalid"
    ) -> int:
        ...

    async def get_notification_stats(self, user_id: str) -> NotificationStats:
        ...

    async def cleanup_old_notifications(self, days_old: int = 30) -> int:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...
