from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_notification_id() -> str:
    return f"notif_{uuid4().hex}"


def new_subscription_id() -> str:
    return f"sub_{uuid4().hex}"


class Base(DeclarativeBase):
    pass


class NotificationJob(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient", "created_at"),
        Index("ix_notifications_recipient_read", "recipient", "read"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_notification_id)
    # A user id for direct sends or a topic name for broadcasts.
    recipient: Mapped[str] = mapped_column(String, nullable=False)
    recipient_kind: Mapped[str] = mapped_column(String, default="user", nullable=False)
    channel: Mapped[str] = mapped_column(String, default="push", nullable=False)
    type: Mapped[str] = mapped_column(String, default="general", nullable=False)
    priority: Mapped[str] = mapped_column(String, default="normal", nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    # Forwarded verbatim to the provider.
    data: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False, index=True)
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    queue_name: Mapped[str | None] = mapped_column(String, nullable=True)
    message_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Read state is user acknowledgement and independent of delivery status.
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DeviceToken(Base):
    __tablename__ = "device_tokens"
    __table_args__ = (
        # Enforced by the database so concurrent subscribes cannot duplicate a pair.
        UniqueConstraint("user_id", "token", name="uq_device_tokens_user_token"),
        Index("ix_device_tokens_token", "token"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_subscription_id)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    token: Mapped[str] = mapped_column(String, nullable=False)
    device_type: Mapped[str] = mapped_column(String, default="web", nullable=False)
    # Invalid or unsubscribed tokens are deactivated, never deleted.
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deactivated_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )


def notification_to_dict(row: NotificationJob) -> dict[str, Any]:
    # Serialize with camelCase keys to match the HTTP contract.
    return {
        "id": row.id,
        "userId": row.recipient,
        "recipientKind": row.recipient_kind,
        "channel": row.channel,
        "type": row.type,
        "priority": row.priority,
        "title": row.title,
        "body": row.body,
        "data": dict(row.data or {}),
        "status": row.status,
        "attemptCount": row.attempt_count,
        "queueName": row.queue_name,
        "messageId": row.message_id,
        "lastError": row.last_error,
        "read": row.read,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "updatedAt": row.updated_at.isoformat() if row.updated_at else None,
        "readAt": row.read_at.isoformat() if row.read_at else None,
    }


def subscription_to_dict(row: DeviceToken) -> dict[str, Any]:
    return {
        "id": row.id,
        "userId": row.user_id,
        "token": row.token,
        "deviceType": row.device_type,
        "active": row.active,
        "createdAt": row.created_at.isoformat() if row.created_at else None,
    }
