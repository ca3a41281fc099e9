from __future__ import annotations

from datetime import timedelta
from typing import Any, Iterable

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from notifyhub.core.errors import NotFoundError, StoreUnavailableError
from notifyhub.domain.models import DeviceToken, NotificationJob, new_subscription_id
from notifyhub.domain.state import check_transition
from notifyhub.persistence.db import Database
from notifyhub.persistence.stores.base import (
    RETAINED_STATUSES,
    NotificationPage,
    NotificationStats,
    _utc_now,
    build_notification,
    normalize_paging,
)


class SqlNotificationStore:
    """Durable store on SQLAlchemy async sessions (Postgres in production)."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def _insert(self):
        # ON CONFLICT support lives in the dialect-specific insert constructs.
        if self._db.engine.dialect.name == "sqlite":
            return sqlite.insert
        return postgresql.insert

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
        )
        async with self._db.session() as session:
            session.add(row)
            await session.commit()
        return row

    async def get_notification(self, notification_id: str) -> NotificationJob | None:
        async with self._db.session() as session:
            return await session.get(NotificationJob, notification_id)

    async def _locked(self, session: AsyncSession, notification_id: str) -> NotificationJob:
        result = await session.execute(
            select(NotificationJob).where(NotificationJob.id == notification_id).with_for_update()
        )
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFoundError(f"notification {notification_id} not found")
        return row

    async def update_notification_status(
        self, notification_id: str, status: str, *, last_error: str | None = None
    ) -> NotificationJob:
        async with self._db.session() as session:
            row = await self._locked(session, notification_id)
            if not check_transition(row.status, status):
                return row
            row.status = status
            if last_error is not None:
                row.last_error = last_error
            row.updated_at = _utc_now()
            await session.commit()
            return row

    async def record_delivery_attempt(self, notification_id: str) -> int:
        # Increment in SQL so concurrent attempts never lose a count.
        async with self._db.session() as session:
            result = await session.execute(
                update(NotificationJob)
                .where(NotificationJob.id == notification_id)
                .values(attempt_count=NotificationJob.attempt_count + 1, updated_at=_utc_now())
            )
            if not result.rowcount:
                await session.rollback()
                raise NotFoundError(f"notification {notification_id} not found")
            attempts = (
                await session.execute(
                    select(NotificationJob.attempt_count).where(NotificationJob.id == notification_id)
                )
            ).scalar_one()
            await session.commit()
            return int(attempts)

    async def attach_message(self, notification_id: str, *, queue_name: str, message_id: str) -> None:
        async with self._db.session() as session:
            result = await session.execute(
                update(NotificationJob)
                .where(NotificationJob.id == notification_id)
                .values(queue_name=queue_name, message_id=message_id, updated_at=_utc_now())
            )
            if not result.rowcount:
                await session.rollback()
                raise NotFoundError(f"notification {notification_id} not found")
            await session.commit()

    async def get_user_notifications(
        self, user_id: str, *, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> NotificationPage:
        page, limit = normalize_paging(page, limit)
        filters = [NotificationJob.recipient == user_id]
        if unread_only:
            filters.append(NotificationJob.read.is_(False))
        async with self._db.session() as session:
            total = (
                await session.execute(select(func.count()).select_from(NotificationJob).where(*filters))
            ).scalar_one()
            unread = (
                await session.execute(
                    select(func.count())
                    .select_from(NotificationJob)
                    .where(NotificationJob.recipient == user_id, NotificationJob.read.is_(False))
                )
            ).scalar_one()
            rows = (
                await session.execute(
                    select(NotificationJob)
                    .where(*filters)
                    .order_by(NotificationJob.created_at.desc(), NotificationJob.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()
        offset = (page - 1) * limit
        return NotificationPage(
            notifications=list(rows),
            total_count=int(total),
            page=page,
            limit=limit,
            has_more=offset + len(rows) < int(total),
            unread_count=int(unread),
        )

    async def mark_as_read(self, notification_id: str, user_id: str) -> NotificationJob | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(NotificationJob)
                .where(NotificationJob.id == notification_id, NotificationJob.recipient == user_id)
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None
            if not row.read:
                now = _utc_now()
                row.read = True
                row.read_at = now
                row.updated_at = now
                await session.commit()
            return row

    async def delete_notification(self, notification_id: str, user_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                delete(NotificationJob).where(
                    NotificationJob.id == notification_id,
                    NotificationJob.recipient == user_id,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    async def create_subscription(self, user_id: str, token: str, device_type: str = "web") -> DeviceToken:
        # Database-level upsert keeps (user_id, token) unique under concurrent subscribes.
        now = _utc_now()
        insert = self._insert()
        stmt = insert(DeviceToken).values(
            id=new_subscription_id(),
            user_id=user_id,
            token=token,
            device_type=device_type,
            active=True,
            deactivated_reason=None,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[DeviceToken.user_id, DeviceToken.token],
            set_={
                "active": True,
                "device_type": stmt.excluded.device_type,
                "deactivated_reason": None,
                "updated_at": now,
            },
        )
        async with self._db.session() as session:
            await session.execute(stmt)
            await session.commit()
            row = (
                await session.execute(
                    select(DeviceToken).where(DeviceToken.user_id == user_id, DeviceToken.token == token)
                )
            ).scalar_one()
            return row

    async def delete_subscription(self, token: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(
                update(DeviceToken)
                .where(DeviceToken.token == token, DeviceToken.active.is_(True))
                .values(active=False, deactivated_reason="unsubscribed", updated_at=_utc_now())
            )
            await session.commit()
            return bool(result.rowcount)

    async def get_user_tokens(self, user_id: str) -> list[str]:
        return [row.token for row in await self.get_user_subscriptions(user_id)]

    async def get_user_subscriptions(self, user_id: str) -> list[DeviceToken]:
        async with self._db.session() as session:
            rows = (
                await session.execute(
                    select(DeviceToken)
                    .where(DeviceToken.user_id == user_id, DeviceToken.active.is_(True))
                    .order_by(DeviceToken.created_at.asc())
                )
            ).scalars().all()
        return list(rows)

    async def remove_invalid_tokens(
        self, tokens: Iterable[str], *, user_id: str | None = None, reason: str = "invalid"
    ) -> int:
        targets = sorted(set(tokens))
        if not targets:
            return 0
        filters = [DeviceToken.token.in_(targets), DeviceToken.active.is_(True)]
        if user_id is not None:
            filters.append(DeviceToken.user_id == user_id)
        async with self._db.session() as session:
            result = await session.execute(
                update(DeviceToken)
                .where(*filters)
                .values(active=False, deactivated_reason=reason, updated_at=_utc_now())
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def get_notification_stats(self, user_id: str) -> NotificationStats:
        owner = NotificationJob.recipient == user_id
        async with self._db.session() as session:
            by_type_rows = (
                await session.execute(
                    select(NotificationJob.type, func.count()).where(owner).group_by(NotificationJob.type)
                )
            ).all()
            by_status_rows = (
                await session.execute(
                    select(NotificationJob.status, func.count()).where(owner).group_by(NotificationJob.status)
                )
            ).all()
            read = (
                await session.execute(
                    select(func.count())
                    .select_from(NotificationJob)
                    .where(owner, NotificationJob.read.is_(True))
                )
            ).scalar_one()
        by_type = {str(key): int(value) for key, value in by_type_rows}
        total = sum(by_type.values())
        return NotificationStats(
            total=total,
            read=int(read),
            unread=total - int(read),
            by_type=by_type,
            by_status={str(key): int(value) for key, value in by_status_rows},
        )

    async def cleanup_old_notifications(self, days_old: int = 30) -> int:
        cutoff = _utc_now() - timedelta(days=days_old)
        async with self._db.session() as session:
            result = await session.execute(
                delete(NotificationJob).where(
                    NotificationJob.created_at < cutoff,
                    NotificationJob.status.not_in(sorted(RETAINED_STATUSES)),
                )
            )
            await session.commit()
            return int(result.rowcount or 0)

    async def create_schema(self) -> None:
        await self._db.create_schema()

    async def ping(self) -> bool:
        try:
            return await self._db.ping()
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailableError(f"database unreachable: {exc}") from exc

    async def close(self) -> None:
        await self._db.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        return self._db.pool_stats()
