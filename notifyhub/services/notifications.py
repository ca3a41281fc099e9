from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from notifyhub.core.config import (
    CHAT_QUEUE,
    EMAIL_QUEUE,
    NOTIFICATION_QUEUE,
    PRIORITY_QUEUE,
    Settings,
    get_settings,
)
from notifyhub.core.errors import (
    BrokerUnavailableError,
    DeliveryFailedError,
    InvalidRequestError,
    InvalidStatusTransitionError,
    NoDeliveryTargetError,
    NotFoundError,
    NotifyHubError,
    is_permanent,
)
from notifyhub.domain.models import NotificationJob, notification_to_dict, subscription_to_dict
from notifyhub.domain.state import (
    TERMINAL_STATUSES,
    Channel,
    NotificationStatus,
    Priority,
    RecipientKind,
)
from notifyhub.persistence.stores.base import NotificationPage, NotificationStats, NotificationStore
from notifyhub.providers.push.base import DeliveryResult, PushGateway, PushMessage
from notifyhub.providers.relay import RelayGateway
from notifyhub.services.broker import BrokerClient, LeasedMessage
from notifyhub.services.resilience import Bulkhead, RetryPolicy, SleepFn, with_retry


logger = logging.getLogger(__name__)


QUEUE_FOR_CHANNEL = {
    Channel.PUSH.value: NOTIFICATION_QUEUE,
    Channel.EMAIL.value: EMAIL_QUEUE,
    Channel.CHAT.value: CHAT_QUEUE,
}


def queue_for(channel: str, priority: str) -> str:
    # High-priority push skips ahead on its own queue; other channels keep theirs.
    if priority == Priority.HIGH.value and channel == Channel.PUSH.value:
        return PRIORITY_QUEUE
    return QUEUE_FOR_CHANNEL[channel]


@dataclass
class SendOutcome:
    notification: NotificationJob
    result: DeliveryResult | None = None
    queued: bool = False

    @property
    def notification_id(self) -> str:
        return self.notification.id

    @property
    def status(self) -> str:
        return self.notification.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "notificationId": self.notification.id,
            "status": self.notification.status,
            "queued": self.queued,
            "queueName": self.notification.queue_name,
            "messageId": self.notification.message_id,
            "result": self.result.to_dict() if self.result is not None else None,
        }


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidRequestError(f"{field_name} is required")
    return value.strip()


def _require_choice(value: str, allowed: type, field_name: str) -> str:
    try:
        return allowed(value).value
    except ValueError as exc:
        choices = ", ".join(item.value for item in allowed)
        raise InvalidRequestError(f"{field_name} must be one of: {choices}") from exc


def _require_data(data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequestError("data must be an object")
    return data


class NotificationController:
    """Request-facing orchestration of validation, persistence and delivery."""

    def __init__(
        self,
        *,
        store: NotificationStore,
        gateway: PushGateway,
        relay: RelayGateway | None = None,
        broker: BrokerClient | None = None,
        settings: Settings | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._gateway = gateway
        self._relay = relay or RelayGateway(self._settings)
        self._broker = broker
        self._sleep = sleep or asyncio.sleep
        self._bulkhead = Bulkhead("inline-delivery", self._settings.inline_max_concurrency)
        self.send_policy = RetryPolicy(
            max_attempts=self._settings.send_max_attempts,
            base_delay_ms=self._settings.send_retry_base_ms,
            max_delay_ms=self._settings.retry_max_delay_ms,
        )
        self.bulk_policy = RetryPolicy(
            max_attempts=self._settings.bulk_max_attempts,
            base_delay_ms=self._settings.bulk_retry_base_ms,
            max_delay_ms=self._settings.retry_max_delay_ms,
        )
        self.consumer_policy = RetryPolicy(
            max_attempts=self._settings.consumer_max_attempts,
            base_delay_ms=self._settings.consumer_retry_base_ms,
            max_delay_ms=self._settings.retry_max_delay_ms,
        )

    @property
    def store(self) -> NotificationStore:
        return self._store

    @property
    def gateway(self) -> PushGateway:
        return self._gateway

    @property
    def inline_bulkhead(self) -> Bulkhead:
        return self._bulkhead

    @property
    def queue_enabled(self) -> bool:
        return (
            self._settings.delivery_mode.lower() == "queue"
            and self._broker is not None
            and self._broker.is_connected
        )

    # delivery

    async def _deliver_once(self, job: NotificationJob) -> DeliveryResult:
        message = PushMessage(title=job.title, body=job.body, data=dict(job.data or {}))
        if job.channel != Channel.PUSH.value:
            return await self._relay.deliver(job.channel, job.recipient, message, notification_id=job.id)
        if job.recipient_kind == RecipientKind.TOPIC.value:
            return await self._gateway.send_to_topic(job.recipient, message)
        result = await self._gateway.send_to_user(job.recipient, message)
        if result.no_targets:
            raise NoDeliveryTargetError(f"user {job.recipient} has no active delivery tokens")
        return result

    async def _attempt_delivery(
        self, job: NotificationJob, policy: RetryPolicy, *, bulkhead: Bulkhead | None = None
    ) -> DeliveryResult:
        async def _attempt() -> DeliveryResult:
            await self._store.record_delivery_attempt(job.id)
            if bulkhead is None:
                return await self._deliver_once(job)
            # Slot is held per attempt, never across retry backoff.
            async with bulkhead:
                return await self._deliver_once(job)

        return await with_retry(_attempt, policy=policy, sleep=self._sleep)

    async def _deliver_inline(self, job: NotificationJob, policy: RetryPolicy) -> SendOutcome:
        try:
            result = await self._attempt_delivery(job, policy, bulkhead=self._bulkhead)
        except Exception as exc:  # noqa: BLE001 - any failure ends the synchronous attempt as failed
            failed = await self._store.update_notification_status(
                job.id, NotificationStatus.FAILED.value, last_error=str(exc)[:2000]
            )
            logger.warning(
                "notification_failed notification_id=%s channel=%s attempts=%s error=%s",
                job.id,
                job.channel,
                failed.attempt_count,
                type(exc).__name__,
            )
            raise DeliveryFailedError(
                f"delivery failed for notification {job.id}: {exc}",
                notification_id=job.id,
                attempts=failed.attempt_count,
            ) from exc
        sent = await self._store.update_notification_status(job.id, NotificationStatus.SENT.value)
        logger.info(
            "notification_sent notification_id=%s channel=%s attempts=%s simulation=%s",
            job.id,
            job.channel,
            sent.attempt_count,
            result.simulation,
        )
        return SendOutcome(notification=sent, result=result)

    async def _dispatch(self, job: NotificationJob, policy: RetryPolicy) -> SendOutcome:
        if self.queue_enabled:
            queue_name = queue_for(job.channel, job.priority)
            try:
                message_id = await self._broker.enqueue(queue_name, {"notificationId": job.id, "kind": "delivery"})
            except BrokerUnavailableError as exc:
                logger.warning("enqueue_failed_delivering_inline notification_id=%s error=%s", job.id, exc)
            else:
                await self._store.attach_message(job.id, queue_name=queue_name, message_id=message_id)
                job = await self._store.get_notification(job.id) or job
                logger.info(
                    "notification_enqueued notification_id=%s queue=%s message_id=%s",
                    job.id,
                    queue_name,
                    message_id,
                )
                return SendOutcome(notification=job, queued=True)
        return await self._deliver_inline(job, policy)

    async def _send_to_user(
        self,
        user_id: str,
        title: str,
        body: str,
        data: dict[str, Any],
        type: str,
        channel: str,
        priority: str,
        policy: RetryPolicy,
    ) -> SendOutcome:
        if channel == Channel.PUSH.value and not await self._store.get_user_tokens(user_id):
            raise NoDeliveryTargetError(f"no active delivery tokens for user {user_id}")
        job = await self._store.create_notification(
            recipient=user_id,
            title=title,
            body=body,
            data=data,
            type=type,
            channel=channel,
            priority=priority,
        )
        return await self._dispatch(job, policy)

    async def send_notification(
        self,
        user_id: Any,
        title: Any,
        body: Any,
        data: Any = None,
        type: str | None = None,
        *,
        channel: str = Channel.PUSH.value,
        priority: str = Priority.NORMAL.value,
    ) -> SendOutcome:
        user_id = _require_text(user_id, "userId")
        title = _require_text(title, "title")
        body = _require_text(body, "body")
        payload = _require_data(data)
        channel = _require_choice(channel, Channel, "channel")
        priority = _require_choice(priority, Priority, "priority")
        return await self._send_to_user(
            user_id, title, body, payload, type or "general", channel, priority, self.send_policy
        )

    async def send_bulk_notifications(
        self,
        user_ids: Any,
        title: Any,
        body: Any,
        data: Any = None,
        type: str | None = None,
        *,
        channel: str = Channel.PUSH.value,
        priority: str = Priority.NORMAL.value,
    ) -> dict[str, list[dict[str, Any]]]:
        if not isinstance(user_ids, list) or not user_ids:
            raise InvalidRequestError("userIds must be a non-empty array")
        if len(user_ids) > self._settings.bulk_max_recipients:
            raise InvalidRequestError(f"userIds accepts at most {self._settings.bulk_max_recipients} recipients")
        title = _require_text(title, "title")
        body = _require_text(body, "body")
        payload = _require_data(data)
        channel = _require_choice(channel, Channel, "channel")
        priority = _require_choice(priority, Priority, "priority")
        fan_out = asyncio.Semaphore(max(1, self._settings.bulk_max_concurrency))

        async def _one(raw_user_id: Any) -> tuple[dict[str, Any] | None, dict[str, Any] | None]:
            async with fan_out:
                try:
                    user_id = _require_text(raw_user_id, "userId")
                    outcome = await self._send_to_user(
                        user_id, title, body, payload, type or "general", channel, priority, self.bulk_policy
                    )
                except NotifyHubError as exc:
                    return None, {"userId": raw_user_id, "error": str(exc), "code": exc.__class__.__name__}
                except Exception as exc:  # noqa: BLE001 - one recipient's failure never aborts the batch
                    logger.exception("bulk_recipient_failed user_id=%s", raw_user_id)
                    return None, {"userId": raw_user_id, "error": str(exc), "code": exc.__class__.__name__}
            return {"userId": user_id, **outcome.to_dict()}, None

        pairs = await asyncio.gather(*(_one(user_id) for user_id in user_ids))
        results = [result for result, _ in pairs if result is not None]
        errors = [error for _, error in pairs if error is not None]
        logger.info("bulk_send_completed recipients=%s sent=%s errors=%s", len(user_ids), len(results), len(errors))
        return {"results": results, "errors": errors}

    async def send_topic_notification(
        self,
        topic: Any,
        title: Any,
        body: Any,
        data: Any = None,
        type: str | None = None,
        *,
        priority: str = Priority.NORMAL.value,
    ) -> SendOutcome:
        topic = _require_text(topic, "topic")
        title = _require_text(title, "title")
        body = _require_text(body, "body")
        payload = _require_data(data)
        priority = _require_choice(priority, Priority, "priority")
        job = await self._store.create_notification(
            recipient=topic,
            recipient_kind=RecipientKind.TOPIC.value,
            title=title,
            body=body,
            data=payload,
            type=type or "broadcast",
            priority=priority,
        )
        return await self._dispatch(job, self.send_policy)

    # queue consumer hooks

    async def process_queued_message(self, message: LeasedMessage) -> str:
        """Deliver one leased job.

        Returns the outcome for messages that should be acked. Transient
        failures propagate so the consumer nacks and the broker redelivers.
        """
        payload = message.payload
        if payload.get("synthetic"):
            logger.info("synthetic_message_acked queue=%s message_id=%s", message.queue, message.id)
            return "synthetic"
        notification_id = payload.get("notificationId")
        job = await self._store.get_notification(notification_id) if notification_id else None
        if job is None:
            logger.warning("queued_notification_missing queue=%s message_id=%s", message.queue, message.id)
            return "missing"
        if job.status in {status.value for status in TERMINAL_STATUSES}:
            return "skipped"
        try:
            result = await self._attempt_delivery(job, self.consumer_policy)
        except Exception as exc:  # noqa: BLE001 - permanent failures are acked, the rest nacked
            if not is_permanent(exc):
                raise
            await self._store.update_notification_status(
                job.id, NotificationStatus.FAILED.value, last_error=str(exc)[:2000]
            )
            logger.warning(
                "queued_notification_failed notification_id=%s queue=%s error=%s",
                job.id,
                message.queue,
                type(exc).__name__,
            )
            return "failed"
        await self._store.update_notification_status(job.id, NotificationStatus.SENT.value)
        logger.info(
            "queued_notification_sent notification_id=%s queue=%s deliveries=%s delivered=%s",
            job.id,
            message.queue,
            message.deliveries,
            result.delivered_count,
        )
        return "sent"

    async def handle_dead_letter(self, message: LeasedMessage, error: str | None = None) -> None:
        notification_id = message.payload.get("notificationId")
        if not notification_id:
            return
        try:
            await self._store.update_notification_status(
                notification_id, NotificationStatus.DEAD_LETTERED.value, last_error=error
            )
        except (NotFoundError, InvalidStatusTransitionError) as exc:
            logger.warning("dead_letter_status_skipped notification_id=%s reason=%s", notification_id, exc)
            return
        logger.warning("notification_dead_lettered notification_id=%s queue=%s", notification_id, message.queue)

    # subscriptions and inbox

    async def subscribe(self, user_id: Any, token: Any, device_type: Any = None) -> dict[str, Any]:
        user_id = _require_text(user_id, "userId")
        token = _require_text(token, "token")
        device_type = device_type.strip() if isinstance(device_type, str) and device_type.strip() else "web"
        subscription = await self._gateway.register_token(user_id, token, device_type)
        logger.info("token_registered user_id=%s device_type=%s", user_id, device_type)
        return subscription_to_dict(subscription)

    async def unsubscribe(self, token: Any) -> None:
        token = _require_text(token, "token")
        if not await self._store.delete_subscription(token):
            raise NotFoundError("subscription not found")

    async def _topic_membership(self, user_id: Any, topic: Any, *, join: bool) -> DeliveryResult:
        user_id = _require_text(user_id, "userId")
        topic = _require_text(topic, "topic")
        tokens = await self._store.get_user_tokens(user_id)
        if not tokens:
            raise NoDeliveryTargetError(f"no active delivery tokens for user {user_id}")
        if join:
            result = await self._gateway.subscribe_to_topic(tokens, topic)
        else:
            result = await self._gateway.unsubscribe_from_topic(tokens, topic)
        logger.info(
            "topic_membership_changed user_id=%s topic=%s join=%s tokens=%s updated=%s",
            user_id,
            topic,
            join,
            len(tokens),
            result.delivered_count,
        )
        return result

    async def subscribe_to_topic(self, user_id: Any, topic: Any) -> DeliveryResult:
        return await self._topic_membership(user_id, topic, join=True)

    async def unsubscribe_from_topic(self, user_id: Any, topic: Any) -> DeliveryResult:
        return await self._topic_membership(user_id, topic, join=False)

    async def get_user_notifications(
        self, user_id: Any, *, page: int = 1, limit: int = 20, unread_only: bool = False
    ) -> NotificationPage:
        user_id = _require_text(user_id, "userId")
        return await self._store.get_user_notifications(user_id, page=page, limit=limit, unread_only=unread_only)

    async def mark_as_read(self, notification_id: Any, user_id: Any) -> dict[str, Any]:
        notification_id = _require_text(notification_id, "notificationId")
        user_id = _require_text(user_id, "userId")
        row = await self._store.mark_as_read(notification_id, user_id)
        if row is None:
            raise NotFoundError("notification not found")
        return notification_to_dict(row)

    async def delete_notification(self, notification_id: Any, user_id: Any) -> None:
        notification_id = _require_text(notification_id, "notificationId")
        user_id = _require_text(user_id, "userId")
        if not await self._store.delete_notification(notification_id, user_id):
            raise NotFoundError("notification not found")

    async def get_notification_stats(self, user_id: Any) -> NotificationStats:
        user_id = _require_text(user_id, "userId")
        return await self._store.get_notification_stats(user_id)

    async def cleanup_old_notifications(self, days_old: int | None = None) -> int:
        days = self._settings.notification_retention_days if days_old is None else days_old
        if days < 0:
            raise InvalidRequestError("days must be >= 0")
        deleted = await self._store.cleanup_old_notifications(days)
        logger.info("notifications_cleaned days_old=%s deleted=%s", days, deleted)
        return deleted
