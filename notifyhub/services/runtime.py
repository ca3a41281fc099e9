from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import BrokerUnavailableError, NotifyHubError
from notifyhub.persistence.stores.base import NotificationStore
from notifyhub.persistence.stores.factory import build_store
from notifyhub.persistence.stores.sql import SqlNotificationStore
from notifyhub.providers.push.base import PushGateway
from notifyhub.providers.push.factory import build_push_gateway
from notifyhub.providers.relay import RelayGateway
from notifyhub.services.broker import BrokerClient, redis_factory_from_url
from notifyhub.services.consumer import ConsumerPool
from notifyhub.services.notifications import NotificationController
from notifyhub.services.queue_manager import QueueManager
from notifyhub.services.resilience import SleepFn


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Capabilities:
    # Probed once at startup; components read these flags instead of re-probing.
    broker: bool = False
    store: bool = False
    provider: str = "simulated"


class Runtime:
    """Owns every process-wide handle and their start/stop ordering."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        store: NotificationStore | None = None,
        gateway: PushGateway | None = None,
        relay: RelayGateway | None = None,
        redis_factory: Callable[[], Redis] | None = None,
        sleep: SleepFn | None = None,
        run_consumers: bool | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.queue_configs = self.settings.queue_configs()
        self.store = store or build_store(self.settings)
        self.broker = BrokerClient(
            redis_factory or redis_factory_from_url(self.settings.resolved_redis_url()),
            prefix=self.settings.broker_key_prefix,
        )
        self.queue_manager = QueueManager(self.broker, self.queue_configs)
        self.gateway = gateway or build_push_gateway(self.store, self.settings)
        self.relay = relay or RelayGateway(self.settings)
        self.controller = NotificationController(
            store=self.store,
            gateway=self.gateway,
            relay=self.relay,
            broker=self.broker,
            settings=self.settings,
            sleep=sleep,
        )
        self._run_consumers = self.settings.consumers_enabled if run_consumers is None else run_consumers
        self.consumers: ConsumerPool | None = None
        self.capabilities = Capabilities(provider=self._provider_mode())
        self.started = False

    def _provider_mode(self) -> str:
        return "simulated" if getattr(self.gateway, "simulation", False) else "live"

    async def _probe_store(self) -> bool:
        try:
            if self.settings.db_auto_create and isinstance(self.store, SqlNotificationStore):
                await self.store.create_schema()
            return bool(await self.store.ping())
        except (NotifyHubError, SQLAlchemyError, OSError) as exc:
            logger.error("store_unavailable error=%s", exc)
            return False

    async def _probe_broker(self) -> bool:
        try:
            await self.queue_manager.connect()
        except BrokerUnavailableError as exc:
            # Degrade to inline delivery instead of crash-looping.
            logger.warning("broker_unavailable mode=inline error=%s", exc)
            return False
        return True

    async def start(self) -> Capabilities:
        if self.started:
            return self.capabilities
        store_ok = await self._probe_store()
        broker_ok = await self._probe_broker()
        self.capabilities = Capabilities(broker=broker_ok, store=store_ok, provider=self._provider_mode())
        logger.info(
            "runtime_started broker=%s store=%s provider=%s delivery_mode=%s",
            broker_ok,
            store_ok,
            self.capabilities.provider,
            "queue" if self.controller.queue_enabled else "inline",
        )
        if broker_ok and self._run_consumers:
            self.consumers = self.build_consumers()
            self.consumers.start()
        self.started = True
        return self.capabilities

    def build_consumers(self) -> ConsumerPool:
        return ConsumerPool(
            self.broker,
            self.queue_configs,
            self.controller.process_queued_message,
            on_dead_letter=self.controller.handle_dead_letter,
            poll_interval_s=self.settings.consumer_poll_interval_ms / 1000.0,
            heartbeat_interval_s=float(self.settings.worker_heartbeat_interval_s),
        )

    async def stop(self) -> None:
        # Drain consumers first, then release the broker, then the store pool.
        if self.consumers is not None:
            await self.consumers.stop(self.settings.shutdown_grace_s)
            self.consumers = None
        await self.queue_manager.disconnect()
        await self.relay.aclose()
        await self.store.close()
        self.started = False
        logger.info("runtime_stopped")

    def pool_stats(self) -> dict[str, int | None] | None:
        # Only the SQL store has a connection pool to report.
        if isinstance(self.store, SqlNotificationStore):
            return self.store.pool_stats()
        return None

    async def health(self) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        broker_state = "disconnected"
        if self.capabilities.broker:
            queue_health = await self.queue_manager.health_check()
            broker_state = "connected" if queue_health["status"] == "healthy" else "disconnected"
        try:
            store_state = "connected" if await self.store.ping() else "disconnected"
        except (NotifyHubError, SQLAlchemyError, OSError, RedisError):
            store_state = "disconnected"

        heartbeat = None
        heartbeat_age_s = None
        if broker_state == "connected":
            try:
                last = await self.broker.get_worker_heartbeat()
            except (RedisError, OSError, NotifyHubError):
                last = None
            if last is not None:
                heartbeat = last.isoformat()
                heartbeat_age_s = max(0.0, (now - last).total_seconds())
        # Queued jobs only move while some consumer keeps its heartbeat fresh.
        worker_stale = self.controller.queue_enabled and (
            heartbeat_age_s is None or heartbeat_age_s > self.settings.worker_heartbeat_stale_after_s
        )

        if store_state != "connected":
            status = "unhealthy"
        elif broker_state != "connected" or worker_stale:
            # Inline delivery still works without the broker.
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "dependencies": {
                "broker": broker_state,
                "store": store_state,
                "provider": self.capabilities.provider,
            },
            "deliveryMode": "queue" if self.controller.queue_enabled else "inline",
            "workerHeartbeat": heartbeat,
            "workerHeartbeatAgeS": heartbeat_age_s,
            "workerStale": worker_stale,
            "timestamp": now.isoformat(),
        }
