from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from redis.exceptions import RedisError

from notifyhub.core.config import QueueConfig
from notifyhub.core.errors import NotifyHubError, QueueManagerNotConnectedError
from notifyhub.services.broker import BrokerClient


logger = logging.getLogger(__name__)


StatsSink = Callable[[dict[str, Any]], None]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _test_payload(queue: str) -> dict[str, Any]:
    # Synthetic jobs are acked by consumers without reaching any provider.
    return {
        "synthetic": True,
        "kind": "test",
        "queue": queue,
        "title": "Test Notification",
        "body": f"Smoke test message for {queue}",
        "createdAt": _utc_now().isoformat(),
    }


class QueueManager:
    """Operational facade over the broker for the configured queue set."""

    def __init__(self, broker: BrokerClient, configs: dict[str, QueueConfig]) -> None:
        self._broker = broker
        self._configs = dict(configs)
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def queue_names(self) -> list[str]:
        return list(self._configs)

    def _require_connected(self) -> None:
        if not self._connected:
            raise QueueManagerNotConnectedError("Queue manager not connected")

    async def connect(self) -> None:
        await self._broker.connect()
        await self._broker.initialize_queues(self._configs)
        self._connected = True
        logger.info("queue_manager_connected queues=%s", len(self._configs))

    async def disconnect(self) -> None:
        self._connected = False
        await self._broker.disconnect()
        logger.info("queue_manager_disconnected")

    def config_snapshot(self) -> dict[str, dict[str, Any]]:
        return {name: config.model_dump() for name, config in self._configs.items()}

    async def add_test_messages(self) -> list[dict[str, Any]]:
        self._require_connected()
        results: list[dict[str, Any]] = []
        for queue in self._configs:
            try:
                message_id = await self._broker.enqueue(queue, _test_payload(queue))
            except NotifyHubError as exc:
                results.append({"queue": queue, "status": "failed", "error": str(exc)})
                logger.warning("test_message_failed queue=%s error=%s", queue, exc)
                continue
            results.append({"queue": queue, "status": "success", "messageId": message_id})
            logger.info("test_message_added queue=%s message_id=%s", queue, message_id)
        return results

    async def get_detailed_stats(self) -> dict[str, Any]:
        self._require_connected()
        overview = await self._broker.stats()
        queues: dict[str, Any] = {}
        for name, config in self._configs.items():
            counts = overview.get(name, {})
            queues[name] = {
                "size": counts.get("ready", 0),
                "leased": counts.get("leased", 0),
                "deadLettered": counts.get("deadLettered", 0),
                "config": config.model_dump(),
            }
        totals = {
            "ready": sum(item["size"] for item in queues.values()),
            "leased": sum(item["leased"] for item in queues.values()),
            "deadLettered": sum(item["deadLettered"] for item in queues.values()),
            "queues": len(queues),
        }
        return {"overview": totals, "queues": queues, "timestamp": _utc_now().isoformat()}

    async def purge_queue(self, queue: str) -> dict[str, Any]:
        self._require_connected()
        removed = await self._broker.purge(queue)
        return {"queue": queue, "status": "purged", "removed": removed}

    async def purge_all_queues(self) -> list[dict[str, Any]]:
        self._require_connected()
        results: list[dict[str, Any]] = []
        for queue in self._configs:
            try:
                results.append(await self.purge_queue(queue))
            except NotifyHubError as exc:
                results.append({"queue": queue, "status": "failed", "error": str(exc)})
        return results

    async def list_dead_letters(self, queue: str, *, limit: int = 50) -> list[dict[str, Any]]:
        self._require_connected()
        return [letter.to_dict() for letter in await self._broker.dead_letters(queue, limit=limit)]

    async def replay_dead_letters(self, queue: str, message_ids: list[str] | None = None) -> dict[str, Any]:
        self._require_connected()
        replayed = await self._broker.replay_dead_letters(queue, message_ids)
        return {"queue": queue, "replayed": replayed}

    async def discard_dead_letters(self, queue: str, message_ids: list[str] | None = None) -> dict[str, Any]:
        self._require_connected()
        discarded = await self._broker.discard_dead_letters(queue, message_ids)
        return {"queue": queue, "discarded": discarded}

    def start_monitoring(self, interval_ms: int = 10000, sink: StatsSink | None = None) -> Callable[[], None]:
        """Snapshot stats every ``interval_ms`` until the returned callable is invoked."""
        self._require_connected()
        interval_s = max(0.01, interval_ms / 1000.0)

        def _log_sink(stats: dict[str, Any]) -> None:
            logger.info("queue_monitor_report stats=%s", json.dumps(stats, sort_keys=True))

        emit = sink or _log_sink

        async def _loop() -> None:
            while True:
                try:
                    emit(await self.get_detailed_stats())
                except Exception:  # noqa: BLE001 - keep monitoring alive across transient errors
                    logger.exception("queue_monitor_failed")
                await asyncio.sleep(interval_s)

        task = asyncio.create_task(_loop(), name="queue-monitor")
        logger.info("queue_monitor_started interval_ms=%s", interval_ms)

        def stop() -> None:
            if not task.done():
                task.cancel()
                logger.info("queue_monitor_stopped")

        return stop

    async def health_check(self) -> dict[str, Any]:
        timestamp = _utc_now().isoformat()
        if not self._connected or not self._broker.is_connected:
            return {"status": "unhealthy", "reason": "Not connected to broker", "timestamp": timestamp}
        try:
            await self._broker.ping()
            stats = await self._broker.stats()
        except (NotifyHubError, RedisError, OSError) as exc:
            return {"status": "unhealthy", "reason": str(exc), "timestamp": timestamp}
        return {
            "status": "healthy",
            "connected": True,
            "queuesConfigured": len(self._configs),
            "stats": stats,
            "timestamp": timestamp,
        }
