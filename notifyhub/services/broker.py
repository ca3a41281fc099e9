from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from redis.asyncio import Redis
from redis.asyncio.client import Pipeline
from redis.exceptions import RedisError

from notifyhub.core.config import DEAD_LETTER_SUFFIX, QueueConfig
from notifyhub.core.errors import BrokerUnavailableError, UnknownQueueError


logger = logging.getLogger(__name__)


REQUEUED = "requeued"
DEAD_LETTERED = "dead_lettered"
IGNORED = "ignored"

_ORPHAN = "orphan"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LeasedMessage:
    id: str
    queue: str
    payload: dict[str, Any]
    deliveries: int
    failures: int
    lease_expires_at_ms: int
    # Identifies this holder; ack/nack with a stale token are ignored.
    lease_token: str = ""


@dataclass(frozen=True)
class NackResult:
    outcome: str
    queue: str | None = None
    failures: int = 0


@dataclass
class DeadLetter:
    id: str
    queue: str
    payload: dict[str, Any]
    failures: int
    deliveries: int
    last_error: str | None
    enqueued_at: str | None
    dead_lettered_at: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "payload": self.payload,
            "failures": self.failures,
            "deliveries": self.deliveries,
            "lastError": self.last_error,
            "enqueuedAt": self.enqueued_at,
            "deadLetteredAt": self.dead_lettered_at,
        }


def redis_factory_from_url(url: str) -> Callable[[], Redis]:
    def _factory() -> Redis:
        return Redis.from_url(url, encoding="utf-8", decode_responses=True)

    return _factory


class BrokerClient:
    """Lease-based queue over Redis lists, a lease sorted set and message hashes.

    Per queue:
      ``<prefix>:<queue>:ready``   list of message ids waiting to be leased
      ``<prefix>:<queue>:leased``  sorted set of leased ids scored by lease deadline (ms)
      ``<prefix>:<queue>.dlq``     list of dead-lettered ids
    Per message:
      ``<prefix>:msg:<id>``        hash with payload, queue, counters and lease token

    Every state change runs as one WATCH + MULTI/EXEC transaction, so a dropped
    connection never leaves an id outside both the ready list and the lease set.
    """

    def __init__(
        self,
        redis_factory: Callable[[], Redis],
        *,
        prefix: str = "notifyhub",
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._redis_factory = redis_factory
        self._prefix = prefix
        self._clock = clock or time.time
        self._redis: Redis | None = None
        self._queues: dict[str, QueueConfig] = {}

    @property
    def is_connected(self) -> bool:
        return self._redis is not None

    @property
    def queues(self) -> dict[str, QueueConfig]:
        return dict(self._queues)

    def _ready_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:ready"

    def _leased_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}:leased"

    def _dlq_key(self, queue: str) -> str:
        return f"{self._prefix}:{queue}{DEAD_LETTER_SUFFIX}"

    def _message_key(self, message_id: str) -> str:
        return f"{self._prefix}:msg:{message_id}"

    def _heartbeat_key(self) -> str:
        return f"{self._prefix}:worker:heartbeat"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _client(self) -> Redis:
        if self._redis is None:
            raise BrokerUnavailableError("broker is not connected")
        return self._redis

    def _config(self, queue: str) -> QueueConfig:
        config = self._queues.get(queue)
        if config is None:
            raise UnknownQueueError(f"queue {queue!r} is not declared")
        return config

    async def connect(self) -> None:
        if self._redis is not None:
            return
        client = self._redis_factory()
        try:
            await client.ping()
        except (RedisError, OSError) as exc:
            await _close_quietly(client)
            raise BrokerUnavailableError(f"broker unreachable: {exc}") from exc
        self._redis = client
        logger.info("broker_connected prefix=%s", self._prefix)

    async def disconnect(self) -> None:
        client, self._redis = self._redis, None
        if client is None:
            return
        await _close_quietly(client)
        logger.info("broker_disconnected prefix=%s", self._prefix)

    async def ping(self) -> bool:
        try:
            return bool(await self._client().ping())
        except (RedisError, OSError) as exc:
            raise BrokerUnavailableError(f"broker unreachable: {exc}") from exc

    async def initialize_queues(self, configs: dict[str, QueueConfig]) -> None:
        # Declaration is bookkeeping only; Redis creates keys lazily.
        await self.ping()
        for name, config in configs.items():
            self._queues[name] = config
            depth = await self._client().llen(self._ready_key(name))
            logger.info(
                "queue_declared queue=%s depth=%s visibility_timeout_ms=%s dead_letter_after=%s max_concurrency=%s",
                name,
                depth,
                config.visibility_timeout_ms,
                config.dead_letter_after,
                config.max_concurrency,
            )

    async def _transaction(self, func: Callable[[Pipeline], Awaitable[Any]], *watches: str) -> Any:
        # MULTI/EXEC with optimistic WATCH; redis-py re-runs ``func`` on WatchError.
        client = self._client()
        try:
            return await client.transaction(func, *watches, value_from_callable=True)
        except (RedisError, OSError) as exc:
            raise BrokerUnavailableError(f"broker transaction failed: {exc}") from exc

    async def enqueue(self, queue: str, payload: dict[str, Any]) -> str:
        self._client()
        self._config(queue)
        message_id = f"msg_{uuid4().hex}"

        async def _enqueue(pipe: Pipeline) -> None:
            pipe.multi()
            pipe.hset(
                self._message_key(message_id),
                mapping={
                    "queue": queue,
                    "payload": json.dumps(payload, default=str),
                    "deliveries": 0,
                    "failures": 0,
                    "enqueued_at": _utc_now().isoformat(),
                    "status": "ready",
                    "lease_token": "",
                },
            )
            pipe.lpush(self._ready_key(queue), message_id)

        await self._transaction(_enqueue)
        return message_id

    async def requeue_expired(self, queue: str) -> int:
        # Each expiry moves leased -> ready in one transaction, exactly once.
        ready_key = self._ready_key(queue)
        leased_key = self._leased_key(queue)
        try:
            expired = await self._client().zrangebyscore(leased_key, "-inf", self._now_ms())
        except (RedisError, OSError) as exc:
            raise BrokerUnavailableError(f"lease scan failed: {exc}") from exc
        requeued = 0
        for message_id in expired:
            key = self._message_key(message_id)

            async def _requeue(pipe: Pipeline, message_id: str = message_id, key: str = key) -> bool:
                score = await pipe.zscore(leased_key, message_id)
                if score is None or score > self._now_ms():
                    return False
                known = await pipe.hget(key, "queue")
                pipe.multi()
                pipe.zrem(leased_key, message_id)
                if known is None:
                    return False
                pipe.hset(key, mapping={"status": "ready", "lease_token": ""})
                pipe.lpush(ready_key, message_id)
                return True

            if await self._transaction(_requeue, leased_key, key):
                requeued += 1
                logger.warning("lease_expired queue=%s message_id=%s", queue, message_id)
        return requeued

    async def consume(self, queue: str) -> LeasedMessage | None:
        config = self._config(queue)
        ready_key = self._ready_key(queue)
        leased_key = self._leased_key(queue)
        await self.requeue_expired(queue)

        async def _lease(pipe: Pipeline) -> LeasedMessage | str | None:
            tail = await pipe.lrange(ready_key, -1, -1)
            if not tail:
                return None
            message_id = tail[0]
            key = self._message_key(message_id)
            await pipe.watch(key)
            raw = await pipe.hgetall(key)
            pipe.multi()
            pipe.rpop(ready_key)
            if not raw:
                # Acked or purged while still listed; drop the orphan id.
                return _ORPHAN
            deadline = self._now_ms() + config.visibility_timeout_ms
            lease_token = uuid4().hex
            pipe.zadd(leased_key, {message_id: deadline})
            pipe.hincrby(key, "deliveries", 1)
            pipe.hset(key, mapping={"status": "leased", "lease_token": lease_token})
            return LeasedMessage(
                id=message_id,
                queue=queue,
                payload=json.loads(raw.get("payload") or "{}"),
                deliveries=int(raw.get("deliveries") or 0) + 1,
                failures=int(raw.get("failures") or 0),
                lease_expires_at_ms=deadline,
                lease_token=lease_token,
            )

        while True:
            leased = await self._transaction(_lease, ready_key)
            if leased is not _ORPHAN:
                return leased

    async def ack(self, message_id: str, *, lease_token: str | None = None) -> bool:
        # Acking an unknown or already-acked id is a no-op; so is acking someone else's lease.
        key = self._message_key(message_id)

        async def _ack(pipe: Pipeline) -> bool:
            raw = await pipe.hgetall(key)
            if not raw:
                return False
            if lease_token is not None and raw.get("lease_token") != lease_token:
                return False
            queue = raw.get("queue", "")
            pipe.multi()
            pipe.zrem(self._leased_key(queue), message_id)
            pipe.lrem(self._ready_key(queue), 0, message_id)
            pipe.delete(key)
            return True

        acked = await self._transaction(_ack, key)
        if not acked and lease_token is not None:
            logger.info("stale_ack_ignored message_id=%s", message_id)
        return acked

    async def nack(self, message_id: str, error: str | None = None, *, lease_token: str | None = None) -> NackResult:
        key = self._message_key(message_id)

        async def _nack(pipe: Pipeline) -> NackResult:
            raw = await pipe.hgetall(key)
            if not raw:
                return NackResult(IGNORED)
            queue = raw.get("queue", "")
            # Expired, requeued or re-leased by another consumer: not ours to fail.
            if await pipe.zscore(self._leased_key(queue), message_id) is None:
                return NackResult(IGNORED, queue=queue)
            if lease_token is not None and raw.get("lease_token") != lease_token:
                return NackResult(IGNORED, queue=queue)
            failures = int(raw.get("failures") or 0) + 1
            fields: dict[str, Any] = {"failures": failures, "lease_token": ""}
            if error:
                fields["last_error"] = error[:2000]
            config = self._queues.get(queue) or QueueConfig()
            pipe.multi()
            pipe.zrem(self._leased_key(queue), message_id)
            if failures > config.dead_letter_after:
                fields.update(status="dead_lettered", dead_lettered_at=_utc_now().isoformat())
                pipe.hset(key, mapping=fields)
                pipe.lpush(self._dlq_key(queue), message_id)
                return NackResult(DEAD_LETTERED, queue=queue, failures=failures)
            fields["status"] = "ready"
            pipe.hset(key, mapping=fields)
            pipe.lpush(self._ready_key(queue), message_id)
            return NackResult(REQUEUED, queue=queue, failures=failures)

        result = await self._transaction(_nack, key)
        if result.outcome == DEAD_LETTERED:
            logger.warning(
                "message_dead_lettered queue=%s message_id=%s failures=%s", result.queue, message_id, result.failures
            )
        elif result.outcome == IGNORED:
            logger.info("stale_nack_ignored message_id=%s", message_id)
        return result

    async def size(self, queue: str) -> int:
        self._config(queue)
        return int(await self._client().llen(self._ready_key(queue)))

    async def leased_count(self, queue: str) -> int:
        return int(await self._client().zcard(self._leased_key(queue)))

    async def dead_letter_count(self, queue: str) -> int:
        return int(await self._client().llen(self._dlq_key(queue)))

    async def purge(self, queue: str) -> int:
        # Clears ready and leased messages; dead letters need an explicit discard.
        self._config(queue)
        ready_key = self._ready_key(queue)
        leased_key = self._leased_key(queue)

        async def _purge(pipe: Pipeline) -> int:
            ready = await pipe.lrange(ready_key, 0, -1)
            leased = await pipe.zrangebyscore(leased_key, "-inf", "+inf")
            ids = set(ready) | set(leased)
            pipe.multi()
            for message_id in ids:
                pipe.delete(self._message_key(message_id))
            pipe.delete(ready_key, leased_key)
            return len(ids)

        removed = await self._transaction(_purge, ready_key, leased_key)
        logger.warning("queue_purged queue=%s removed=%s", queue, removed)
        return removed

    async def stats(self) -> dict[str, dict[str, int]]:
        result: dict[str, dict[str, int]] = {}
        for queue in self._queues:
            result[queue] = {
                "ready": await self.size(queue),
                "leased": await self.leased_count(queue),
                "deadLettered": await self.dead_letter_count(queue),
            }
        return result

    async def dead_letters(self, queue: str, *, limit: int = 50) -> list[DeadLetter]:
        client = self._client()
        self._config(queue)
        ids = await client.lrange(self._dlq_key(queue), 0, max(limit, 1) - 1)
        letters: list[DeadLetter] = []
        for message_id in ids:
            raw = await client.hgetall(self._message_key(message_id))
            if not raw:
                continue
            letters.append(
                DeadLetter(
                    id=message_id,
                    queue=queue,
                    payload=json.loads(raw.get("payload") or "{}"),
                    failures=int(raw.get("failures") or 0),
                    deliveries=int(raw.get("deliveries") or 0),
                    last_error=raw.get("last_error"),
                    enqueued_at=raw.get("enqueued_at"),
                    dead_lettered_at=raw.get("dead_lettered_at"),
                )
            )
        return letters

    async def _select_dead_letters(self, pipe: Pipeline, queue: str, message_ids: list[str] | None) -> list[str]:
        present = await pipe.lrange(self._dlq_key(queue), 0, -1)
        if not message_ids:
            return list(dict.fromkeys(present))
        listed = set(present)
        return [message_id for message_id in dict.fromkeys(message_ids) if message_id in listed]

    async def replay_dead_letters(self, queue: str, message_ids: list[str] | None = None) -> int:
        # Replayed messages restart with a clean failure counter.
        self._config(queue)
        dlq_key = self._dlq_key(queue)

        async def _replay(pipe: Pipeline) -> int:
            targets = await self._select_dead_letters(pipe, queue, message_ids)
            pipe.multi()
            for message_id in targets:
                pipe.lrem(dlq_key, 0, message_id)
                pipe.hset(
                    self._message_key(message_id),
                    mapping={"failures": 0, "status": "ready", "dead_lettered_at": "", "lease_token": ""},
                )
                pipe.lpush(self._ready_key(queue), message_id)
            return len(targets)

        replayed = await self._transaction(_replay, dlq_key)
        logger.info("dead_letters_replayed queue=%s count=%s", queue, replayed)
        return replayed

    async def discard_dead_letters(self, queue: str, message_ids: list[str] | None = None) -> int:
        self._config(queue)
        dlq_key = self._dlq_key(queue)

        async def _discard(pipe: Pipeline) -> int:
            targets = await self._select_dead_letters(pipe, queue, message_ids)
            pipe.multi()
            for message_id in targets:
                pipe.lrem(dlq_key, 0, message_id)
                pipe.delete(self._message_key(message_id))
            return len(targets)

        discarded = await self._transaction(_discard, dlq_key)
        logger.warning("dead_letters_discarded queue=%s count=%s", queue, discarded)
        return discarded

    async def set_worker_heartbeat(self, *, timestamp: datetime | None = None) -> None:
        heartbeat_time = timestamp or _utc_now()
        await self._client().set(self._heartbeat_key(), heartbeat_time.isoformat())

    async def get_worker_heartbeat(self) -> datetime | None:
        raw_value = await self._client().get(self._heartbeat_key())
        if not raw_value:
            return None
        try:
            return datetime.fromisoformat(str(raw_value))
        except ValueError:
            return None


async def _close_quietly(client: Redis) -> None:
    try:
        await client.aclose()
    except (RedisError, OSError) as exc:
        logger.warning("broker_close_failed error=%s", exc)
