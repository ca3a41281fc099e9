from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from notifyhub.core.config import QueueConfig
from notifyhub.core.errors import BrokerUnavailableError
from notifyhub.services.broker import DEAD_LETTERED, BrokerClient, LeasedMessage


logger = logging.getLogger(__name__)


Handler = Callable[[LeasedMessage], Awaitable[Any]]
DeadLetterHandler = Callable[[LeasedMessage, str | None], Awaitable[None]]


class QueueConsumer:
    """Runs ``max_concurrency`` lease/handle/ack loops against one queue."""

    def __init__(
        self,
        broker: BrokerClient,
        queue: str,
        config: QueueConfig,
        handler: Handler,
        *,
        on_dead_letter: DeadLetterHandler | None = None,
        poll_interval_s: float = 0.5,
    ) -> None:
        self._broker = broker
        self._queue = queue
        self._config = config
        self._handler = handler
        self._on_dead_letter = on_dead_letter
        self._poll_interval_s = max(0.01, poll_interval_s)
        self._stopping = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._in_flight = 0

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def handle(self, message: LeasedMessage) -> str:
        # Success acks; any handler error nacks and may dead-letter.
        self._in_flight += 1
        try:
            try:
                await self._handler(message)
            except Exception as exc:  # noqa: BLE001 - handler failures become nacks
                error = f"{type(exc).__name__}: {exc}"
                result = await self._broker.nack(message.id, error=error, lease_token=message.lease_token or None)
                logger.warning(
                    "message_nacked queue=%s message_id=%s outcome=%s failures=%s error=%s",
                    self._queue,
                    message.id,
                    result.outcome,
                    result.failures,
                    type(exc).__name__,
                )
                if result.outcome == DEAD_LETTERED and self._on_dead_letter is not None:
                    await self._on_dead_letter(message, error)
                return result.outcome
            await self._broker.ack(message.id, lease_token=message.lease_token or None)
            return "acked"
        finally:
            self._in_flight -= 1

    async def run_once(self) -> bool:
        message = await self._broker.consume(self._queue)
        if message is None:
            return False
        await self.handle(message)
        return True

    async def drain(self, *, max_messages: int | None = None) -> int:
        # Process until the queue is empty; used by one-shot tooling and tests.
        processed = 0
        while max_messages is None or processed < max_messages:
            if not await self.run_once():
                break
            processed += 1
        return processed

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self._poll_interval_s)
        except asyncio.TimeoutError:
            pass

    async def _worker_loop(self, index: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.run_once()
            except BrokerUnavailableError as exc:
                logger.warning("consumer_broker_unavailable queue=%s worker=%s error=%s", self._queue, index, exc)
                processed = False
            except Exception:  # noqa: BLE001 - keep consumer alive while surfacing failures in logs
                logger.exception("consumer_iteration_failed queue=%s worker=%s", self._queue, index)
                processed = False
            if not processed:
                await self._idle()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._worker_loop(index), name=f"consumer:{self._queue}:{index}")
            for index in range(self._config.max_concurrency)
        ]
        logger.info("consumer_started queue=%s workers=%s", self._queue, len(self._tasks))

    async def stop(self, grace_s: float) -> None:
        # Stop leasing, give in-flight handlers the grace period, then cancel.
        self._stopping.set()
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(self._tasks, timeout=max(0.0, grace_s))
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("consumer_cancelled queue=%s tasks=%s", self._queue, len(pending))
        self._tasks = []
        logger.info("consumer_stopped queue=%s", self._queue)


class ConsumerPool:
    """One consumer per configured queue plus a worker heartbeat."""

    def __init__(
        self,
        broker: BrokerClient,
        configs: dict[str, QueueConfig],
        handler: Handler,
        *,
        on_dead_letter: DeadLetterHandler | None = None,
        poll_interval_s: float = 0.5,
        heartbeat_interval_s: float = 10.0,
    ) -> None:
        self._broker = broker
        self._heartbeat_interval_s = max(0.1, heartbeat_interval_s)
        self._heartbeat_task: asyncio.Task | None = None
        self.consumers = {
            queue: QueueConsumer(
                broker,
                queue,
                config,
                handler,
                on_dead_letter=on_dead_letter,
                poll_interval_s=poll_interval_s,
            )
            for queue, config in configs.items()
        }

    @property
    def running(self) -> bool:
        return any(consumer.running for consumer in self.consumers.values())

    async def _heartbeat_loop(self) -> None:
        while True:
            try:
                await self._broker.set_worker_heartbeat()
            except Exception:  # noqa: BLE001 - heartbeat must not stop consumers
                logger.exception("worker_heartbeat_failed")
            await asyncio.sleep(self._heartbeat_interval_s)

    def start(self) -> None:
        for consumer in self.consumers.values():
            consumer.start()
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="consumer:heartbeat")

    async def stop(self, grace_s: float) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            await asyncio.gather(self._heartbeat_task, return_exceptions=True)
            self._heartbeat_task = None
        await asyncio.gather(*(consumer.stop(grace_s) for consumer in self.consumers.values()))

    async def drain(self) -> dict[str, int]:
        return {queue: await consumer.drain() for queue, consumer in self.consumers.items()}
