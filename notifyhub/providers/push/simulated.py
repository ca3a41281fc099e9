from __future__ import annotations

import logging
from uuid import uuid4

from notifyhub.providers.push.base import DeliveryResult, PushMessage, StoreBackedGateway


logger = logging.getLogger(__name__)


class SimulatedPushGateway(StoreBackedGateway):
    """Accepts every send without contacting a provider.

    Token lookups and registration still go through the store, so callers
    observe the same lifecycle as with a live provider.
    """

    simulation = True

    def __init__(self, store, *, record: bool = False) -> None:  # noqa: ANN001
        super().__init__(store)
        # Keep sent payloads when asked so tests can assert on them.
        self.sent: list[tuple[str, list[str], PushMessage]] | None = [] if record else None

    def _record(self, target: str, tokens: list[str], message: PushMessage) -> None:
        if self.sent is not None:
            self.sent.append((target, list(tokens), message))

    async def send_to_user(self, user_id: str, message: PushMessage) -> DeliveryResult:
        tokens = await self._active_tokens(user_id)
        if not tokens:
            return DeliveryResult(success=False, no_targets=True, simulation=True)
        self._record(user_id, tokens, message)
        logger.info("push_simulated user_id=%s tokens=%s title=%s", user_id, len(tokens), message.title)
        return DeliveryResult(
            success=True,
            message_id=f"sim_{uuid4().hex}",
            delivered_count=len(tokens),
            simulation=True,
        )

    async def send_to_topic(self, topic: str, message: PushMessage) -> DeliveryResult:
        self._record(f"topic:{topic}", [], message)
        logger.info("push_simulated topic=%s title=%s", topic, message.title)
        return DeliveryResult(success=True, message_id=f"sim_{uuid4().hex}", delivered_count=1, simulation=True)

    async def subscribe_to_topic(self, tokens: list[str], topic: str) -> DeliveryResult:
        logger.info("topic_subscribe_simulated topic=%s tokens=%s", topic, len(tokens))
        return DeliveryResult(success=True, delivered_count=len(tokens), simulation=True)

    async def unsubscribe_from_topic(self, tokens: list[str], topic: str) -> DeliveryResult:
        logger.info("topic_unsubscribe_simulated topic=%s tokens=%s", topic, len(tokens))
        return DeliveryResult(success=True, delivered_count=len(tokens), simulation=True)
