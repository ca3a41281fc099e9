from __future__ import annotations

import logging
from typing import Any

import httpx

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import InvalidRequestError, PermanentDeliveryError, TransientDeliveryError
from notifyhub.providers.push.base import DeliveryResult, PushMessage


logger = logging.getLogger(__name__)


class RelayGateway:
    """Hands email and chat jobs to downstream services over HTTP."""

    def __init__(self, settings: Settings | None = None, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._destinations = {
            "email": self._settings.email_relay_url,
            "chat": self._settings.chat_relay_url,
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per gateway for connection pooling.
        timeout_s = max(0.2, self._settings.ext_call_timeout_ms / 1000.0)
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def deliver(
        self,
        channel: str,
        recipient: str,
        message: PushMessage,
        *,
        notification_id: str | None = None,
    ) -> DeliveryResult:
        destination = self._destinations.get(channel)
        if destination is None:
            raise InvalidRequestError(f"no relay configured for channel {channel!r}")
        # noop destinations accept without network I/O for local and test runs.
        if destination.startswith("noop://"):
            logger.info("relay_noop channel=%s recipient=%s", channel, recipient)
            return DeliveryResult(success=True, message_id=f"noop:{notification_id}", delivered_count=1)

        payload: dict[str, Any] = {
            "notificationId": notification_id,
            "recipient": recipient,
            "title": message.title,
            "body": message.body,
            "data": message.data,
        }
        headers = {"Idempotency-Key": notification_id} if notification_id else {}
        try:
            response = await self._get_client().post(destination, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise TransientDeliveryError(f"{channel} relay unreachable: {exc}") from exc
        if response.status_code >= 500 or response.status_code == 429:
            raise TransientDeliveryError(f"{channel} relay returned {response.status_code}")
        if response.status_code >= 400:
            raise PermanentDeliveryError(f"{channel} relay rejected delivery ({response.status_code})")
        logger.info("relay_delivered channel=%s recipient=%s status=%s", channel, recipient, response.status_code)
        return DeliveryResult(
            success=True,
            message_id=response.headers.get("X-Message-Id") or notification_id,
            delivered_count=1,
        )

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
