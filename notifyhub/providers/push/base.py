from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from notifyhub.domain.models import DeviceToken
from notifyhub.persistence.stores.base import NotificationStore


@dataclass(frozen=True)
class PushMessage:
    title: str
    body: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenError:
    token: str
    code: str
    permanent: bool
    message: str = ""


@dataclass
class DeliveryResult:
    success: bool
    message_id: str | None = None
    delivered_count: int = 0
    failed_count: int = 0
    per_token_errors: list[TokenError] = field(default_factory=list)
    simulation: bool = False
    # Zero active tokens; callers decide whether that counts as a failure.
    no_targets: bool = False
    invalidated_tokens: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "messageId": self.message_id,
            "deliveredCount": self.delivered_count,
            "failedCount": self.failed_count,
            "perTokenErrors": [
                {"token": err.token, "code": err.code, "permanent": err.permanent} for err in self.per_token_errors
            ],
            "simulation": self.simulation,
            "noTargets": self.no_targets,
            "invalidatedTokens": list(self.invalidated_tokens),
        }


class PushGateway(Protocol):
    simulation: bool

    async def send_to_user(self, user_id: str, message: PushMessage) -> DeliveryResult:
        ...

    async def send_to_topic(self, topic: str, message: PushMessage) -> DeliveryResult:
        ...

    async def register_token(self, user_id: str, token: str, device_type: str = "web") -> DeviceToken:
        ...

    async def subscribe_to_topic(self, tokens: list[str], topic: str) -> DeliveryResult:
        ...

    async def unsubscribe_from_topic(self, tokens: list[str], topic: str) -> DeliveryResult:
        ...


class StoreBackedGateway:
    """Token bookkeeping shared by the live and simulated gateways."""

    simulation = False

    def __init__(self, store: NotificationStore) -> None:
        self._store = store

    async def register_token(self, user_id: str, token: str, device_type: str = "web") -> DeviceToken:
        # Upsert reactivates a previously deactivated (user, token) pair.
        return await self._store.create_subscription(user_id, token, device_type)

    async def _active_tokens(self, user_id: str) -> list[str]:
        return await self._store.get_user_tokens(user_id)


def fcm_data(data: dict[str, Any] | None) -> dict[str, str]:
    # FCM data payloads only carry string values.
    result: dict[str, str] = {}
    for key, value in (data or {}).items():
        if isinstance(value, str):
            result[str(key)] = value
        elif isinstance(value, (dict, list)):
            result[str(key)] = json.dumps(value, default=str)
        else:
            result[str(key)] = str(value)
    return result
