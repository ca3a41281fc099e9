from __future__ import annotations

import asyncio
import logging
from typing import Any

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import (
    InvalidTokenError,
    PermanentDeliveryError,
    ProviderConfigError,
    TransientDeliveryError,
)
from notifyhub.persistence.stores.base import NotificationStore
from notifyhub.providers.push.base import (
    DeliveryResult,
    PushMessage,
    StoreBackedGateway,
    TokenError,
    fcm_data,
)


logger = logging.getLogger(__name__)


# FCM caps multicast requests at 500 tokens.
MULTICAST_BATCH_SIZE = 500

_PERMANENT_TOKEN_CODES = frozenset(
    {
        "registration-token-not-registered",
        "invalid-registration-token",
        "invalid-argument",
        "mismatched-credential",
        "sender-id-mismatch",
        "unregistered",
        "not-found",
    }
)
_PERMANENT_TOKEN_ERRORS = frozenset({"UnregisteredError", "SenderIdMismatchError"})
_PERMANENT_REQUEST_ERRORS = frozenset(
    {"InvalidArgumentError", "PermissionDeniedError", "UnauthenticatedError", "ThirdPartyAuthError"}
)


def _normalize_code(raw: Any) -> str:
    # "messaging/registration-token-not-registered" and "NOT_FOUND" both normalize.
    code = str(raw or "").strip().lower()
    if "/" in code:
        code = code.rsplit("/", 1)[-1]
    return code.replace("_", "-")


def classify_token_error(token: str, exc: BaseException) -> TokenError:
    name = type(exc).__name__
    code = _normalize_code(getattr(exc, "code", None)) or name
    permanent = name in _PERMANENT_TOKEN_ERRORS or code in _PERMANENT_TOKEN_CODES
    return TokenError(token=token, code=code, permanent=permanent, message=str(exc)[:300])


def _wrap_request_error(exc: Exception, context: str) -> Exception:
    # Whole-request failures: auth/argument problems are permanent, the rest transient.
    if type(exc).__name__ in _PERMANENT_REQUEST_ERRORS:
        return PermanentDeliveryError(f"{context}: {exc}")
    return TransientDeliveryError(f"{context}: {exc}")


class FirebasePushGateway(StoreBackedGateway):
    simulation = False

    def __init__(
        self,
        store: NotificationStore,
        *,
        settings: Settings | None = None,
        messaging: Any | None = None,
        app: Any | None = None,
        batch_size: int = MULTICAST_BATCH_SIZE,
    ) -> None:
        super().__init__(store)
        self._settings = settings or get_settings()
        # Injected messaging modules skip SDK initialization entirely.
        self._messaging = messaging
        self._app = app
        self._batch_size = max(1, min(batch_size, MULTICAST_BATCH_SIZE))

    def _credentials_payload(self) -> dict[str, str]:
        settings = self._settings
        missing = []
        if not settings.fcm_project_id:
            missing.append("FCM_PROJECT_ID")
        if not settings.fcm_client_email:
            missing.append("FCM_CLIENT_EMAIL")
        if not settings.fcm_private_key:
            missing.append("FCM_PRIVATE_KEY")
        if missing:
            raise ProviderConfigError(f"Firebase config missing: set {', '.join(missing)}")
        return {
            "type": "service_account",
            "project_id": settings.fcm_project_id,
            "client_email": settings.fcm_client_email,
            # Keys pasted into env files usually carry escaped newlines.
            "private_key": settings.fcm_private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }

    def initialize(self) -> Any:
        if self._messaging is not None:
            return self._messaging
        try:
            import firebase_admin
            from firebase_admin import credentials, messaging
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("firebase-admin SDK not available. Install firebase-admin.") from exc

        try:
            if self._settings.fcm_credentials_file:
                cred = credentials.Certificate(self._settings.fcm_credentials_file)
            else:
                cred = credentials.Certificate(self._credentials_payload())
            name = self._settings.fcm_app_name
            try:
                self._app = firebase_admin.get_app(name)
            except ValueError:
                options = {"projectId": self._settings.fcm_project_id} if self._settings.fcm_project_id else None
                self._app = firebase_admin.initialize_app(cred, options, name=name)
        except ProviderConfigError:
            raise
        except (ValueError, OSError) as exc:
            raise ProviderConfigError(f"Firebase credentials rejected: {exc}") from exc
        self._messaging = messaging
        logger.info("fcm_initialized app=%s", self._settings.fcm_app_name)
        return messaging

    def _notification(self, messaging: Any, message: PushMessage) -> Any:
        return messaging.Notification(title=message.title, body=message.body)

    async def send_to_user(self, user_id: str, message: PushMessage) -> DeliveryResult:
        tokens = await self._active_tokens(user_id)
        if not tokens:
            return DeliveryResult(success=False, no_targets=True)
        messaging = self.initialize()

        delivered = 0
        errors: list[TokenError] = []
        message_ids: list[str] = []
        request_error: Exception | None = None
        for start in range(0, len(tokens), self._batch_size):
            batch = tokens[start : start + self._batch_size]
            multicast = messaging.MulticastMessage(
                tokens=batch,
                notification=self._notification(messaging, message),
                data=fcm_data(message.data),
            )
            try:
                # The SDK is blocking; keep the event loop free while it runs.
                response = await asyncio.to_thread(messaging.send_each_for_multicast, multicast, app=self._app)
            except Exception as exc:  # noqa: BLE001 - mapped onto the delivery error taxonomy
                request_error = _wrap_request_error(exc, "FCM multicast failed")
                request_error.__cause__ = exc
                logger.warning(
                    "fcm_batch_failed user_id=%s batch_start=%s size=%s error=%s",
                    user_id,
                    start,
                    len(batch),
                    type(exc).__name__,
                )
                errors.extend(
                    TokenError(token=token, code="request-failed", permanent=False, message=str(exc)[:300])
                    for token in batch
                )
                if isinstance(request_error, PermanentDeliveryError):
                    break
                continue
            for token, item in zip(batch, response.responses):
                if item.success:
                    delivered += 1
                    if item.message_id:
                        message_ids.append(item.message_id)
                else:
                    errors.append(classify_token_error(token, item.exception))

        # Deactivate before any raise; retries must not see known-bad tokens.
        invalid = [err.token for err in errors if err.permanent]
        if invalid:
            removed = await self._store.remove_invalid_tokens(invalid, user_id=user_id, reason="provider_invalid")
            logger.warning("fcm_tokens_deactivated user_id=%s count=%s", user_id, removed)

        result = DeliveryResult(
            success=delivered > 0,
            message_id=message_ids[0] if message_ids else None,
            delivered_count=delivered,
            failed_count=len(errors),
            per_token_errors=errors,
            invalidated_tokens=invalid,
        )
        if delivered == 0:
            if request_error is not None:
                raise request_error
            if len(invalid) == len(errors):
                raise InvalidTokenError(f"all {len(errors)} tokens for user {user_id} are invalid")
            # Retry later; tokens already deactivated are excluded next time.
            raise TransientDeliveryError(f"FCM delivered 0/{len(tokens)} tokens for user {user_id}")
        logger.info(
            "fcm_multicast_sent user_id=%s delivered=%s failed=%s",
            user_id,
            result.delivered_count,
            result.failed_count,
        )
        return result

    async def send_to_topic(self, topic: str, message: PushMessage) -> DeliveryResult:
        messaging = self.initialize()
        payload = messaging.Message(
            topic=topic,
            notification=self._notification(messaging, message),
            data=fcm_data(message.data),
        )
        try:
            message_id = await asyncio.to_thread(messaging.send, payload, app=self._app)
        except Exception as exc:  # noqa: BLE001 - mapped onto the delivery error taxonomy
            raise _wrap_request_error(exc, "FCM topic send failed") from exc
        logger.info("fcm_topic_sent topic=%s", topic)
        return DeliveryResult(success=True, message_id=str(message_id), delivered_count=1)

    async def _topic_membership(self, method: str, tokens: list[str], topic: str) -> DeliveryResult:
        messaging = self.initialize()
        try:
            response = await asyncio.to_thread(getattr(messaging, method), tokens, topic, app=self._app)
        except Exception as exc:  # noqa: BLE001 - mapped onto the delivery error taxonomy
            raise _wrap_request_error(exc, f"FCM {method} failed") from exc
        errors = [
            TokenError(token=tokens[err.index], code=_normalize_code(err.reason), permanent=False)
            for err in getattr(response, "errors", [])
        ]
        return DeliveryResult(
            success=int(response.success_count) > 0,
            delivered_count=int(response.success_count),
            failed_count=int(response.failure_count),
            per_token_errors=errors,
        )

    async def subscribe_to_topic(self, tokens: list[str], topic: str) -> DeliveryResult:
        return await self._topic_membership("subscribe_to_topic", tokens, topic)

    async def unsubscribe_from_topic(self, tokens: list[str], topic: str) -> DeliveryResult:
        return await self._topic_membership("unsubscribe_from_topic", tokens, topic)
