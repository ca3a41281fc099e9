from __future__ import annotations

import logging

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import ProviderConfigError
from notifyhub.persistence.stores.base import NotificationStore
from notifyhub.providers.push.base import PushGateway
from notifyhub.providers.push.live import FirebasePushGateway
from notifyhub.providers.push.simulated import SimulatedPushGateway


logger = logging.getLogger(__name__)


def build_push_gateway(store: NotificationStore, settings: Settings | None = None) -> PushGateway:
    # Chosen once per process; nothing downstream branches on provider config.
    settings = settings or get_settings()
    provider = (settings.push_provider or "auto").lower()

    if provider == "simulated":
        logger.warning("push_gateway mode=simulated reason=configured")
        return SimulatedPushGateway(store)
    if provider == "fcm":
        gateway = FirebasePushGateway(store, settings=settings)
        gateway.initialize()
        logger.info("push_gateway mode=live provider=fcm")
        return gateway
    if provider == "auto":
        if not settings.fcm_configured():
            logger.warning("push_gateway mode=simulated reason=fcm_credentials_missing")
            return SimulatedPushGateway(store)
        gateway = FirebasePushGateway(store, settings=settings)
        try:
            gateway.initialize()
        except ProviderConfigError as exc:
            logger.warning("push_gateway mode=simulated reason=fcm_init_failed error=%s", exc)
            return SimulatedPushGateway(store)
        logger.info("push_gateway mode=live provider=fcm")
        return gateway

    raise ProviderConfigError(f"Unsupported PUSH_PROVIDER: {provider}")
