from __future__ import annotations

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import ConfigError
from notifyhub.persistence.db import Database
from notifyhub.persistence.stores.base import NotificationStore
from notifyhub.persistence.stores.memory import InMemoryNotificationStore
from notifyhub.persistence.stores.sql import SqlNotificationStore


def build_store(settings: Settings | None = None, *, db: Database | None = None) -> NotificationStore:
    settings = settings or get_settings()
    backend = (settings.store_backend or "sql").lower()

    if backend == "memory":
        return InMemoryNotificationStore()
    if backend == "sql":
        return SqlNotificationStore(db or Database.from_settings(settings))

    raise ConfigError(f"Unsupported STORE_BACKEND: {backend}")
