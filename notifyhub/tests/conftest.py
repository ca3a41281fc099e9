from __future__ import annotations

import pytest

from notifyhub.core.config import Settings, get_settings
from notifyhub.persistence.stores.memory import InMemoryNotificationStore
from notifyhub.providers.push.simulated import SimulatedPushGateway
from notifyhub.services.broker import BrokerClient
from notifyhub.tests.utils.fake_redis import FakeRedis, fake_redis_factory
from notifyhub.tests.utils.settings import RecordingSleep, make_settings


@pytest.fixture(autouse=True)
def reset_settings_cache() -> None:
    # Settings are cached per process; keep env tweaks from leaking across tests.
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def gateway(store: InMemoryNotificationStore) -> SimulatedPushGateway:
    return SimulatedPushGateway(store, record=True)


@pytest.fixture
async def broker(fake_redis: FakeRedis, settings: Settings) -> BrokerClient:
    client = BrokerClient(fake_redis_factory(fake_redis), prefix=settings.broker_key_prefix)
    await client.connect()
    await client.initialize_queues(settings.queue_configs())
    yield client
    await client.disconnect()
