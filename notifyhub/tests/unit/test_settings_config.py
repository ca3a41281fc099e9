from __future__ import annotations

import pytest

from notifyhub.core.config import DEFAULT_QUEUE_CONFIGS, QueueConfig, get_settings
from notifyhub.core.errors import ConfigError
from notifyhub.tests.utils.settings import make_settings


def test_default_queue_table() -> None:
    assert set(DEFAULT_QUEUE_CONFIGS) == {"email-queue", "notification-queue", "chat-queue", "priority-queue"}
    chat = DEFAULT_QUEUE_CONFIGS["chat-queue"]
    assert (chat.visibility_timeout_ms, chat.retry_threshold, chat.dead_letter_threshold, chat.max_concurrency) == (
        45000,
        2,
        3,
        8,
    )


def test_dead_letter_after_uses_the_tighter_threshold() -> None:
    assert QueueConfig(retry_threshold=3, dead_letter_threshold=5).dead_letter_after == 3
    assert QueueConfig(retry_threshold=6, dead_letter_threshold=2).dead_letter_after == 2


def test_queue_overrides_merge_and_add_queues() -> None:
    settings = make_settings(
        queue_overrides_json='{"email-queue": {"retry_threshold": 2}, "sms-queue": {"max_concurrency": 3}}'
    )

    configs = settings.queue_configs()

    assert configs["email-queue"].retry_threshold == 2
    assert configs["email-queue"].visibility_timeout_ms == 60000
    assert configs["sms-queue"].max_concurrency == 3
    # Overrides never leak into the shared defaults.
    assert DEFAULT_QUEUE_CONFIGS["email-queue"].retry_threshold == 3


@pytest.mark.parametrize(
    "raw",
    ["{not json", "[1, 2]", '{"email-queue": 5}', '{"email-queue": {"max_concurrency": 0}}'],
)
def test_invalid_queue_overrides_raise_config_error(raw: str) -> None:
    with pytest.raises(ConfigError):
        make_settings(queue_overrides_json=raw).queue_configs()


def test_redis_url_resolution() -> None:
    assert make_settings(redis_url="redis://cache:6380/2").resolved_redis_url() == "redis://cache:6380/2"
    assert (
        make_settings(redis_host="cache", redis_port=6390, redis_password="p@ss", redis_db=1).resolved_redis_url()
        == "redis://:p%40ss@cache:6390/1"
    )


def test_fcm_configured_requires_full_credentials() -> None:
    assert make_settings().fcm_configured() is False
    assert make_settings(fcm_project_id="p", fcm_client_email="e").fcm_configured() is False
    assert make_settings(fcm_project_id="p", fcm_client_email="e", fcm_private_key="k").fcm_configured() is True
    assert make_settings(fcm_credentials_file="/etc/fcm.json").fcm_configured() is True


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("DELIVERY_MODE", "inline")
    monkeypatch.setenv("SEND_MAX_ATTEMPTS", "5")
    get_settings.cache_clear()

    settings = get_settings()

    assert settings.delivery_mode == "inline"
    assert settings.send_max_attempts == 5
