from __future__ import annotations


class NotifyHubError(Exception):
    """Base error for notifyhub."""


class ConfigError(NotifyHubError):
    """Missing or invalid configuration."""


class ProviderConfigError(ConfigError):
    """Push provider credentials are present but unusable."""


class InvalidRequestError(NotifyHubError):
    """Request is missing required fields or carries malformed values."""


class NotFoundError(NotifyHubError):
    """Record does not exist or is not owned by the caller."""


class NoDeliveryTargetError(NotFoundError):
    """Recipient has no active delivery tokens."""


class InvalidStatusTransitionError(NotifyHubError):
    """Notification status change violates the lifecycle."""


class StoreUnavailableError(NotifyHubError):
    """Notification store cannot be reached."""


class DeliveryError(NotifyHubError):
    """Delivery attempt failed."""


class TransientDeliveryError(DeliveryError):
    """Provider or network hiccup; safe to retry."""


class PermanentDeliveryError(DeliveryError):
    """Delivery can never succeed as requested; never retried."""


class InvalidTokenError(PermanentDeliveryError):
    """Device token is unregistered or malformed."""


class DeliveryFailedError(DeliveryError):
    """Delivery failed after all retry attempts."""

    def __init__(self, message: str, *, notification_id: str | None = None, attempts: int = 0) -> None:
        super().__init__(message)
        self.notification_id = notification_id
        self.attempts = attempts


class BrokerError(NotifyHubError):
    """Broker layer failure."""


class BrokerUnavailableError(BrokerError):
    """Broker backend is disconnected or unreachable."""


class UnknownQueueError(BrokerError):
    """Queue name was never declared."""


class QueueManagerNotConnectedError(BrokerError):
    """Queue manager used before connect() or after disconnect()."""


def is_permanent(exc: BaseException) -> bool:
    # Permanent failures skip retries everywhere in the pipeline.
    return isinstance(exc, (PermanentDeliveryError, InvalidRequestError, NotFoundError))
