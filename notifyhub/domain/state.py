from __future__ import annotations

from enum import Enum

from notifyhub.core.errors import InvalidStatusTransitionError


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"


class Channel(str, Enum):
    PUSH = "push"
    EMAIL = "email"
    CHAT = "chat"


class Priority(str, Enum):
    NORMAL = "normal"
    HIGH = "high"


class RecipientKind(str, Enum):
    USER = "user"
    TOPIC = "topic"


# Nacked jobs stay pending until redelivery is exhausted, so pending may move
# straight to dead_lettered.
_ALLOWED_TRANSITIONS: dict[NotificationStatus, frozenset[NotificationStatus]] = {
    NotificationStatus.PENDING: frozenset(
        {NotificationStatus.SENT, NotificationStatus.FAILED, NotificationStatus.DEAD_LETTERED}
    ),
    NotificationStatus.FAILED: frozenset({NotificationStatus.DEAD_LETTERED}),
    NotificationStatus.SENT: frozenset(),
    NotificationStatus.DEAD_LETTERED: frozenset(),
}

TERMINAL_STATUSES = frozenset(
    {NotificationStatus.SENT, NotificationStatus.FAILED, NotificationStatus.DEAD_LETTERED}
)


def check_transition(current: str, target: str) -> bool:
    """Validate a status change.

    Returns False when the status is unchanged (a no-op write), True when the
    change is allowed, and raises InvalidStatusTransitionError otherwise.
    """
    try:
        source = NotificationStatus(current)
        destination = NotificationStatus(target)
    except ValueError as exc:
        raise InvalidStatusTransitionError(f"unknown status: {exc}") from exc
    if source == destination:
        return False
    if destination not in _ALLOWED_TRANSITIONS[source]:
        raise InvalidStatusTransitionError(f"cannot move notification from {source.value} to {destination.value}")
    return True
