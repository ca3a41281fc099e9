from __future__ import annotations

from fastapi import Request

from notifyhub.services.notifications import NotificationController
from notifyhub.services.queue_manager import QueueManager
from notifyhub.services.runtime import Runtime


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_controller(request: Request) -> NotificationController:
    return get_runtime(request).controller


def get_queue_manager(request: Request) -> QueueManager:
    return get_runtime(request).queue_manager
