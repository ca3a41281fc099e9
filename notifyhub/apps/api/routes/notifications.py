from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Query
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from notifyhub.apps.api.deps import get_controller
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.core.config import BULK_MAX_RECIPIENTS
from notifyhub.services.notifications import NotificationController


router = APIRouter(prefix="/api/notifications", tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


def _stringify_id(value: Any) -> Any:
    # Accept numeric ids from clients that do not quote them.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


UserId = Annotated[str | None, BeforeValidator(_stringify_id)]


class _Request(BaseModel):
    # Required fields stay optional here so the controller reports them as 400s.
    model_config = ConfigDict(populate_by_name=True)


class SendRequest(_Request):
    user_id: UserId = Field(default=None, alias="userId")
    title: str | None = None
    body: str | None = None
    data: dict[str, Any] | None = None
    type: str | None = None
    channel: str = "push"
    priority: str = "normal"


class BulkSendRequest(_Request):
    user_ids: list[UserId] | None = Field(default=None, alias="userIds", max_length=BULK_MAX_RECIPIENTS)
    title: str | None = None
    body: str | None = None
    data: dict[str, Any] | None = None
    type: str | None = None
    channel: str = "push"
    priority: str = "normal"


class BroadcastRequest(_Request):
    topic: str | None = None
    title: str | None = None
    body: str | None = None
    data: dict[str, Any] | None = None
    type: str | None = None
    priority: str = "normal"


class OwnerRequest(_Request):
    user_id: UserId = Field(default=None, alias="userId")


class SubscribeRequest(_Request):
    user_id: UserId = Field(default=None, alias="userId")
    token: str | None = None
    device_type: str | None = Field(default=None, alias="deviceType")


@router.post("/send")
async def send_notification(
    payload: SendRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    outcome = await controller.send_notification(
        payload.user_id,
        payload.title,
        payload.body,
        payload.data,
        payload.type,
        channel=payload.channel,
        priority=payload.priority,
    )
    return {
        "success": True,
        **outcome.to_dict(),
        "message": "Notification queued for delivery" if outcome.queued else "Notification sent successfully",
    }


@router.post("/send-bulk")
async def send_bulk_notifications(
    payload: BulkSendRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    summary = await controller.send_bulk_notifications(
        payload.user_ids,
        payload.title,
        payload.body,
        payload.data,
        payload.type,
        channel=payload.channel,
        priority=payload.priority,
    )
    return {"success": True, **summary}


@router.post("/broadcast")
async def broadcast_notification(
    payload: BroadcastRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    outcome = await controller.send_topic_notification(
        payload.topic,
        payload.title,
        payload.body,
        payload.data,
        payload.type,
        priority=payload.priority,
    )
    return {"success": True, **outcome.to_dict()}


@router.get("/user/{user_id}")
async def get_user_notifications(
    user_id: str,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    result = await controller.get_user_notifications(user_id, page=page, limit=limit, unread_only=unread_only)
    return {"success": True, "notifications": result.to_dict()}


@router.get("/user/{user_id}/stats")
async def get_user_stats(
    user_id: str,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    stats = await controller.get_notification_stats(user_id)
    return {"success": True, "stats": stats.to_dict()}


@router.put("/{notification_id}/read")
async def mark_as_read(
    notification_id: str,
    payload: OwnerRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    notification = await controller.mark_as_read(notification_id, payload.user_id)
    return {"success": True, "notification": notification}


@router.delete("/unsubscribe/{token}")
async def unsubscribe(
    token: str,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    await controller.unsubscribe(token)
    return {"success": True}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    payload: OwnerRequest | None = Body(default=None),
    user_id: str | None = Query(default=None, alias="userId"),
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    # DELETE bodies are optional for many clients; accept the owner as a query param too.
    owner = payload.user_id if payload is not None and payload.user_id else user_id
    await controller.delete_notification(notification_id, owner)
    return {"success": True}


@router.post("/subscribe")
async def subscribe(
    payload: SubscribeRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    subscription = await controller.subscribe(payload.user_id, payload.token, payload.device_type)
    return {"success": True, "subscription": subscription}


@router.post("/topics/{topic}/subscribe")
async def subscribe_to_topic(
    topic: str,
    payload: OwnerRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    result = await controller.subscribe_to_topic(payload.user_id, topic)
    return {"success": True, "topic": topic, "result": result.to_dict()}


@router.post("/topics/{topic}/unsubscribe")
async def unsubscribe_from_topic(
    topic: str,
    payload: OwnerRequest,
    controller: NotificationController = Depends(get_controller),
) -> dict[str, Any]:
    result = await controller.unsubscribe_from_topic(payload.user_id, topic)
    return {"success": True, "topic": topic, "result": result.to_dict()}
