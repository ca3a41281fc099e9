from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from notifyhub.apps.api.deps import get_queue_manager, get_runtime
from notifyhub.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from notifyhub.services.queue_manager import QueueManager
from notifyhub.services.runtime import Runtime


router = APIRouter(prefix="/ops/queues", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class ReplayRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_ids: list[str] | None = Field(default=None, alias="messageIds")


@router.get("")
async def queue_stats(runtime: Runtime = Depends(get_runtime)) -> dict[str, Any]:
    stats = await runtime.queue_manager.get_detailed_stats()
    stats["databasePool"] = runtime.pool_stats()
    return stats


@router.get("/health")
async def queue_health(queue_manager: QueueManager = Depends(get_queue_manager)) -> dict[str, Any]:
    return await queue_manager.health_check()


@router.get("/{queue}/dead-letters")
async def list_dead_letters(
    queue: str,
    limit: int = Query(default=50, ge=1, le=500),
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> dict[str, Any]:
    letters = await queue_manager.list_dead_letters(queue, limit=limit)
    return {"queue": queue, "items": letters}


@router.post("/{queue}/dead-letters/replay")
async def replay_dead_letters(
    queue: str,
    payload: ReplayRequest | None = None,
    queue_manager: QueueManager = Depends(get_queue_manager),
) -> dict[str, Any]:
    # Operator-triggered only; dead letters never re-enter the queue on their own.
    message_ids = payload.message_ids if payload is not None else None
    return await queue_manager.replay_dead_letters(queue, message_ids)
