from typing import Any, Dict

from fastapi import APIRouter, Body, HTTPException  # type: ignore[import-not-found]
from pydantic import ValidationError

from ..errors import NotificationError
from ..models import (
    NotificationChannelSendResponse,
    NotificationConfig,
    NotificationSendRequest,
    NotificationSendResponse,
)
from ..services.notification.notification_service import NotificationMessage, notification_manager


router = APIRouter(prefix="/notification", tags=["notification"])


@router.get("/config", response_model=NotificationConfig)
async def get_notification_config():
    return notification_manager.get_config()


@router.post("/config", response_model=NotificationConfig)
async def update_notification_config(update: Dict[str, Any] = Body(...)):
    try:
        return notification_manager.set_config(update)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/test/{channel}")
async def test_notification_channel(channel: str):
    if channel not in notification_manager.CHANNEL_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown notification channel: {channel}")
    return await notification_manager.test_channel(channel)


@router.post("/send", response_model=NotificationSendResponse)
async def send_notification(request: NotificationSendRequest):
    try:
        return await notification_manager.send_to_all(_message(request))
    except NotificationError as exc:
        raise HTTPException(status_code=500, detail=exc.message)


@router.post("/send/{channel}", response_model=NotificationChannelSendResponse)
async def send_channel_notification(channel: str, request: NotificationSendRequest):
    if channel not in notification_manager.CHANNEL_TYPES:
        raise HTTPException(status_code=404, detail=f"Unknown notification channel: {channel}")
    try:
        result = await notification_manager.send_to_channel(channel, _message(request))
    except NotificationError as exc:
        raise HTTPException(status_code=500, detail=exc.message)
    return NotificationChannelSendResponse(success=True, data=result)


def _message(request: NotificationSendRequest) -> NotificationMessage:
    return NotificationMessage(
        title=request.title,
        content=request.message,
        level=request.level,
        data=request.data,
    )
