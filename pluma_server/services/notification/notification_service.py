"""
Completion-report delivery.

The manager fans a message out to every enabled channel. Telegram is the
only channel today; new channels subclass `NotificationChannel` and are
registered in `NotificationManager.CHANNEL_TYPES`.
"""

import asyncio
import base64
import binascii
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Type
from zoneinfo import ZoneInfo

import httpx

from ...config import config
from ...errors import NotificationError
from ...models import (
    FlowResult,
    NotificationConfig,
    NotificationSendResponse,
    TelegramChannelConfig,
)

MASKED_SECRET = "***"

_LEVEL_EMOJIS = {
    "info": "ℹ️",
    "success": "✅",
    "warning": "⚠️",
    "error": "❌",
}


@dataclass
class NotificationMessage:
    title: str
    content: str
    level: str = "info"
    data: Dict[str, Any] = field(default_factory=dict)
    image: Optional[str] = None


class NotificationChannel:
    name = "base"

    async def send(self, message: NotificationMessage) -> Dict[str, Any]:
        raise NotImplementedError

    async def test(self) -> Dict[str, Any]:
        try:
            await self.send(
                NotificationMessage(
                    title="Test notification",
                    content="La Pluma notification test succeeded!",
                    level="info",
                )
            )
            return {"success": True, "message": "Test message sent"}
        except NotificationError as exc:
            return {"success": False, "message": exc.message}


class TelegramChannel(NotificationChannel):
    name = "telegram"

    def __init__(
        self,
        settings: TelegramChannelConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._sleep = sleep

    async def send(self, message: NotificationMessage) -> Dict[str, Any]:
        if not self.settings.bot_token or not self.settings.chat_id:
            raise NotificationError("Telegram configuration is incomplete")
        if message.image:
            return await self.send_photo(message)
        payload = {
            "chat_id": self.settings.chat_id,
            "text": _render_text(message),
            "parse_mode": "Markdown",
        }
        return await self._call("sendMessage", json=payload)

    async def send_photo(self, message: NotificationMessage) -> Dict[str, Any]:
        text_only = NotificationMessage(
            title=message.title,
            content=message.content,
            level=message.level,
            data=message.data,
        )
        try:
            image = base64.b64decode(message.image or "", validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Screenshot is not valid base64; sending text only")
            return await self.send(text_only)

        max_bytes = int(config.NOTIFICATION.PHOTO_MAX_BYTES)
        if len(image) > max_bytes:
            logger.warning("Screenshot is %.2f MB, over the upload limit; sending text only", len(image) / 1024 / 1024)
            return await self.send(text_only)

        data = {
            "chat_id": self.settings.chat_id,
            "caption": _render_text(message),
            "parse_mode": "Markdown",
        }
        max_attempts = int(config.NOTIFICATION.PHOTO_MAX_ATTEMPTS)
        last_error: Optional[NotificationError] = None
        for attempt in range(1, max_attempts + 1):
            try:
                result = await self._call(
                    "sendPhoto",
                    data=data,
                    files={"photo": ("screenshot.png", image, "image/png")},
                )
                logger.info("Telegram photo sent")
                return result
            except NotificationError as exc:
                last_error = exc
                logger.warning("Telegram photo upload failed (attempt %s/%s): %s", attempt, max_attempts, exc.message)
                if attempt < max_attempts:
                    await self._sleep(attempt * 2)

        logger.warning("Photo upload failed; sending text only")
        try:
            return await self.send(text_only)
        except NotificationError as exc:
            raise NotificationError(
                f"Both photo and text delivery failed: {last_error.message if last_error else exc.message}"
            ) from exc

    async def _call(self, method: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{config.NOTIFICATION.TELEGRAM_API_BASE}/bot{self.settings.bot_token}/{method}"
        timeout = float(config.NOTIFICATION.REQUEST_TIMEOUT_SECONDS)
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
                response = await client.post(url, **kwargs)
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise NotificationError(f"Telegram request failed: {exc}") from exc
        if not isinstance(body, dict) or not body.get("ok"):
            description = body.get("description") if isinstance(body, dict) else None
            raise NotificationError(f"Telegram {method} failed: {description or 'unknown error'}")
        return body


class NotificationManager:
    CHANNEL_TYPES: Dict[str, Type[NotificationChannel]] = {
        "telegram": TelegramChannel,
    }

    def __init__(
        self,
        settings: Optional[NotificationConfig] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._lock = threading.Lock()
        self._settings = settings or _settings_from_config()
        self._transport = transport
        self._sleep = sleep

    def get_config(self, masked: bool = True) -> NotificationConfig:
        with self._lock:
            current = self._settings.model_copy(deep=True)
        if masked and current.channels.telegram.bot_token:
            current.channels.telegram.bot_token = MASKED_SECRET
        return current

    def set_config(self, update: Dict[str, Any]) -> NotificationConfig:
        with self._lock:
            merged = self._settings.model_dump(by_alias=True)
            self._deep_merge(merged, update)
            telegram = merged.get("channels", {}).get("telegram", {})
            if telegram.get("botToken") == MASKED_SECRET:
                telegram["botToken"] = self._settings.channels.telegram.bot_token
            self._settings = NotificationConfig.model_validate(merged)
        logger.info("Notification config updated")
        return self.get_config()

    async def send_to_all(self, message: NotificationMessage) -> NotificationSendResponse:
        settings = self.get_config(masked=False)
        if not settings.enabled:
            logger.info("Notifications disabled; skipping '%s'", message.title)
            return NotificationSendResponse(success=True)

        results: Dict[str, bool] = {}
        for name in self.CHANNEL_TYPES:
            channel_settings = getattr(settings.channels, name, None)
            if channel_settings is None or not channel_settings.enabled:
                continue
            try:
                await self._channel(name, settings).send(message)
                results[name] = True
                logger.info("Notification sent to %s", name)
            except NotificationError as exc:
                results[name] = False
                logger.error("Notification to %s failed: %s", name, exc.message)
        return NotificationSendResponse(success=all(results.values()), results=results)

    async def send_to_channel(self, name: str, message: NotificationMessage) -> Dict[str, Any]:
        settings = self.get_config(masked=False)
        channel_settings = getattr(settings.channels, name, None)
        if channel_settings is None or not channel_settings.enabled:
            raise NotificationError(f"Notification channel {name} is not enabled")
        return await self._channel(name, settings).send(message)

    async def test_channel(self, name: str) -> Dict[str, Any]:
        settings = self.get_config(masked=False)
        return await self._channel(name, settings).test()

    async def notify(self, report: FlowResult) -> NotificationSendResponse:
        return await self.send_to_all(format_completion_message(report))

    def _channel(self, name: str, settings: NotificationConfig) -> NotificationChannel:
        channel_type = self.CHANNEL_TYPES.get(name)
        if channel_type is None:
            raise KeyError(name)
        return channel_type(getattr(settings.channels, name), transport=self._transport, sleep=self._sleep)

    def _deep_merge(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        """Helper to recursively merge dictionaries."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._deep_merge(target[key], value)
            else:
                target[key] = value


def format_completion_message(report: FlowResult) -> NotificationMessage:
    level = "success"
    title = "✅ Tasks completed"
    if report.failed_tasks > 0 and report.skipped_tasks > 0:
        level = "warning"
        title = "⚠️ Tasks completed (some failed or skipped)"
    elif report.failed_tasks > 0:
        level = "warning"
        title = "⚠️ Tasks completed (some failed)"
    elif report.skipped_tasks > 0:
        level = "info"
        title = "ℹ️ Tasks completed (some skipped)"

    lines = [f"*{report.task_name}* finished"]
    if report.summaries:
        lines.append("\n📋 *Summary*")
        for summary in report.summaries:
            lines.append(f"\n*{summary.task}*")
            if summary.stage:
                lines.append(f"• Stage: {summary.stage}")
                if summary.times:
                    lines.append(f"• Runs: {summary.times}")
                if summary.duration:
                    lines.append(f"• Duration: {summary.duration}")
                if summary.medicine:
                    lines.append(f"• Sanity potions: {summary.medicine}")
                if summary.stone:
                    lines.append(f"• Originite: {summary.stone}")
                if summary.drops:
                    drops = ", ".join(f"{name} × {count}" for name, count in summary.drops.items())
                    lines.append(f"• Drops: {drops}")
            if summary.recruits:
                lines.append("• Recruitment:")
                for recruit in summary.recruits:
                    lines.append(f"  - [{', '.join(recruit.tags)}] → {recruit.stars}⭐")
            if summary.infrast:
                lines.append(f"• {summary.infrast}")

    if report.skipped:
        lines.append("\n⏭️ *Skipped*")
        for entry in report.skipped:
            lines.append(f"• {entry.task} - {entry.reason}" if entry.reason else f"• {entry.task}")

    if report.errors:
        lines.append("\n❌ *Failed*")
        for error in report.errors:
            lines.append(f"• {error}")

    data: Dict[str, Any] = {"Total": report.total_tasks, "Succeeded": report.success_tasks}
    if report.skipped_tasks > 0:
        data["Skipped"] = report.skipped_tasks
    if report.failed_tasks > 0:
        data["Failed"] = report.failed_tasks
    data["Elapsed"] = f"{report.duration_ms // 1000} s"

    return NotificationMessage(
        title=title,
        content="\n".join(lines),
        level=level,
        data=data,
        image=report.screenshot,
    )


def _render_text(message: NotificationMessage) -> str:
    emoji = _LEVEL_EMOJIS.get(message.level, _LEVEL_EMOJIS["info"])
    text = f"{emoji} *{message.title}*\n\n{message.content}"
    if message.data:
        text += "\n\n📊 *Details*"
        for key, value in message.data.items():
            text += f"\n• {key}: {value}"
    now = datetime.now(ZoneInfo(str(config.SYSTEM.SCHEDULE_TIMEZONE)))
    text += f"\n\n🕐 {now.strftime('%Y-%m-%d %H:%M:%S')}"
    return text


def _settings_from_config() -> NotificationConfig:
    section = config.NOTIFICATION
    return NotificationConfig(
        enabled=bool(section.ENABLED),
        channels={
            "telegram": TelegramChannelConfig(
                enabled=bool(section.TELEGRAM_ENABLED),
                bot_token=str(section.TELEGRAM_BOT_TOKEN),
                chat_id=str(section.TELEGRAM_CHAT_ID),
            )
        },
    )


notification_manager = NotificationManager()

logger = logging.getLogger(__name__)
