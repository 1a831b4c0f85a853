from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

from ...config import config
from ...errors import ProcessSpawnError, ScreenshotError
from ...models import ConnectionTestResponse
from ...runtime.process import ProcessRunner, process_runner

_ADB_COMMAND_TIMEOUT_SECONDS = 30.0
_CONNECT_SETTLE_SECONDS = 1.0
_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


@dataclass(frozen=True)
class AdbTarget:
    adb_path: str
    address: str

    @classmethod
    def from_params(cls, adb_path: Optional[str] = None, address: Optional[str] = None) -> "AdbTarget":
        return cls(
            adb_path=adb_path or str(config.SYSTEM.ADB_PATH),
            address=address or str(config.SYSTEM.ADB_ADDRESS),
        )


@dataclass(frozen=True)
class Screenshot:
    image: str
    captured_at: datetime


class AdbClient:
    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.runner = runner or process_runner
        self._sleep = sleep

    async def capture_screen(self, target: AdbTarget) -> Screenshot:
        """Grab a PNG from the device; doubles as the liveness check after startup."""
        try:
            await self._ensure_connected(target)
            code, stdout, stderr = await self.runner.capture(
                target.adb_path,
                ["-s", target.address, "exec-out", "screencap", "-p"],
                timeout=_ADB_COMMAND_TIMEOUT_SECONDS,
            )
        except (ProcessSpawnError, asyncio.TimeoutError) as exc:
            raise ScreenshotError(f"Screenshot failed: {exc}") from exc
        if code != 0 or not stdout.startswith(_PNG_SIGNATURE):
            detail = stderr.decode("utf-8", errors="replace").strip() or f"exit code {code}"
            raise ScreenshotError(f"Screenshot failed: {detail}")
        return Screenshot(
            image=base64.b64encode(stdout).decode("ascii"),
            captured_at=datetime.now(timezone.utc),
        )

    async def test_connection(self, target: AdbTarget) -> ConnectionTestResponse:
        try:
            code, _, _ = await self._adb(target, ["version"])
        except (ProcessSpawnError, asyncio.TimeoutError) as exc:
            logger.warning("adb unavailable at %s: %s", target.adb_path, exc)
            return ConnectionTestResponse(success=False, message="ADB is not available; check the ADB path")
        if code != 0:
            return ConnectionTestResponse(success=False, message="ADB is not available; check the ADB path")

        devices = await self.list_devices(target)
        if target.address in devices:
            return ConnectionTestResponse(success=True, message=f"Connected to {target.address}", devices=devices)

        await self._adb(target, ["connect", target.address])
        await self._sleep(_CONNECT_SETTLE_SECONDS)
        devices = await self.list_devices(target)
        if target.address in devices:
            return ConnectionTestResponse(
                success=True,
                message=f"Connected to {target.address}",
                devices=devices,
            )
        return ConnectionTestResponse(
            success=False,
            message=f"Could not connect to {target.address}; check that the emulator is running",
            devices=devices,
        )

    async def list_devices(self, target: AdbTarget) -> List[str]:
        """Serials in state `device`, parsed from `adb devices`."""
        _, stdout, _ = await self._adb(target, ["devices"])
        devices = []
        for line in stdout.decode("utf-8", errors="replace").splitlines()[1:]:
            parts = line.split()
            if len(parts) >= 2 and parts[1] == "device":
                devices.append(parts[0])
        return devices

    async def _ensure_connected(self, target: AdbTarget) -> None:
        if target.address in await self.list_devices(target):
            return
        logger.info("Device %s not attached, connecting", target.address)
        _, stdout, _ = await self._adb(target, ["connect", target.address])
        logger.info("adb connect: %s", stdout.decode("utf-8", errors="replace").strip())
        await self._sleep(_CONNECT_SETTLE_SECONDS)

    async def _adb(self, target: AdbTarget, args: List[str]) -> tuple[int, bytes, bytes]:
        return await self.runner.capture(target.adb_path, args, timeout=_ADB_COMMAND_TIMEOUT_SECONDS)


adb_client = AdbClient()

logger = logging.getLogger(__name__)
