import asyncio
import base64

import pytest

from pluma_server.errors import ProcessSpawnError, ScreenshotError
from pluma_server.services.orchestration.adb_client import AdbClient, AdbTarget

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
TARGET = AdbTarget(adb_path="/usr/bin/adb", address="127.0.0.1:16384")


def _devices(*serials):
    lines = ["List of devices attached"] + [f"{serial}\tdevice" for serial in serials]
    return ("\n".join(lines) + "\n").encode()


class FakeRunner:
    def __init__(self, devices=(), screencap=(0, PNG, b"")) -> None:
        self.devices = list(devices)
        self.screencap = screencap
        self.calls = []

    async def capture(self, executable, args, *, timeout=None):
        self.calls.append(list(args))
        if args[0] == "devices":
            serials = self.devices.pop(0) if self.devices else ()
            return 0, _devices(*serials), b""
        if args[0] == "connect":
            return 0, b"connected to " + args[1].encode(), b""
        if args[0] == "version":
            return 0, b"Android Debug Bridge version 1.0.41", b""
        outcome = self.screencap
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def _no_sleep(_seconds):
    return None


@pytest.mark.asyncio
async def test_capture_screen_returns_base64_png():
    runner = FakeRunner(devices=[("127.0.0.1:16384",)])
    shot = await AdbClient(runner, sleep=_no_sleep).capture_screen(TARGET)

    assert base64.b64decode(shot.image) == PNG
    assert runner.calls[-1] == ["-s", "127.0.0.1:16384", "exec-out", "screencap", "-p"]
    assert ["connect", "127.0.0.1:16384"] not in runner.calls


@pytest.mark.asyncio
async def test_capture_screen_connects_missing_device():
    runner = FakeRunner(devices=[()])
    await AdbClient(runner, sleep=_no_sleep).capture_screen(TARGET)
    assert ["connect", "127.0.0.1:16384"] in runner.calls


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "screencap",
    [
        (0, b"not a png", b""),
        (1, b"", b"error: device offline"),
        asyncio.TimeoutError(),
        ProcessSpawnError("adb missing"),
    ],
)
async def test_capture_screen_failures_raise_screenshot_error(screencap):
    runner = FakeRunner(devices=[("127.0.0.1:16384",)], screencap=screencap)
    with pytest.raises(ScreenshotError):
        await AdbClient(runner, sleep=_no_sleep).capture_screen(TARGET)


@pytest.mark.asyncio
async def test_connection_succeeds_after_connect():
    runner = FakeRunner(devices=[(), ("127.0.0.1:16384", "emulator-5554")])
    result = await AdbClient(runner, sleep=_no_sleep).test_connection(TARGET)

    assert result.success is True
    assert result.devices == ["127.0.0.1:16384", "emulator-5554"]


@pytest.mark.asyncio
async def test_connection_reports_unreachable_device():
    runner = FakeRunner(devices=[(), ("emulator-5554",)])
    result = await AdbClient(runner, sleep=_no_sleep).test_connection(TARGET)

    assert result.success is False
    assert "127.0.0.1:16384" in result.message


def test_target_defaults_come_from_config(override_config):
    override_config("SYSTEM", ADB_PATH="/custom/adb", ADB_ADDRESS="10.0.0.2:5555")
    target = AdbTarget.from_params(address="127.0.0.1:7555")
    assert target == AdbTarget(adb_path="/custom/adb", address="127.0.0.1:7555")
