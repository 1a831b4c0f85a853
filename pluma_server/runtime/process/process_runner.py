from __future__ import annotations

import asyncio
import logging
import os
import signal
from typing import Any, Sequence

from ...config import config
from ...errors import ProcessSpawnError
from ...models import LogLevel
from .types import OutputCallback, OutputLine, ProcessResult

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_READER_DRAIN_TIMEOUT_SECONDS = 5


def classify_line_level(text: str) -> LogLevel:
    if "ERROR" in text:
        return LogLevel.ERROR
    if "WARN" in text:
        return LogLevel.WARN
    return LogLevel.INFO


class ProcessHandle:
    """
    A spawned automation process plus its output pipeline.

    Reader tasks push lines into a bounded queue; a single dispatcher drains
    it and hands each line to the captured transcript and every registered
    callback, in arrival order.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: Sequence[str],
        queue_size: int,
    ) -> None:
        self.process = process
        self.command = list(command)
        self.killed = False
        self.stdout_lines: list[str] = []
        self.stderr_lines: list[str] = []
        self._callbacks: list[OutputCallback] = []
        self._queue: asyncio.Queue[OutputLine | None] = asyncio.Queue(maxsize=max(1, queue_size))
        self._readers: list[asyncio.Task[None]] = []
        self._dispatcher: asyncio.Task[None] | None = None
        self._drain_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def result(self, exit_code: int) -> ProcessResult:
        return ProcessResult(
            exit_code=exit_code,
            stdout="\n".join(self.stdout_lines),
            stderr="\n".join(self.stderr_lines),
            killed=self.killed,
        )


class ProcessRunner:
    def __init__(self, *, queue_size: int | None = None, kill_grace_seconds: float | None = None) -> None:
        self._queue_size = queue_size
        self._kill_grace_seconds = kill_grace_seconds

    async def spawn(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        on_output: OutputCallback | None = None,
        env: dict[str, str] | None = None,
    ) -> ProcessHandle:
        command = [executable, *[str(arg) for arg in args]]
        try:
            proc = await self._create_subprocess(*command, env=env)
        except OSError as exc:
            raise ProcessSpawnError(
                f"Failed to launch {executable}: {exc}",
                {"command": command},
            ) from exc

        queue_size = self._queue_size or int(config.SYSTEM.OUTPUT_QUEUE_SIZE)
        handle = ProcessHandle(proc, command, queue_size)
        if on_output is not None:
            handle._callbacks.append(on_output)
        handle._readers = [
            asyncio.create_task(self._read_stream(handle, proc.stdout, "stdout")),
            asyncio.create_task(self._read_stream(handle, proc.stderr, "stderr")),
        ]
        handle._dispatcher = asyncio.create_task(self._dispatch(handle))
        logger.info("Spawned pid=%s: %s", proc.pid, " ".join(command))
        return handle

    def on_output(self, handle: ProcessHandle, callback: OutputCallback) -> None:
        handle._callbacks.append(callback)

    async def wait(self, handle: ProcessHandle) -> int:
        returncode = await handle.process.wait()
        if handle._drain_task is None:
            handle._drain_task = asyncio.create_task(self._drain(handle))
        await asyncio.shield(handle._drain_task)
        logger.info("Process pid=%s exited with code %s", handle.pid, returncode)
        return returncode

    async def kill(self, handle: ProcessHandle, graceful: bool = True) -> None:
        proc = handle.process
        if proc.returncode is not None:
            return
        handle.killed = True
        if os.name == "nt":
            await self._kill_windows(proc, graceful)
            return

        try:
            pgid: int | None = os.getpgid(proc.pid)
        except ProcessLookupError:
            return
        except OSError:
            pgid = None

        if graceful:
            try:
                self._send_signal(proc, pgid, signal.SIGTERM)
            except ProcessLookupError:
                return
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace_seconds())
                return
            except asyncio.TimeoutError:
                logger.warning("pid=%s ignored SIGTERM, escalating to SIGKILL", proc.pid)

        try:
            self._send_signal(proc, pgid, signal.SIGKILL)
        except ProcessLookupError:
            return
        await proc.wait()

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        on_output: OutputCallback | None = None,
    ) -> ProcessResult:
        handle = await self.spawn(executable, args, on_output=on_output)
        exit_code = await self.wait(handle)
        return handle.result(exit_code)

    async def capture(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        timeout: float | None = None,
    ) -> tuple[int, bytes, bytes]:
        """Run to completion and return raw bytes; used for binary output such as screenshots."""
        command = [executable, *[str(arg) for arg in args]]
        try:
            proc = await self._create_subprocess(*command, env=None)
        except OSError as exc:
            raise ProcessSpawnError(
                f"Failed to launch {executable}: {exc}",
                {"command": command},
            ) from exc
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            handle = ProcessHandle(proc, command, 1)
            await self.kill(handle, graceful=False)
            raise
        returncode = proc.returncode if proc.returncode is not None else 1
        return returncode, stdout, stderr

    async def _create_subprocess(self, *cmd: str, env: dict[str, str] | None) -> asyncio.subprocess.Process:
        kwargs: dict[str, Any] = {
            "stdin": asyncio.subprocess.DEVNULL,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
        }
        if env is not None:
            kwargs["env"] = env
        if os.name != "nt":
            kwargs["start_new_session"] = True
        return await asyncio.create_subprocess_exec(*cmd, **kwargs)

    async def _read_stream(
        self,
        handle: ProcessHandle,
        stream: asyncio.StreamReader | None,
        stream_name: str,
    ) -> None:
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            pending += chunk
            *complete, pending = pending.split(b"\n")
            for raw in complete:
                await self._enqueue(handle, stream_name, raw)
        if pending:
            await self._enqueue(handle, stream_name, pending)

    async def _enqueue(self, handle: ProcessHandle, stream_name: str, raw: bytes) -> None:
        text = raw.decode("utf-8", errors="replace").rstrip("\r")
        if not text.strip():
            return
        await handle._queue.put(OutputLine(stream=stream_name, level=classify_line_level(text), text=text))

    async def _dispatch(self, handle: ProcessHandle) -> None:
        while True:
            line = await handle._queue.get()
            if line is None:
                return
            if line.stream == "stderr":
                handle.stderr_lines.append(line.text)
            else:
                handle.stdout_lines.append(line.text)
            for callback in list(handle._callbacks):
                try:
                    callback(line)
                except Exception:
                    logger.warning("Output callback failed for pid=%s", handle.pid, exc_info=True)

    async def _drain(self, handle: ProcessHandle) -> None:
        try:
            await asyncio.wait_for(
                asyncio.gather(*handle._readers, return_exceptions=True),
                timeout=_READER_DRAIN_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.warning("Stream readers for pid=%s did not finish in time; cancelling", handle.pid)
            for reader in handle._readers:
                reader.cancel()
            await asyncio.gather(*handle._readers, return_exceptions=True)
        await handle._queue.put(None)
        if handle._dispatcher is not None:
            await handle._dispatcher

    def _send_signal(self, proc: asyncio.subprocess.Process, pgid: int | None, sig: int) -> None:
        if pgid is not None and pgid == proc.pid:
            os.killpg(pgid, sig)
        else:
            proc.send_signal(sig)

    async def _kill_windows(self, proc: asyncio.subprocess.Process, graceful: bool) -> None:
        if graceful:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=self._grace_seconds())
                return
            except asyncio.TimeoutError:
                logger.warning("pid=%s did not terminate, killing", proc.pid)
        proc.kill()
        await proc.wait()

    def _grace_seconds(self) -> float:
        if self._kill_grace_seconds is not None:
            return self._kill_grace_seconds
        return float(config.SYSTEM.KILL_GRACE_SECONDS)


process_runner = ProcessRunner()
