from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Optional, Sequence

from ...config import config
from ...errors import ClassifiedRuntimeError, ProcessSpawnError, TaskAlreadyRunningError
from ...models import LogLevel, TaskKind
from ...runtime.process import OutputLine, ProcessResult, ProcessRunner, process_runner
from ..platform.task_state import TaskStateTracker, task_state
from .command_builder import BuiltCommand, render_task_config
from .output_classifier import ErrorKind, classify_error


class MaaCliClient:
    """
    Gateway to the `maa` binary.

    Tracked runs (`run_task`) own the task slot for the lifetime of the
    process and stream every output line into the task log buffer.
    Queries (`run_query`) are short, untracked lookups such as
    `maa version` or `maa activity`.
    """

    def __init__(
        self,
        runner: Optional[ProcessRunner] = None,
        tracker: Optional[TaskStateTracker] = None,
        executable: Optional[str] = None,
    ) -> None:
        self.runner = runner or process_runner
        self.tracker = tracker or task_state
        self._executable = executable
        self._dirs: Dict[str, str] = {}
        self._dirs_lock = asyncio.Lock()

    @property
    def executable(self) -> str:
        return self._executable or str(config.SYSTEM.MAA_EXECUTABLE)

    async def run_task(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        task_name: str,
        kind: Optional[TaskKind] = TaskKind.TASK,
    ) -> ProcessResult:
        if self.tracker.is_running:
            raise TaskAlreadyRunningError(f"Cannot start '{task_name}': another task is running")

        command_line = " ".join([self.executable, command, *[str(arg) for arg in args]])
        try:
            handle = await self.runner.spawn(self.executable, [command, *args], on_output=self._record_line)
        except ProcessSpawnError as exc:
            self.tracker.append_log(LogLevel.ERROR, f"Failed to launch: {command_line} ({exc.message})")
            raise
        try:
            self.tracker.set_running(task_name, kind, handle)
        except TaskAlreadyRunningError:
            await self.runner.kill(handle, graceful=False)
            raise
        self.tracker.append_log(LogLevel.INFO, f"Running: {command_line}")

        try:
            exit_code = await self.runner.wait(handle)
        finally:
            self.tracker.clear()

        result = handle.result(exit_code)
        self.tracker.append_log(LogLevel.INFO, f"Finished: {command_line} (exit code {exit_code})")
        if result.killed:
            self.tracker.append_log(LogLevel.WARN, f"Stopped: {task_name}")
            raise ClassifiedRuntimeError(
                f"{task_name} was stopped",
                kind=ErrorKind.GENERIC.value,
                hint="Task was stopped before it finished",
                exit_code=exit_code,
                output=result.output,
                stopped=True,
            )
        if exit_code != 0:
            raise self._classified_failure(task_name, result)
        return result

    async def run_query(self, command: str, args: Sequence[str] = ()) -> ProcessResult:
        result = await self.runner.run(self.executable, [command, *args])
        if result.exit_code != 0:
            raise self._classified_failure(f"maa {command}", result)
        return result

    async def run_dynamic_task(
        self,
        built: BuiltCommand,
        *,
        task_name: str,
        kind: Optional[TaskKind] = TaskKind.TASK,
    ) -> ProcessResult:
        if built.inline_config is None or not built.task_file_stem:
            raise ValueError("run_dynamic_task requires a declarative command")
        tasks_dir = Path(await self.config_dir()) / "tasks"
        tasks_dir.mkdir(parents=True, exist_ok=True)
        task_file = tasks_dir / f"{built.task_file_stem}.toml"
        task_file.write_text(render_task_config(built.inline_config), encoding="utf-8")
        logger.info("Wrote task file %s", task_file)
        try:
            return await self.run_task(built.command, built.args, task_name=task_name, kind=kind)
        finally:
            try:
                task_file.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                logger.warning("Failed to remove task file %s", task_file, exc_info=True)

    async def execute(
        self,
        built: BuiltCommand,
        *,
        task_name: str,
        kind: Optional[TaskKind] = TaskKind.TASK,
    ) -> ProcessResult:
        if built.is_declarative:
            return await self.run_dynamic_task(built, task_name=task_name, kind=kind)
        return await self.run_task(built.command, built.args, task_name=task_name, kind=kind)

    async def config_dir(self) -> str:
        return await self._maa_dir("config", str(config.SYSTEM.MAA_CONFIG_DIR or ""))

    async def log_dir(self) -> str:
        return await self._maa_dir("log", str(config.SYSTEM.MAA_LOG_DIR or ""))

    async def _maa_dir(self, name: str, configured: str) -> str:
        """Configured directory, else the answer of `maa dir <name>`; cached per name."""
        async with self._dirs_lock:
            if name in self._dirs:
                return self._dirs[name]
            value = configured.strip()
            if not value:
                result = await self.run_query("dir", [name])
                value = result.stdout.strip()
            self._dirs[name] = value
            return value

    async def version(self) -> str:
        result = await self.run_query("version")
        return result.stdout.strip()

    async def activity(self, client_type: str) -> str:
        result = await self.run_query("activity", [client_type])
        return result.stdout

    async def update_resources(self) -> ProcessResult:
        return await self.run_task("update", task_name="Update MAA resources", kind=TaskKind.TASK)

    async def self_update(self) -> ProcessResult:
        return await self.run_task("self", ["update"], task_name="Update MAA CLI", kind=TaskKind.TASK)

    def _record_line(self, line: OutputLine) -> None:
        self.tracker.append_log(line.level, line.text)

    def _classified_failure(self, task_name: str, result: ProcessResult) -> ClassifiedRuntimeError:
        classification = classify_error(result.output)
        self.tracker.append_log(LogLevel.ERROR, f"{task_name} failed: {classification.hint}")
        return ClassifiedRuntimeError(
            f"{task_name} failed with exit code {result.exit_code}",
            kind=classification.kind.value,
            hint=classification.hint,
            exit_code=result.exit_code,
            output=result.output,
        )


maa_cli = MaaCliClient()

logger = logging.getLogger(__name__)
