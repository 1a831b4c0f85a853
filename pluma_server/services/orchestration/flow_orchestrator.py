from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from ...config import config
from ...errors import (
    ClassifiedRuntimeError,
    FlowRejectedError,
    GateClosed,
    PlumaError,
    ResourceExhausted,
)
from ...models import (
    FlowResult,
    ProgressEvent,
    ScheduleExecutionStatus,
    SkippedEntry,
    StageEntry,
    StepSummary,
    TaskDescriptor,
    TaskKind,
)
from ...runtime.process import ProcessResult
from ..platform.flow_slot import FlowSlot, flow_slot
from ..platform.task_state import TaskStateTracker, task_state
from .activity_resolver import ActivityResolver, activity_resolver
from .adb_client import AdbClient, AdbTarget, adb_client
from .command_builder import build, build_stage_args, stage_entries_from_params
from .maa_cli import MaaCliClient, maa_cli
from .output_classifier import extract_summary, is_resource_exhausted, is_stage_closed
from .progress_broker import ProgressBroker, progress_broker
from .resource_gate import ResourceGate, resource_gate

Sleep = Callable[[float], Awaitable[None]]
Notifier = Callable[[FlowResult], Awaitable[Any]]

EXHAUSTED_REASON = "resource exhausted"
STAGE_CLOSED_REASON = "stage not open"

_COMMAND_KINDS: Dict[str, TaskKind] = {
    "startup": TaskKind.STARTUP,
    "closedown": TaskKind.CLOSEDOWN,
    "fight": TaskKind.FIGHT,
    "roguelike": TaskKind.ROGUELIKE,
}


class StageOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class FlowRun:
    """Mutable aggregate of one flow execution; every unit is counted exactly once."""

    schedule_id: str
    adb_target: AdbTarget
    total_tasks: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    errors: List[str] = field(default_factory=list)
    skipped: List[SkippedEntry] = field(default_factory=list)
    summaries: List[StepSummary] = field(default_factory=list)
    screenshot: Optional[str] = None

    @property
    def accounted(self) -> int:
        return self.success_count + self.failed_count + self.skipped_count

    def record_success(self, summary: Optional[StepSummary] = None) -> None:
        self.success_count += 1
        if summary is not None:
            self.summaries.append(summary)

    def record_failure(self, task_name: str, units: int = 1) -> None:
        self.failed_count += units
        self.errors.append(task_name)

    def record_skip(self, task_name: str, reason: str) -> None:
        self.skipped_count += 1
        self.skipped.append(SkippedEntry(task=task_name, reason=reason))

    def to_result(self, duration_ms: int) -> FlowResult:
        return FlowResult(
            task_name=f"Schedule {self.schedule_id}",
            schedule_id=self.schedule_id,
            total_tasks=self.total_tasks,
            success_tasks=self.success_count,
            failed_tasks=self.failed_count,
            skipped_tasks=self.skipped_count,
            duration_ms=duration_ms,
            errors=list(self.errors),
            skipped=list(self.skipped),
            summaries=list(self.summaries),
            screenshot=self.screenshot,
        )


class FlowOrchestrator:
    """
    Sequential runner for task flows.

    Behavior:
    - Admission is fail-fast: if the flow slot is held or a task is running,
      the caller gets `FlowRejectedError` instead of waiting.
    - Steps run in order. A failing step is counted and the flow moves on;
      only resource exhaustion inside a multi-stage fight cuts a step short.
    - Counters are per stage, so `success + failed + skipped == total`.
    - Every transition is published to the progress broker and the final
      report goes to the notifier.
    """

    def __init__(
        self,
        *,
        maa: Optional[MaaCliClient] = None,
        adb: Optional[AdbClient] = None,
        activity: Optional[ActivityResolver] = None,
        gate: Optional[ResourceGate] = None,
        tracker: Optional[TaskStateTracker] = None,
        slot: Optional[FlowSlot] = None,
        broker: Optional[ProgressBroker] = None,
        notifier: Optional[Notifier] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.maa = maa or maa_cli
        self.adb = adb or adb_client
        self.activity = activity or activity_resolver
        self.gate = gate or resource_gate
        self.tracker = tracker or task_state
        self.slot = slot or flow_slot
        self.broker = broker or progress_broker
        self._notifier = notifier
        self._sleep = sleep
        self._clock = clock
        self._status = ScheduleExecutionStatus()
        self._status_lock = threading.Lock()
        self._background: Set[asyncio.Task[FlowResult]] = set()

    def get_execution_status(self) -> ScheduleExecutionStatus:
        with self._status_lock:
            return self._status.model_copy()

    async def run_flow(self, flow: Sequence[TaskDescriptor], schedule_id: str) -> FlowResult:
        self._admit(schedule_id)
        return await self._run_admitted(flow, schedule_id)

    def start_flow(self, flow: Sequence[TaskDescriptor], schedule_id: str) -> bool:
        """Admit synchronously, then run in the background. Returns False when busy."""
        try:
            self._admit(schedule_id)
        except FlowRejectedError:
            return False
        task = asyncio.create_task(self._run_admitted(flow, schedule_id))
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return True

    def _admit(self, schedule_id: str) -> None:
        if not self.slot.try_acquire(schedule_id):
            raise FlowRejectedError(f"Flow {schedule_id} rejected: another flow is running")
        if self.tracker.is_running:
            self.slot.release()
            raise FlowRejectedError(f"Flow {schedule_id} rejected: a task is already running")

    def _on_background_done(self, task: "asyncio.Task[FlowResult]") -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background flow crashed", exc_info=exc)

    async def _run_admitted(self, flow: Sequence[TaskDescriptor], schedule_id: str) -> FlowResult:
        try:
            return await self._execute(flow, schedule_id)
        finally:
            with self._status_lock:
                if self._status.is_running:
                    self._status = self._status.model_copy(update={"is_running": False})
            self.slot.release()

    async def _execute(self, flow: Sequence[TaskDescriptor], schedule_id: str) -> FlowResult:
        steps = [task for task in flow if task.enabled]
        run = FlowRun(schedule_id=schedule_id, adb_target=AdbTarget.from_params())
        run.total_tasks = sum(self._unit_count(step) for step in steps)
        started = self._clock()
        logger.info("[flow %s] started with %s steps", schedule_id, len(steps))

        self._set_status(
            is_running=True,
            schedule_id=schedule_id,
            current_step_index=-1,
            total_steps=len(steps),
            current_task_name=None,
            current_task_id=None,
            message="Flow started",
            started_at=datetime.now(timezone.utc),
        )
        self._publish(schedule_id)

        for index, step in enumerate(steps):
            name = step.display_name
            self._set_status(
                current_step_index=index,
                current_task_name=name,
                current_task_id=step.id,
                message=f"Running: {name} ({index + 1}/{len(steps)})",
            )
            self._publish(schedule_id)
            logger.info("[flow %s] step %s/%s: %s", schedule_id, index + 1, len(steps), name)

            accounted_before = run.accounted
            try:
                await self._run_step(step, run)
            except Exception as exc:
                remaining = self._unit_count(step) - (run.accounted - accounted_before)
                logger.error("[flow %s] step %s failed: %s", schedule_id, name, exc, exc_info=True)
                run.record_failure(name, units=max(remaining, 0))
                self._set_status(message=f"Failed: {name}")
                self._publish(schedule_id)

        duration_ms = int((self._clock() - started) * 1000)
        result = run.to_result(duration_ms)
        logger.info(
            "[flow %s] finished: success=%s failed=%s skipped=%s elapsed=%ss",
            schedule_id,
            result.success_tasks,
            result.failed_tasks,
            result.skipped_tasks,
            duration_ms // 1000,
        )
        self._set_status(
            is_running=False,
            schedule_id=None,
            current_step_index=len(steps),
            current_task_name=None,
            current_task_id=None,
            message="Flow finished",
        )
        self.broker.publish(
            ProgressEvent(
                schedule_id=schedule_id,
                current_step=len(steps),
                total_steps=len(steps),
                current_task_name=None,
                message="Flow finished",
            )
        )
        await self._notify(result)
        return result

    async def _run_step(self, step: TaskDescriptor, run: FlowRun) -> None:
        command_id = step.resolved_command_id
        if step.task_type:
            await self._run_plain(step, run)
        elif command_id == "startup":
            await self._run_startup(step, run)
        elif command_id == "closedown":
            await self._run_closedown(step, run)
        elif command_id == "fight":
            await self._run_fight(step, run)
        else:
            await self._run_plain(step, run)

    async def _run_startup(self, step: TaskDescriptor, run: FlowRun) -> None:
        name = step.display_name
        params = step.params or {}
        run.adb_target = AdbTarget(
            adb_path=params.get("adbPath") or run.adb_target.adb_path,
            address=params.get("address") or run.adb_target.address,
        )
        built = build(step)
        max_retries = int(config.SYSTEM.STARTUP_MAX_RETRIES)
        for attempt in range(max_retries + 1):
            if attempt > 0:
                logger.info("[flow %s] retrying %s (%s/%s)", run.schedule_id, name, attempt, max_retries)
                await self._sleep(float(config.SYSTEM.STARTUP_RETRY_BACKOFF_SECONDS))
            try:
                await self.maa.execute(built, task_name=name, kind=TaskKind.STARTUP)
                await self._sleep(float(config.SYSTEM.STARTUP_WAIT_SECONDS))
                await self.adb.capture_screen(run.adb_target)
            except PlumaError as exc:
                if isinstance(exc, ClassifiedRuntimeError) and exc.stopped:
                    logger.warning("[flow %s] %s stopped, not retrying", run.schedule_id, name)
                    run.record_failure(name)
                    return
                logger.warning("[flow %s] %s attempt %s failed: %s", run.schedule_id, name, attempt + 1, exc)
                continue
            run.record_success()
            return
        logger.error("[flow %s] %s failed after %s retries", run.schedule_id, name, max_retries)
        run.record_failure(name)

    async def _run_closedown(self, step: TaskDescriptor, run: FlowRun) -> None:
        name = step.display_name
        if run.screenshot is None:
            try:
                shot = await self.adb.capture_screen(run.adb_target)
                run.screenshot = shot.image
            except PlumaError as exc:
                logger.warning("[flow %s] screenshot before closedown failed: %s", run.schedule_id, exc)
        try:
            await self.maa.execute(build(step), task_name=name, kind=TaskKind.CLOSEDOWN)
            run.record_success()
        except PlumaError as exc:
            logger.error("[flow %s] %s failed: %s", run.schedule_id, name, exc)
            run.record_failure(name)
        await self._sleep(float(config.SYSTEM.CLOSEDOWN_DELAY_SECONDS))

    async def _run_fight(self, step: TaskDescriptor, run: FlowRun) -> None:
        params = step.params or {}
        entries = stage_entries_from_params(params)
        if not entries:
            await self._run_plain(step, run)
            return

        built = build(step)
        extra_args = built.args[1:]
        client_type = params.get("clientType") or str(config.SYSTEM.MAA_CLIENT_TYPE)
        multi = len(entries) > 1
        exhausted = False
        for index, entry in enumerate(entries):
            stage_label = f"{step.display_name} ({entry.stage_code})"
            if exhausted:
                logger.info("[flow %s] skipping %s: %s", run.schedule_id, stage_label, EXHAUSTED_REASON)
                run.record_skip(stage_label, EXHAUSTED_REASON)
                continue
            if multi:
                self._set_status(message=f"Running stage {entry.stage_code} ({index + 1}/{len(entries)})")
                self._publish(run.schedule_id)
            outcome, exhausted = await self._run_stage(
                step,
                entry,
                extra_args,
                run,
                client_type=client_type,
                label=stage_label if multi else step.display_name,
            )
            if multi and outcome is not StageOutcome.SKIPPED and not exhausted and index < len(entries) - 1:
                await self._sleep(float(config.SYSTEM.STAGE_INTERVAL_SECONDS))
        await self._sleep(float(config.SYSTEM.STEP_DELAY_SECONDS))

    async def _run_stage(
        self,
        step: TaskDescriptor,
        entry: StageEntry,
        extra_args: List[str],
        run: FlowRun,
        *,
        client_type: str,
        label: str,
    ) -> tuple[StageOutcome, bool]:
        skip_label = f"{step.display_name} ({entry.stage_code})"
        try:
            result = await self._execute_stage(entry, extra_args, client_type=client_type, label=label)
        except GateClosed as exc:
            logger.info("[flow %s] %s skipped: %s", run.schedule_id, skip_label, exc.reason)
            run.record_skip(skip_label, exc.reason)
            return StageOutcome.SKIPPED, False
        except ResourceExhausted:
            logger.info("[flow %s] %s: %s", run.schedule_id, skip_label, EXHAUSTED_REASON)
            run.record_skip(skip_label, EXHAUSTED_REASON)
            return StageOutcome.SKIPPED, True
        except ClassifiedRuntimeError as exc:
            logger.error("[flow %s] %s failed: %s", run.schedule_id, label, exc.hint)
            run.record_failure(label)
            return StageOutcome.FAILED, False
        except PlumaError as exc:
            logger.error("[flow %s] %s failed: %s", run.schedule_id, label, exc)
            run.record_failure(label)
            return StageOutcome.FAILED, False

        run.record_success(extract_summary(label, result.stdout))
        exhausted = is_resource_exhausted(result.output, entry.stage_code)
        if exhausted:
            logger.info("[flow %s] resource exhausted after %s", run.schedule_id, label)
        return StageOutcome.SUCCEEDED, exhausted

    async def _execute_stage(
        self,
        entry: StageEntry,
        extra_args: List[str],
        *,
        client_type: str,
        label: str,
    ) -> ProcessResult:
        """Run one stage; closed and exhausted stages surface as `GateClosed` / `ResourceExhausted`."""
        decision = self.gate.is_stage_open_today(entry.stage_code)
        if not decision.is_open:
            raise GateClosed(decision.reason or STAGE_CLOSED_REASON)

        stage_code = await self.activity.resolve_stage(entry.stage_code, client_type)
        args = build_stage_args(entry, extra_args, stage_code)
        try:
            return await self.maa.run_task("fight", args, task_name=label, kind=TaskKind.FIGHT)
        except ClassifiedRuntimeError as exc:
            # A stopped run is never reinterpreted.
            if exc.stopped:
                raise
            if is_resource_exhausted(exc.output, entry.stage_code):
                raise ResourceExhausted(EXHAUSTED_REASON) from exc
            if is_stage_closed(exc.output):
                raise GateClosed(STAGE_CLOSED_REASON) from exc
            raise

    async def _run_plain(self, step: TaskDescriptor, run: FlowRun) -> None:
        name = step.display_name
        kind = _COMMAND_KINDS.get(step.resolved_command_id) or step.kind or TaskKind.TASK
        try:
            result = await self.maa.execute(build(step), task_name=name, kind=kind)
        except PlumaError as exc:
            logger.error("[flow %s] %s failed: %s", run.schedule_id, name, exc)
            run.record_failure(name)
        else:
            run.record_success(extract_summary(name, result.stdout))
        await self._sleep(float(config.SYSTEM.STEP_DELAY_SECONDS))

    def _unit_count(self, step: TaskDescriptor) -> int:
        if step.task_type or step.resolved_command_id != "fight":
            return 1
        return max(1, len(stage_entries_from_params(step.params or {})))

    def _set_status(self, **changes: Any) -> None:
        with self._status_lock:
            self._status = self._status.model_copy(update=changes)

    def _publish(self, schedule_id: str) -> None:
        status = self.get_execution_status()
        self.broker.publish(
            ProgressEvent(
                schedule_id=schedule_id,
                current_step=status.current_step_index,
                total_steps=status.total_steps,
                current_task_name=status.current_task_name,
                message=status.message,
            )
        )

    async def _notify(self, result: FlowResult) -> None:
        notifier = self._notifier
        if notifier is None:
            from ..notification.notification_service import notification_manager

            notifier = notification_manager.notify
        try:
            await notifier(result)
        except Exception:
            logger.exception("Completion notification for %s failed", result.task_name)


flow_orchestrator = FlowOrchestrator()


logger = logging.getLogger(__name__)
