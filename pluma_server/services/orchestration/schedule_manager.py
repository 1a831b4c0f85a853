import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from apscheduler.schedulers.asyncio import AsyncIOScheduler  # type: ignore[import-untyped]
from apscheduler.triggers.cron import CronTrigger  # type: ignore[import-untyped]

from ...config import config
from ...errors import FlowRejectedError, PlumaError, TaskAlreadyRunningError
from ...models import (
    AutoUpdateConfig,
    AutoUpdateStatus,
    FlowResult,
    RegistrationResult,
    ScheduleInfo,
    TaskDescriptor,
)
from ...runtime.process import ProcessResult
from .flow_orchestrator import FlowOrchestrator, flow_orchestrator
from .maa_cli import MaaCliClient, maa_cli

AUTO_UPDATE_ID = "auto-update"
RESERVED_ID_MESSAGE = f"'{AUTO_UPDATE_ID}' is reserved for the update job"

_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{1,2})\s*$")


@dataclass(frozen=True)
class ScheduledEntry:
    time_of_day: str
    job_id: str


def parse_time_of_day(value: str) -> Optional[Tuple[int, int]]:
    match = _TIME_RE.match(value or "")
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None
    return hour, minute


class ScheduleManager:
    """
    Cron-style triggers for saved flows.

    Responsibilities:
    - Keep a registry of schedule id -> daily trigger times.
    - Re-registering an id replaces all of its triggers atomically.
    - Each tick runs the flow through the orchestrator; a tick that finds
      the slot busy is logged and dropped.
    - Own the daily auto-update job under the reserved id `auto-update`.
    """

    def __init__(
        self,
        orchestrator: Optional[FlowOrchestrator] = None,
        maa: Optional[MaaCliClient] = None,
        scheduler: Optional[AsyncIOScheduler] = None,
    ) -> None:
        self.orchestrator = orchestrator or flow_orchestrator
        self.maa = maa or maa_cli
        self.scheduler = scheduler or AsyncIOScheduler(timezone=str(config.SYSTEM.SCHEDULE_TIMEZONE))
        self._lock = threading.RLock()
        self._registry: Dict[str, List[ScheduledEntry]] = {}
        self._auto_update = AutoUpdateConfig()

    def start(self) -> None:
        if self.scheduler.running:
            return
        self.scheduler.start()
        logger.info("Schedule manager started (%s)", config.SYSTEM.SCHEDULE_TIMEZONE)

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def schedule(self, schedule_id: str, times: Sequence[str], flow: Sequence[TaskDescriptor]) -> RegistrationResult:
        if schedule_id == AUTO_UPDATE_ID:
            return RegistrationResult(success=False, message=RESERVED_ID_MESSAGE)
        flow_snapshot = [task.model_copy(deep=True) for task in flow]
        with self._lock:
            self._remove_locked(schedule_id)
            entries: List[ScheduledEntry] = []
            for index, time_of_day in enumerate(times or []):
                parsed = parse_time_of_day(time_of_day)
                if parsed is None:
                    logger.warning("[schedule %s] ignoring invalid time %r", schedule_id, time_of_day)
                    continue
                hour, minute = parsed
                job_id = f"schedule:{schedule_id}:{index}"
                self.scheduler.add_job(
                    self._fire,
                    self._trigger(hour, minute),
                    id=job_id,
                    args=[flow_snapshot, f"{schedule_id}-{index}"],
                    replace_existing=True,
                    coalesce=True,
                    misfire_grace_time=60,
                )
                entries.append(ScheduledEntry(time_of_day=f"{hour:02d}:{minute:02d}", job_id=job_id))

            if not entries:
                return RegistrationResult(success=False, message="No valid execution time set")
            self._registry[schedule_id] = entries

        registered = [entry.time_of_day for entry in entries]
        logger.info("[schedule %s] registered at %s", schedule_id, ", ".join(registered))
        return RegistrationResult(
            success=True,
            message=f"Scheduled {len(registered)} daily run(s)",
            times=registered,
        )

    def unschedule(self, schedule_id: str) -> RegistrationResult:
        if schedule_id == AUTO_UPDATE_ID:
            return RegistrationResult(success=False, message=RESERVED_ID_MESSAGE)
        with self._lock:
            removed = self._remove_locked(schedule_id)
        if not removed:
            return RegistrationResult(success=False, message="Schedule not found")
        return RegistrationResult(success=True, message="Schedule stopped", times=removed)

    def list_schedules(self) -> List[ScheduleInfo]:
        with self._lock:
            return [
                ScheduleInfo(
                    schedule_id=schedule_id,
                    times=[entry.time_of_day for entry in entries],
                    count=len(entries),
                )
                for schedule_id, entries in self._registry.items()
                if schedule_id != AUTO_UPDATE_ID
            ]

    async def trigger_now(self, schedule_id: str, flow: Sequence[TaskDescriptor]) -> FlowResult:
        logger.info("[schedule %s] manual trigger", schedule_id)
        return await self.orchestrator.run_flow(flow, schedule_id)

    def trigger_in_background(self, schedule_id: str, flow: Sequence[TaskDescriptor]) -> bool:
        logger.info("[schedule %s] manual trigger (background)", schedule_id)
        return self.orchestrator.start_flow(flow, schedule_id)

    def setup_auto_update(self, settings: AutoUpdateConfig) -> RegistrationResult:
        with self._lock:
            self._remove_locked(AUTO_UPDATE_ID)
            self._auto_update = settings
            if not settings.enabled or not settings.time:
                return RegistrationResult(success=False, message="Auto update disabled")
            parsed = parse_time_of_day(settings.time)
            if parsed is None:
                return RegistrationResult(success=False, message="Invalid time format")
            hour, minute = parsed
            job_id = f"schedule:{AUTO_UPDATE_ID}:0"
            self.scheduler.add_job(
                self._run_auto_update,
                self._trigger(hour, minute),
                id=job_id,
                args=[settings.model_copy()],
                replace_existing=True,
                coalesce=True,
                misfire_grace_time=300,
            )
            time_of_day = f"{hour:02d}:{minute:02d}"
            self._registry[AUTO_UPDATE_ID] = [ScheduledEntry(time_of_day=time_of_day, job_id=job_id)]
        logger.info("Auto update scheduled at %s", time_of_day)
        return RegistrationResult(success=True, message="Auto update scheduled", times=[time_of_day])

    def auto_update_status(self) -> AutoUpdateStatus:
        with self._lock:
            entries = self._registry.get(AUTO_UPDATE_ID) or []
            settings = self._auto_update
        if not entries:
            return AutoUpdateStatus(enabled=False)
        job = self.scheduler.get_job(entries[0].job_id)
        return AutoUpdateStatus(
            enabled=True,
            time=entries[0].time_of_day,
            update_core=settings.update_core,
            update_cli=settings.update_cli,
            next_run_time=getattr(job, "next_run_time", None),
        )

    async def run_update(self, *, update_core: bool, update_cli: bool) -> List[ProcessResult]:
        """
        Update MAA resources and/or the CLI while holding the flow slot.

        Raises FlowRejectedError when a flow holds the slot and
        TaskAlreadyRunningError when another task owns the task slot.
        """
        slot = self.orchestrator.slot
        if not slot.try_acquire(AUTO_UPDATE_ID):
            raise FlowRejectedError("A flow is running")
        try:
            if self.orchestrator.tracker.is_running:
                raise TaskAlreadyRunningError("A task is running")
            results: List[ProcessResult] = []
            if update_core:
                logger.info("Updating MAA resources")
                results.append(await self.maa.update_resources())
            if update_cli:
                logger.info("Updating maa-cli")
                results.append(await self.maa.self_update())
            return results
        finally:
            slot.release()

    async def _fire(self, flow: List[TaskDescriptor], run_id: str) -> None:
        logger.info("[schedule %s] triggered", run_id)
        try:
            await self.orchestrator.run_flow(flow, run_id)
        except FlowRejectedError as exc:
            logger.warning("[schedule %s] tick skipped: %s", run_id, exc.message)
        except Exception:
            logger.exception("[schedule %s] flow crashed", run_id)

    async def _run_auto_update(self, settings: AutoUpdateConfig) -> None:
        try:
            await self.run_update(update_core=settings.update_core, update_cli=settings.update_cli)
        except (FlowRejectedError, TaskAlreadyRunningError) as exc:
            logger.warning("Auto update skipped: %s", exc.message)
        except PlumaError as exc:
            logger.error("Auto update failed: %s", exc.message)
        else:
            logger.info("Auto update finished")

    def _remove_locked(self, schedule_id: str) -> List[str]:
        entries = self._registry.pop(schedule_id, None) or []
        for entry in entries:
            if self.scheduler.get_job(entry.job_id) is not None:
                self.scheduler.remove_job(entry.job_id)
        if entries:
            logger.info("[schedule %s] removed %s trigger(s)", schedule_id, len(entries))
        return [entry.time_of_day for entry in entries]

    def _trigger(self, hour: int, minute: int) -> CronTrigger:
        return CronTrigger(hour=hour, minute=minute, timezone=str(config.SYSTEM.SCHEDULE_TIMEZONE))


schedule_manager = ScheduleManager()

logger = logging.getLogger(__name__)
