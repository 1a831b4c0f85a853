"""
Data Models for La Pluma Server.

This module defines the Pydantic models used throughout the application
for validation, serialization, and type hinting. It covers:
- Task descriptors and stage entries consumed by the flow orchestrator
- Task state and schedule execution snapshots (TaskStateSnapshot, ScheduleExecutionStatus)
- Per-step summaries and the completion report (StepSummary, FlowResult)
- API Request/Response schemas for the maa, schedule and notification routers
"""

from enum import Enum
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime


class TaskKind(str, Enum):
    """
    Category of the work currently owning the task slot.
    """
    AUTOMATION = "automation"
    COMBAT = "combat"
    ROGUELIKE = "roguelike"
    STARTUP = "startup"
    CLOSEDOWN = "closedown"
    FIGHT = "fight"
    TASK = "task"


class LogLevel(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogRecord(BaseModel):
    time: datetime
    level: LogLevel = LogLevel.INFO
    message: str


class TaskStateSnapshot(BaseModel):
    """Immutable view of the task slot; the process handle is never exposed."""
    running: bool = False
    name: Optional[str] = None
    kind: Optional[TaskKind] = None
    started_at: Optional[datetime] = None
    logs: List[LogRecord] = Field(default_factory=list)


class TaskDescriptor(BaseModel):
    """
    One step of a flow as stored in the user's saved configuration.

    `commandId` falls back to the prefix of `id` before the first `-`, so a
    saved step `fight-1` runs the `fight` command.
    """
    model_config = ConfigDict(populate_by_name=True)

    id: str
    command_id: Optional[str] = Field(default=None, alias="commandId")
    name: Optional[str] = None
    enabled: bool = True
    params: Dict[str, Any] = Field(default_factory=dict)
    task_type: Optional[str] = Field(default=None, alias="taskType")
    kind: Optional[TaskKind] = None

    @property
    def resolved_command_id(self) -> str:
        if self.command_id:
            return self.command_id
        return self.id.split("-", 1)[0]

    @property
    def display_name(self) -> str:
        return self.name or self.id


class StageEntry(BaseModel):
    stage_code: str
    run_count: Optional[int] = None


class ActivityInfo(BaseModel):
    """Current side-story event; `code` is the stage prefix that replaces `hd`."""
    code: Optional[str] = None
    name: Optional[str] = None
    fetched_at: Optional[datetime] = None
    stale: bool = False


class ScheduleExecutionStatus(BaseModel):
    is_running: bool = False
    schedule_id: Optional[str] = None
    current_step_index: int = -1
    total_steps: int = 0
    current_task_name: Optional[str] = None
    current_task_id: Optional[str] = None
    message: Optional[str] = None
    started_at: Optional[datetime] = None


class RecruitOutcome(BaseModel):
    tags: List[str] = Field(default_factory=list)
    stars: int


class StepSummary(BaseModel):
    """Facts recognized in the output of one run."""
    task: str
    stage: Optional[str] = None
    times: Optional[int] = None
    drops: Dict[str, int] = Field(default_factory=dict)
    medicine: Optional[int] = None
    stone: Optional[int] = None
    duration: Optional[str] = None
    recruits: List[RecruitOutcome] = Field(default_factory=list)
    infrast: Optional[str] = None


class SkippedEntry(BaseModel):
    task: str
    reason: str


class FlowResult(BaseModel):
    """
    Completion report handed to the notification collaborator.

    Counters are per stage: `success_tasks + failed_tasks + skipped_tasks`
    always equals `total_tasks`.
    """
    task_name: str
    schedule_id: Optional[str] = None
    total_tasks: int = 0
    success_tasks: int = 0
    failed_tasks: int = 0
    skipped_tasks: int = 0
    duration_ms: int = 0
    errors: List[str] = Field(default_factory=list)
    skipped: List[SkippedEntry] = Field(default_factory=list)
    summaries: List[StepSummary] = Field(default_factory=list)
    screenshot: Optional[str] = None


class ProgressEvent(BaseModel):
    schedule_id: Optional[str] = None
    current_step: int
    total_steps: int
    current_task_name: Optional[str] = None
    message: Optional[str] = None


class RegistrationResult(BaseModel):
    success: bool
    message: str
    times: List[str] = Field(default_factory=list)


class ScheduleInfo(BaseModel):
    schedule_id: str
    times: List[str] = Field(default_factory=list)
    count: int = 0


class AutoUpdateConfig(BaseModel):
    enabled: bool = False
    time: str = "04:00"
    update_core: bool = True
    update_cli: bool = True


class AutoUpdateStatus(BaseModel):
    enabled: bool = False
    time: Optional[str] = None
    update_core: bool = True
    update_cli: bool = True
    next_run_time: Optional[datetime] = None


# -----------------------------------------------------------------------------
# API schemas
# -----------------------------------------------------------------------------

class ScheduleRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    schedule_id: str = Field(alias="scheduleId")
    times: List[str]
    task_flow: List[TaskDescriptor] = Field(alias="taskFlow")


class ScheduleExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task_flow: List[TaskDescriptor] = Field(alias="taskFlow")


class ScheduleStatusResponse(BaseModel):
    schedules: List[ScheduleInfo] = Field(default_factory=list)


class ExecuteTaskRequest(BaseModel):
    """Single task submitted from the dashboard; runs as a one-step flow."""
    model_config = ConfigDict(populate_by_name=True)

    command: str
    name: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    task_type: Optional[str] = Field(default=None, alias="taskType")
    kind: Optional[TaskKind] = None


class RunFlowResponse(BaseModel):
    accepted: bool
    message: str
    # busy | not_found | empty when rejected
    reason: Optional[str] = None


class StopTaskResponse(BaseModel):
    success: bool
    message: str


class RealtimeLogsResponse(BaseModel):
    running: bool
    name: Optional[str] = None
    logs: List[LogRecord] = Field(default_factory=list)


class ControlStatusResponse(BaseModel):
    task: TaskStateSnapshot
    execution: ScheduleExecutionStatus


class VersionResponse(BaseModel):
    version: str


class ConfigDirResponse(BaseModel):
    config_dir: str


class DeviceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    adb_path: Optional[str] = Field(default=None, alias="adbPath")
    address: Optional[str] = None


class ScreenshotResponse(BaseModel):
    image: str
    mime_type: str = "image/png"
    captured_at: datetime


class ConnectionTestResponse(BaseModel):
    success: bool
    message: str
    devices: List[str] = Field(default_factory=list)


class MaaFileInfo(BaseModel):
    """A file under the MAA log or debug directory; `name` is relative to that directory."""
    name: str
    path: str
    size: int
    modified: datetime


class LogFileListResponse(BaseModel):
    files: List[MaaFileInfo] = Field(default_factory=list)


class LogFileContent(BaseModel):
    name: str
    content: str
    total_lines: int
    returned_lines: int


class LogCleanupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    max_size_mb: Optional[float] = Field(default=None, alias="maxSizeMB", gt=0)


class LogCleanupResult(BaseModel):
    deleted_count: int = 0
    freed_bytes: int = 0
    message: str = ""


class DebugScreenshotListResponse(BaseModel):
    screenshots: List[MaaFileInfo] = Field(default_factory=list)


class MaaUpdateResponse(BaseModel):
    success: bool
    message: str
    output: str = ""


class TelegramChannelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = False
    bot_token: str = Field(default="", alias="botToken")
    chat_id: str = Field(default="", alias="chatId")


class NotificationChannels(BaseModel):
    telegram: TelegramChannelConfig = Field(default_factory=TelegramChannelConfig)


class NotificationConfig(BaseModel):
    enabled: bool = False
    channels: NotificationChannels = Field(default_factory=NotificationChannels)


class NotificationSendRequest(BaseModel):
    title: str
    message: str
    level: str = "info"
    data: Dict[str, Any] = Field(default_factory=dict)


class NotificationSendResponse(BaseModel):
    success: bool
    results: Dict[str, bool] = Field(default_factory=dict)


class NotificationChannelSendResponse(BaseModel):
    success: bool
    data: Dict[str, Any] = Field(default_factory=dict)
