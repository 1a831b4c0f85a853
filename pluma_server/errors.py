from __future__ import annotations

from typing import Any


class PlumaError(Exception):
    code = "PLUMA_ERROR"

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ProcessSpawnError(PlumaError):
    """The automation binary could not be launched."""

    code = "PROCESS_SPAWN_FAILED"


class ClassifiedRuntimeError(PlumaError):
    """A run exited non-zero; `kind` and `hint` come from the output classifier."""

    code = "TASK_FAILED"

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        hint: str,
        exit_code: int | None = None,
        output: str = "",
        stopped: bool = False,
    ) -> None:
        super().__init__(message, {"kind": kind, "hint": hint, "exit_code": exit_code})
        self.kind = kind
        self.hint = hint
        self.exit_code = exit_code
        self.output = output
        self.stopped = stopped


class ResourceExhausted(PlumaError):
    code = "RESOURCE_EXHAUSTED"


class GateClosed(PlumaError):
    code = "GATE_CLOSED"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ConfigBuildError(PlumaError):
    code = "CONFIG_BUILD_FAILED"


class TaskAlreadyRunningError(PlumaError):
    code = "TASK_ALREADY_RUNNING"


class FlowRejectedError(PlumaError):
    """Another flow holds the execution slot."""

    code = "FLOW_REJECTED"


class ScreenshotError(PlumaError):
    code = "SCREENSHOT_FAILED"


class NotificationError(PlumaError):
    code = "NOTIFICATION_FAILED"
