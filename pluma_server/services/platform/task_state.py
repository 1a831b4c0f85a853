import logging
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Deque, List, Optional

from pluma_server.config import config
from pluma_server.errors import TaskAlreadyRunningError
from pluma_server.models import LogLevel, LogRecord, TaskKind, TaskStateSnapshot


_LOGGING_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARN: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class TaskStateTracker:
    """
    Owner of the process-wide "current task" slot.

    Behavior:
    - Only one task may be marked running; a second `set_running` is a caller error.
    - The runner handle is held exactly while running.
    - After `clear()`, the log buffer is kept for the retention window so the
      dashboard can still read it, then dropped. A new run keeps the buffer.
    """

    def __init__(
        self,
        *,
        max_records: Optional[int] = None,
        retention_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._retention_seconds = retention_seconds
        self._running = False
        self._name: Optional[str] = None
        self._kind: Optional[TaskKind] = None
        self._started_at: Optional[datetime] = None
        self._handle: Any = None
        self._logs: Deque[LogRecord] = deque(
            maxlen=max_records or int(config.SYSTEM.LOG_BUFFER_MAX_RECORDS)
        )
        self._cleared_at: Optional[float] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def handle(self) -> Any:
        with self._lock:
            return self._handle

    def set_running(self, name: str, kind: Optional[TaskKind], handle: Any) -> None:
        if handle is None:
            raise ValueError("A running task needs a process handle")
        with self._lock:
            if self._running:
                raise TaskAlreadyRunningError(f"Task '{self._name}' is already running")
            self._running = True
            self._name = name
            self._kind = kind
            self._started_at = datetime.now(timezone.utc)
            self._handle = handle
            self._cleared_at = None
        logger.info("Task started: %s (%s)", name, kind.value if kind else "-")

    def clear(self) -> None:
        with self._lock:
            name = self._name
            self._running = False
            self._name = None
            self._kind = None
            self._started_at = None
            self._handle = None
            self._cleared_at = self._clock()
        logger.info("Task cleared: %s", name)

    def snapshot(self) -> TaskStateSnapshot:
        with self._lock:
            self._evict_expired_logs()
            return TaskStateSnapshot(
                running=self._running,
                name=self._name,
                kind=self._kind,
                started_at=self._started_at,
                logs=list(self._logs),
            )

    def append_log(self, level: LogLevel, message: str) -> None:
        record = LogRecord(time=datetime.now(timezone.utc), level=level, message=message)
        with self._lock:
            self._evict_expired_logs()
            self._logs.append(record)
        logger.log(_LOGGING_LEVELS.get(level, logging.INFO), "[maa] %s", message)

    def recent_logs(self, lines: int = 100) -> List[LogRecord]:
        with self._lock:
            self._evict_expired_logs()
            if lines <= 0:
                return []
            return list(self._logs)[-lines:]

    def clear_logs(self) -> None:
        with self._lock:
            self._logs.clear()
            self._cleared_at = None if self._running else self._cleared_at

    def _evict_expired_logs(self) -> None:
        if self._running or self._cleared_at is None:
            return
        retention = self._retention_seconds
        if retention is None:
            retention = float(config.SYSTEM.LOG_RETENTION_SECONDS)
        if self._clock() - self._cleared_at >= retention:
            self._logs.clear()
            self._cleared_at = None


task_state = TaskStateTracker()

logger = logging.getLogger(__name__)
