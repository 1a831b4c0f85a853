"""
Core Configuration Definitions.

This module defines the default structure and values for the application's
configuration system using `yacs`. It serves as the single source of truth
for all configurable parameters.

Configuration is organized into sections:
- SYSTEM: Global paths, the automation binary and flow timing.
- NOTIFICATION: Completion-report delivery channels.
"""

import os
from pathlib import Path
from yacs.config import CfgNode as CN  # type: ignore[import-untyped]


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


_C = CN()

# -----------------------------------------------------------------------------
# System Configuration
# -----------------------------------------------------------------------------
_C.SYSTEM = CN()
# Root directory of the project (calculated dynamically if not set)
_C.SYSTEM.ROOT = str(Path(__file__).parent.parent)

# Data directory for logs and saved user configuration
_C.SYSTEM.DATA_DIR = os.environ.get("PLUMA_DATA_DIR", os.path.join(_C.SYSTEM.ROOT, "data"))

# Service log: level, file (empty = <DATA_DIR>/logs/pluma_server.log) and rotation
_C.SYSTEM.LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
_C.SYSTEM.LOG_FILE = os.environ.get("LOG_FILE", "")
_C.SYSTEM.LOG_MAX_BYTES = _env_int("LOG_MAX_BYTES", 5 * 1024 * 1024)
_C.SYSTEM.LOG_BACKUP_COUNT = _env_int("LOG_BACKUP_COUNT", 5)

# Saved task flows: <USER_CONFIG_DIR>/<flow_id>-tasks.json
_C.SYSTEM.USER_CONFIG_DIR = os.environ.get(
    "PLUMA_USER_CONFIG_DIR",
    os.path.join(_C.SYSTEM.DATA_DIR, "user-configs"),
)

# Automation binary and its config and log directories (empty = ask `maa dir <name>`)
_C.SYSTEM.MAA_EXECUTABLE = os.environ.get("MAA_EXECUTABLE", "maa")
_C.SYSTEM.MAA_CONFIG_DIR = os.environ.get("MAA_CONFIG_DIR", "")
_C.SYSTEM.MAA_LOG_DIR = os.environ.get("MAA_LOG_DIR", "")
_C.SYSTEM.MAA_CLIENT_TYPE = os.environ.get("MAA_CLIENT_TYPE", "Official")

# Device bridge defaults, overridden per flow by the startup step params
_C.SYSTEM.ADB_PATH = os.environ.get("ADB_PATH", "/opt/homebrew/bin/adb")
_C.SYSTEM.ADB_ADDRESS = os.environ.get("ADB_ADDRESS", "127.0.0.1:16384")

# Cron triggers and the resource-gate weekday are evaluated in this zone
_C.SYSTEM.SCHEDULE_TIMEZONE = os.environ.get("PLUMA_SCHEDULE_TIMEZONE", "Asia/Shanghai")

# Weekday table for resource stages
_C.SYSTEM.RESOURCE_STAGES = os.path.join(
    _C.SYSTEM.ROOT, "pluma_server", "assets", "configs", "resource_stages.json"
)

# Task log buffer
_C.SYSTEM.LOG_BUFFER_MAX_RECORDS = _env_int("PLUMA_LOG_BUFFER_MAX_RECORDS", 1000)
_C.SYSTEM.LOG_RETENTION_SECONDS = _env_float("PLUMA_LOG_RETENTION_SECONDS", 60.0)

# Process runner
_C.SYSTEM.OUTPUT_QUEUE_SIZE = _env_int("PLUMA_OUTPUT_QUEUE_SIZE", 256)
_C.SYSTEM.KILL_GRACE_SECONDS = _env_float("PLUMA_KILL_GRACE_SECONDS", 3.0)

# Flow timing (seconds)
_C.SYSTEM.STARTUP_WAIT_SECONDS = _env_float("PLUMA_STARTUP_WAIT_SECONDS", 15.0)
_C.SYSTEM.STARTUP_MAX_RETRIES = _env_int("PLUMA_STARTUP_MAX_RETRIES", 2)
_C.SYSTEM.STARTUP_RETRY_BACKOFF_SECONDS = _env_float("PLUMA_STARTUP_RETRY_BACKOFF_SECONDS", 3.0)
_C.SYSTEM.STAGE_INTERVAL_SECONDS = _env_float("PLUMA_STAGE_INTERVAL_SECONDS", 2.0)
_C.SYSTEM.STEP_DELAY_SECONDS = _env_float("PLUMA_STEP_DELAY_SECONDS", 2.0)
_C.SYSTEM.CLOSEDOWN_DELAY_SECONDS = _env_float("PLUMA_CLOSEDOWN_DELAY_SECONDS", 3.0)

# MAA log files: total size kept by cleanup, default tail length when reading
_C.SYSTEM.MAA_LOG_MAX_MB = _env_float("PLUMA_MAA_LOG_MAX_MB", 10.0)
_C.SYSTEM.MAA_LOG_TAIL_LINES = _env_int("PLUMA_MAA_LOG_TAIL_LINES", 1000)

# Current-event lookup cache
_C.SYSTEM.ACTIVITY_CACHE_TTL_SECONDS = _env_int("PLUMA_ACTIVITY_CACHE_TTL_SECONDS", 24 * 60 * 60)

# -----------------------------------------------------------------------------
# Notification Configuration
# -----------------------------------------------------------------------------
_C.NOTIFICATION = CN()
_C.NOTIFICATION.ENABLED = _env_bool("PLUMA_NOTIFICATION_ENABLED", False)
_C.NOTIFICATION.TELEGRAM_ENABLED = _env_bool("TELEGRAM_ENABLED", False)
_C.NOTIFICATION.TELEGRAM_BOT_TOKEN = os.environ.get("TELEGRAM_BOT_TOKEN", "")
_C.NOTIFICATION.TELEGRAM_CHAT_ID = os.environ.get("TELEGRAM_CHAT_ID", "")
_C.NOTIFICATION.TELEGRAM_API_BASE = os.environ.get("TELEGRAM_API_BASE", "https://api.telegram.org")
_C.NOTIFICATION.PHOTO_MAX_BYTES = 10 * 1024 * 1024
_C.NOTIFICATION.PHOTO_MAX_ATTEMPTS = 3
_C.NOTIFICATION.REQUEST_TIMEOUT_SECONDS = 30.0


def get_cfg_defaults():
    """
    Get a yacs CfgNode object with default values.
    Returns a clone to ensure thread-safety during initialization.
    """
    return _C.clone()
