import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import config

# Telegram Bot API URLs carry the token in the path: /bot<token>/sendMessage
_BOT_TOKEN_RE = re.compile(r"/bot[^/\s]+/")


class BotTokenFilter(logging.Filter):
    """Masks Telegram bot tokens in request URLs logged by httpx."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = _BOT_TOKEN_RE.sub("/bot***/", message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging() -> None:
    """Configure logging for the service and write logs to file."""
    level = getattr(logging, str(config.SYSTEM.LOG_LEVEL).upper(), logging.INFO)

    logs_dir = Path(config.SYSTEM.DATA_DIR) / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = Path(str(config.SYSTEM.LOG_FILE) or str(logs_dir / "pluma_server.log"))

    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    formatter = logging.Formatter(
        fmt="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )
    token_filter = BotTokenFilter()

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)
    stream_handler.addFilter(token_filter)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=int(config.SYSTEM.LOG_MAX_BYTES),
        backupCount=int(config.SYSTEM.LOG_BACKUP_COUNT),
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    file_handler.addFilter(token_filter)

    root_logger.setLevel(level)
    root_logger.addHandler(stream_handler)
    root_logger.addHandler(file_handler)

    # Scheduler chatter at INFO drowns out flow progress
    logging.getLogger("apscheduler").setLevel(max(level, logging.WARNING))
