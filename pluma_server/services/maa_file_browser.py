"""
Read-only views over the directories `maa` writes into.

- Log files under `maa dir log` (recursive `*.log`), newest first, with a
  size-bounded cleanup that keeps the newest files.
- Debug screenshots under `<maa config dir>/../debug`.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional

from ..config import config
from ..models import LogCleanupResult, LogFileContent, MaaFileInfo
from .orchestration.maa_cli import MaaCliClient, maa_cli

LOG_SUFFIX = ".log"
IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg")


def list_log_files(log_root: Path) -> List[MaaFileInfo]:
    if not log_root.is_dir():
        return []
    return _newest_first(log_root, (path for path in log_root.rglob(f"*{LOG_SUFFIX}") if path.is_file()))


def list_debug_screenshots(debug_root: Path) -> List[MaaFileInfo]:
    if not debug_root.is_dir():
        return []
    files = (
        path for path in debug_root.iterdir()
        if path.is_file() and path.suffix.lower() in IMAGE_SUFFIXES
    )
    return _newest_first(debug_root, files)


def resolve_log_file_path(log_root: Path, relative_path: str) -> Path:
    path_text = relative_path.strip()
    if not path_text:
        raise ValueError("path is required")

    requested = Path(path_text)
    if requested.is_absolute() or ".." in requested.parts:
        raise ValueError("invalid path")
    if requested.suffix != LOG_SUFFIX:
        raise ValueError("not a log file")

    root_resolved = log_root.resolve(strict=True)
    candidate = (log_root / requested).resolve(strict=False)
    try:
        candidate.relative_to(root_resolved)
    except ValueError as exc:
        raise ValueError("path escapes log directory") from exc

    if not candidate.is_file():
        raise FileNotFoundError("file not found")
    return candidate


def read_log_tail(file_path: Path, lines: int, name: Optional[str] = None) -> LogFileContent:
    content = file_path.read_text(encoding="utf-8", errors="replace")
    all_lines = content.split("\n")
    selected = all_lines[max(0, len(all_lines) - lines):]
    return LogFileContent(
        name=name or file_path.name,
        content="\n".join(selected),
        total_lines=len(all_lines),
        returned_lines=len(selected),
    )


def cleanup_log_files(log_root: Path, max_bytes: int) -> LogCleanupResult:
    """Delete the oldest log files once the running total of newer ones exceeds `max_bytes`."""
    total = 0
    deleted = 0
    freed = 0
    for info in list_log_files(log_root):
        total += info.size
        if total <= max_bytes:
            continue
        try:
            Path(info.path).unlink()
        except OSError as exc:
            logger.warning("Failed to delete log file %s: %s", info.path, exc)
            continue
        deleted += 1
        freed += info.size
        logger.info("Deleted old log file %s (%.2f KB)", info.name, info.size / 1024)

    message = f"Deleted {deleted} log file(s), freed {freed / 1024 / 1024:.2f} MB"
    if deleted:
        logger.info(message)
    return LogCleanupResult(deleted_count=deleted, freed_bytes=freed, message=message)


def _newest_first(root: Path, paths: Iterable[Path]) -> List[MaaFileInfo]:
    files = []
    for path in paths:
        stat = path.stat()
        files.append(
            MaaFileInfo(
                name=path.relative_to(root).as_posix(),
                path=str(path),
                size=stat.st_size,
                modified=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            )
        )
    files.sort(key=lambda info: info.modified, reverse=True)
    return files


class MaaFileBrowser:
    """Resolves the `maa` directories and applies the helpers above to them."""

    def __init__(self, maa: Optional[MaaCliClient] = None) -> None:
        self.maa = maa or maa_cli

    async def log_root(self) -> Path:
        return Path(await self.maa.log_dir())

    async def debug_root(self) -> Path:
        return Path(await self.maa.config_dir()).parent / "debug"

    async def list_logs(self) -> List[MaaFileInfo]:
        return list_log_files(await self.log_root())

    async def read_log(self, relative_path: str, lines: Optional[int] = None) -> LogFileContent:
        root = await self.log_root()
        target = resolve_log_file_path(root, relative_path)
        return read_log_tail(
            target,
            lines or int(config.SYSTEM.MAA_LOG_TAIL_LINES),
            name=target.relative_to(root.resolve()).as_posix(),
        )

    async def cleanup_logs(self, max_size_mb: Optional[float] = None) -> LogCleanupResult:
        limit_mb = max_size_mb if max_size_mb is not None else float(config.SYSTEM.MAA_LOG_MAX_MB)
        return cleanup_log_files(await self.log_root(), int(limit_mb * 1024 * 1024))

    async def debug_screenshots(self) -> List[MaaFileInfo]:
        return list_debug_screenshots(await self.debug_root())


maa_file_browser = MaaFileBrowser()

logger = logging.getLogger(__name__)
