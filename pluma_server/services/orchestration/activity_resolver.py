import logging
import re
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Tuple

from ...config import config
from ...errors import PlumaError
from ...models import ActivityInfo

_NAME_RE = re.compile(r"「([^」]+)」")
_CODE_PATTERNS = (
    re.compile(r"\(([A-Z]{2,3})-\d+", re.IGNORECASE),
    re.compile(r"([A-Z]{2,3})-\d+", re.IGNORECASE),
    re.compile(r"SideStory[:\s]+.*?([A-Z]{2,3})-\d+", re.IGNORECASE),
    re.compile(r"\b([A-Z]{2,3})-\d+\b", re.IGNORECASE),
)
_PLACEHOLDER_RE = re.compile(r"^hd-(\d+)$", re.IGNORECASE)

ActivityQuery = Callable[[str], Awaitable[str]]


def parse_activity_output(output: str) -> Tuple[Optional[str], Optional[str]]:
    """Return `(code, name)` from `maa activity` output."""
    name_match = _NAME_RE.search(output or "")
    name = name_match.group(1) if name_match else None
    for pattern in _CODE_PATTERNS:
        match = pattern.search(output or "")
        if match:
            return match.group(1).upper(), name
    return None, name


def is_activity_placeholder(stage_code: str) -> bool:
    return bool(_PLACEHOLDER_RE.match((stage_code or "").strip()))


class ActivityResolver:
    """
    Shared cache of the current side-story event.

    Refreshes are last-writer-wins. A failed refresh keeps serving the
    previous value, flagged as stale.
    """

    def __init__(
        self,
        query: Optional[ActivityQuery] = None,
        clock: Callable[[], float] = time.monotonic,
        ttl_seconds: Optional[float] = None,
    ) -> None:
        self._query = query
        self._clock = clock
        self._ttl_seconds = ttl_seconds
        self._info = ActivityInfo()
        self._fetched_monotonic: Optional[float] = None

    async def get_current_activity(self, client_type: Optional[str] = None) -> ActivityInfo:
        if self._is_fresh():
            return self._info
        client_type = client_type or str(config.SYSTEM.MAA_CLIENT_TYPE)
        try:
            output = await self._run_query(client_type)
        except (PlumaError, OSError) as exc:
            logger.warning("Activity lookup failed, serving cached value: %s", exc)
            return self._info.model_copy(update={"stale": True})

        code, name = parse_activity_output(output)
        if code is None:
            logger.info("No activity code found in `maa activity` output")
            return ActivityInfo(code=None, name=name, fetched_at=datetime.now(timezone.utc))
        self._info = ActivityInfo(code=code, name=name, fetched_at=datetime.now(timezone.utc))
        self._fetched_monotonic = self._clock()
        logger.info("Current activity: %s (%s)", code, name)
        return self._info

    async def resolve_stage(self, stage_code: str, client_type: Optional[str] = None) -> str:
        match = _PLACEHOLDER_RE.match((stage_code or "").strip())
        if not match:
            return stage_code
        info = await self.get_current_activity(client_type)
        if not info.code:
            logger.warning("Activity code unavailable; keeping stage %s", stage_code)
            return stage_code
        resolved = f"{info.code}-{match.group(1)}"
        logger.info("Resolved stage %s -> %s", stage_code, resolved)
        return resolved

    def invalidate(self) -> None:
        self._fetched_monotonic = None

    def _is_fresh(self) -> bool:
        if not self._info.code or self._fetched_monotonic is None:
            return False
        ttl = self._ttl_seconds
        if ttl is None:
            ttl = float(config.SYSTEM.ACTIVITY_CACHE_TTL_SECONDS)
        return self._clock() - self._fetched_monotonic < ttl

    async def _run_query(self, client_type: str) -> str:
        if self._query is not None:
            return await self._query(client_type)
        from .maa_cli import maa_cli

        return await maa_cli.activity(client_type)


activity_resolver = ActivityResolver()

logger = logging.getLogger(__name__)
