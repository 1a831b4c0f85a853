import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field

from ...config import config


class ResourceStage(BaseModel):
    display_name: str
    # 0 = Sunday ... 6 = Saturday
    open_weekdays: List[int] = Field(default_factory=list)


@dataclass(frozen=True)
class GateDecision:
    is_open: bool
    reason: Optional[str] = None
    display_name: Optional[str] = None


class ResourceGate:
    """
    Weekday schedule of resource stages.

    Stages missing from the table are always open. The table is read lazily
    from the configured JSON asset; a missing or malformed file leaves every
    stage open.
    """

    def __init__(self, table_path: Optional[str] = None) -> None:
        self._table_path = table_path
        self._table: Optional[Dict[str, ResourceStage]] = None
        self._lock = threading.Lock()

    def is_stage_open_today(self, stage_code: str, now: Optional[datetime] = None) -> GateDecision:
        stage = self._load_table().get((stage_code or "").strip().upper())
        if stage is None:
            return GateDecision(is_open=True)
        weekday = self._weekday(now)
        if weekday in stage.open_weekdays:
            return GateDecision(is_open=True, display_name=stage.display_name)
        return GateDecision(
            is_open=False,
            reason=f"{stage.display_name} stage is closed today",
            display_name=stage.display_name,
        )

    def _weekday(self, now: Optional[datetime]) -> int:
        if now is None:
            now = datetime.now(ZoneInfo(str(config.SYSTEM.SCHEDULE_TIMEZONE)))
        # isoweekday: Monday=1 .. Sunday=7
        return now.isoweekday() % 7

    def _load_table(self) -> Dict[str, ResourceStage]:
        with self._lock:
            if self._table is not None:
                return self._table
            path = Path(self._table_path or config.SYSTEM.RESOURCE_STAGES)
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
                self._table = {
                    str(code).upper(): ResourceStage.model_validate(entry)
                    for code, entry in raw.items()
                }
            except (OSError, ValueError) as exc:
                logger.warning("Resource stage table unavailable at %s: %s", path, exc)
                self._table = {}
            return self._table


resource_gate = ResourceGate()


def is_stage_open_today(stage_code: str, now: Optional[datetime] = None) -> GateDecision:
    return resource_gate.is_stage_open_today(stage_code, now)


logger = logging.getLogger(__name__)
