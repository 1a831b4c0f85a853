import json
import logging
import re
from pathlib import Path
from typing import List, Optional

from pydantic import ValidationError

from ..config import config
from ..models import TaskDescriptor

_FLOW_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class FlowNotFoundError(LookupError):
    pass


class FlowStore:
    """Read-only access to flows saved by the dashboard as `<flow_id>-tasks.json`."""

    def __init__(self, root: Optional[str] = None) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return Path(self._root or config.SYSTEM.USER_CONFIG_DIR)

    def path_for(self, flow_id: str) -> Path:
        if not _FLOW_ID_RE.match(flow_id or ""):
            raise FlowNotFoundError(f"Invalid flow id: {flow_id!r}")
        return self.root / f"{flow_id}-tasks.json"

    def load_flow(self, flow_id: str) -> List[TaskDescriptor]:
        path = self.path_for(flow_id)
        if not path.exists():
            raise FlowNotFoundError(f"No saved flow '{flow_id}'")
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise FlowNotFoundError(f"Saved flow '{flow_id}' is unreadable: {exc}") from exc

        raw_flow = payload.get("taskFlow") if isinstance(payload, dict) else None
        if not isinstance(raw_flow, list):
            raise FlowNotFoundError(f"Saved flow '{flow_id}' has no taskFlow")
        tasks = []
        for item in raw_flow:
            try:
                tasks.append(TaskDescriptor.model_validate(item))
            except ValidationError as exc:
                logger.warning("Skipping malformed step in flow %s: %s", flow_id, exc)
        return tasks


flow_store = FlowStore()

logger = logging.getLogger(__name__)
