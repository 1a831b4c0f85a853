"""
Translation of saved task descriptors into `maa` invocations.

Everything here is pure: no process is started and no file is written.
Declarative tasks produce an inline config that `maa_cli` later renders
into `<config dir>/tasks/<stem>.toml` and runs as `maa run <stem>`.
"""

from __future__ import annotations

import json
import logging
import math
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

import tomlkit
from pydantic import BaseModel, ValidationError

from ...errors import ConfigBuildError
from ...models import StageEntry, TaskDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_TYPE = "Official"
DEVICE_COMMANDS = frozenset({"startup", "closedown"})
KEEP_AS_STRING_KEYS = frozenset({"mode"})

_UNSAFE_STEM_CHARS = re.compile(r"[^A-Za-z0-9_-]+")

Scalar = Union[bool, int, float, str]


class TaskConfigDocument(BaseModel):
    """Shape of one `[[tasks]]` entry accepted by `maa run`."""
    name: str
    type: str
    params: Dict[str, Union[Scalar, List[Scalar]]] = {}


@dataclass(frozen=True)
class BuiltCommand:
    command: str
    args: List[str] = field(default_factory=list)
    inline_config: Optional[Dict[str, Any]] = None
    task_file_stem: Optional[str] = None

    @property
    def is_declarative(self) -> bool:
        return self.inline_config is not None


def build(task: TaskDescriptor) -> BuiltCommand:
    if task.task_type:
        return _build_declarative(task)

    command_id = task.resolved_command_id
    params = task.params or {}
    if command_id in DEVICE_COMMANDS:
        args: List[str] = []
        address = _text(params.get("address"))
        if address:
            args.extend(["-a", address])
        args.append(_text(params.get("clientType")) or DEFAULT_CLIENT_TYPE)
        return BuiltCommand(command=command_id, args=args)

    if command_id == "fight":
        return BuiltCommand(command=command_id, args=_build_fight_args(params))

    return BuiltCommand(command=command_id)


def stage_entries_from_params(params: Dict[str, Any]) -> List[StageEntry]:
    raw_stages = params.get("stages")
    if not isinstance(raw_stages, list):
        raw_stages = [{"stage": params.get("stage"), "times": params.get("times")}]

    entries: List[StageEntry] = []
    for item in raw_stages:
        if isinstance(item, str):
            stage, times = item, None
        elif isinstance(item, dict):
            stage, times = item.get("stage"), item.get("times")
        else:
            continue
        stage_code = _text(stage)
        if not stage_code:
            continue
        entries.append(StageEntry(stage_code=stage_code, run_count=_parse_run_count(times)))
    return entries


def format_stage_list(entries: Sequence[StageEntry]) -> str:
    parts = []
    for entry in entries:
        if entry.run_count:
            parts.append(f"{entry.stage_code}:{entry.run_count}")
        else:
            parts.append(entry.stage_code)
    return ",".join(parts)


def parse_stage_entries(arg: str) -> List[StageEntry]:
    """Parse `A:3,B` back into stage entries; blank stages are dropped."""
    entries: List[StageEntry] = []
    for chunk in (arg or "").split(","):
        stage, _, times = chunk.strip().partition(":")
        stage = stage.strip()
        if not stage:
            continue
        entries.append(StageEntry(stage_code=stage, run_count=_parse_run_count(times)))
    return entries


def build_stage_args(entry: StageEntry, extra_args: Sequence[str], stage_code: Optional[str] = None) -> List[str]:
    """
    Arguments for running a single stage of a fight step.

    `extra_args` are the flags that follow the stage list (`-m`, `--stone`,
    `--series`). A stage with an explicit run count drops `--series`.
    """
    args = [stage_code or entry.stage_code]
    if entry.run_count:
        args.extend(["--times", str(entry.run_count)])
        args.extend(_strip_flag(extra_args, "--series"))
    else:
        args.extend(extra_args)
    return args


def normalize_task_params(params: Dict[str, Any]) -> Dict[str, Any]:
    normalized: Dict[str, Any] = {}
    for key, value in (params or {}).items():
        if value is None or value == "":
            continue
        if isinstance(value, bool):
            normalized[key] = value
        elif isinstance(value, list):
            items = _normalize_list(key, value)
            if items:
                normalized[key] = items
        elif isinstance(value, (int, float)):
            normalized[key] = value
        elif isinstance(value, dict):
            normalized[key] = json.dumps(value, ensure_ascii=False)
        elif isinstance(value, str):
            normalized[key] = _normalize_string(key, value)
        else:
            normalized[key] = str(value)
    return normalized


def render_task_config(inline_config: Dict[str, Any]) -> str:
    try:
        document = TaskConfigDocument.model_validate(inline_config)
    except ValidationError as exc:
        raise ConfigBuildError(f"Invalid task config: {exc}") from exc

    entry = tomlkit.table()
    entry.add("name", document.name)
    entry.add("type", document.type)
    params = tomlkit.table()
    for key, value in document.params.items():
        params.add(key, value)
    entry.add("params", params)

    tasks = tomlkit.aot()
    tasks.append(entry)
    doc = tomlkit.document()
    doc.add("tasks", tasks)
    return tomlkit.dumps(doc)


def _build_declarative(task: TaskDescriptor) -> BuiltCommand:
    task_id = task.command_id or task.id
    stem = f"{_UNSAFE_STEM_CHARS.sub('_', task_id)}_{uuid.uuid4().hex[:8]}_temp"
    inline_config = {
        "name": task.display_name,
        "type": task.task_type,
        "params": normalize_task_params(task.params),
    }
    return BuiltCommand(command="run", args=[stem], inline_config=inline_config, task_file_stem=stem)


def _build_fight_args(params: Dict[str, Any]) -> List[str]:
    args: List[str] = []
    stage_list = format_stage_list(stage_entries_from_params(params))
    if stage_list:
        args.append(stage_list)

    medicine = _text(params.get("medicine"))
    if medicine:
        args.extend(["-m", medicine])
    stone = _text(params.get("stone"))
    if stone:
        args.extend(["--stone", stone])
    series = _text(params.get("series"))
    if series and series != "1":
        args.extend(["--series", series])
    return args


def _normalize_list(key: str, value: List[Any]) -> Union[List[Any], str]:
    items = [item for item in value if item is not None]
    if all(_is_scalar(item) for item in items):
        return items
    logger.warning("Keeping parameter '%s' as string: list holds nested values", key)
    return json.dumps(items, ensure_ascii=False)


def _normalize_string(key: str, value: str) -> Any:
    stripped = value.strip()
    if stripped.startswith("[") and stripped.endswith("]"):
        try:
            parsed = json.loads(stripped)
            if not isinstance(parsed, list) or not all(_is_scalar(item) for item in parsed):
                raise ConfigBuildError(f"Parameter '{key}' is not a flat array")
            return parsed
        except (ValueError, ConfigBuildError) as exc:
            logger.warning("Keeping parameter '%s' as string: %s", key, exc)
            return stripped
    if "," in value and "[" not in value:
        return [part.strip() for part in value.split(",") if part.strip()]
    if key not in KEEP_AS_STRING_KEYS:
        number = _parse_number(stripped)
        if number is not None:
            return number
    return value


def _parse_number(value: str) -> Optional[Union[int, float]]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        pass
    try:
        number = float(value)
    except ValueError:
        return None
    return number if math.isfinite(number) else None


def _parse_run_count(value: Any) -> Optional[int]:
    text = _text(value)
    if not text:
        return None
    try:
        count = int(text)
    except ValueError:
        logger.warning("Ignoring invalid run count: %r", value)
        return None
    return count if count > 0 else None


def _strip_flag(args: Sequence[str], flag: str) -> List[str]:
    result: List[str] = []
    skip_next = False
    for arg in args:
        if skip_next:
            skip_next = False
            continue
        if arg == flag:
            skip_next = True
            continue
        result.append(arg)
    return result


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (bool, int, float, str))


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
