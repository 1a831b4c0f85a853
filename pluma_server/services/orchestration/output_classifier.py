"""Heuristic interpretation of `maa` output: failure kind, exhaustion, run summary."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Pattern

from ...models import RecruitOutcome, StepSummary


class ErrorKind(str, Enum):
    COPILOT_FAILURE = "copilot_failure"
    ADB_FAILURE = "adb_failure"
    TIMEOUT = "timeout"
    RESOURCE_MISSING = "resource_missing"
    GENERIC = "generic"


@dataclass(frozen=True)
class ErrorRule:
    kind: ErrorKind
    patterns: tuple[Pattern[str], ...]
    hint: str


@dataclass(frozen=True)
class ErrorClassification:
    kind: ErrorKind
    hint: str
    matched_pattern: Optional[str]


_COPILOT_TASK_ERROR = "Some error occurred during running task"

# Evaluated in order; first match wins.
ERROR_RULES: tuple[ErrorRule, ...] = (
    ErrorRule(
        kind=ErrorKind.COPILOT_FAILURE,
        patterns=(re.compile(r"Copilot Error"),),
        hint="Copilot run failed",
    ),
    ErrorRule(
        kind=ErrorKind.ADB_FAILURE,
        patterns=(re.compile(r"adb", re.IGNORECASE),),
        hint="ADB connection failed: check that the emulator is running and the ADB address is correct",
    ),
    ErrorRule(
        kind=ErrorKind.TIMEOUT,
        patterns=(re.compile(r"timeout", re.IGNORECASE),),
        hint="Task timed out: the game may be stuck or the network is unstable",
    ),
    ErrorRule(
        kind=ErrorKind.RESOURCE_MISSING,
        patterns=(re.compile(r"not found"), re.compile(r"No such")),
        hint="Resource files not found: check the MAA resources or run `maa update`",
    ),
)

EXHAUSTION_PHRASES: tuple[str, ...] = (
    "sanity is not enough",
    "理智不足",
    "理智已耗尽",
    "not enough sanity",
    "insufficient sanity",
    "no sanity",
    "sanity depleted",
)
STAGE_CLOSED_PHRASES: tuple[str, ...] = (
    "stage not open",
    "关卡未开放",
)
ANNIHILATION_MARKERS: tuple[str, ...] = ("annihilation", "剿灭")

_ZERO_RUNS_RE = re.compile(r"fight\s+(?:[a-z0-9-]+\s+)?0\s+times?", re.IGNORECASE)
_FIGHT_RECORD_RE = re.compile(r"Fight\s+([A-Z0-9-]+)\s+(\d+)\s+times?", re.IGNORECASE)
_TOTAL_DROPS_RE = re.compile(r"total drops:\s*(.+?)(?:\n|$)", re.IGNORECASE)
_DROP_ITEM_RE = re.compile(r"(?:\"([^\"]+)\"|([^\s,×]+))\s*×\s*(\d+)")
_MEDICINE_RE = re.compile(r"medicine[:\s]+(\d+)", re.IGNORECASE)
_STONE_RE = re.compile(r"stone[:\s]+(\d+)", re.IGNORECASE)
_FIGHT_DURATION_RE = re.compile(r"\[Fight\]\s+([\d:]+)\s+-\s+([\d:]+)\s+\(([^)]+)\)")
_RECRUIT_RE = re.compile(r"Recruit[:\s]+\[([^\]]+)\]\s*->\s*(\d+)\*", re.IGNORECASE)
_INFRAST_RE = re.compile(r"Infrast[:\s]+([^\n]+)", re.IGNORECASE)


def classify_error(text: str) -> ErrorClassification:
    text = text or ""
    for rule in ERROR_RULES:
        pattern = _first_match(text, rule.patterns)
        if pattern is None:
            continue
        hint = rule.hint
        if rule.kind is ErrorKind.COPILOT_FAILURE:
            if _COPILOT_TASK_ERROR in text:
                hint = "Copilot run failed: operators do not meet the requirements or the squad is misconfigured"
            else:
                hint = f"{rule.hint}: {_first_line_containing(text, 'Copilot Error')}"
        return ErrorClassification(kind=rule.kind, hint=hint, matched_pattern=pattern)
    return ErrorClassification(
        kind=ErrorKind.GENERIC,
        hint=f"Command failed: {_last_non_empty_line(text) or 'no output'}",
        matched_pattern=None,
    )


def is_resource_exhausted(output: str, stage_code: str = "") -> bool:
    if not output:
        return False
    lowered = output.lower()
    if any(phrase in lowered for phrase in EXHAUSTION_PHRASES):
        return True
    if _ZERO_RUNS_RE.search(output):
        return True
    if "Summary" in output and "[Fight]" in output and "Completed" in output:
        if _FIGHT_RECORD_RE.search(output):
            return False
        # Annihilation with rewards already claimed looks identical.
        lowered_stage = (stage_code or "").lower()
        return not any(marker in lowered_stage for marker in ANNIHILATION_MARKERS)
    return False


def is_stage_closed(output: str) -> bool:
    lowered = (output or "").lower()
    return any(phrase in lowered for phrase in STAGE_CLOSED_PHRASES)


def extract_summary(task_name: str, output: str) -> Optional[StepSummary]:
    if not output:
        return None
    summary = StepSummary(task=task_name)
    found = False

    fight = _FIGHT_RECORD_RE.search(output)
    if fight:
        summary.stage = fight.group(1)
        summary.times = int(fight.group(2))
        found = True

    drops = _parse_drops(output)
    if drops:
        summary.drops = drops
        found = True

    medicine = _MEDICINE_RE.search(output)
    if medicine:
        summary.medicine = int(medicine.group(1))
        found = True
    stone = _STONE_RE.search(output)
    if stone:
        summary.stone = int(stone.group(1))
        found = True

    duration = _FIGHT_DURATION_RE.search(output)
    if duration:
        summary.duration = duration.group(3)
        found = True

    recruits = _parse_recruits(output)
    if recruits:
        summary.recruits = recruits
        found = True

    infrast = _INFRAST_RE.search(output)
    if infrast:
        summary.infrast = infrast.group(1).strip()
        found = True

    return summary if found else None


def _parse_drops(output: str) -> Dict[str, int]:
    drops: Dict[str, int] = {}
    match = _TOTAL_DROPS_RE.search(output)
    if not match:
        return drops
    for item in _DROP_ITEM_RE.finditer(match.group(1).strip()):
        name = item.group(1) or item.group(2)
        drops[name] = drops.get(name, 0) + int(item.group(3))
    return drops


def _parse_recruits(output: str) -> List[RecruitOutcome]:
    recruits = []
    for match in _RECRUIT_RE.finditer(output):
        tags = [tag.strip() for tag in match.group(1).split(",") if tag.strip()]
        recruits.append(RecruitOutcome(tags=tags, stars=int(match.group(2))))
    return recruits


def _first_match(text: str, patterns: tuple[Pattern[str], ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern.search(text):
            return pattern.pattern
    return None


def _first_line_containing(text: str, needle: str) -> str:
    for line in text.splitlines():
        if needle in line:
            return line.strip()
    return needle


def _last_non_empty_line(text: str) -> str:
    for line in reversed(text.splitlines()):
        if line.strip():
            return line.strip()
    return ""
