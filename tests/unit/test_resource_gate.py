import json
from datetime import datetime

import pytest

from pluma_server.services.orchestration.resource_gate import ResourceGate

SUNDAY = datetime(2024, 1, 7, 9, 0)
MONDAY = datetime(2024, 1, 8, 9, 0)
TUESDAY = datetime(2024, 1, 9, 9, 0)


@pytest.fixture
def table(tmp_path):
    path = tmp_path / "resource_stages.json"
    path.write_text(
        json.dumps({"CE-6": {"display_name": "LMD", "open_weekdays": [0, 2, 4, 6]}}),
        encoding="utf-8",
    )
    return path


def test_stage_open_on_listed_weekdays(table):
    gate = ResourceGate(str(table))
    assert gate.is_stage_open_today("CE-6", SUNDAY).is_open
    assert gate.is_stage_open_today("CE-6", TUESDAY).is_open


def test_stage_closed_reports_display_name(table):
    gate = ResourceGate(str(table))
    decision = gate.is_stage_open_today("ce-6", MONDAY)
    assert decision.is_open is False
    assert decision.display_name == "LMD"
    assert decision.reason == "LMD stage is closed today"


def test_unknown_stage_is_always_open(table):
    decision = ResourceGate(str(table)).is_stage_open_today("1-7", MONDAY)
    assert decision.is_open
    assert decision.reason is None


def test_missing_table_leaves_everything_open(tmp_path):
    gate = ResourceGate(str(tmp_path / "missing.json"))
    assert gate.is_stage_open_today("CE-6", MONDAY).is_open


def test_malformed_table_leaves_everything_open(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    assert ResourceGate(str(path)).is_stage_open_today("CE-6", MONDAY).is_open


def test_bundled_table_is_loaded_from_config():
    gate = ResourceGate()
    assert not gate.is_stage_open_today("CE-6", MONDAY).is_open
    assert gate.is_stage_open_today("LS-6", MONDAY).is_open
