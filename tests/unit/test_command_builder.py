import re

import pytest
import tomlkit

from pluma_server.errors import ConfigBuildError
from pluma_server.models import StageEntry, TaskDescriptor
from pluma_server.services.orchestration.command_builder import (
    build,
    build_stage_args,
    format_stage_list,
    normalize_task_params,
    parse_stage_entries,
    render_task_config,
    stage_entries_from_params,
)


def test_startup_builds_address_and_client_type():
    task = TaskDescriptor(
        id="startup",
        params={"address": "127.0.0.1:5555", "clientType": "YoStarEN"},
    )
    built = build(task)
    assert built.command == "startup"
    assert built.args == ["-a", "127.0.0.1:5555", "YoStarEN"]
    assert not built.is_declarative


def test_closedown_defaults_client_type():
    built = build(TaskDescriptor(id="closedown"))
    assert built.command == "closedown"
    assert built.args == ["Official"]


def test_fight_builds_stage_list_and_flags():
    task = TaskDescriptor(
        id="fight-1",
        params={
            "stages": [{"stage": "1-7", "times": "3"}, {"stage": "CE-6"}, {"stage": ""}],
            "medicine": "2",
            "stone": "",
            "series": "1",
        },
    )
    built = build(task)
    assert built.command == "fight"
    assert built.args == ["1-7:3,CE-6", "-m", "2"]


def test_fight_keeps_series_other_than_one():
    task = TaskDescriptor(id="fight", params={"stage": "1-7", "times": 5, "stone": 1, "series": "3"})
    assert build(task).args == ["1-7:5", "--stone", "1", "--series", "3"]


def test_command_id_wins_over_id_prefix():
    task = TaskDescriptor.model_validate({"id": "step-9", "commandId": "roguelike", "params": {}})
    assert build(task).command == "roguelike"
    assert build(task).args == []


def test_declarative_task_gets_unique_stem_and_inline_config():
    task = TaskDescriptor.model_validate(
        {
            "id": "infrast",
            "name": "Base shifts",
            "taskType": "Infrast",
            "params": {
                "facility": "Mfg,Trade",
                "drones": "Money",
                "threshold": "0.3",
                "mode": "10000",
                "plan_index": "1",
                "empty": "",
                "enabled": True,
            },
        }
    )
    first = build(task)
    second = build(task)

    assert first.command == "run"
    assert re.fullmatch(r"infrast_[0-9a-f]{8}_temp", first.task_file_stem)
    assert first.args == [first.task_file_stem]
    assert first.task_file_stem != second.task_file_stem
    assert first.inline_config == {
        "name": "Base shifts",
        "type": "Infrast",
        "params": {
            "facility": ["Mfg", "Trade"],
            "drones": "Money",
            "threshold": 0.3,
            "mode": "10000",
            "plan_index": 1,
            "enabled": True,
        },
    }


def test_stage_entries_from_params_ignores_bad_counts():
    entries = stage_entries_from_params({"stages": ["1-7", {"stage": "CE-6", "times": "abc"}, 42]})
    assert entries == [StageEntry(stage_code="1-7"), StageEntry(stage_code="CE-6")]


def test_parse_stage_entries_drops_blank_stages():
    entries = parse_stage_entries("1-7:3, CE-6 ,,:2")
    assert entries == [StageEntry(stage_code="1-7", run_count=3), StageEntry(stage_code="CE-6")]
    assert format_stage_list(entries) == "1-7:3,CE-6"


def test_build_stage_args_drops_series_when_count_given():
    extra = ["-m", "2", "--series", "2"]
    assert build_stage_args(StageEntry(stage_code="1-7", run_count=3), extra) == [
        "1-7",
        "--times",
        "3",
        "-m",
        "2",
    ]
    assert build_stage_args(StageEntry(stage_code="hd-7"), extra, "NL-7") == [
        "NL-7",
        "-m",
        "2",
        "--series",
        "2",
    ]


def test_normalize_task_params_handles_json_arrays_and_objects():
    normalized = normalize_task_params(
        {
            "tags": '["Top Operator", "Senior Operator"]',
            "nested": '[{"x": 1}]',
            "broken": "[1, 2",
            "extra": {"a": 1},
            "none": None,
        }
    )
    assert normalized["tags"] == ["Top Operator", "Senior Operator"]
    assert normalized["nested"] == '[{"x": 1}]'
    assert normalized["broken"] == "[1, 2"
    assert normalized["extra"] == '{"a": 1}'
    assert "none" not in normalized


def test_render_task_config_writes_tasks_array():
    rendered = render_task_config(
        {
            "name": "Base shifts",
            "type": "Infrast",
            "params": {"facility": ["Mfg", "Trade"], "threshold": 0.3, "mode": "10000"},
        }
    )
    document = tomlkit.parse(rendered).unwrap()
    assert "[[tasks]]" in rendered
    assert document == {
        "tasks": [
            {
                "name": "Base shifts",
                "type": "Infrast",
                "params": {"facility": ["Mfg", "Trade"], "threshold": 0.3, "mode": "10000"},
            }
        ]
    }


def test_render_task_config_rejects_missing_type():
    with pytest.raises(ConfigBuildError):
        render_task_config({"name": "Broken", "params": {}})


def test_nested_list_params_degrade_to_string_and_render():
    task = TaskDescriptor(
        id="infrast",
        name="Base shifts",
        task_type="Infrast",
        params={"facility": ["Mfg", {"x": 1}], "plan": [1, None], "empty": [None]},
    )
    built = build(task)
    params = built.inline_config["params"]
    assert params["facility"] == '["Mfg", {"x": 1}]'
    assert params["plan"] == [1]
    assert "empty" not in params

    document = tomlkit.parse(render_task_config(built.inline_config)).unwrap()
    assert document["tasks"][0]["params"] == {"facility": '["Mfg", {"x": 1}]', "plan": [1]}
