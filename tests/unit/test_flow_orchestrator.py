import asyncio
from datetime import datetime, timezone

import pytest

from pluma_server.errors import ClassifiedRuntimeError, FlowRejectedError, ScreenshotError
from pluma_server.models import TaskDescriptor, TaskKind
from pluma_server.runtime.process import ProcessResult
from pluma_server.services.orchestration.activity_resolver import ActivityResolver
from pluma_server.services.orchestration.adb_client import Screenshot
from pluma_server.services.orchestration.flow_orchestrator import (
    EXHAUSTED_REASON,
    STAGE_CLOSED_REASON,
    FlowOrchestrator,
)
from pluma_server.services.orchestration.progress_broker import ProgressBroker
from pluma_server.services.orchestration.resource_gate import GateDecision
from pluma_server.services.platform.flow_slot import FlowSlot
from pluma_server.services.platform.task_state import TaskStateTracker


def _failure(output: str, *, stopped: bool = False) -> ClassifiedRuntimeError:
    return ClassifiedRuntimeError(
        "failed",
        kind="generic",
        hint=f"Command failed: {output}",
        exit_code=1,
        output=output,
        stopped=stopped,
    )


class FakeMaa:
    """Scripted `maa`; fight outcomes are keyed by stage, everything else by command."""

    def __init__(self, outcomes=None) -> None:
        self.outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self.calls = []
        self.kinds = []

    async def execute(self, built, *, task_name, kind=TaskKind.TASK):
        return await self.run_task(built.command, built.args, task_name=task_name, kind=kind)

    async def run_task(self, command, args=(), *, task_name, kind=TaskKind.TASK):
        args = list(args)
        self.calls.append((command, args, task_name))
        self.kinds.append(kind)
        key = args[0] if command == "fight" and args else command
        queue = self.outcomes.get(key)
        outcome = queue.pop(0) if queue else ProcessResult(0, "", "")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def commands(self):
        return [call[0] for call in self.calls]


class FakeAdb:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0

    async def capture_screen(self, target):
        self.calls += 1
        outcome = self.outcomes.pop(0) if self.outcomes else Screenshot("aW1hZ2U=", datetime.now(timezone.utc))
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGate:
    def __init__(self, closed=None) -> None:
        self.closed = closed or {}

    def is_stage_open_today(self, stage_code):
        if stage_code in self.closed:
            return GateDecision(is_open=False, reason=self.closed[stage_code], display_name="LMD")
        return GateDecision(is_open=True)


async def _activity_query(_client_type):
    return "SideStory 「Near Light」 NL-1"


class Harness:
    def __init__(self, maa=None, adb=None, gate=None) -> None:
        self.maa = maa or FakeMaa()
        self.adb = adb or FakeAdb()
        self.tracker = TaskStateTracker(max_records=100, retention_seconds=60)
        self.slot = FlowSlot()
        self.broker = ProgressBroker()
        self.events = []
        self.broker.subscribe(self.events.append)
        self.reports = []
        self.sleeps = []
        self.orchestrator = FlowOrchestrator(
            maa=self.maa,
            adb=self.adb,
            activity=ActivityResolver(query=_activity_query),
            gate=gate or FakeGate(),
            tracker=self.tracker,
            slot=self.slot,
            broker=self.broker,
            notifier=self._notify,
            sleep=self._sleep,
        )

    async def _notify(self, report):
        self.reports.append(report)

    async def _sleep(self, seconds):
        self.sleeps.append(seconds)


def _fight(*stages, name="Fight", **params):
    return TaskDescriptor(
        id="fight",
        name=name,
        params={"stages": [{"stage": stage} for stage in stages], **params},
    )


def _assert_balanced(result):
    assert result.success_tasks + result.failed_tasks + result.skipped_tasks == result.total_tasks


@pytest.fixture(autouse=True)
def _flow_timing(override_config):
    override_config(
        "SYSTEM",
        STARTUP_MAX_RETRIES=2,
        STARTUP_WAIT_SECONDS=15.0,
        STARTUP_RETRY_BACKOFF_SECONDS=3.0,
        STAGE_INTERVAL_SECONDS=2.0,
        STEP_DELAY_SECONDS=2.0,
        CLOSEDOWN_DELAY_SECONDS=3.0,
    )


@pytest.mark.asyncio
async def test_startup_retries_until_device_answers():
    harness = Harness(adb=FakeAdb(ScreenshotError("no device"), ScreenshotError("no device")))
    startup = TaskDescriptor(id="startup", name="Start game", params={"address": "127.0.0.1:5555"})

    result = await harness.orchestrator.run_flow([startup], "daily-0")

    assert result.success_tasks == 1
    assert result.failed_tasks == 0
    assert result.errors == []
    assert harness.maa.commands() == ["startup", "startup", "startup"]
    assert harness.maa.calls[0][1] == ["-a", "127.0.0.1:5555", "Official"]
    assert harness.sleeps.count(3.0) == 2
    assert harness.sleeps.count(15.0) == 3


@pytest.mark.asyncio
async def test_startup_counts_one_failure_after_all_retries():
    harness = Harness(maa=FakeMaa({"startup": [_failure("adb refused")] * 3}))
    startup = TaskDescriptor(id="startup", name="Start game")

    result = await harness.orchestrator.run_flow([startup], "daily-0")

    assert result.failed_tasks == 1
    assert result.errors == ["Start game"]
    assert harness.adb.calls == 0
    _assert_balanced(result)


@pytest.mark.asyncio
async def test_stopped_startup_is_not_retried():
    harness = Harness(maa=FakeMaa({"startup": [_failure("killed", stopped=True)]}))
    startup = TaskDescriptor(id="startup", name="Start game")

    result = await harness.orchestrator.run_flow([startup], "daily-0")

    assert harness.maa.commands() == ["startup"]
    assert result.success_tasks == 0
    assert result.failed_tasks == 1
    assert result.errors == ["Start game"]
    assert harness.adb.calls == 0
    _assert_balanced(result)


@pytest.mark.asyncio
async def test_exhaustion_skips_remaining_stages():
    maa = FakeMaa({"1-7": [ProcessResult(0, "Fight 1-7 0 times", "")]})
    harness = Harness(maa=maa)

    result = await harness.orchestrator.run_flow([_fight("1-7", "CE-6", "LS-6")], "daily-0")

    assert result.total_tasks == 3
    assert result.success_tasks == 1
    assert result.skipped_tasks == 2
    assert [entry.reason for entry in result.skipped] == [EXHAUSTED_REASON, EXHAUSTED_REASON]
    assert [entry.task for entry in result.skipped] == ["Fight (CE-6)", "Fight (LS-6)"]
    assert [call[1][0] for call in maa.calls] == ["1-7"]
    _assert_balanced(result)


@pytest.mark.asyncio
async def test_exhaustion_reported_as_failure_counts_as_skip():
    maa = FakeMaa({"1-7": [_failure("Sanity is not enough")]})
    harness = Harness(maa=maa)

    result = await harness.orchestrator.run_flow([_fight("1-7", "CE-6")], "daily-0")

    assert result.success_tasks == 0
    assert result.failed_tasks == 0
    assert result.skipped_tasks == 2
    assert result.errors == []


@pytest.mark.asyncio
async def test_stopped_run_is_failure_even_with_exhaustion_text():
    maa = FakeMaa({"1-7": [_failure("Sanity is not enough", stopped=True)]})
    harness = Harness(maa=maa)

    result = await harness.orchestrator.run_flow([_fight("1-7", "CE-6")], "daily-0")

    assert result.failed_tasks == 1
    assert result.success_tasks == 1
    assert result.errors == ["Fight (1-7)"]


@pytest.mark.asyncio
async def test_failed_stage_does_not_stop_later_stages():
    maa = FakeMaa({"1-7": [_failure("boom")]})
    harness = Harness(maa=maa)

    result = await harness.orchestrator.run_flow([_fight("1-7", "CE-6")], "daily-0")

    assert result.failed_tasks == 1
    assert result.success_tasks == 1
    assert [call[1][0] for call in maa.calls] == ["1-7", "CE-6"]


@pytest.mark.asyncio
async def test_closed_stage_is_skipped_without_running():
    gate = FakeGate({"CE-6": "LMD stage is closed today"})
    harness = Harness(gate=gate)

    result = await harness.orchestrator.run_flow([_fight("CE-6", "1-7")], "daily-0")

    assert result.skipped_tasks == 1
    assert result.skipped[0].reason == "LMD stage is closed today"
    assert [call[1][0] for call in harness.maa.calls] == ["1-7"]


@pytest.mark.asyncio
async def test_stage_not_open_output_counts_as_skip():
    maa = FakeMaa({"CE-6": [_failure("[ERROR] stage not open")]})
    harness = Harness(maa=maa)

    result = await harness.orchestrator.run_flow([_fight("CE-6")], "daily-0")

    assert result.skipped_tasks == 1
    assert result.skipped[0].reason == STAGE_CLOSED_REASON


@pytest.mark.asyncio
async def test_event_placeholder_and_run_count_are_applied():
    harness = Harness()
    fight = TaskDescriptor(
        id="fight",
        name="Event",
        params={"stages": [{"stage": "hd-7", "times": 3}], "medicine": 1, "series": "2"},
    )

    result = await harness.orchestrator.run_flow([fight], "daily-0")

    assert result.success_tasks == 1
    assert harness.maa.calls[0][1] == ["NL-7", "--times", "3", "-m", "1"]


@pytest.mark.asyncio
async def test_mixed_flow_keeps_counters_balanced_and_notifies_once():
    maa = FakeMaa(
        {
            "CE-6": [_failure("boom")],
            "recruit": [_failure("timeout")],
            "mall": [ProcessResult(0, "Recruit: [Senior Operator] -> 5*", "")],
        }
    )
    harness = Harness(maa=maa)
    flow = [
        TaskDescriptor(id="startup", name="Start game"),
        _fight("1-7", "CE-6"),
        TaskDescriptor(id="recruit", name="Recruit"),
        TaskDescriptor(id="mall", name="Mall"),
        TaskDescriptor(id="roguelike", name="IS", enabled=False),
        TaskDescriptor(id="closedown", name="Close game"),
    ]

    result = await harness.orchestrator.run_flow(flow, "daily-1")

    assert result.total_tasks == 6
    assert result.success_tasks == 4
    assert result.failed_tasks == 2
    assert result.errors == ["Fight (CE-6)", "Recruit"]
    assert result.task_name == "Schedule daily-1"
    assert result.screenshot == "aW1hZ2U="
    assert "roguelike" not in harness.maa.commands()
    assert any(summary.recruits for summary in result.summaries)
    assert harness.reports == [result]
    _assert_balanced(result)


@pytest.mark.asyncio
async def test_unexpected_error_fails_remaining_units_of_step():
    class ExplodingMaa(FakeMaa):
        async def run_task(self, command, args=(), *, task_name, kind=TaskKind.TASK):
            if list(args)[:1] == ["CE-6"]:
                raise RuntimeError("unexpected")
            return await super().run_task(command, args, task_name=task_name, kind=kind)

    harness = Harness(maa=ExplodingMaa())

    result = await harness.orchestrator.run_flow(
        [_fight("1-7", "CE-6", "LS-6"), TaskDescriptor(id="mall", name="Mall")],
        "daily-0",
    )

    assert result.success_tasks == 2
    assert result.failed_tasks == 2
    assert result.errors == ["Fight"]
    _assert_balanced(result)


@pytest.mark.asyncio
async def test_progress_and_status_reach_terminal_state():
    harness = Harness()
    flow = [TaskDescriptor(id="mall", name="Mall"), TaskDescriptor(id="award", name="Awards")]

    await harness.orchestrator.run_flow(flow, "daily-0")

    status = harness.orchestrator.get_execution_status()
    assert status.is_running is False
    assert status.current_step_index == 2
    assert status.total_steps == 2
    assert harness.events[0].current_step == -1
    assert [event.current_step for event in harness.events[1:3]] == [0, 1]
    assert harness.events[-1].current_step == harness.events[-1].total_steps == 2
    assert harness.slot.held is False


@pytest.mark.asyncio
async def test_flow_rejected_while_slot_is_held():
    harness = Harness()
    harness.slot.try_acquire("other")

    with pytest.raises(FlowRejectedError):
        await harness.orchestrator.run_flow([TaskDescriptor(id="mall")], "daily-0")

    assert harness.maa.calls == []
    assert harness.slot.holder == "other"


@pytest.mark.asyncio
async def test_flow_rejected_while_task_is_running():
    harness = Harness()
    harness.tracker.set_running("Copilot", TaskKind.COMBAT, object())

    with pytest.raises(FlowRejectedError):
        await harness.orchestrator.run_flow([TaskDescriptor(id="mall")], "daily-0")

    assert harness.slot.held is False


@pytest.mark.asyncio
async def test_start_flow_runs_in_background():
    harness = Harness()
    done = asyncio.Event()

    async def _notify(report):
        harness.reports.append(report)
        done.set()

    harness.orchestrator._notifier = _notify

    assert harness.orchestrator.start_flow([TaskDescriptor(id="mall")], "manual") is True
    assert harness.orchestrator.start_flow([TaskDescriptor(id="award")], "manual-2") is False

    await asyncio.wait_for(done.wait(), timeout=2)
    assert harness.reports[0].success_tasks == 1
    assert harness.maa.commands() == ["mall"]


@pytest.mark.asyncio
async def test_notifier_failure_does_not_break_flow():
    harness = Harness()

    async def _broken(_report):
        raise RuntimeError("telegram down")

    harness.orchestrator._notifier = _broken

    result = await harness.orchestrator.run_flow([TaskDescriptor(id="mall")], "daily-0")

    assert result.success_tasks == 1


@pytest.mark.asyncio
async def test_plain_steps_run_under_their_kind():
    harness = Harness()
    flow = [
        TaskDescriptor(id="copilot", kind=TaskKind.COMBAT),
        TaskDescriptor(id="roguelike", kind=TaskKind.AUTOMATION),
        TaskDescriptor(id="mall"),
    ]

    await harness.orchestrator.run_flow(flow, "combat")

    assert harness.maa.kinds == [TaskKind.COMBAT, TaskKind.ROGUELIKE, TaskKind.TASK]
