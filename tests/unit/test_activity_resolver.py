import pytest

from pluma_server.errors import PlumaError
from pluma_server.services.orchestration.activity_resolver import (
    ActivityResolver,
    is_activity_placeholder,
    parse_activity_output,
)

ACTIVITY_OUTPUT = "Current SideStory: 「Near Light」 stages NL-1 ~ NL-10, ends 2024-01-20"


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _Query:
    def __init__(self, *outcomes) -> None:
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, client_type: str) -> str:
        self.calls.append(client_type)
        outcome = self.outcomes.pop(0) if self.outcomes else ACTIVITY_OUTPUT
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def test_parse_activity_output():
    assert parse_activity_output(ACTIVITY_OUTPUT) == ("NL", "Near Light")
    assert parse_activity_output("活动「洪炉示岁」(HS-1)") == ("HS", "洪炉示岁")
    assert parse_activity_output("No activity") == (None, None)


def test_placeholder_detection():
    assert is_activity_placeholder("hd-7")
    assert is_activity_placeholder("HD-10")
    assert not is_activity_placeholder("1-7")
    assert not is_activity_placeholder("hd-")


@pytest.mark.asyncio
async def test_resolve_stage_uses_cache_within_ttl():
    clock = _Clock()
    query = _Query()
    resolver = ActivityResolver(query=query, clock=clock, ttl_seconds=100)

    assert await resolver.resolve_stage("hd-7", "Official") == "NL-7"
    clock.now = 50
    assert await resolver.resolve_stage("hd-8", "Official") == "NL-8"
    assert query.calls == ["Official"]

    clock.now = 150
    await resolver.resolve_stage("hd-7", "Official")
    assert len(query.calls) == 2


@pytest.mark.asyncio
async def test_non_placeholder_stage_skips_lookup():
    query = _Query()
    resolver = ActivityResolver(query=query)
    assert await resolver.resolve_stage("1-7") == "1-7"
    assert query.calls == []


@pytest.mark.asyncio
async def test_failed_refresh_serves_stale_value():
    clock = _Clock()
    query = _Query(ACTIVITY_OUTPUT, PlumaError("maa activity failed"))
    resolver = ActivityResolver(query=query, clock=clock, ttl_seconds=10)
    await resolver.get_current_activity("Official")

    clock.now = 20
    info = await resolver.get_current_activity("Official")

    assert info.code == "NL"
    assert info.stale is True


@pytest.mark.asyncio
async def test_unresolvable_placeholder_is_kept():
    resolver = ActivityResolver(query=_Query(PlumaError("offline")))
    assert await resolver.resolve_stage("hd-7", "Official") == "hd-7"


@pytest.mark.asyncio
async def test_invalidate_forces_refresh():
    query = _Query()
    resolver = ActivityResolver(query=query, ttl_seconds=1000)
    await resolver.get_current_activity("Official")
    resolver.invalidate()
    await resolver.get_current_activity("YoStarEN")
    assert query.calls == ["Official", "YoStarEN"]
