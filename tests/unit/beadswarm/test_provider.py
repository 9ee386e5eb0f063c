"""Tests for the prioritizer adapter."""

from __future__ import annotations

import pytest

from beadswarm.config.schema import ProviderConfig
from beadswarm.errors import ProviderError
from beadswarm.work.provider import (
    WorkProvider,
    _parse_priority,
    parse_ready,
    parse_triage,
    run_command,
    validate_cycles,
)
from tests.helpers.fakes import FakePrioritizer


def _provider(prioritizer: FakePrioritizer, **overrides: object) -> WorkProvider:
    cfg = ProviderConfig(backoff_seconds=0.0)
    for key, value in overrides.items():
        setattr(cfg, key, value)
    return WorkProvider(cfg, project_dir=".", runner=prioritizer)


def _recs() -> list[dict[str, object]]:
    return [
        {"id": "bd-1", "title": "refactor parser", "priority": 1, "score": 0.9},
        {"id": "bd-2", "title": "implement feature X", "priority": "P2", "blocked_by": ["bd-1"]},
    ]


class TestParsing:
    def test_triage_shapes(self) -> None:
        recs = parse_triage({"triage": {"recommendations": _recs() + [{"title": "no id"}]}})
        assert [r.id for r in recs] == ["bd-1", "bd-2"]
        assert recs[1].priority == 2
        assert recs[1].blocked_by == ["bd-1"]
        assert recs[0].score == pytest.approx(0.9)

    def test_triage_not_object(self) -> None:
        with pytest.raises(ProviderError) as info:
            parse_triage([])
        assert info.value.retryable is False

    def test_ready_accepts_list_or_wrapped(self) -> None:
        assert [b.id for b in parse_ready([{"id": "bd-1"}])] == ["bd-1"]
        assert [b.id for b in parse_ready({"issues": [{"id": "bd-2", "title": "t"}]})] == ["bd-2"]

    @pytest.mark.parametrize(("raw", "expected"), [(0, 0), ("P1", 1), ("3", 3), (1.0, 1), (True, 2), ("high", 2)])
    def test_priority(self, raw: object, expected: int) -> None:
        assert _parse_priority(raw) == expected


class TestValidateCycles:
    def test_normalises(self) -> None:
        raw = [["a", "b", "a"], {"nodes": ["c", "d"]}, ["x"], ["p", "q", "p", "r"], "junk"]
        assert validate_cycles(raw) == [["a", "b"], ["c", "d"]]

    def test_not_a_list(self) -> None:
        assert validate_cycles({"a": 1}) == []


class TestFetch:
    @pytest.mark.asyncio
    async def test_ranked_with_cycles(self) -> None:
        fake = FakePrioritizer(recommendations=_recs(), cycles=[["bd-1", "bd-2", "bd-1"]])
        snap = await _provider(fake).fetch_ready_work()

        assert [b.id for b in snap.beads] == ["bd-1", "bd-2"]
        assert snap.cycles == [["bd-1", "bd-2"]]
        assert snap.cycle_members == {"bd-1", "bd-2"}
        assert not snap.degraded
        assert snap.warnings == []

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self) -> None:
        fake = FakePrioritizer(recommendations=_recs(), failures={"triage": 2})
        snap = await _provider(fake).fetch_ready_work()
        assert len(snap.beads) == 2
        assert fake.count("triage") == 3

    @pytest.mark.asyncio
    async def test_degrades_to_ready_list(self) -> None:
        fake = FakePrioritizer(ready=[{"id": "bd-9", "title": "plain"}], failures={"triage": 99})
        snap = await _provider(fake).fetch_ready_work()

        assert snap.degraded
        assert [b.id for b in snap.beads] == ["bd-9"]
        assert "triage unavailable" in snap.warnings[0]
        assert fake.count("triage") == 3
        assert fake.count("insights") == 0

    @pytest.mark.asyncio
    async def test_missing_insights_only_warns(self) -> None:
        fake = FakePrioritizer(recommendations=_recs(), failures={"insights": 99})
        snap = await _provider(fake).fetch_ready_work()
        assert len(snap.beads) == 2
        assert snap.cycles == []
        assert any("insights unavailable" in w for w in snap.warnings)

    @pytest.mark.asyncio
    async def test_limit(self) -> None:
        fake = FakePrioritizer(recommendations=_recs())
        snap = await _provider(fake).fetch_ready_work(limit=1)
        assert [b.id for b in snap.beads] == ["bd-1"]

    @pytest.mark.asyncio
    async def test_stale_graph_warning(self) -> None:
        fake = FakePrioritizer(recommendations=_recs())
        provider = _provider(fake)
        provider.mark_completed("bd-1")
        snap = await provider.fetch_ready_work()
        assert any("bd-2 still blocked by completed ['bd-1']" in w for w in snap.warnings)


class TestCache:
    @pytest.mark.asyncio
    async def test_triage_cached_until_invalidated(self) -> None:
        fake = FakePrioritizer(recommendations=_recs())
        provider = _provider(fake)

        await provider.ready_ranked()
        await provider.ready_ranked()
        assert fake.count("triage") == 1

        provider.invalidate()
        await provider.ready_ranked()
        assert fake.count("triage") == 2

    @pytest.mark.asyncio
    async def test_cache_expires(self) -> None:
        now = [0.0]
        fake = FakePrioritizer(recommendations=_recs())
        provider = WorkProvider(ProviderConfig(cache_ttl_seconds=10.0), runner=fake, clock=lambda: now[0])

        await provider.ready_ranked()
        now[0] = 11.0
        await provider.ready_ranked()
        assert fake.count("triage") == 2


class TestReadyFallback:
    @pytest.mark.asyncio
    async def test_second_binary_used(self) -> None:
        fake = FakePrioritizer(ready=[{"id": "bd-1"}], failures={"ready": 1})
        beads = await _provider(fake).ready_preview()
        assert [b.id for b in beads] == ["bd-1"]
        assert [argv[0] for argv in fake.calls] == ["br", "bd"]

    @pytest.mark.asyncio
    async def test_all_binaries_fail(self) -> None:
        fake = FakePrioritizer(failures={"ready": 5})
        with pytest.raises(ProviderError):
            await _provider(fake).ready_preview()


class TestLookups:
    @pytest.mark.asyncio
    async def test_title_and_blockers_from_triage(self) -> None:
        provider = _provider(FakePrioritizer(recommendations=_recs()))
        assert await provider.title_of("bd-2") == "implement feature X"
        assert await provider.blockers_of("bd-2") == ["bd-1"]

    @pytest.mark.asyncio
    async def test_falls_back_to_show(self) -> None:
        fake = FakePrioritizer(shows={"bd-7": {"title": "Ship docs", "blocked_by": ["bd-3"], "status": "open"}})
        provider = _provider(fake)
        assert await provider.title_of("bd-7") == "Ship docs"
        assert await provider.blockers_of("bd-7") == ["bd-3"]
        assert await provider.status_of("bd-7") == "open"

    @pytest.mark.asyncio
    async def test_blockers_never_raise(self) -> None:
        fake = FakePrioritizer(failures={"triage": 99})
        provider = _provider(fake)
        assert await provider.blockers_of("bd-404") == []
        assert await provider.title_of("bd-404") == ""


@pytest.mark.asyncio
async def test_run_command_missing_binary() -> None:
    with pytest.raises(ProviderError) as info:
        await run_command(["beadswarm-no-such-binary"], ".", 1.0)
    assert info.value.retryable is False
    assert "not installed" in str(info.value)
