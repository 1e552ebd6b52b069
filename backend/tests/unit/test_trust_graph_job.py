from datetime import datetime, timezone

import pytest

from trustguard.infra.counters import InMemoryCounterStore
from trustguard.trust.domain import container
from trustguard.trust.domain.events import TrustRecomputed
from trustguard.trust.domain.exceptions import RecomputeCooldownError, TrustComputationError
from trustguard.trust.domain.models import GLOBAL_SCOPE, Account
from trustguard.trust.jobs.trust_graph import LAST_RUN_KEY, STATUS_COMPLETED, STATUS_FAILED, TrustGraphJob


class BrokenEngine:
    async def load_snapshot(self, community_id=None):
        raise RuntimeError("database unavailable")


class SlowEngine:
    """Delegates to the real engine while advancing the clock during scoring."""

    def __init__(self, clock: "FixedClock", seconds: float) -> None:
        self._engine = container.get_engine()
        self._clock = clock
        self._seconds = seconds

    async def load_snapshot(self, community_id=None):
        return await self._engine.load_snapshot(community_id)

    async def score_snapshot(self, snapshot):
        self._clock.now += self._seconds
        return await self._engine.score_snapshot(snapshot)

    async def announce(self, snapshot, result) -> None:
        await self._engine.announce(snapshot, result)


class FixedClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _job(counters, *, engine=None, clock=None, cooldown: int = 600) -> TrustGraphJob:
    return TrustGraphJob(
        engine=engine or container.get_engine(),
        detector=container.get_detector(),
        heuristics=container.get_heuristics(),
        writer=container.get_snapshot_writer(),
        counters=counters,
        cooldown_seconds=cooldown,
        clock=clock or FixedClock(10_000.0),
    )


@pytest.mark.asyncio
async def test_run_reports_graph_size(trust_env) -> None:
    trust_env.accounts.add(Account(did="did:plc:admin", role="admin"))
    await container.get_recorder().record_reply("did:plc:admin", "did:plc:alice", "did:plc:community")

    result = await _job(trust_env.counters).trigger(wait=True)

    assert result.total_nodes == 2
    assert result.total_edges == 1


@pytest.mark.asyncio
async def test_cooldown_blocks_second_run(trust_env) -> None:
    clock = FixedClock(10_000.0)
    counters = InMemoryCounterStore(clock=clock)
    job = _job(counters, clock=clock)
    await job.trigger(wait=True)

    clock.now += 100
    with pytest.raises(RecomputeCooldownError) as exc:
        await job.trigger(wait=True)
    assert exc.value.retry_after == 500

    # force ignores the marker
    assert await job.trigger(wait=True, force=True) is not None


@pytest.mark.asyncio
async def test_failed_run_releases_cooldown(trust_env) -> None:
    job = _job(trust_env.counters, engine=BrokenEngine())

    with pytest.raises(TrustComputationError):
        await job.trigger(wait=True)

    assert job.state.status == STATUS_FAILED
    assert "database unavailable" in job.state.last_error
    assert await trust_env.counters.get(LAST_RUN_KEY) is None


@pytest.mark.asyncio
async def test_cooldown_store_outage_still_runs(trust_env, failing_counters) -> None:
    job = _job(failing_counters)
    result = await job.trigger(wait=True)
    assert result is not None
    assert job.state.status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_background_trigger_completes(trust_env) -> None:
    job = _job(trust_env.counters)
    assert await job.trigger() is None
    await job._task
    assert job.state.status == STATUS_COMPLETED


@pytest.mark.asyncio
async def test_status_reads_state_mirrored_by_another_worker(trust_env) -> None:
    await _job(trust_env.counters).trigger(wait=True)

    other = _job(trust_env.counters)
    state = await other.status()

    assert state.status == STATUS_COMPLETED
    assert state.last_result["total_nodes"] == 0


@pytest.mark.asyncio
async def test_cooldown_counts_from_the_end_of_a_run(trust_env) -> None:
    clock = FixedClock(10_000.0)
    counters = InMemoryCounterStore(clock=clock)
    job = _job(counters, engine=SlowEngine(clock, 300), clock=clock)

    await job.trigger(wait=True)

    assert job.state.finished_at == 10_300.0
    assert await counters.get(LAST_RUN_KEY) == "10300.000"
    # the marker taken at the start would have expired by now
    clock.now = 10_899.0
    with pytest.raises(RecomputeCooldownError) as exc:
        await job.trigger(wait=True)
    assert exc.value.retry_after == 1


@pytest.mark.asyncio
async def test_failed_cluster_write_keeps_previous_scores(trust_env, monkeypatch) -> None:
    trust_env.accounts.add(Account(did="did:plc:admin", role="admin"))
    await container.get_recorder().record_reply("did:plc:admin", "did:plc:alice", "did:plc:community")
    earlier = datetime(2026, 1, 1, tzinfo=timezone.utc)
    await trust_env.trust_repo.replace_scores(GLOBAL_SCOPE, {"did:plc:alice": 0.1}, computed_at=earlier)

    async def reject(detected, *, at):
        raise RuntimeError("cluster table locked")

    monkeypatch.setattr(trust_env.cluster_repo, "apply_detection", reject)

    with pytest.raises(TrustComputationError):
        await _job(trust_env.counters).trigger(wait=True)

    assert await trust_env.trust_repo.score_map(GLOBAL_SCOPE) == {"did:plc:alice": 0.1}
    assert trust_env.trust_repo.computed_at[GLOBAL_SCOPE] == earlier
    assert trust_env.cluster_repo.clusters == {}
    assert trust_env.events.of_type(TrustRecomputed) == []


@pytest.mark.asyncio
async def test_failed_heuristics_write_no_scores(trust_env, monkeypatch) -> None:
    trust_env.accounts.add(Account(did="did:plc:admin", role="admin"))
    await container.get_recorder().record_reply("did:plc:admin", "did:plc:alice", "did:plc:community")
    heuristics = container.get_heuristics()

    async def broken(community_id=None):
        raise RuntimeError("activity feed unavailable")

    monkeypatch.setattr(heuristics, "run_all", broken)

    with pytest.raises(TrustComputationError):
        await _job(trust_env.counters).trigger(wait=True)

    assert await trust_env.trust_repo.score_map(GLOBAL_SCOPE) == {}
