"""Batch job: trust propagation, behavioral heuristics and sybil detection.

All three phases share one graph snapshot. Scores and clusters are computed
in memory and handed to a :class:`SnapshotWriter` together, so a failing
run leaves the previous scores and clusters in place.

A "last computed at" marker in the counter store enforces the cooldown
between runs. It is taken when a run starts and rewritten when it
completes; it narrows the window for overlapping runs without strictly
excluding them, which is acceptable because every run fully replaces its
previous output.

Run outside the web process with::

    python -m trustguard.trust.jobs.trust_graph [--community DID] [--force]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from trustguard.infra.counters import CounterStore, CounterStoreError
from trustguard.obs import metrics as obs_metrics
from trustguard.trust.domain.behavioral import BehavioralHeuristics
from trustguard.trust.domain.exceptions import RecomputeCooldownError, TrustComputationError
from trustguard.trust.domain.models import TrustComputationResult
from trustguard.trust.domain.sybil import SnapshotWriter, SybilDetector
from trustguard.trust.domain.trust_engine import TrustScoreEngine

logger = logging.getLogger(__name__)

LAST_RUN_KEY = "trust:graph:last_computed_at"
JOB_STATE_KEY = "trust:graph:job_state"

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass(slots=True)
class JobState:
    status: str = STATUS_IDLE
    community_did: Optional[str] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    duration_ms: Optional[int] = None
    last_error: Optional[str] = None
    last_result: Optional[dict[str, Any]] = None
    clusters_detected: Optional[int] = None
    flags_raised: Optional[int] = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class TrustGraphJob:
    def __init__(
        self,
        *,
        engine: TrustScoreEngine,
        detector: SybilDetector,
        heuristics: BehavioralHeuristics,
        writer: SnapshotWriter,
        counters: CounterStore,
        cooldown_seconds: int,
        clock=time.time,
    ) -> None:
        self._engine = engine
        self._detector = detector
        self._heuristics = heuristics
        self._writer = writer
        self._counters = counters
        self._cooldown = max(0, int(cooldown_seconds))
        self._clock = clock
        self._state = JobState()
        self._task: Optional[asyncio.Task[Any]] = None

    @property
    def state(self) -> JobState:
        return self._state

    async def claim(self, *, force: bool = False) -> None:
        """Take the cooldown marker or raise :class:`RecomputeCooldownError`."""

        if self._cooldown <= 0:
            return
        now = self._clock()
        try:
            acquired = await self._counters.set(
                LAST_RUN_KEY,
                f"{now:.3f}",
                ttl_seconds=self._cooldown,
                only_if_absent=not force,
            )
            if acquired:
                return
            previous = await self._counters.get(LAST_RUN_KEY)
        except CounterStoreError as exc:
            obs_metrics.counter_store_error(exc.operation)
            logger.warning("recompute cooldown marker unavailable; running without it")
            return
        retry_after = self._cooldown
        if previous:
            try:
                retry_after = int(float(previous) + self._cooldown - now)
            except ValueError:
                pass
        obs_metrics.trust_recompute("cooldown")
        raise RecomputeCooldownError(retry_after)

    async def _release(self) -> None:
        try:
            await self._counters.delete(LAST_RUN_KEY)
        except CounterStoreError as exc:
            obs_metrics.counter_store_error(exc.operation)

    async def _mark_finished(self, finished_at: float) -> None:
        """Restart the cooldown from the end of a successful run."""

        if self._cooldown <= 0:
            return
        try:
            await self._counters.set(LAST_RUN_KEY, f"{finished_at:.3f}", ttl_seconds=self._cooldown)
        except CounterStoreError as exc:
            obs_metrics.counter_store_error(exc.operation)

    async def _mirror(self) -> None:
        try:
            await self._counters.set(JOB_STATE_KEY, json.dumps(self._state.as_dict(), default=str))
        except CounterStoreError as exc:
            obs_metrics.counter_store_error(exc.operation)

    async def run(self, community_id: Optional[str] = None) -> TrustComputationResult:
        started = self._clock()
        self._state = JobState(status=STATUS_RUNNING, community_did=community_id, started_at=started)
        await self._mirror()
        perf_start = time.perf_counter()
        try:
            snapshot = await self._engine.load_snapshot(community_id)
            result = await self._engine.score_snapshot(snapshot)
            flags = await self._heuristics.run_all(community_id)
            detected = await self._detector.find_clusters(snapshot)
            applied = await self._writer.commit(
                snapshot.community_did,
                snapshot.scores or {},
                detected,
                at=datetime.now(timezone.utc),
            )
        except Exception as exc:
            elapsed = time.perf_counter() - perf_start
            logger.exception("trust graph job failed", extra={"community_did": community_id})
            obs_metrics.trust_recompute("failed", elapsed)
            self._state.status = STATUS_FAILED
            self._state.finished_at = self._clock()
            self._state.duration_ms = int(elapsed * 1000)
            self._state.last_error = f"{type(exc).__name__}: {exc}"
            await self._mirror()
            await self._release()
            raise TrustComputationError() from exc
        await self._engine.announce(snapshot, result)
        clusters = await self._detector.announce(snapshot, applied)
        elapsed = time.perf_counter() - perf_start
        obs_metrics.trust_recompute("completed", elapsed)
        self._state.status = STATUS_COMPLETED
        self._state.finished_at = self._clock()
        self._state.duration_ms = int(elapsed * 1000)
        self._state.last_result = result.as_dict()
        self._state.clusters_detected = len(clusters)
        self._state.flags_raised = len(flags)
        await self._mark_finished(self._state.finished_at)
        await self._mirror()
        return result

    async def _run_in_background(self, community_id: Optional[str]) -> None:
        try:
            await self.run(community_id)
        except TrustComputationError:
            # already logged and recorded on the job state
            pass

    async def trigger(
        self,
        community_id: Optional[str] = None,
        *,
        force: bool = False,
        wait: bool = False,
    ) -> Optional[TrustComputationResult]:
        """Start a run after claiming the cooldown marker.

        With ``wait`` the run happens inline and its result is returned;
        otherwise it is scheduled on the event loop and ``None`` is returned.
        """

        await self.claim(force=force)
        if wait:
            return await self.run(community_id)
        self._state = JobState(status=STATUS_RUNNING, community_did=community_id, started_at=self._clock())
        self._task = asyncio.create_task(self._run_in_background(community_id), name="trust-graph-recompute")
        return None

    async def status(self) -> JobState:
        """Local state, or the mirrored state of another worker when idle here."""

        if self._state.status != STATUS_IDLE:
            return self._state
        try:
            raw = await self._counters.get(JOB_STATE_KEY)
        except CounterStoreError:
            return self._state
        if not raw:
            return self._state
        try:
            data = json.loads(raw)
            return JobState(**{key: value for key, value in data.items() if key in JobState.__dataclass_fields__})
        except (TypeError, ValueError):
            return self._state


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute trust scores and detect sybil clusters")
    parser.add_argument("--community", default=None, help="Community DID to scope the run to (default: global)")
    parser.add_argument("--force", action="store_true", help="Ignore the recompute cooldown")
    return parser.parse_args(argv)


async def _run_cli(community_id: Optional[str], force: bool) -> int:
    from trustguard.infra.postgres import close_pool, get_pool
    from trustguard.infra.redis import close_redis, redis_client
    from trustguard.obs.logging import configure_logging
    from trustguard.trust.domain import container
    from trustguard.trust.infra.schema import ensure_schema

    configure_logging()
    pool = await get_pool()
    try:
        await ensure_schema(pool)
        container.configure_postgres(pool, redis_client)
        job = container.get_trust_graph_job()
        try:
            result = await job.trigger(community_id, force=force, wait=True)
        except RecomputeCooldownError as exc:
            print(f"Recompute skipped: cooldown active for another {exc.retry_after}s (use --force to override)")
            return 2
        except TrustComputationError as exc:
            print(f"Recompute failed: {exc.__cause__}")
            return 1
        print(json.dumps(result.as_dict() if result else {}, indent=2))
        return 0
    finally:
        await close_pool()
        await close_redis()


def main(argv: Optional[list[str]] = None) -> None:
    args = _parse_args(argv)
    raise SystemExit(asyncio.run(_run_cli(args.community, args.force)))


if __name__ == "__main__":
    main()
