"""Trust score propagation over the interaction graph.

Scores flow outward from a seed set (explicit admin seeds plus moderators
and admins). Each round every non-seed account takes the damped weighted
average of its neighbours' previous scores, each neighbour weighted by edge
weight times the neighbour's PDS trust factor. Seeds are pinned at 1.0.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Mapping, Optional, Protocol, Sequence

from trustguard.trust.domain.accounts import AccountDirectory
from trustguard.trust.domain.config import TrustSettings
from trustguard.trust.domain.events import EventSink, LoggingEventSink, TrustRecomputed
from trustguard.trust.domain.exceptions import ConflictError, NotFoundError
from trustguard.trust.domain.graph import InteractionGraph
from trustguard.trust.domain.interactions import InteractionRepository
from trustguard.trust.domain.models import GLOBAL_SCOPE, TrustComputationResult, TrustSeed, scope_key
from trustguard.trust.domain.pagination import Page, paginate_in_memory
from trustguard.trust.domain.pds_trust import PdsTrustTable

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class PropagationOutcome:
    scores: dict[str, float]
    iterations: int
    converged: bool


def propagate_trust(
    graph: InteractionGraph,
    seeds: frozenset[str] | set[str],
    pds_factors: Mapping[str, float],
    *,
    damping: float,
    epsilon: float,
    max_iterations: int,
) -> PropagationOutcome:
    """Jacobi-style propagation; every round reads only the previous round."""

    n = graph.node_count
    if n == 0:
        return PropagationOutcome(scores={}, iterations=0, converged=True)

    is_seed = [did in seeds for did in graph.dids]
    factor = [float(pds_factors.get(did, 1.0)) for did in graph.dids]
    totals = [sum(neighbours.values()) for neighbours in graph.adjacency]
    old = [1.0 if seed else 0.0 for seed in is_seed]

    iterations = 0
    converged = False
    while iterations < max_iterations:
        new = [0.0] * n
        max_delta = 0.0
        for v in range(n):
            if is_seed[v]:
                new[v] = 1.0
            elif totals[v] > 0:
                acc = 0.0
                for u, weight in graph.adjacency[v].items():
                    acc += weight * factor[u] * old[u]
                new[v] = damping * acc / totals[v]
            delta = abs(new[v] - old[v])
            if delta > max_delta:
                max_delta = delta
        old = new
        iterations += 1
        if max_delta < epsilon:
            converged = True
            break

    scores = {did: min(1.0, max(0.0, old[idx])) for idx, did in enumerate(graph.dids)}
    return PropagationOutcome(scores=scores, iterations=iterations, converged=converged)


@dataclass(slots=True)
class GraphSnapshot:
    """Everything one batch run needs, loaded once and shared across phases."""

    community_did: str
    graph: InteractionGraph
    seeds: frozenset[str]
    pds_factors: dict[str, float]
    edge_rows: int
    taken_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    scores: Optional[dict[str, float]] = None


class TrustRepository(Protocol):
    async def seed_dids(self, community_did: str) -> set[str]:
        """Explicit seeds of the global scope plus those of ``community_did``."""
        ...

    async def list_seeds(self, *, limit: int, cursor: Optional[str]) -> Page[TrustSeed]:
        ...

    async def get_seed(self, seed_id: str) -> Optional[TrustSeed]:
        ...

    async def add_seed(self, seed: TrustSeed) -> Optional[TrustSeed]:
        """Insert a seed, returning ``None`` when the DID is already seeded in that scope."""
        ...

    async def delete_seed(self, seed_id: str) -> bool:
        ...

    async def get_score(self, did: str, community_did: str) -> Optional[float]:
        ...

    async def score_map(self, community_did: str, dids: Optional[Sequence[str]] = None) -> dict[str, float]:
        ...

    async def replace_scores(self, community_did: str, scores: Mapping[str, float], *, computed_at: datetime) -> None:
        """Swap the scope's score set in a single transaction."""
        ...


class TrustScoreEngine:
    def __init__(
        self,
        *,
        interactions: InteractionRepository,
        repository: TrustRepository,
        accounts: AccountDirectory,
        pds_table: PdsTrustTable,
        settings: TrustSettings,
        events: EventSink | None = None,
    ) -> None:
        self._interactions = interactions
        self._repo = repository
        self._accounts = accounts
        self._pds = pds_table
        self._settings = settings
        self._events = events or LoggingEventSink()

    @property
    def settings(self) -> TrustSettings:
        return self._settings

    async def load_snapshot(self, community_id: Optional[str] = None) -> GraphSnapshot:
        scope = scope_key(community_id)
        edges = await self._interactions.list_edges(community_id or None)
        explicit = await self._repo.seed_dids(scope)
        privileged = {account.did for account in await self._accounts.list_privileged()}
        seeds = frozenset(explicit | privileged)
        graph = InteractionGraph.from_edges(
            ((edge.source_did, edge.target_did, float(edge.weight)) for edge in edges),
            nodes=sorted(seeds),
        )
        accounts = await self._accounts.get_many(graph.dids)
        factors = await self._pds.factor_map(accounts, graph.dids)
        return GraphSnapshot(
            community_did=scope,
            graph=graph,
            seeds=seeds,
            pds_factors=factors,
            edge_rows=len(edges),
        )

    async def compute_trust_scores(
        self,
        community_id: Optional[str] = None,
        *,
        snapshot: Optional[GraphSnapshot] = None,
    ) -> TrustComputationResult:
        if snapshot is None:
            snapshot = await self.load_snapshot(community_id)
        result = await self.score_snapshot(snapshot)
        await self._repo.replace_scores(snapshot.community_did, snapshot.scores or {}, computed_at=datetime.now(timezone.utc))
        await self.announce(snapshot, result)
        return result

    async def score_snapshot(self, snapshot: GraphSnapshot) -> TrustComputationResult:
        """Propagate trust over the snapshot in memory; nothing is persisted."""

        started = time.perf_counter()
        settings = self._settings
        outcome = await asyncio.to_thread(
            propagate_trust,
            snapshot.graph,
            snapshot.seeds,
            snapshot.pds_factors,
            damping=settings.damping,
            epsilon=settings.epsilon,
            max_iterations=settings.max_iterations,
        )
        snapshot.scores = outcome.scores
        if not outcome.converged:
            logger.warning(
                "trust propagation hit the iteration cap",
                extra={"community_did": snapshot.community_did, "iterations": outcome.iterations},
            )
        return TrustComputationResult(
            total_nodes=snapshot.graph.node_count,
            total_edges=snapshot.graph.edge_count,
            iterations=outcome.iterations,
            converged=outcome.converged,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )

    async def announce(self, snapshot: GraphSnapshot, result: TrustComputationResult) -> None:
        """Log and emit once the scores of ``snapshot`` are committed."""

        logger.info("trust scores recomputed", extra={"community_did": snapshot.community_did, **result.as_dict()})
        await self._events.emit(TrustRecomputed(community_did=snapshot.community_did, **result.as_dict()))

    async def get_trust_score(self, did: str, community_id: Optional[str] = None) -> float:
        score = await self._repo.get_score(did, scope_key(community_id))
        return self._settings.default_trust_score if score is None else score

    async def stored_trust_score(self, did: str, community_id: Optional[str] = None) -> Optional[float]:
        """Community score when one was computed, else the global one, else ``None``."""
        if community_id:
            score = await self._repo.get_score(did, scope_key(community_id))
            if score is not None:
                return score
        return await self._repo.get_score(did, GLOBAL_SCOPE)

    async def score_map(self, dids: Sequence[str], community_id: Optional[str] = None) -> dict[str, float]:
        stored = await self._repo.score_map(scope_key(community_id), dids)
        return {did: stored.get(did, self._settings.default_trust_score) for did in dids}

    # --- seeds -----------------------------------------------------------

    async def list_seeds(self, *, limit: int, cursor: Optional[str]) -> Page[TrustSeed]:
        return await self._repo.list_seeds(limit=limit, cursor=cursor)

    async def implicit_seeds(self) -> list[TrustSeed]:
        seeds: list[TrustSeed] = []
        for account in await self._accounts.list_privileged():
            seeds.append(
                TrustSeed(
                    id=f"role:{account.did}",
                    did=account.did,
                    community_did=GLOBAL_SCOPE,
                    added_by="system",
                    reason=f"role:{account.role}",
                    created_at=account.first_seen_at or datetime.now(timezone.utc),
                    handle=account.handle,
                    implicit=True,
                )
            )
        return seeds

    async def add_seed(self, *, did: str, added_by: str, reason: Optional[str], community_id: Optional[str] = None) -> TrustSeed:
        account = await self._accounts.get(did)
        if account is None:
            raise NotFoundError("account_not_found")
        seed = TrustSeed(
            id=str(uuid.uuid4()),
            did=did,
            community_did=scope_key(community_id),
            added_by=added_by,
            reason=reason,
            created_at=datetime.now(timezone.utc),
            handle=account.handle,
        )
        stored = await self._repo.add_seed(seed)
        if stored is None:
            raise ConflictError("seed_exists")
        logger.info("trust seed added", extra={"seed_did": did, "added_by": added_by})
        return stored

    async def remove_seed(self, seed_id: str) -> None:
        if not await self._repo.delete_seed(seed_id):
            raise NotFoundError("seed_not_found")
        logger.info("trust seed removed", extra={"seed_id": seed_id})


class InMemoryTrustRepository(TrustRepository):
    def __init__(self) -> None:
        self.seeds: dict[str, TrustSeed] = {}
        self.scores: dict[str, dict[str, float]] = {}
        self.computed_at: dict[str, datetime] = {}

    async def seed_dids(self, community_did: str) -> set[str]:
        scopes = {GLOBAL_SCOPE, community_did}
        return {seed.did for seed in self.seeds.values() if seed.community_did in scopes}

    async def list_seeds(self, *, limit: int, cursor: Optional[str]) -> Page[TrustSeed]:
        return paginate_in_memory(
            list(self.seeds.values()),
            limit=limit,
            cursor=cursor,
            sort_field="created_at",
            key=lambda seed: (seed.created_at, seed.id),
        )

    async def get_seed(self, seed_id: str) -> Optional[TrustSeed]:
        return self.seeds.get(seed_id)

    async def add_seed(self, seed: TrustSeed) -> Optional[TrustSeed]:
        for existing in self.seeds.values():
            if existing.did == seed.did and existing.community_did == seed.community_did:
                return None
        self.seeds[seed.id] = seed
        return seed

    async def delete_seed(self, seed_id: str) -> bool:
        return self.seeds.pop(seed_id, None) is not None

    async def get_score(self, did: str, community_did: str) -> Optional[float]:
        return self.scores.get(community_did, {}).get(did)

    async def score_map(self, community_did: str, dids: Optional[Sequence[str]] = None) -> dict[str, float]:
        scores = self.scores.get(community_did, {})
        if dids is None:
            return dict(scores)
        return {did: scores[did] for did in dids if did in scores}

    async def replace_scores(self, community_did: str, scores: Mapping[str, float], *, computed_at: datetime) -> None:
        self.scores[community_did] = dict(scores)
        self.computed_at[community_did] = computed_at
