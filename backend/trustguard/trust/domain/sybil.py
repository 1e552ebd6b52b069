"""Sybil cluster detection over the low-trust part of the interaction graph."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import statistics
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal, Mapping, Optional, Protocol, Sequence

from trustguard.obs import metrics as obs_metrics
from trustguard.trust.domain.accounts import AccountDirectory
from trustguard.trust.domain.events import ClusterFlagged, ClusterStatusChanged, EventSink, LoggingEventSink
from trustguard.trust.domain.exceptions import InvalidInputError, NotFoundError
from trustguard.trust.domain.graph import InteractionGraph, UnionFind, count_component_edges
from trustguard.trust.domain.interactions import InteractionRepository
from trustguard.trust.domain.models import ClusterStatus, MemberRole, SybilCluster, SybilClusterMember
from trustguard.trust.domain.pagination import Page, paginate_in_memory
from trustguard.trust.domain.pds_trust import PdsTrustTable
from trustguard.trust.domain.reputation import cluster_diversity_factor, weighted_reputation
from trustguard.trust.domain.trust_engine import GraphSnapshot, TrustRepository, TrustScoreEngine

if TYPE_CHECKING:  # pragma: no cover - type-only imports
    from trustguard.trust.domain.ban_propagation import BanPropagationResult, BanPropagationService

logger = logging.getLogger(__name__)

ClusterSort = Literal["detected_at", "member_count", "confidence"]
CLUSTER_SORTS: tuple[str, ...] = ("detected_at", "member_count", "confidence")
REVIEW_STATUSES = frozenset({ClusterStatus.MONITORING.value, ClusterStatus.DISMISSED.value, ClusterStatus.BANNED.value})


@dataclass(slots=True)
class DetectedCluster:
    cluster_hash: str
    member_roles: dict[str, str]
    internal_edge_count: int
    external_edge_count: int
    average_trust: float

    @property
    def member_count(self) -> int:
        return len(self.member_roles)

    @property
    def suspicion_ratio(self) -> float:
        total = self.internal_edge_count + self.external_edge_count
        return self.internal_edge_count / total if total else 0.0


@dataclass(slots=True)
class ClusterMemberView:
    did: str
    role: str
    joined_at: datetime
    handle: Optional[str] = None
    trust_score: Optional[float] = None
    reputation_score: Optional[int] = None
    weighted_reputation: Optional[int] = None
    external_contacts: int = 0
    account_age_days: Optional[int] = None
    is_banned: bool = False


@dataclass(slots=True)
class ClusterDetail:
    cluster: SybilCluster
    members: list[ClusterMemberView] = field(default_factory=list)


def cluster_hash(dids: Sequence[str]) -> str:
    return hashlib.sha256(",".join(sorted(dids)).encode("utf-8")).hexdigest()


def assign_roles(graph: InteractionGraph, members: Sequence[int]) -> dict[int, str]:
    """Members whose in-cluster degree is above the cluster median are core."""

    member_set = set(members)
    degrees = {idx: sum(1 for neighbour in graph.neighbours(idx) if neighbour in member_set) for idx in members}
    median = statistics.median(degrees.values()) if degrees else 0
    return {
        idx: MemberRole.CORE.value if degree > median else MemberRole.PERIPHERAL.value
        for idx, degree in degrees.items()
    }


def find_sybil_clusters(
    graph: InteractionGraph,
    scores: Mapping[str, float],
    *,
    low_trust_cutoff: float,
    min_cluster_size: int,
    ratio_threshold: float,
    default_score: float,
) -> list[DetectedCluster]:
    """Connected low-trust components that are insular enough to be suspicious."""

    trust = [scores.get(did, default_score) for did in graph.dids]
    suspects = [idx for idx in range(graph.node_count) if trust[idx] < low_trust_cutoff]
    suspect_set = set(suspects)
    uf = UnionFind(graph.node_count)
    for a, b, _ in graph.pairs():
        if a in suspect_set and b in suspect_set:
            uf.union(a, b)

    detected: list[DetectedCluster] = []
    for component in uf.groups(suspects):
        if len(component) < min_cluster_size:
            continue
        internal, external = count_component_edges(graph, set(component))
        total = internal + external
        ratio = internal / total if total else 0.0
        average = sum(trust[idx] for idx in component) / len(component)
        if ratio <= ratio_threshold or average >= low_trust_cutoff:
            continue
        roles = assign_roles(graph, component)
        member_roles = {graph.dids[idx]: roles[idx] for idx in sorted(component, key=lambda i: graph.dids[i])}
        detected.append(
            DetectedCluster(
                cluster_hash=cluster_hash(list(member_roles)),
                member_roles=member_roles,
                internal_edge_count=internal,
                external_edge_count=external,
                average_trust=average,
            )
        )
    detected.sort(key=lambda item: item.cluster_hash)
    return detected


class ClusterRepository(Protocol):
    async def list_clusters(
        self,
        *,
        status: Optional[str],
        sort: str,
        limit: int,
        cursor: Optional[str],
    ) -> Page[SybilCluster]:
        ...

    async def get(self, cluster_id: str) -> Optional[SybilCluster]:
        """Cluster with its members loaded."""
        ...

    async def cluster_for_member(self, did: str) -> Optional[SybilCluster]:
        """The non-dismissed cluster the DID belongs to, if any."""
        ...

    async def apply_detection(self, detected: Sequence[DetectedCluster], *, at: datetime) -> list[tuple[SybilCluster, bool]]:
        """Persist one detection run atomically.

        Matches by hash (non-dismissed rows updated in place, dismissed rows
        skipped), retires ``flagged`` rows not seen in this run and keeps each
        DID in at most one non-dismissed cluster. Returns ``(cluster, created)``.
        """
        ...

    async def set_status(self, cluster_id: str, status: str, *, reviewer_did: str, at: datetime) -> Optional[SybilCluster]:
        ...

    async def count_by_status(self) -> dict[str, int]:
        ...


class SybilDetector:
    def __init__(
        self,
        *,
        repository: ClusterRepository,
        engine: TrustScoreEngine,
        accounts: AccountDirectory,
        interactions: InteractionRepository,
        pds_table: PdsTrustTable,
        events: EventSink | None = None,
    ) -> None:
        self._repo = repository
        self._engine = engine
        self._accounts = accounts
        self._interactions = interactions
        self._pds = pds_table
        self._events = events or LoggingEventSink()
        self._ban_service: Optional["BanPropagationService"] = None

    def bind_ban_service(self, service: "BanPropagationService") -> None:
        self._ban_service = service

    async def detect_clusters(
        self,
        community_id: Optional[str] = None,
        *,
        snapshot: Optional[GraphSnapshot] = None,
    ) -> list[SybilCluster]:
        if snapshot is None:
            snapshot = await self._engine.load_snapshot(community_id)
        detected = await self.find_clusters(snapshot)
        applied = await self._repo.apply_detection(detected, at=datetime.now(timezone.utc))
        return await self.announce(snapshot, applied)

    async def find_clusters(self, snapshot: GraphSnapshot) -> list[DetectedCluster]:
        """Run detection over the snapshot in memory; nothing is persisted."""

        scores = snapshot.scores
        if scores is None:
            scores = await self._engine.score_map(snapshot.graph.dids, snapshot.community_did or None)
        settings = self._engine.settings
        return await asyncio.to_thread(
            find_sybil_clusters,
            snapshot.graph,
            scores,
            low_trust_cutoff=settings.low_trust_cutoff,
            min_cluster_size=settings.min_cluster_size,
            ratio_threshold=settings.ratio_threshold,
            default_score=settings.default_trust_score,
        )

    async def announce(self, snapshot: GraphSnapshot, applied: Sequence[tuple[SybilCluster, bool]]) -> list[SybilCluster]:
        created_count = sum(1 for _, created in applied if created)
        obs_metrics.clusters_flagged(created_count)
        logger.info(
            "sybil detection finished",
            extra={"community_did": snapshot.community_did, "detected": len(applied), "new_clusters": created_count},
        )
        for cluster, created in applied:
            await self._events.emit(
                ClusterFlagged(
                    cluster_id=cluster.id,
                    cluster_hash=cluster.cluster_hash,
                    member_count=cluster.member_count,
                    suspicion_ratio=cluster.suspicion_ratio,
                    is_new=created,
                )
            )
        return [cluster for cluster, _ in applied]

    async def list_clusters(
        self,
        *,
        status: Optional[str] = None,
        sort: str = "detected_at",
        limit: int,
        cursor: Optional[str] = None,
    ) -> Page[SybilCluster]:
        if status is not None and status not in {item.value for item in ClusterStatus}:
            raise InvalidInputError("invalid_status")
        if sort not in CLUSTER_SORTS:
            raise InvalidInputError("invalid_sort")
        return await self._repo.list_clusters(status=status, sort=sort, limit=limit, cursor=cursor)

    async def cluster_counts(self) -> dict[str, int]:
        return await self._repo.count_by_status()

    async def get_cluster(self, cluster_id: str) -> SybilCluster:
        cluster = await self._repo.get(cluster_id)
        if cluster is None:
            raise NotFoundError("cluster_not_found")
        return cluster

    async def get_cluster_detail(self, cluster_id: str) -> ClusterDetail:
        cluster = await self.get_cluster(cluster_id)
        dids = [member.did for member in cluster.members]
        accounts = await self._accounts.get_many(dids)
        scores = await self._engine.score_map(dids)
        factors = await self._pds.factor_map(accounts, dids)
        partners = await self._interactions.partners(dids)
        member_set = set(dids)
        flagged = cluster.status == ClusterStatus.FLAGGED.value
        now = datetime.now(timezone.utc)
        views: list[ClusterMemberView] = []
        for member in cluster.members:
            account = accounts.get(member.did)
            age_days = None
            if account is not None and account.first_seen_at is not None:
                age_days = max(0, (now - account.first_seen_at).days)
            external = len(partners.get(member.did, set()) - member_set)
            weighted = None
            if account is not None:
                weighted = weighted_reputation(
                    account.reputation_score,
                    scores[member.did],
                    factors[member.did],
                    cluster_diversity_factor(flagged, external),
                )
            views.append(
                ClusterMemberView(
                    did=member.did,
                    role=member.role,
                    joined_at=member.joined_at,
                    handle=account.handle if account else None,
                    trust_score=scores.get(member.did),
                    reputation_score=account.reputation_score if account else None,
                    weighted_reputation=weighted,
                    external_contacts=external,
                    account_age_days=age_days,
                    is_banned=account.is_banned if account else False,
                )
            )
        return ClusterDetail(cluster=cluster, members=views)

    async def _unbanned_core(self, cluster: SybilCluster) -> list[str]:
        core = [member.did for member in cluster.members if member.role == MemberRole.CORE.value]
        accounts = await self._accounts.get_many(core)
        return sorted(did for did, account in accounts.items() if not account.is_banned)

    async def set_status(
        self,
        cluster_id: str,
        status: str,
        reviewer_did: str,
    ) -> tuple[SybilCluster, Optional["BanPropagationResult"]]:
        if status not in REVIEW_STATUSES:
            raise InvalidInputError("invalid_status")
        cluster = await self.get_cluster(cluster_id)
        if status == ClusterStatus.BANNED.value and cluster.status == ClusterStatus.BANNED.value:
            # a cascade that failed earlier is retried; a completed one is a no-op
            if not await self._unbanned_core(cluster) or self._ban_service is None:
                return cluster, None
            propagation = await self._ban_service.propagate_ban(cluster_id, moderator_did=reviewer_did)
            return await self._repo.get(cluster_id) or cluster, propagation
        previous = cluster.status
        updated = await self._repo.set_status(cluster_id, status, reviewer_did=reviewer_did, at=datetime.now(timezone.utc))
        if updated is None:
            raise NotFoundError("cluster_not_found")
        logger.info(
            "sybil cluster reviewed",
            extra={"cluster_id": cluster_id, "previous_status": previous, "status": status, "reviewer": reviewer_did},
        )
        await self._events.emit(
            ClusterStatusChanged(cluster_id=cluster_id, previous_status=previous, status=status, reviewer_did=reviewer_did)
        )
        propagation = None
        if status == ClusterStatus.BANNED.value and self._ban_service is not None:
            propagation = await self._ban_service.propagate_ban(cluster_id, moderator_did=reviewer_did)
            refreshed = await self._repo.get(cluster_id)
            updated = refreshed or updated
        return updated, propagation


def _cluster_sort_value(cluster: SybilCluster, sort: str) -> object:
    if sort == "member_count":
        return cluster.member_count
    if sort == "confidence":
        return cluster.suspicion_ratio
    return cluster.detected_at


class InMemoryClusterRepository(ClusterRepository):
    def __init__(self) -> None:
        self.clusters: dict[str, SybilCluster] = {}

    def _active_for(self, did: str, *, exclude: Optional[str] = None) -> list[SybilCluster]:
        return [
            cluster
            for cluster in self.clusters.values()
            if cluster.id != exclude
            and cluster.status != ClusterStatus.DISMISSED.value
            and any(member.did == did for member in cluster.members)
        ]

    async def list_clusters(
        self,
        *,
        status: Optional[str],
        sort: str,
        limit: int,
        cursor: Optional[str],
    ) -> Page[SybilCluster]:
        rows = [cluster for cluster in self.clusters.values() if status is None or cluster.status == status]
        return paginate_in_memory(
            rows,
            limit=limit,
            cursor=cursor,
            sort_field=sort,
            key=lambda cluster: (_cluster_sort_value(cluster, sort), cluster.id),
        )

    async def get(self, cluster_id: str) -> Optional[SybilCluster]:
        return self.clusters.get(cluster_id)

    async def cluster_for_member(self, did: str) -> Optional[SybilCluster]:
        matches = self._active_for(did)
        return matches[0] if matches else None

    async def apply_detection(self, detected: Sequence[DetectedCluster], *, at: datetime) -> list[tuple[SybilCluster, bool]]:
        by_hash = {cluster.cluster_hash: cluster for cluster in self.clusters.values()}
        seen: set[str] = set()
        applied: list[tuple[SybilCluster, bool]] = []
        for item in detected:
            existing = by_hash.get(item.cluster_hash)
            if existing is not None and existing.status == ClusterStatus.DISMISSED.value:
                continue
            created = existing is None
            if existing is None:
                existing = SybilCluster(
                    id=str(uuid.uuid4()),
                    cluster_hash=item.cluster_hash,
                    internal_edge_count=item.internal_edge_count,
                    external_edge_count=item.external_edge_count,
                    member_count=item.member_count,
                    status=ClusterStatus.FLAGGED.value,
                    detected_at=at,
                    updated_at=at,
                )
                self.clusters[existing.id] = existing
            else:
                existing.internal_edge_count = item.internal_edge_count
                existing.external_edge_count = item.external_edge_count
                existing.updated_at = at
            joined = {member.did: member.joined_at for member in existing.members}
            existing.members = [
                SybilClusterMember(cluster_id=existing.id, did=did, role=role, joined_at=joined.get(did, at))
                for did, role in item.member_roles.items()
            ]
            existing.member_count = len(existing.members)
            for did in item.member_roles:
                for other in self._active_for(did, exclude=existing.id):
                    other.members = [member for member in other.members if member.did != did]
                    other.member_count = len(other.members)
                    other.updated_at = at
            seen.add(existing.id)
            applied.append((existing, created))
        stale = [
            cluster_id
            for cluster_id, cluster in self.clusters.items()
            if cluster.status == ClusterStatus.FLAGGED.value and cluster_id not in seen
        ]
        for cluster_id in stale:
            del self.clusters[cluster_id]
        return applied

    async def set_status(self, cluster_id: str, status: str, *, reviewer_did: str, at: datetime) -> Optional[SybilCluster]:
        cluster = self.clusters.get(cluster_id)
        if cluster is None:
            return None
        cluster.status = status
        cluster.reviewed_by = reviewer_did
        cluster.reviewed_at = at
        cluster.updated_at = at
        return cluster

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for cluster in self.clusters.values():
            counts[cluster.status] = counts.get(cluster.status, 0) + 1
        return counts


class SnapshotWriter(Protocol):
    async def commit(
        self,
        community_did: str,
        scores: Mapping[str, float],
        detected: Sequence[DetectedCluster],
        *,
        at: datetime,
    ) -> list[tuple[SybilCluster, bool]]:
        """Replace the scope's scores and apply a detection run as one unit."""
        ...


class InMemorySnapshotWriter(SnapshotWriter):
    def __init__(self, trust_repository: TrustRepository, cluster_repository: ClusterRepository) -> None:
        self._scores = trust_repository
        self._clusters = cluster_repository

    async def commit(
        self,
        community_did: str,
        scores: Mapping[str, float],
        detected: Sequence[DetectedCluster],
        *,
        at: datetime,
    ) -> list[tuple[SybilCluster, bool]]:
        # clusters first: if they are rejected the previous scores stay in place
        applied = await self._clusters.apply_detection(detected, at=at)
        await self._scores.replace_scores(community_did, scores, computed_at=at)
        return applied
