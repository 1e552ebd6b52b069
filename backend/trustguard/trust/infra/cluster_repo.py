"""PostgreSQL-backed sybil cluster repository."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import asyncpg

from trustguard.infra.postgres import transaction
from trustguard.trust.domain.models import ClusterStatus, SybilCluster, SybilClusterMember
from trustguard.trust.domain.pagination import Page, build_keyset_predicate, decode_cursor, page_from_rows
from trustguard.trust.domain.sybil import ClusterRepository, DetectedCluster, SnapshotWriter
from trustguard.trust.infra.trust_repo import write_scores

_COLUMNS = (
    "c.id, c.cluster_hash, c.internal_edge_count, c.external_edge_count, c.member_count, "
    "c.status, c.detected_at, c.updated_at, c.reviewed_by, c.reviewed_at"
)
_CONFIDENCE_SQL = (
    "COALESCE(c.internal_edge_count::float8 / NULLIF(c.internal_edge_count + c.external_edge_count, 0), 0)"
)
_SORT_COLUMNS = {
    "detected_at": "c.detected_at",
    "member_count": "c.member_count",
    "confidence": _CONFIDENCE_SQL,
}


def _row_to_cluster(row: asyncpg.Record, members: Sequence[SybilClusterMember] = ()) -> SybilCluster:
    return SybilCluster(
        id=str(row["id"]),
        cluster_hash=str(row["cluster_hash"]),
        internal_edge_count=int(row["internal_edge_count"]),
        external_edge_count=int(row["external_edge_count"]),
        member_count=int(row["member_count"]),
        status=str(row["status"]),
        detected_at=row["detected_at"],
        updated_at=row["updated_at"],
        reviewed_by=row["reviewed_by"],
        reviewed_at=row["reviewed_at"],
        members=list(members),
    )


def _row_to_member(row: asyncpg.Record) -> SybilClusterMember:
    return SybilClusterMember(
        cluster_id=str(row["cluster_id"]),
        did=str(row["did"]),
        role=str(row["role"]),
        joined_at=row["joined_at"],
    )


async def _load_cluster(conn: Any, cluster_id: str) -> Optional[SybilCluster]:
    row = await conn.fetchrow(f"SELECT {_COLUMNS} FROM sybil_clusters c WHERE c.id = $1", cluster_id)
    if row is None:
        return None
    members = await conn.fetch(
        """
        SELECT cluster_id, did, role, joined_at
        FROM sybil_cluster_members
        WHERE cluster_id = $1
        ORDER BY did
        """,
        cluster_id,
    )
    return _row_to_cluster(row, [_row_to_member(member) for member in members])


async def write_detection(conn: Any, detected: Sequence[DetectedCluster], *, at: datetime) -> list[tuple[SybilCluster, bool]]:
    """Apply one detection run on a connection whose transaction the caller owns."""

    dismissed = ClusterStatus.DISMISSED.value
    existing_rows = await conn.fetch(
        "SELECT id, cluster_hash, status FROM sybil_clusters WHERE cluster_hash = ANY($1::text[]) FOR UPDATE",
        [item.cluster_hash for item in detected],
    )
    by_hash = {str(row["cluster_hash"]): row for row in existing_rows}
    touched: list[tuple[str, bool]] = []
    for item in detected:
        existing = by_hash.get(item.cluster_hash)
        if existing is not None and existing["status"] == dismissed:
            continue
        if existing is None:
            cluster_id = str(uuid.uuid4())
            await conn.execute(
                """
                INSERT INTO sybil_clusters (
                    id, cluster_hash, internal_edge_count, external_edge_count,
                    member_count, status, detected_at, updated_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $7)
                """,
                cluster_id,
                item.cluster_hash,
                item.internal_edge_count,
                item.external_edge_count,
                item.member_count,
                ClusterStatus.FLAGGED.value,
                at,
            )
            created = True
        else:
            cluster_id = str(existing["id"])
            await conn.execute(
                """
                UPDATE sybil_clusters
                SET internal_edge_count = $2, external_edge_count = $3, member_count = $4, updated_at = $5
                WHERE id = $1
                """,
                cluster_id,
                item.internal_edge_count,
                item.external_edge_count,
                item.member_count,
                at,
            )
            created = False
        joined_rows = await conn.fetch(
            "SELECT did, joined_at FROM sybil_cluster_members WHERE cluster_id = $1",
            cluster_id,
        )
        joined = {str(row["did"]): row["joined_at"] for row in joined_rows}
        await conn.execute("DELETE FROM sybil_cluster_members WHERE cluster_id = $1", cluster_id)
        await conn.executemany(
            "INSERT INTO sybil_cluster_members (cluster_id, did, role, joined_at) VALUES ($1, $2, $3, $4)",
            [(cluster_id, did, role, joined.get(did, at)) for did, role in item.member_roles.items()],
        )
        moved = await conn.fetch(
            """
            DELETE FROM sybil_cluster_members m
            USING sybil_clusters c
            WHERE m.cluster_id = c.id
              AND c.id <> $1
              AND c.status <> $2
              AND m.did = ANY($3::text[])
            RETURNING m.cluster_id
            """,
            cluster_id,
            dismissed,
            list(item.member_roles),
        )
        shrunk = sorted({str(row["cluster_id"]) for row in moved})
        if shrunk:
            await conn.execute(
                """
                UPDATE sybil_clusters c
                SET member_count = (SELECT COUNT(*) FROM sybil_cluster_members m WHERE m.cluster_id = c.id),
                    updated_at = $2
                WHERE c.id = ANY($1::text[])
                """,
                shrunk,
                at,
            )
        touched.append((cluster_id, created))
    await conn.execute(
        "DELETE FROM sybil_clusters WHERE status = $1 AND NOT (id = ANY($2::text[]))",
        ClusterStatus.FLAGGED.value,
        [cluster_id for cluster_id, _ in touched],
    )
    applied: list[tuple[SybilCluster, bool]] = []
    for cluster_id, created in touched:
        cluster = await _load_cluster(conn, cluster_id)
        if cluster is not None:
            applied.append((cluster, created))
    return applied


class PostgresClusterRepository(ClusterRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def list_clusters(
        self,
        *,
        status: Optional[str],
        sort: str,
        limit: int,
        cursor: Optional[str],
    ) -> Page[SybilCluster]:
        sort_column = _SORT_COLUMNS[sort]
        params: list[Any] = []
        clauses: list[str] = []
        if status is not None:
            params.append(status)
            clauses.append(f"c.status = ${len(params)}")
        if cursor:
            decoded = decode_cursor(cursor, expected_field=sort)
            clauses.append(
                build_keyset_predicate(
                    sort_column=sort_column,
                    order="desc",
                    cursor=decoded,
                    params=params,
                    id_column="c.id",
                )
            )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}, {_CONFIDENCE_SQL} AS confidence
            FROM sybil_clusters c
            {where}
            ORDER BY {sort_column} DESC, c.id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        clusters = [_row_to_cluster(row) for row in rows]

        def key(cluster: SybilCluster) -> tuple[Any, str]:
            if sort == "member_count":
                return cluster.member_count, cluster.id
            if sort == "confidence":
                return cluster.suspicion_ratio, cluster.id
            return cluster.detected_at, cluster.id

        return page_from_rows(clusters, limit=limit, sort_field=sort, key=key)

    async def get(self, cluster_id: str) -> Optional[SybilCluster]:
        async with self._pool.acquire() as conn:
            return await _load_cluster(conn, cluster_id)

    async def cluster_for_member(self, did: str) -> Optional[SybilCluster]:
        async with self._pool.acquire() as conn:
            cluster_id = await conn.fetchval(
                """
                SELECT c.id
                FROM sybil_clusters c
                JOIN sybil_cluster_members m ON m.cluster_id = c.id
                WHERE m.did = $1 AND c.status <> $2
                ORDER BY c.updated_at DESC
                LIMIT 1
                """,
                did,
                ClusterStatus.DISMISSED.value,
            )
            if cluster_id is None:
                return None
            return await _load_cluster(conn, str(cluster_id))

    async def apply_detection(self, detected: Sequence[DetectedCluster], *, at: datetime) -> list[tuple[SybilCluster, bool]]:
        async with transaction(self._pool) as conn:
            return await write_detection(conn, detected, at=at)

    async def set_status(self, cluster_id: str, status: str, *, reviewer_did: str, at: datetime) -> Optional[SybilCluster]:
        async with transaction(self._pool) as conn:
            updated = await conn.fetchval(
                """
                UPDATE sybil_clusters
                SET status = $2, reviewed_by = $3, reviewed_at = $4, updated_at = $4
                WHERE id = $1
                RETURNING id
                """,
                cluster_id,
                status,
                reviewer_did,
                at,
            )
            if updated is None:
                return None
            return await _load_cluster(conn, cluster_id)

    async def count_by_status(self) -> dict[str, int]:
        rows = await self._pool.fetch("SELECT status, COUNT(*) AS total FROM sybil_clusters GROUP BY status")
        return {str(row["status"]): int(row["total"]) for row in rows}


class PostgresSnapshotWriter(SnapshotWriter):
    """Scores and clusters of one batch run land in a single transaction."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def commit(
        self,
        community_did: str,
        scores: Mapping[str, float],
        detected: Sequence[DetectedCluster],
        *,
        at: datetime,
    ) -> list[tuple[SybilCluster, bool]]:
        async with transaction(self._pool) as conn:
            await write_scores(conn, community_did, scores, computed_at=at)
            return await write_detection(conn, detected, at=at)
