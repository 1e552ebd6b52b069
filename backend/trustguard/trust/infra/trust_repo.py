"""PostgreSQL-backed trust seeds and computed scores."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import asyncpg

from trustguard.infra.postgres import rows_affected, transaction
from trustguard.trust.domain.models import GLOBAL_SCOPE, TrustSeed
from trustguard.trust.domain.pagination import Page, build_keyset_predicate, decode_cursor, page_from_rows
from trustguard.trust.domain.trust_engine import TrustRepository

_SEED_COLUMNS = "s.id, s.did, s.community_did, s.added_by, s.reason, s.created_at, u.handle"


def _row_to_seed(row: asyncpg.Record) -> TrustSeed:
    return TrustSeed(
        id=str(row["id"]),
        did=str(row["did"]),
        community_did=str(row["community_did"]),
        added_by=str(row["added_by"]),
        reason=row["reason"],
        created_at=row["created_at"],
        handle=row["handle"],
    )


async def write_scores(conn: Any, community_did: str, scores: Mapping[str, float], *, computed_at: datetime) -> None:
    """Swap the scope's score set on a connection whose transaction the caller owns."""

    await conn.execute("DELETE FROM trust_scores WHERE community_did = $1", community_did)
    if scores:
        await conn.executemany(
            """
            INSERT INTO trust_scores (did, community_did, score, computed_at)
            VALUES ($1, $2, $3, $4)
            """,
            [(did, community_did, float(score), computed_at) for did, score in scores.items()],
        )


class PostgresTrustRepository(TrustRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def seed_dids(self, community_did: str) -> set[str]:
        rows = await self._pool.fetch(
            "SELECT did FROM trust_seeds WHERE community_did = $1 OR community_did = $2",
            GLOBAL_SCOPE,
            community_did,
        )
        return {str(row["did"]) for row in rows}

    async def list_seeds(self, *, limit: int, cursor: Optional[str]) -> Page[TrustSeed]:
        params: list[Any] = []
        where = ""
        if cursor:
            decoded = decode_cursor(cursor, expected_field="created_at")
            where = "WHERE " + build_keyset_predicate(
                sort_column="s.created_at",
                order="desc",
                cursor=decoded,
                params=params,
                id_column="s.id",
            )
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_SEED_COLUMNS}
            FROM trust_seeds s
            LEFT JOIN users u ON u.did = s.did
            {where}
            ORDER BY s.created_at DESC, s.id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        seeds = [_row_to_seed(row) for row in rows]
        return page_from_rows(seeds, limit=limit, sort_field="created_at", key=lambda seed: (seed.created_at, seed.id))

    async def get_seed(self, seed_id: str) -> Optional[TrustSeed]:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_SEED_COLUMNS}
            FROM trust_seeds s
            LEFT JOIN users u ON u.did = s.did
            WHERE s.id = $1
            """,
            seed_id,
        )
        return _row_to_seed(row) if row else None

    async def add_seed(self, seed: TrustSeed) -> Optional[TrustSeed]:
        row = await self._pool.fetchrow(
            """
            INSERT INTO trust_seeds (id, did, community_did, added_by, reason, created_at)
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (did, community_did) DO NOTHING
            RETURNING id
            """,
            seed.id,
            seed.did,
            seed.community_did,
            seed.added_by,
            seed.reason,
            seed.created_at,
        )
        return seed if row is not None else None

    async def delete_seed(self, seed_id: str) -> bool:
        status = await self._pool.execute("DELETE FROM trust_seeds WHERE id = $1", seed_id)
        return rows_affected(status) > 0

    async def get_score(self, did: str, community_did: str) -> Optional[float]:
        value = await self._pool.fetchval(
            "SELECT score FROM trust_scores WHERE did = $1 AND community_did = $2",
            did,
            community_did,
        )
        return float(value) if value is not None else None

    async def score_map(self, community_did: str, dids: Optional[Sequence[str]] = None) -> dict[str, float]:
        if dids is None:
            rows = await self._pool.fetch(
                "SELECT did, score FROM trust_scores WHERE community_did = $1",
                community_did,
            )
        else:
            if not dids:
                return {}
            rows = await self._pool.fetch(
                "SELECT did, score FROM trust_scores WHERE community_did = $1 AND did = ANY($2::text[])",
                community_did,
                list(dids),
            )
        return {str(row["did"]): float(row["score"]) for row in rows}

    async def replace_scores(self, community_did: str, scores: Mapping[str, float], *, computed_at: datetime) -> None:
        async with transaction(self._pool) as conn:
            await write_scores(conn, community_did, scores, computed_at=computed_at)
