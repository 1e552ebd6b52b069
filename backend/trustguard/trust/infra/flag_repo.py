"""PostgreSQL-backed behavioral flags and the content activity they read."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

from trustguard.trust.domain.behavioral import ActivitySource, FlagRepository, PostRecord, ReactionActivity
from trustguard.trust.domain.models import BehavioralFlag, FlagStatus
from trustguard.trust.domain.pagination import Page, build_keyset_predicate, decode_cursor, page_from_rows

_COLUMNS = "id, flag_type, affected_dids, details, community_did, status, detected_at"


def _row_to_flag(row: asyncpg.Record) -> BehavioralFlag:
    return BehavioralFlag(
        id=str(row["id"]),
        flag_type=str(row["flag_type"]),
        affected_dids=list(row["affected_dids"] or []),
        details=str(row["details"]),
        community_did=row["community_did"],
        status=str(row["status"]),
        detected_at=row["detected_at"],
    )


class PostgresFlagRepository(FlagRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(self, flag: BehavioralFlag) -> BehavioralFlag:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO behavioral_flags (id, flag_type, affected_dids, details, community_did, status, detected_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {_COLUMNS}
            """,
            flag.id,
            flag.flag_type,
            list(flag.affected_dids),
            flag.details,
            flag.community_did,
            flag.status,
            flag.detected_at,
        )
        if row is None:  # pragma: no cover
            raise RuntimeError("Failed to insert behavioral flag")
        return _row_to_flag(row)

    async def list_page(
        self,
        *,
        flag_type: Optional[str],
        status: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> Page[BehavioralFlag]:
        params: list[Any] = []
        clauses: list[str] = []
        if flag_type is not None:
            params.append(flag_type)
            clauses.append(f"flag_type = ${len(params)}")
        if status is not None:
            params.append(status)
            clauses.append(f"status = ${len(params)}")
        if cursor:
            decoded = decode_cursor(cursor, expected_field="detected_at")
            clauses.append(build_keyset_predicate(sort_column="detected_at", order="desc", cursor=decoded, params=params))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM behavioral_flags
            {where}
            ORDER BY detected_at DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        flags = [_row_to_flag(row) for row in rows]
        return page_from_rows(flags, limit=limit, sort_field="detected_at", key=lambda flag: (flag.detected_at, flag.id))

    async def get(self, flag_id: str) -> Optional[BehavioralFlag]:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM behavioral_flags WHERE id = $1", flag_id)
        return _row_to_flag(row) if row else None

    async def set_status(self, flag_id: str, status: str) -> Optional[BehavioralFlag]:
        row = await self._pool.fetchrow(
            f"UPDATE behavioral_flags SET status = $2 WHERE id = $1 RETURNING {_COLUMNS}",
            flag_id,
            status,
        )
        return _row_to_flag(row) if row else None

    async def count_pending(self) -> int:
        value = await self._pool.fetchval(
            "SELECT COUNT(*) FROM behavioral_flags WHERE status = $1",
            FlagStatus.PENDING.value,
        )
        return int(value or 0)


class PostgresActivitySource(ActivitySource):
    """Reads the reply, topic and reaction tables owned by the content service."""

    def __init__(self, pool: asyncpg.Pool, *, max_posts: int = 2000) -> None:
        self._pool = pool
        self._max_posts = max_posts

    async def reaction_activity(self, *, community_did: Optional[str], since: Optional[datetime]) -> Sequence[ReactionActivity]:
        rows = await self._pool.fetch(
            """
            SELECT author_did, COUNT(*) AS total, COUNT(DISTINCT subject_uri) AS unique_targets
            FROM reactions
            WHERE ($1::text IS NULL OR community_did = $1)
              AND ($2::timestamptz IS NULL OR created_at >= $2)
            GROUP BY author_did
            ORDER BY author_did
            """,
            community_did,
            since,
        )
        return [
            ReactionActivity(
                author_did=str(row["author_did"]),
                total=int(row["total"]),
                unique_targets=int(row["unique_targets"]),
            )
            for row in rows
        ]

    async def recent_posts(self, *, community_did: Optional[str], since: datetime) -> Sequence[PostRecord]:
        rows = await self._pool.fetch(
            """
            SELECT uri, author_did, content
            FROM (
                SELECT uri, author_did, content, community_did, created_at FROM topics
                UNION ALL
                SELECT uri, author_did, content, community_did, created_at FROM replies
            ) posts
            WHERE created_at >= $2 AND ($1::text IS NULL OR community_did = $1)
            ORDER BY created_at DESC
            LIMIT $3
            """,
            community_did,
            since,
            self._max_posts,
        )
        return [
            PostRecord(uri=str(row["uri"]), author_did=str(row["author_did"]), content=str(row["content"] or ""))
            for row in rows
        ]
