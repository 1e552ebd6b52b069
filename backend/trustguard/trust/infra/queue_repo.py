"""PostgreSQL-backed moderation queue."""

from __future__ import annotations

from typing import Any, Optional, Sequence

import asyncpg

from trustguard.infra.postgres import rows_affected, transaction
from trustguard.trust.domain.moderation_queue import ModerationQueueRepository
from trustguard.trust.domain.models import ModerationQueueEntry
from trustguard.trust.domain.pagination import Page, build_keyset_predicate, decode_cursor, page_from_rows

_COLUMNS = "id, content_uri, content_type, author_did, community_did, queue_reason, matched_words, created_at"


def _row_to_entry(row: asyncpg.Record) -> ModerationQueueEntry:
    words = row["matched_words"]
    return ModerationQueueEntry(
        id=str(row["id"]),
        content_uri=str(row["content_uri"]),
        content_type=str(row["content_type"]),
        author_did=str(row["author_did"]),
        community_did=str(row["community_did"]),
        queue_reason=str(row["queue_reason"]),
        matched_words=list(words) if words is not None else None,
        created_at=row["created_at"],
    )


class PostgresModerationQueueRepository(ModerationQueueRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def enqueue(self, entries: Sequence[ModerationQueueEntry]) -> None:
        if not entries:
            return
        async with transaction(self._pool) as conn:
            await conn.executemany(
                f"""
                INSERT INTO moderation_queue ({_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                [
                    (
                        entry.id,
                        entry.content_uri,
                        entry.content_type,
                        entry.author_did,
                        entry.community_did,
                        entry.queue_reason,
                        list(entry.matched_words) if entry.matched_words else None,
                        entry.created_at,
                    )
                    for entry in entries
                ],
            )

    async def list_page(self, *, community_did: Optional[str], limit: int, cursor: Optional[str]) -> Page[ModerationQueueEntry]:
        params: list[Any] = []
        clauses: list[str] = []
        if community_did is not None:
            params.append(community_did)
            clauses.append(f"community_did = ${len(params)}")
        if cursor:
            decoded = decode_cursor(cursor, expected_field="created_at")
            clauses.append(build_keyset_predicate(sort_column="created_at", order="desc", cursor=decoded, params=params))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM moderation_queue
            {where}
            ORDER BY created_at DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        entries = [_row_to_entry(row) for row in rows]
        return page_from_rows(entries, limit=limit, sort_field="created_at", key=lambda entry: (entry.created_at, entry.id))

    async def get(self, entry_id: str) -> Optional[ModerationQueueEntry]:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM moderation_queue WHERE id = $1", entry_id)
        return _row_to_entry(row) if row else None

    async def delete_for_content(self, content_uri: str) -> int:
        status = await self._pool.execute("DELETE FROM moderation_queue WHERE content_uri = $1", content_uri)
        return rows_affected(status)
