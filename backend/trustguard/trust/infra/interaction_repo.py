"""PostgreSQL-backed interaction graph repository."""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional, Sequence

import asyncpg

from trustguard.trust.domain.interactions import InteractionRepository
from trustguard.trust.domain.models import InteractionEdge


def _row_to_edge(row: asyncpg.Record) -> InteractionEdge:
    return InteractionEdge(
        source_did=str(row["source_did"]),
        target_did=str(row["target_did"]),
        community_did=str(row["community_did"]),
        interaction_type=str(row["interaction_type"]),
        weight=int(row["weight"]),
        first_interaction_at=row["first_interaction_at"],
        last_interaction_at=row["last_interaction_at"],
    )


class PostgresInteractionRepository(InteractionRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def upsert(
        self,
        *,
        source_did: str,
        target_did: str,
        community_did: str,
        interaction_type: str,
        at: datetime,
    ) -> None:
        await self._pool.execute(
            """
            INSERT INTO interaction_graph (
                source_did, target_did, community_did, interaction_type,
                weight, first_interaction_at, last_interaction_at
            )
            VALUES ($1, $2, $3, $4, 1, $5, $5)
            ON CONFLICT ON CONSTRAINT interaction_graph_edge_key
            DO UPDATE SET
                weight = interaction_graph.weight + 1,
                last_interaction_at = EXCLUDED.last_interaction_at
            """,
            source_did,
            target_did,
            community_did,
            interaction_type,
            at,
        )

    async def list_edges(self, community_did: Optional[str] = None) -> Sequence[InteractionEdge]:
        rows = await self._pool.fetch(
            """
            SELECT source_did, target_did, community_did, interaction_type,
                   weight, first_interaction_at, last_interaction_at
            FROM interaction_graph
            WHERE $1::text IS NULL OR community_did = $1
            """,
            community_did,
        )
        return [_row_to_edge(row) for row in rows]

    async def topic_participants(self, topic_uri: str) -> Sequence[str]:
        rows = await self._pool.fetch("SELECT author_did FROM replies WHERE root_uri = $1", topic_uri)
        return [str(row["author_did"]) for row in rows]

    async def partners(self, dids: Sequence[str]) -> Mapping[str, set[str]]:
        wanted = list(dict.fromkeys(dids))
        result: dict[str, set[str]] = {did: set() for did in wanted}
        if not wanted:
            return result
        rows = await self._pool.fetch(
            """
            SELECT DISTINCT source_did, target_did
            FROM interaction_graph
            WHERE source_did = ANY($1::text[]) OR target_did = ANY($1::text[])
            """,
            wanted,
        )
        for row in rows:
            source, target = str(row["source_did"]), str(row["target_did"])
            if source in result:
                result[source].add(target)
            if target in result:
                result[target].add(source)
        return result
