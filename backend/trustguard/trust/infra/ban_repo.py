"""PostgreSQL-backed ban, filter and audit writes."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Iterable, Optional, Sequence

import asyncpg

from trustguard.infra.postgres import transaction
from trustguard.trust.domain.ban_propagation import BanRepository
from trustguard.trust.domain.exceptions import BanPropagationError
from trustguard.trust.domain.models import Account, FilterStatus
from trustguard.trust.infra.account_repo import USER_COLUMNS, row_to_account

# Failures worth another attempt; anything else is a bug and propagates as-is.
_TRANSIENT_ERRORS = (
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.TransactionRollbackError,
    asyncpg.exceptions.InterfaceError,
    asyncio.TimeoutError,
    OSError,
)


@asynccontextmanager
async def _propagation_transaction(pool: asyncpg.Pool) -> AsyncIterator[asyncpg.Connection]:
    try:
        async with transaction(pool) as conn:
            yield conn
    except _TRANSIENT_ERRORS as exc:
        raise BanPropagationError(message=f"{type(exc).__name__}: {exc}") from exc


async def _record_actions(
    conn: asyncpg.Connection,
    *,
    action: str,
    dids: Sequence[str],
    moderator_did: str,
    community_did: str,
    reason: Optional[str],
    at: datetime,
) -> None:
    if not dids:
        return
    await conn.executemany(
        """
        INSERT INTO moderation_actions (action, target_did, moderator_did, community_did, reason, created_at)
        VALUES ($1, $2, $3, $4, $5, $6)
        """,
        [(action, did, moderator_did, community_did, reason, at) for did in dids],
    )


async def _upsert_filters(
    conn: asyncpg.Connection,
    dids: Sequence[str],
    *,
    status: str,
    reason: Optional[str],
    moderator_did: str,
    community_did: str,
    at: datetime,
) -> None:
    if not dids:
        return
    await conn.executemany(
        """
        INSERT INTO account_filters (did, community_did, status, reason, filtered_by, updated_at)
        VALUES ($1, $2, $3, $4, $5, $6)
        ON CONFLICT (did, community_did)
        DO UPDATE SET
            status = EXCLUDED.status,
            reason = EXCLUDED.reason,
            filtered_by = EXCLUDED.filtered_by,
            updated_at = EXCLUDED.updated_at
        """,
        [(did, community_did, status, reason, moderator_did, at) for did in dids],
    )


class PostgresBanRepository(BanRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def linked_by_interaction(self, did: str, *, min_weight: int) -> set[str]:
        rows = await self._pool.fetch(
            """
            SELECT other_did
            FROM (
                SELECT target_did AS other_did, weight FROM interaction_graph WHERE source_did = $1
                UNION ALL
                SELECT source_did AS other_did, weight FROM interaction_graph WHERE target_did = $1
            ) linked
            GROUP BY other_did
            HAVING SUM(weight) >= $2
            """,
            did,
            min_weight,
        )
        return {str(row["other_did"]) for row in rows}

    async def banned_dids(self, dids: Iterable[str]) -> set[str]:
        wanted = list(dids)
        if not wanted:
            return set()
        rows = await self._pool.fetch(
            "SELECT did FROM users WHERE did = ANY($1::text[]) AND is_banned",
            wanted,
        )
        return {str(row["did"]) for row in rows}

    async def set_account_ban(
        self,
        did: str,
        *,
        banned: bool,
        moderator_did: str,
        reason: Optional[str],
        community_did: str,
        at: datetime,
    ) -> Optional[Account]:
        async with transaction(self._pool) as conn:
            row = await conn.fetchrow(
                f"UPDATE users SET is_banned = $2 WHERE did = $1 RETURNING {USER_COLUMNS}",
                did,
                banned,
            )
            if row is None:
                return None
            await _record_actions(
                conn,
                action="ban" if banned else "unban",
                dids=[did],
                moderator_did=moderator_did,
                community_did=community_did,
                reason=reason,
                at=at,
            )
        return row_to_account(row)

    async def apply_filters(
        self,
        dids: Sequence[str],
        *,
        status: str,
        reason: str,
        moderator_did: str,
        community_did: str,
        at: datetime,
    ) -> list[str]:
        async with _propagation_transaction(self._pool) as conn:
            await _upsert_filters(
                conn,
                dids,
                status=status,
                reason=reason,
                moderator_did=moderator_did,
                community_did=community_did,
                at=at,
            )
            await _record_actions(
                conn,
                action=f"filter:{status}",
                dids=dids,
                moderator_did=moderator_did,
                community_did=community_did,
                reason=reason,
                at=at,
            )
        return list(dids)

    async def apply_cluster_ban(
        self,
        *,
        core_dids: Sequence[str],
        peripheral_dids: Sequence[str],
        cluster_id: str,
        moderator_did: str,
        at: datetime,
    ) -> tuple[list[str], list[str]]:
        reason = f"sybil_cluster:{cluster_id}"
        async with _propagation_transaction(self._pool) as conn:
            rows = await conn.fetch(
                "UPDATE users SET is_banned = TRUE WHERE did = ANY($1::text[]) RETURNING did",
                list(core_dids),
            )
            banned = sorted(str(row["did"]) for row in rows)
            await _record_actions(
                conn,
                action="ban",
                dids=banned,
                moderator_did=moderator_did,
                community_did="",
                reason=reason,
                at=at,
            )
            monitored = list(peripheral_dids)
            await _upsert_filters(
                conn,
                monitored,
                status=FilterStatus.MONITORED.value,
                reason=reason,
                moderator_did=moderator_did,
                community_did="",
                at=at,
            )
            await _record_actions(
                conn,
                action=f"filter:{FilterStatus.MONITORED.value}",
                dids=monitored,
                moderator_did=moderator_did,
                community_did="",
                reason=reason,
                at=at,
            )
        return banned, monitored
