"""PostgreSQL-backed account lookups, posting trust and community settings."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional, Sequence

import asyncpg

from trustguard.trust.domain.accounts import AccountDirectory, AccountTrustRecord, AccountTrustRepository
from trustguard.trust.domain.anti_spam import CommunitySettingsSource
from trustguard.trust.domain.models import PRIVILEGED_ROLES, Account

USER_COLUMNS = "did, handle, role, is_banned, first_seen_at, reputation_score, pds_host"


def row_to_account(row: asyncpg.Record) -> Account:
    return Account(
        did=str(row["did"]),
        handle=row["handle"],
        role=str(row["role"] or "user"),
        is_banned=bool(row["is_banned"]),
        first_seen_at=row["first_seen_at"],
        reputation_score=int(row["reputation_score"] or 0),
        pds_host=row["pds_host"],
    )


def _row_to_trust(row: asyncpg.Record) -> AccountTrustRecord:
    return AccountTrustRecord(
        did=str(row["did"]),
        community_did=str(row["community_did"]),
        approved_post_count=int(row["approved_post_count"]),
        is_trusted=bool(row["is_trusted"]),
        trusted_at=row["trusted_at"],
    )


class PostgresAccountDirectory(AccountDirectory):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, did: str) -> Optional[Account]:
        row = await self._pool.fetchrow(f"SELECT {USER_COLUMNS} FROM users WHERE did = $1", did)
        return row_to_account(row) if row else None

    async def get_many(self, dids: Iterable[str]) -> Mapping[str, Account]:
        wanted = list(dict.fromkeys(dids))
        if not wanted:
            return {}
        rows = await self._pool.fetch(f"SELECT {USER_COLUMNS} FROM users WHERE did = ANY($1::text[])", wanted)
        return {str(row["did"]): row_to_account(row) for row in rows}

    async def list_privileged(self) -> Sequence[Account]:
        rows = await self._pool.fetch(
            f"SELECT {USER_COLUMNS} FROM users WHERE role = ANY($1::text[]) ORDER BY did",
            sorted(PRIVILEGED_ROLES),
        )
        return [row_to_account(row) for row in rows]


class PostgresAccountTrustRepository(AccountTrustRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, did: str, community_did: str) -> Optional[AccountTrustRecord]:
        row = await self._pool.fetchrow(
            """
            SELECT did, community_did, approved_post_count, is_trusted, trusted_at
            FROM account_trust
            WHERE did = $1 AND community_did = $2
            """,
            did,
            community_did,
        )
        return _row_to_trust(row) if row else None

    async def record_approval(self, did: str, community_did: str, *, trusted_threshold: int, at: datetime) -> AccountTrustRecord:
        row = await self._pool.fetchrow(
            """
            INSERT INTO account_trust (did, community_did, approved_post_count, is_trusted, trusted_at)
            VALUES ($1, $2, 1, 1 >= $3, CASE WHEN 1 >= $3 THEN $4::timestamptz END)
            ON CONFLICT (did, community_did)
            DO UPDATE SET
                approved_post_count = account_trust.approved_post_count + 1,
                is_trusted = account_trust.is_trusted OR account_trust.approved_post_count + 1 >= $3,
                trusted_at = CASE
                    WHEN account_trust.is_trusted THEN account_trust.trusted_at
                    WHEN account_trust.approved_post_count + 1 >= $3 THEN $4::timestamptz
                    ELSE NULL
                END
            RETURNING did, community_did, approved_post_count, is_trusted, trusted_at
            """,
            did,
            community_did,
            trusted_threshold,
            at,
        )
        if row is None:  # pragma: no cover
            raise RuntimeError("Failed to record approval")
        return _row_to_trust(row)


class PostgresCommunitySettings(CommunitySettingsSource):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def load(self, community_did: str) -> Optional[Mapping[str, Any]]:
        row = await self._pool.fetchrow(
            "SELECT moderation_thresholds, word_filter FROM community_settings WHERE community_did = $1",
            community_did,
        )
        if row is None:
            return None
        thresholds = row["moderation_thresholds"]
        if isinstance(thresholds, str):
            thresholds = json.loads(thresholds or "{}")
        data: dict[str, Any] = dict(thresholds or {})
        if row["word_filter"] is not None:
            data["word_filter"] = list(row["word_filter"])
        return data
