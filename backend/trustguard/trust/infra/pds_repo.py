"""PostgreSQL-backed PDS trust factor table."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional, Sequence

import asyncpg

from trustguard.trust.domain.pagination import Page, build_keyset_predicate, decode_cursor, page_from_rows
from trustguard.trust.domain.pds_trust import DEFAULT_HOST, PdsTrustRepository
from trustguard.trust.domain.models import PdsTrustFactor

_COLUMNS = "id, pds_host, trust_factor, is_default, updated_at"


def _row_to_factor(row: asyncpg.Record) -> PdsTrustFactor:
    return PdsTrustFactor(
        id=str(row["id"]),
        pds_host=str(row["pds_host"]),
        trust_factor=float(row["trust_factor"]),
        is_default=bool(row["is_default"]),
        updated_at=row["updated_at"],
    )


class PostgresPdsTrustRepository(PdsTrustRepository):
    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def get(self, pds_host: str) -> Optional[PdsTrustFactor]:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM pds_trust_factors WHERE pds_host = $1", pds_host)
        return _row_to_factor(row) if row else None

    async def get_default(self) -> Optional[PdsTrustFactor]:
        row = await self._pool.fetchrow(f"SELECT {_COLUMNS} FROM pds_trust_factors WHERE is_default LIMIT 1")
        return _row_to_factor(row) if row else None

    async def list_all(self) -> Sequence[PdsTrustFactor]:
        rows = await self._pool.fetch(f"SELECT {_COLUMNS} FROM pds_trust_factors")
        return [_row_to_factor(row) for row in rows]

    async def list_page(self, *, limit: int, cursor: Optional[str]) -> Page[PdsTrustFactor]:
        params: list[Any] = []
        where = ""
        if cursor:
            decoded = decode_cursor(cursor, expected_field="updated_at")
            where = "WHERE " + build_keyset_predicate(sort_column="updated_at", order="desc", cursor=decoded, params=params)
        params.append(limit + 1)
        rows = await self._pool.fetch(
            f"""
            SELECT {_COLUMNS}
            FROM pds_trust_factors
            {where}
            ORDER BY updated_at DESC, id DESC
            LIMIT ${len(params)}
            """,
            *params,
        )
        factors = [_row_to_factor(row) for row in rows]
        return page_from_rows(factors, limit=limit, sort_field="updated_at", key=lambda row: (row.updated_at, row.id))

    async def upsert(self, pds_host: str, trust_factor: float, *, at: datetime) -> PdsTrustFactor:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO pds_trust_factors (id, pds_host, trust_factor, is_default, updated_at)
            VALUES ($1, $2, $3, FALSE, $4)
            ON CONFLICT (pds_host)
            DO UPDATE SET trust_factor = EXCLUDED.trust_factor, updated_at = EXCLUDED.updated_at
            RETURNING {_COLUMNS}
            """,
            str(uuid.uuid4()),
            pds_host,
            trust_factor,
            at,
        )
        if row is None:  # pragma: no cover
            raise RuntimeError("Failed to upsert PDS trust factor")
        return _row_to_factor(row)

    async def set_default(self, trust_factor: float, *, at: datetime) -> PdsTrustFactor:
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO pds_trust_factors (id, pds_host, trust_factor, is_default, updated_at)
            VALUES ('default', $1, $2, TRUE, $3)
            ON CONFLICT (pds_host)
            DO UPDATE SET trust_factor = EXCLUDED.trust_factor, updated_at = EXCLUDED.updated_at
            RETURNING {_COLUMNS}
            """,
            DEFAULT_HOST,
            trust_factor,
            at,
        )
        if row is None:  # pragma: no cover
            raise RuntimeError("Failed to update default PDS trust factor")
        return _row_to_factor(row)
