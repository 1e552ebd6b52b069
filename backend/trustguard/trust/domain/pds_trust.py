"""Trust multipliers keyed by the PDS host an account is served from."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from typing import Mapping, Optional, Protocol, Sequence
from urllib.parse import urlparse

from trustguard.trust.domain.config import TrustSettings
from trustguard.trust.domain.exceptions import InvalidInputError
from trustguard.trust.domain.models import Account, PdsTrustFactor
from trustguard.trust.domain.pagination import Page, paginate_in_memory

DEFAULT_HOST = "*"
_HOSTNAME_RE = re.compile(r"^(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}$")


def normalise_host(value: str) -> str:
    host = (value or "").strip().lower().rstrip(".")
    if not host or len(host) > 253 or not _HOSTNAME_RE.match(host):
        raise InvalidInputError("invalid_pds_host")
    return host


def validate_trust_factor(value: float) -> float:
    try:
        factor = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError("invalid_trust_factor") from exc
    if math.isnan(factor) or factor < 0.0 or factor > 1.0:
        raise InvalidInputError("invalid_trust_factor")
    return factor


def host_from_endpoint(endpoint: Optional[str]) -> Optional[str]:
    """Extract the hostname from a PDS service endpoint URL or bare host."""
    if not endpoint:
        return None
    raw = endpoint if "://" in endpoint else f"https://{endpoint}"
    host = urlparse(raw).hostname
    return host.lower() if host else None


class PdsTrustRepository(Protocol):
    async def get(self, pds_host: str) -> Optional[PdsTrustFactor]:
        ...

    async def get_default(self) -> Optional[PdsTrustFactor]:
        ...

    async def list_all(self) -> Sequence[PdsTrustFactor]:
        ...

    async def list_page(self, *, limit: int, cursor: Optional[str]) -> Page[PdsTrustFactor]:
        ...

    async def upsert(self, pds_host: str, trust_factor: float, *, at: datetime) -> PdsTrustFactor:
        ...

    async def set_default(self, trust_factor: float, *, at: datetime) -> PdsTrustFactor:
        ...


class PdsTrustTable:
    """Resolves per-host factors with the default row as fallback."""

    def __init__(self, repository: PdsTrustRepository, settings: TrustSettings) -> None:
        self._repo = repository
        self._settings = settings

    async def default_factor(self) -> float:
        row = await self._repo.get_default()
        return row.trust_factor if row else self._settings.pds_default_trust_factor

    async def factor_for(self, pds_host: Optional[str]) -> float:
        if pds_host:
            row = await self._repo.get(pds_host.lower())
            if row is not None and not row.is_default:
                return row.trust_factor
        return await self.default_factor()

    async def factor_map(self, accounts: Mapping[str, Account], dids: Sequence[str]) -> dict[str, float]:
        """Factor for every DID in one table read; unknown accounts get the default."""

        rows = await self._repo.list_all()
        default = self._settings.pds_default_trust_factor
        overrides: dict[str, float] = {}
        for row in rows:
            if row.is_default:
                default = row.trust_factor
            else:
                overrides[row.pds_host] = row.trust_factor
        factors: dict[str, float] = {}
        for did in dids:
            account = accounts.get(did)
            host = account.pds_host.lower() if account is not None and account.pds_host else None
            factors[did] = overrides.get(host, default) if host else default
        return factors

    async def list_factors(self, *, limit: int, cursor: Optional[str]) -> Page[PdsTrustFactor]:
        return await self._repo.list_page(limit=limit, cursor=cursor)

    async def upsert_override(self, pds_host: str, trust_factor: float) -> PdsTrustFactor:
        host = normalise_host(pds_host)
        factor = validate_trust_factor(trust_factor)
        return await self._repo.upsert(host, factor, at=datetime.now(timezone.utc))

    async def set_default_factor(self, trust_factor: float) -> PdsTrustFactor:
        factor = validate_trust_factor(trust_factor)
        return await self._repo.set_default(factor, at=datetime.now(timezone.utc))


class InMemoryPdsTrustRepository(PdsTrustRepository):
    def __init__(self, default_factor: float | None = 0.3) -> None:
        self._rows: dict[str, PdsTrustFactor] = {}
        self._next_id = 1
        if default_factor is not None:
            self._store(DEFAULT_HOST, default_factor, True, datetime.now(timezone.utc))

    def _store(self, host: str, factor: float, is_default: bool, at: datetime) -> PdsTrustFactor:
        existing = self._rows.get(host)
        row = PdsTrustFactor(
            id=existing.id if existing else str(self._next_id),
            pds_host=host,
            trust_factor=factor,
            is_default=is_default,
            updated_at=at,
        )
        if existing is None:
            self._next_id += 1
        self._rows[host] = row
        return row

    async def get(self, pds_host: str) -> Optional[PdsTrustFactor]:
        return self._rows.get(pds_host)

    async def get_default(self) -> Optional[PdsTrustFactor]:
        return next((row for row in self._rows.values() if row.is_default), None)

    async def list_all(self) -> Sequence[PdsTrustFactor]:
        return list(self._rows.values())

    async def list_page(self, *, limit: int, cursor: Optional[str]) -> Page[PdsTrustFactor]:
        return paginate_in_memory(
            list(self._rows.values()),
            limit=limit,
            cursor=cursor,
            sort_field="updated_at",
            key=lambda row: (row.updated_at, row.id),
        )

    async def upsert(self, pds_host: str, trust_factor: float, *, at: datetime) -> PdsTrustFactor:
        return self._store(pds_host, trust_factor, False, at)

    async def set_default(self, trust_factor: float, *, at: datetime) -> PdsTrustFactor:
        return self._store(DEFAULT_HOST, trust_factor, True, at)
