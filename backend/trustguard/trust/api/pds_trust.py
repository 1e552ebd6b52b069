"""Admin endpoints for PDS trust factors."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustguard.infra.auth import AuthenticatedUser, get_admin_user
from trustguard.trust.domain.container import get_pds_table
from trustguard.trust.domain.models import PdsTrustFactor
from trustguard.trust.domain.pagination import DEFAULT_LIMIT, MAX_LIMIT

router = APIRouter(prefix="/api/admin/pds-trust", tags=["pds-trust"])


class PdsTrustFactorOut(BaseModel):
    id: str
    pds_host: str
    trust_factor: float
    is_default: bool
    updated_at: str

    @classmethod
    def from_domain(cls, row: PdsTrustFactor) -> "PdsTrustFactorOut":
        return cls(
            id=row.id,
            pds_host=row.pds_host,
            trust_factor=row.trust_factor,
            is_default=row.is_default,
            updated_at=row.updated_at.isoformat(),
        )


class PdsTrustPageOut(BaseModel):
    items: list[PdsTrustFactorOut]
    cursor: Optional[str]


class PdsTrustFactorIn(BaseModel):
    pds_host: str
    trust_factor: float


class DefaultTrustFactorIn(BaseModel):
    trust_factor: float


@router.get("", response_model=PdsTrustPageOut)
async def list_pds_trust(
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    cursor: Optional[str] = Query(default=None),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> PdsTrustPageOut:
    page = await get_pds_table().list_factors(limit=limit, cursor=cursor)
    return PdsTrustPageOut(items=[PdsTrustFactorOut.from_domain(row) for row in page.items], cursor=page.cursor)


@router.put("", response_model=PdsTrustFactorOut)
async def upsert_pds_trust(
    payload: PdsTrustFactorIn,
    _: AuthenticatedUser = Depends(get_admin_user),
) -> PdsTrustFactorOut:
    row = await get_pds_table().upsert_override(payload.pds_host, payload.trust_factor)
    return PdsTrustFactorOut.from_domain(row)


@router.put("/default", response_model=PdsTrustFactorOut)
async def update_default_pds_trust(
    payload: DefaultTrustFactorIn,
    _: AuthenticatedUser = Depends(get_admin_user),
) -> PdsTrustFactorOut:
    row = await get_pds_table().set_default_factor(payload.trust_factor)
    return PdsTrustFactorOut.from_domain(row)
