"""Admin endpoints for the trust seed set."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field

from trustguard.infra.auth import AuthenticatedUser, get_admin_user
from trustguard.trust.domain.container import get_engine
from trustguard.trust.domain.models import TrustSeed
from trustguard.trust.domain.pagination import DEFAULT_LIMIT, MAX_LIMIT

router = APIRouter(prefix="/api/admin/trust-seeds", tags=["trust-seeds"])


class TrustSeedOut(BaseModel):
    id: str
    did: str
    handle: Optional[str]
    community_did: Optional[str]
    added_by: str
    reason: Optional[str]
    implicit: bool
    created_at: str

    @classmethod
    def from_domain(cls, seed: TrustSeed) -> "TrustSeedOut":
        return cls(
            id=seed.id,
            did=seed.did,
            handle=seed.handle,
            community_did=seed.community_did or None,
            added_by=seed.added_by,
            reason=seed.reason,
            implicit=seed.implicit,
            created_at=seed.created_at.isoformat(),
        )


class TrustSeedPageOut(BaseModel):
    items: list[TrustSeedOut]
    cursor: Optional[str]
    implicit: list[TrustSeedOut]


class CreateTrustSeedIn(BaseModel):
    did: str = Field(min_length=1, max_length=2048)
    reason: Optional[str] = Field(default=None, max_length=500)
    community_did: Optional[str] = None


@router.get("", response_model=TrustSeedPageOut)
async def list_trust_seeds(
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    cursor: Optional[str] = Query(default=None),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> TrustSeedPageOut:
    engine = get_engine()
    page = await engine.list_seeds(limit=limit, cursor=cursor)
    implicit = await engine.implicit_seeds()
    return TrustSeedPageOut(
        items=[TrustSeedOut.from_domain(seed) for seed in page.items],
        cursor=page.cursor,
        implicit=[TrustSeedOut.from_domain(seed) for seed in implicit],
    )


@router.post("", response_model=TrustSeedOut, status_code=status.HTTP_201_CREATED)
async def create_trust_seed(
    payload: CreateTrustSeedIn,
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> TrustSeedOut:
    seed = await get_engine().add_seed(
        did=payload.did,
        added_by=admin.did,
        reason=payload.reason,
        community_id=payload.community_did,
    )
    return TrustSeedOut.from_domain(seed)


@router.delete(
    "/{seed_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    response_model=None,
)
async def delete_trust_seed(
    seed_id: str,
    _: AuthenticatedUser = Depends(get_admin_user),
) -> None:
    await get_engine().remove_seed(seed_id)
