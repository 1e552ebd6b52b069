"""Admin endpoints for behavioral heuristic flags."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustguard.infra.auth import AuthenticatedUser, get_admin_user
from trustguard.trust.domain.container import get_heuristics
from trustguard.trust.domain.models import BehavioralFlag
from trustguard.trust.domain.pagination import DEFAULT_LIMIT, MAX_LIMIT

router = APIRouter(prefix="/api/admin/behavioral-flags", tags=["behavioral-flags"])


class BehavioralFlagOut(BaseModel):
    id: str
    flag_type: str
    affected_dids: list[str]
    details: str
    community_did: Optional[str]
    status: str
    detected_at: str

    @classmethod
    def from_domain(cls, flag: BehavioralFlag) -> "BehavioralFlagOut":
        return cls(
            id=flag.id,
            flag_type=flag.flag_type,
            affected_dids=list(flag.affected_dids),
            details=flag.details,
            community_did=flag.community_did,
            status=flag.status,
            detected_at=flag.detected_at.isoformat(),
        )


class BehavioralFlagPageOut(BaseModel):
    items: list[BehavioralFlagOut]
    cursor: Optional[str]


class FlagStatusIn(BaseModel):
    status: str


@router.get("", response_model=BehavioralFlagPageOut)
async def list_behavioral_flags(
    flag_type: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    cursor: Optional[str] = Query(default=None),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> BehavioralFlagPageOut:
    page = await get_heuristics().list_flags(flag_type=flag_type, status=status, limit=limit, cursor=cursor)
    return BehavioralFlagPageOut(items=[BehavioralFlagOut.from_domain(flag) for flag in page.items], cursor=page.cursor)


@router.put("/{flag_id}", response_model=BehavioralFlagOut)
async def update_behavioral_flag(
    flag_id: str,
    payload: FlagStatusIn,
    _: AuthenticatedUser = Depends(get_admin_user),
) -> BehavioralFlagOut:
    flag = await get_heuristics().update_status(flag_id, payload.status)
    return BehavioralFlagOut.from_domain(flag)
