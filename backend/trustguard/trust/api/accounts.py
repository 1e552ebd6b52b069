"""Admin endpoints for banning accounts, with ban propagation."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from trustguard.infra.auth import AuthenticatedUser, get_admin_user
from trustguard.trust.domain.container import get_ban_service
from trustguard.trust.domain.models import Account

router = APIRouter(prefix="/api/admin/accounts", tags=["trust-accounts"])


class AccountOut(BaseModel):
    did: str
    handle: Optional[str]
    role: str
    is_banned: bool

    @classmethod
    def from_domain(cls, account: Account) -> "AccountOut":
        return cls(did=account.did, handle=account.handle, role=account.role, is_banned=account.is_banned)


class PropagationOut(BaseModel):
    propagated: bool = False
    ban_count: int = 0
    filtered_dids: list[str] = Field(default_factory=list)
    error: Optional[str] = None


class AccountBanOut(BaseModel):
    account: AccountOut
    propagation: PropagationOut


class AccountModerationIn(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)
    community_did: Optional[str] = None


@router.post("/{did}/ban", response_model=AccountBanOut)
async def ban_account(
    did: str,
    payload: Optional[AccountModerationIn] = None,
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> AccountBanOut:
    payload = payload or AccountModerationIn()
    outcome = await get_ban_service().ban_account(
        did,
        moderator_did=admin.did,
        reason=payload.reason,
        community_did=payload.community_did,
    )
    propagation = PropagationOut(error=outcome.propagation_error)
    if outcome.propagation is not None:
        propagation = PropagationOut(
            propagated=outcome.propagation.propagated,
            ban_count=outcome.propagation.ban_count,
            filtered_dids=list(outcome.propagation.filtered_dids),
        )
    return AccountBanOut(account=AccountOut.from_domain(outcome.account), propagation=propagation)


@router.post("/{did}/unban", response_model=AccountOut)
async def unban_account(
    did: str,
    payload: Optional[AccountModerationIn] = None,
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> AccountOut:
    payload = payload or AccountModerationIn()
    account = await get_ban_service().unban_account(
        did,
        moderator_did=admin.did,
        reason=payload.reason,
        community_did=payload.community_did,
    )
    return AccountOut.from_domain(account)
