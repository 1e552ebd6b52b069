"""Admin endpoints for reviewing sybil clusters."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustguard.infra.auth import AuthenticatedUser, get_admin_user
from trustguard.trust.domain.ban_propagation import BanPropagationResult
from trustguard.trust.domain.container import get_detector
from trustguard.trust.domain.models import SybilCluster
from trustguard.trust.domain.pagination import DEFAULT_LIMIT, MAX_LIMIT
from trustguard.trust.domain.sybil import ClusterDetail, ClusterMemberView

router = APIRouter(prefix="/api/admin/sybil-clusters", tags=["sybil-clusters"])


class ClusterOut(BaseModel):
    id: str
    cluster_hash: str
    internal_edge_count: int
    external_edge_count: int
    member_count: int
    suspicion_ratio: float
    status: str
    detected_at: str
    updated_at: str
    reviewed_by: Optional[str]
    reviewed_at: Optional[str]

    @classmethod
    def from_domain(cls, cluster: SybilCluster) -> "ClusterOut":
        return cls(
            id=cluster.id,
            cluster_hash=cluster.cluster_hash,
            internal_edge_count=cluster.internal_edge_count,
            external_edge_count=cluster.external_edge_count,
            member_count=cluster.member_count,
            suspicion_ratio=round(cluster.suspicion_ratio, 4),
            status=cluster.status,
            detected_at=cluster.detected_at.isoformat(),
            updated_at=cluster.updated_at.isoformat(),
            reviewed_by=cluster.reviewed_by,
            reviewed_at=cluster.reviewed_at.isoformat() if cluster.reviewed_at else None,
        )


class ClusterPageOut(BaseModel):
    items: list[ClusterOut]
    cursor: Optional[str]


class ClusterMemberOut(BaseModel):
    did: str
    role: str
    joined_at: str
    handle: Optional[str]
    trust_score: Optional[float]
    reputation_score: Optional[int]
    weighted_reputation: Optional[int]
    external_contacts: int
    account_age_days: Optional[int]
    is_banned: bool

    @classmethod
    def from_domain(cls, member: ClusterMemberView) -> "ClusterMemberOut":
        return cls(
            did=member.did,
            role=member.role,
            joined_at=member.joined_at.isoformat(),
            handle=member.handle,
            trust_score=member.trust_score,
            reputation_score=member.reputation_score,
            weighted_reputation=member.weighted_reputation,
            external_contacts=member.external_contacts,
            account_age_days=member.account_age_days,
            is_banned=member.is_banned,
        )


class ClusterDetailOut(ClusterOut):
    members: list[ClusterMemberOut]

    @classmethod
    def from_detail(cls, detail: ClusterDetail) -> "ClusterDetailOut":
        base = ClusterOut.from_domain(detail.cluster)
        return cls(
            **base.model_dump(),
            members=[ClusterMemberOut.from_domain(member) for member in detail.members],
        )


class BanPropagationOut(BaseModel):
    banned_dids: list[str]
    monitored_dids: list[str]
    attempts: int
    error: Optional[str]

    @classmethod
    def from_domain(cls, result: BanPropagationResult) -> "BanPropagationOut":
        return cls(
            banned_dids=list(result.banned_dids),
            monitored_dids=list(result.monitored_dids),
            attempts=result.attempts,
            error=result.error,
        )


class ClusterStatusIn(BaseModel):
    status: str


class ClusterStatusOut(BaseModel):
    cluster: ClusterOut
    propagation: Optional[BanPropagationOut] = None


@router.get("", response_model=ClusterPageOut)
async def list_clusters(
    status: Optional[str] = Query(default=None),
    sort: Literal["detected_at", "member_count", "confidence"] = Query(default="detected_at"),
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    cursor: Optional[str] = Query(default=None),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> ClusterPageOut:
    page = await get_detector().list_clusters(status=status, sort=sort, limit=limit, cursor=cursor)
    return ClusterPageOut(items=[ClusterOut.from_domain(cluster) for cluster in page.items], cursor=page.cursor)


@router.get("/{cluster_id}", response_model=ClusterDetailOut)
async def get_cluster(
    cluster_id: str,
    _: AuthenticatedUser = Depends(get_admin_user),
) -> ClusterDetailOut:
    detail = await get_detector().get_cluster_detail(cluster_id)
    return ClusterDetailOut.from_detail(detail)


@router.put("/{cluster_id}", response_model=ClusterStatusOut)
async def update_cluster_status(
    cluster_id: str,
    payload: ClusterStatusIn,
    admin: AuthenticatedUser = Depends(get_admin_user),
) -> ClusterStatusOut:
    cluster, propagation = await get_detector().set_status(cluster_id, payload.status, admin.did)
    return ClusterStatusOut(
        cluster=ClusterOut.from_domain(cluster),
        propagation=BanPropagationOut.from_domain(propagation) if propagation else None,
    )
