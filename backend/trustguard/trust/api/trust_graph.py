"""Admin endpoints driving the trust graph recomputation job."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel

from trustguard.infra.auth import AuthenticatedUser, get_admin_user
from trustguard.trust.domain.container import get_detector, get_heuristics, get_trust_graph_job
from trustguard.trust.domain.models import ClusterStatus

router = APIRouter(prefix="/api/admin/trust-graph", tags=["trust-graph"])


class RecomputeOut(BaseModel):
    status: str
    community_did: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class TrustGraphStatusOut(BaseModel):
    total_nodes: Optional[int]
    total_edges: Optional[int]
    flagged_clusters: int
    clusters_by_status: dict[str, int]
    pending_flags: int
    last_result: Optional[dict[str, Any]]
    job: dict[str, Any]


@router.post("/recompute", response_model=RecomputeOut, status_code=status.HTTP_202_ACCEPTED)
async def recompute_trust_graph(
    response: Response,
    community_id: Optional[str] = Query(default=None),
    wait: bool = Query(default=False),
    force: bool = Query(default=False),
    _: AuthenticatedUser = Depends(get_admin_user),
) -> RecomputeOut:
    job = get_trust_graph_job()
    result = await job.trigger(community_id, force=force, wait=wait)
    if result is None:
        return RecomputeOut(status="accepted", community_did=community_id)
    response.status_code = status.HTTP_200_OK
    return RecomputeOut(status="completed", community_did=community_id, result=result.as_dict())


@router.get("/status", response_model=TrustGraphStatusOut)
async def trust_graph_status(_: AuthenticatedUser = Depends(get_admin_user)) -> TrustGraphStatusOut:
    state = await get_trust_graph_job().status()
    counts = await get_detector().cluster_counts()
    pending = await get_heuristics().pending_count()
    last = state.last_result or {}
    return TrustGraphStatusOut(
        total_nodes=last.get("total_nodes"),
        total_edges=last.get("total_edges"),
        flagged_clusters=counts.get(ClusterStatus.FLAGGED.value, 0),
        clusters_by_status=counts,
        pending_flags=pending,
        last_result=state.last_result,
        job=state.as_dict(),
    )
