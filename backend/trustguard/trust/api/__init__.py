"""Trust subsystem API routers."""

from fastapi import APIRouter

from . import accounts, behavioral_flags, clusters, content_hooks, moderation_queue, pds_trust, trust_graph, trust_seeds

router = APIRouter()
router.include_router(trust_seeds.router)
router.include_router(clusters.router)
router.include_router(pds_trust.router)
router.include_router(trust_graph.router)
router.include_router(behavioral_flags.router)
router.include_router(accounts.router)
router.include_router(moderation_queue.router)
router.include_router(content_hooks.router)

__all__ = ["router"]
