"""Operations endpoints providing health checks and metrics."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis.exceptions import RedisError

from trustguard.infra.auth import verify_access_jwt
from trustguard.infra.postgres import get_pool
from trustguard.infra.redis import redis_client
from trustguard.settings import settings

router = APIRouter(prefix="", tags=["ops"])


async def require_metrics_access(
	authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
	if settings.obs_metrics_public:
		return
	if not authorization or not authorization.lower().startswith("bearer "):
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="forbidden")
	user = verify_access_jwt(authorization.split(" ", 1)[1])
	if not user.has_role("admin"):
		raise HTTPException(status.HTTP_403_FORBIDDEN, detail="insufficient_role")


@router.get("/health/live")
async def health_live() -> dict[str, str]:
	return {"status": "ok", "service": settings.service_name, "commit": settings.git_commit}


@router.get("/health/ready")
async def health_ready() -> Response:
	checks: dict[str, str] = {}
	try:
		pool = await get_pool()
		async with pool.acquire() as conn:
			await conn.execute("SELECT 1")
		checks["postgres"] = "ok"
	except Exception as exc:  # pragma: no cover - depends on live infra
		checks["postgres"] = f"error:{type(exc).__name__}"
	try:
		await redis_client.ping()
		checks["redis"] = "ok"
	except (RedisError, OSError) as exc:  # pragma: no cover - depends on live infra
		checks["redis"] = f"error:{type(exc).__name__}"
	ready = all(value == "ok" for value in checks.values())
	code = status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE
	return JSONResponse(content={"status": "ok" if ready else "degraded", "checks": checks}, status_code=code)


@router.get("/metrics")
async def prometheus_metrics(_: None = Depends(require_metrics_access)) -> Response:
	payload = generate_latest()
	return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
