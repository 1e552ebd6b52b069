"""FastAPI application entrypoint."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from trustguard import obs
from trustguard.api import ops
from trustguard.api.errors import install_error_handlers
from trustguard.infra import postgres
from trustguard.infra.redis import close_redis, redis_client
from trustguard.settings import settings
from trustguard.trust import api as trust_api
from trustguard.trust.domain import container as trust_container
from trustguard.trust.infra.schema import ensure_schema


@asynccontextmanager
async def lifespan(app: FastAPI):
	pool = await postgres.init_pool()
	await ensure_schema(pool)
	trust_container.configure_postgres(pool, redis_client)
	try:
		yield
	finally:
		await trust_container.close()
		await postgres.close_pool()
		await close_redis()


app = FastAPI(title="Trustguard", lifespan=lifespan)
obs.init(app)
install_error_handlers(app)

allow_origins = list(getattr(settings, "cors_allow_origins", []))
if not allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []
# Starlette disallows wildcard '*' with allow_credentials=True.
if "*" in allow_origins:
	allow_origins = ["http://localhost:3000"] if settings.is_dev() else []

app.add_middleware(
	CORSMiddleware,
	allow_origins=allow_origins,
	allow_credentials=True,
	allow_methods=["*"],
	allow_headers=["*"],
)

app.include_router(ops.router)
app.include_router(trust_api.router)
