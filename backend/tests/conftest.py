import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient

# Ensure backend package is importable when tests run from repo root
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
	sys.path.insert(0, str(BACKEND_ROOT))

from trustguard.infra import postgres
from trustguard.infra.counters import CounterStoreError, InMemoryCounterStore
from trustguard.main import app
from trustguard.settings import settings
from trustguard.trust.domain import container
from trustguard.trust.domain.accounts import InMemoryAccountDirectory, InMemoryAccountTrustRepository
from trustguard.trust.domain.anti_spam import InMemoryCommunitySettings
from trustguard.trust.domain.ban_propagation import InMemoryBanRepository
from trustguard.trust.domain.behavioral import InMemoryActivitySource, InMemoryFlagRepository
from trustguard.trust.domain.config import TrustSettings
from trustguard.trust.domain.events import CollectingEventSink
from trustguard.trust.domain.interactions import InMemoryInteractionRepository
from trustguard.trust.domain.moderation_queue import InMemoryModerationQueueRepository
from trustguard.trust.domain.pds_trust import InMemoryPdsTrustRepository
from trustguard.trust.domain.spam_labels import StaticSpamLabels
from trustguard.trust.domain.sybil import InMemoryClusterRepository
from trustguard.trust.domain.trust_engine import InMemoryTrustRepository


ADMIN_DID = "did:plc:admin"
MODERATOR_DID = "did:plc:moderator"
USER_DID = "did:plc:member"


@dataclass
class TrustEnv:
	"""In-memory backing stores wired into the trust container for one test."""

	settings: TrustSettings
	events: CollectingEventSink
	counters: InMemoryCounterStore
	accounts: InMemoryAccountDirectory
	account_trust: InMemoryAccountTrustRepository
	community_settings: InMemoryCommunitySettings
	spam_labels: StaticSpamLabels
	interactions: InMemoryInteractionRepository
	trust_repo: InMemoryTrustRepository
	pds_repo: InMemoryPdsTrustRepository
	cluster_repo: InMemoryClusterRepository
	ban_repo: InMemoryBanRepository
	activity: InMemoryActivitySource
	flags: InMemoryFlagRepository
	queue: InMemoryModerationQueueRepository


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from trustguard.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		set_redis_client(original)
		await client.flushall()


@pytest.fixture(autouse=True)
def patch_postgres(monkeypatch):
	async def _noop():
		return None

	monkeypatch.setattr(postgres, "init_pool", _noop)
	monkeypatch.setattr(postgres, "close_pool", _noop)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Ensure a consistent test environment.

	API tests authenticate via X-User-Did/X-User-Roles headers, which are only
	accepted in dev mode.
	"""
	original_env = settings.environment
	original_metrics_public = settings.obs_metrics_public
	settings.environment = "dev"
	settings.obs_metrics_public = False
	try:
		yield
	finally:
		settings.environment = original_env
		settings.obs_metrics_public = original_metrics_public


@pytest.fixture(autouse=True)
def trust_env() -> TrustEnv:
	accounts = InMemoryAccountDirectory()
	interactions = InMemoryInteractionRepository()
	env = TrustEnv(
		settings=TrustSettings(),
		events=CollectingEventSink(),
		counters=InMemoryCounterStore(),
		accounts=accounts,
		account_trust=InMemoryAccountTrustRepository(),
		community_settings=InMemoryCommunitySettings(),
		spam_labels=StaticSpamLabels(),
		interactions=interactions,
		trust_repo=InMemoryTrustRepository(),
		# neutral default factor keeps propagated scores easy to reason about
		pds_repo=InMemoryPdsTrustRepository(1.0),
		cluster_repo=InMemoryClusterRepository(),
		ban_repo=InMemoryBanRepository(accounts, interactions),
		activity=InMemoryActivitySource(),
		flags=InMemoryFlagRepository(),
		queue=InMemoryModerationQueueRepository(),
	)
	container.configure(
		trust_settings=env.settings,
		events=env.events,
		counters=env.counters,
		accounts=env.accounts,
		account_trust=env.account_trust,
		community_settings=env.community_settings,
		spam_labels=env.spam_labels,
		interactions=env.interactions,
		trust_repository=env.trust_repo,
		pds_repository=env.pds_repo,
		cluster_repository=env.cluster_repo,
		ban_repository=env.ban_repo,
		activity=env.activity,
		flag_repository=env.flags,
		queue_repository=env.queue,
	)
	return env


class FailingCounterStore:
	"""Counter store whose backend is down for every operation."""

	async def incr(self, key, *, ttl_seconds):
		raise CounterStoreError("incr", key)

	async def get(self, key):
		raise CounterStoreError("get", key)

	async def set(self, key, value, *, ttl_seconds=None, only_if_absent=False):
		raise CounterStoreError("set", key)

	async def delete(self, key):
		raise CounterStoreError("delete", key)

	async def record_event(self, key, *, window_seconds, now=None):
		raise CounterStoreError("record_event", key)


@pytest.fixture
def failing_counters() -> FailingCounterStore:
	return FailingCounterStore()


@pytest.fixture
def admin_headers() -> dict[str, str]:
	return {"X-User-Did": ADMIN_DID, "X-User-Roles": "admin"}


@pytest.fixture
def moderator_headers() -> dict[str, str]:
	return {"X-User-Did": MODERATOR_DID, "X-User-Roles": "moderator"}


@pytest.fixture
def user_headers() -> dict[str, str]:
	return {"X-User-Did": USER_DID}


@pytest_asyncio.fixture
async def api_client():
	transport = ASGITransport(app=app)
	async with AsyncClient(transport=transport, base_url="http://testserver") as client:
		yield client
