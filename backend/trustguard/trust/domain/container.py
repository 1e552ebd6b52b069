"""Service container for the trust subsystem.

Module-level defaults are in-memory so unit tests and local tooling run
without Postgres; :func:`configure_postgres` swaps in the real repositories.
"""

from __future__ import annotations

import time
from typing import Optional

import asyncpg
import httpx
from redis.asyncio import Redis

from trustguard.infra.counters import CounterStore, RedisCounterStore
from trustguard.infra.redis import RedisProxy, redis_client
from trustguard.settings import settings
from trustguard.trust.domain.accounts import (
    AccountDirectory,
    AccountTrustRepository,
    InMemoryAccountDirectory,
    InMemoryAccountTrustRepository,
)
from trustguard.trust.domain.anti_spam import AntiSpamService, CommunitySettingsSource, InMemoryCommunitySettings
from trustguard.trust.domain.ban_propagation import BanPropagationService, BanRepository, InMemoryBanRepository
from trustguard.trust.domain.behavioral import (
    ActivitySource,
    BehavioralHeuristics,
    FlagRepository,
    InMemoryActivitySource,
    InMemoryFlagRepository,
)
from trustguard.trust.domain.config import TrustSettings, load_trust_settings
from trustguard.trust.domain.events import EventSink, LoggingEventSink
from trustguard.trust.domain.interactions import (
    InMemoryInteractionRepository,
    InteractionRecorder,
    InteractionRepository,
)
from trustguard.trust.domain.moderation_queue import (
    InMemoryModerationQueueRepository,
    ModerationQueueRepository,
    ModerationQueueService,
)
from trustguard.trust.domain.pds_trust import InMemoryPdsTrustRepository, PdsTrustRepository, PdsTrustTable
from trustguard.trust.domain.spam_labels import SpamLabelLookup, StaticSpamLabels
from trustguard.trust.domain.sybil import (
    ClusterRepository,
    InMemoryClusterRepository,
    InMemorySnapshotWriter,
    SnapshotWriter,
    SybilDetector,
)
from trustguard.trust.domain.trust_engine import InMemoryTrustRepository, TrustRepository, TrustScoreEngine
from trustguard.trust.jobs.trust_graph import TrustGraphJob
from trustguard.trust.middleware.write_gate import WriteGate

_trust_settings: TrustSettings = load_trust_settings(settings.trust_config_path)
_events: EventSink = LoggingEventSink()
_counters: CounterStore = RedisCounterStore(redis_client)
_accounts: AccountDirectory = InMemoryAccountDirectory()
_account_trust: AccountTrustRepository = InMemoryAccountTrustRepository()
_community_settings: CommunitySettingsSource = InMemoryCommunitySettings()
_spam_labels: SpamLabelLookup = StaticSpamLabels()
_interactions: InteractionRepository = InMemoryInteractionRepository()
_trust_repo: TrustRepository = InMemoryTrustRepository()
_pds_repo: PdsTrustRepository = InMemoryPdsTrustRepository(_trust_settings.pds_default_trust_factor)
_cluster_repo: ClusterRepository = InMemoryClusterRepository()
_ban_repo: BanRepository = InMemoryBanRepository(_accounts, _interactions)
_activity: ActivitySource = InMemoryActivitySource()
_flag_repo: FlagRepository = InMemoryFlagRepository()
_queue_repo: ModerationQueueRepository = InMemoryModerationQueueRepository()
_snapshot_writer: Optional[SnapshotWriter] = None
_http_client: Optional[httpx.AsyncClient] = None

_recorder: InteractionRecorder
_pds_table: PdsTrustTable
_engine: TrustScoreEngine
_detector: SybilDetector
_ban_service: BanPropagationService
_heuristics: BehavioralHeuristics
_anti_spam: AntiSpamService
_queue_service: ModerationQueueService
_write_gate: WriteGate
_trust_graph_job: TrustGraphJob
_writer: SnapshotWriter


def _wire(clock=time.time) -> None:
    global _recorder, _pds_table, _engine, _detector, _ban_service, _heuristics
    global _anti_spam, _queue_service, _write_gate, _writer, _trust_graph_job
    _recorder = InteractionRecorder(_interactions)
    _pds_table = PdsTrustTable(_pds_repo, _trust_settings)
    _engine = TrustScoreEngine(
        interactions=_interactions,
        repository=_trust_repo,
        accounts=_accounts,
        pds_table=_pds_table,
        settings=_trust_settings,
        events=_events,
    )
    _detector = SybilDetector(
        repository=_cluster_repo,
        engine=_engine,
        accounts=_accounts,
        interactions=_interactions,
        pds_table=_pds_table,
        events=_events,
    )
    _ban_service = BanPropagationService(
        repository=_ban_repo,
        clusters=_cluster_repo,
        accounts=_accounts,
        settings=_trust_settings,
        events=_events,
    )
    _detector.bind_ban_service(_ban_service)
    _heuristics = BehavioralHeuristics(activity=_activity, flags=_flag_repo, settings=_trust_settings)
    _anti_spam = AntiSpamService(
        counters=_counters,
        accounts=_accounts,
        account_trust=_account_trust,
        community_settings=_community_settings,
        spam_labels=_spam_labels,
        pds_table=_pds_table,
        engine=_engine,
        trust_settings=_trust_settings,
        fail_open=settings.rate_limit_fail_open,
        settings_cache_seconds=settings.antispam_settings_cache_seconds,
    )
    _queue_service = ModerationQueueService(
        repository=_queue_repo,
        account_trust=_account_trust,
        settings_loader=_anti_spam.load_settings,
    )
    _anti_spam.bind_queue(_queue_service)
    _write_gate = WriteGate(anti_spam=_anti_spam)
    _writer = _snapshot_writer or InMemorySnapshotWriter(_trust_repo, _cluster_repo)
    _trust_graph_job = TrustGraphJob(
        engine=_engine,
        detector=_detector,
        heuristics=_heuristics,
        writer=_writer,
        counters=_counters,
        cooldown_seconds=settings.recompute_cooldown_seconds,
        clock=clock,
    )


_wire()


def configure(
    *,
    trust_settings: Optional[TrustSettings] = None,
    events: Optional[EventSink] = None,
    counters: Optional[CounterStore] = None,
    accounts: Optional[AccountDirectory] = None,
    account_trust: Optional[AccountTrustRepository] = None,
    community_settings: Optional[CommunitySettingsSource] = None,
    spam_labels: Optional[SpamLabelLookup] = None,
    interactions: Optional[InteractionRepository] = None,
    trust_repository: Optional[TrustRepository] = None,
    pds_repository: Optional[PdsTrustRepository] = None,
    cluster_repository: Optional[ClusterRepository] = None,
    ban_repository: Optional[BanRepository] = None,
    activity: Optional[ActivitySource] = None,
    flag_repository: Optional[FlagRepository] = None,
    queue_repository: Optional[ModerationQueueRepository] = None,
    snapshot_writer: Optional[SnapshotWriter] = None,
    clock=None,
) -> None:
    global _trust_settings, _events, _counters, _accounts, _account_trust, _community_settings, _spam_labels
    global _interactions, _trust_repo, _pds_repo, _cluster_repo, _ban_repo, _activity, _flag_repo, _queue_repo
    global _snapshot_writer
    if trust_settings is not None:
        _trust_settings = trust_settings
    if events is not None:
        _events = events
    if counters is not None:
        _counters = counters
    if accounts is not None:
        _accounts = accounts
    if account_trust is not None:
        _account_trust = account_trust
    if community_settings is not None:
        _community_settings = community_settings
    if spam_labels is not None:
        _spam_labels = spam_labels
    if interactions is not None:
        _interactions = interactions
    if trust_repository is not None:
        _trust_repo = trust_repository
    if pds_repository is not None:
        _pds_repo = pds_repository
    if cluster_repository is not None:
        _cluster_repo = cluster_repository
    if ban_repository is not None:
        _ban_repo = ban_repository
    elif isinstance(_ban_repo, InMemoryBanRepository) and (accounts is not None or interactions is not None):
        _ban_repo = InMemoryBanRepository(_accounts, _interactions)
    if activity is not None:
        _activity = activity
    if flag_repository is not None:
        _flag_repo = flag_repository
    if queue_repository is not None:
        _queue_repo = queue_repository
    if snapshot_writer is not None:
        _snapshot_writer = snapshot_writer
    elif trust_repository is not None or cluster_repository is not None:
        _snapshot_writer = None
    _wire(clock or time.time)


def configure_postgres(pool: asyncpg.Pool, redis_conn: Redis | RedisProxy) -> None:
    from trustguard.trust.infra.account_repo import (
        PostgresAccountDirectory,
        PostgresAccountTrustRepository,
        PostgresCommunitySettings,
    )
    from trustguard.trust.infra.ban_repo import PostgresBanRepository
    from trustguard.trust.infra.cluster_repo import PostgresClusterRepository, PostgresSnapshotWriter
    from trustguard.trust.infra.flag_repo import PostgresActivitySource, PostgresFlagRepository
    from trustguard.trust.infra.interaction_repo import PostgresInteractionRepository
    from trustguard.trust.infra.pds_repo import PostgresPdsTrustRepository
    from trustguard.trust.infra.queue_repo import PostgresModerationQueueRepository
    from trustguard.trust.infra.spam_label_client import LabelerSpamLabels
    from trustguard.trust.infra.trust_repo import PostgresTrustRepository

    global _http_client
    proxy = redis_conn if isinstance(redis_conn, RedisProxy) else RedisProxy(redis_conn)
    counters = RedisCounterStore(proxy)
    spam_labels: SpamLabelLookup = StaticSpamLabels()
    if settings.labeler_url:
        _http_client = _http_client or httpx.AsyncClient()
        spam_labels = LabelerSpamLabels(
            _http_client,
            base_url=settings.labeler_url,
            sources=settings.labeler_dids,
            counters=counters,
            cache_seconds=settings.spam_label_cache_seconds,
            timeout=settings.labeler_timeout_seconds,
        )
    configure(
        counters=counters,
        accounts=PostgresAccountDirectory(pool),
        account_trust=PostgresAccountTrustRepository(pool),
        community_settings=PostgresCommunitySettings(pool),
        spam_labels=spam_labels,
        interactions=PostgresInteractionRepository(pool),
        trust_repository=PostgresTrustRepository(pool),
        pds_repository=PostgresPdsTrustRepository(pool),
        cluster_repository=PostgresClusterRepository(pool),
        ban_repository=PostgresBanRepository(pool),
        activity=PostgresActivitySource(pool),
        flag_repository=PostgresFlagRepository(pool),
        queue_repository=PostgresModerationQueueRepository(pool),
        snapshot_writer=PostgresSnapshotWriter(pool),
    )


async def close() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None


def get_trust_settings() -> TrustSettings:
    return _trust_settings


def get_events() -> EventSink:
    return _events


def get_counters() -> CounterStore:
    return _counters


def get_recorder() -> InteractionRecorder:
    return _recorder


def get_pds_table() -> PdsTrustTable:
    return _pds_table


def get_engine() -> TrustScoreEngine:
    return _engine


def get_detector() -> SybilDetector:
    return _detector


def get_ban_service() -> BanPropagationService:
    return _ban_service


def get_heuristics() -> BehavioralHeuristics:
    return _heuristics


def get_anti_spam() -> AntiSpamService:
    return _anti_spam


def get_queue_service() -> ModerationQueueService:
    return _queue_service


def get_write_gate() -> WriteGate:
    return _write_gate


def get_trust_graph_job() -> TrustGraphJob:
    return _trust_graph_job


def get_snapshot_writer() -> SnapshotWriter:
    return _writer
