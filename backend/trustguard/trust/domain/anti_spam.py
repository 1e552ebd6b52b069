"""Write-rate limiting and content holds for untrusted accounts.

Accounts fall into three classes. Trusted accounts skip every check. New
accounts (young, without approved posts, spam-labeled or on a low-trust
PDS) get the small write budget and the first-post and link holds.
Everyone else is established.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Protocol, Sequence

from trustguard.infra.counters import CounterStore, CounterStoreError
from trustguard.infra import rate_limit
from trustguard.obs import metrics as obs_metrics
from trustguard.trust.domain.accounts import AccountDirectory, AccountTrustRepository
from trustguard.trust.domain.config import AntiSpamSettings, TrustSettings
from trustguard.trust.domain.moderation_queue import ModerationQueueService
from trustguard.trust.domain.models import QueueReason
from trustguard.trust.domain.pds_trust import PdsTrustTable
from trustguard.trust.domain.spam_labels import SpamLabelLookup
from trustguard.trust.domain.trust_engine import TrustScoreEngine

logger = logging.getLogger(__name__)

RATE_WINDOW_SECONDS = 60
URL_PATTERN = re.compile(r"https?://\S+|www\.\S+", re.IGNORECASE)

ACCOUNT_TRUSTED = "trusted"
ACCOUNT_NEW = "new"
ACCOUNT_ESTABLISHED = "established"


def check_word_filter(content: str, title: Optional[str], word_filter: Sequence[str]) -> list[str]:
    """Return the filter words found as whole words in the title or body."""

    if not word_filter:
        return []
    text = f"{title} {content}" if title else content
    matched: list[str] = []
    for word in word_filter:
        if word and re.search(rf"\b{re.escape(word)}\b", text, re.IGNORECASE):
            matched.append(word)
    return matched


def contains_url(content: str) -> bool:
    return bool(URL_PATTERN.search(content or ""))


@dataclass(slots=True)
class ContentSubmission:
    author_did: str
    community_did: str
    content_type: str
    content: str
    title: Optional[str] = None
    content_uri: Optional[str] = None


@dataclass(slots=True)
class HoldReason:
    reason: str
    matched_words: Optional[list[str]] = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"reason": self.reason}
        if self.matched_words:
            payload["matched_words"] = list(self.matched_words)
        return payload


@dataclass(slots=True)
class AntiSpamCheckResult:
    held: bool = False
    reasons: list[HoldReason] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"held": self.held, "reasons": [reason.as_dict() for reason in self.reasons]}


class CommunitySettingsSource(Protocol):
    async def load(self, community_did: str) -> Optional[Mapping[str, Any]]:
        """Raw moderation thresholds and word filter for a community."""
        ...


class InMemoryCommunitySettings(CommunitySettingsSource):
    def __init__(self, rows: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self.rows: dict[str, Mapping[str, Any]] = dict(rows or {})

    async def load(self, community_did: str) -> Optional[Mapping[str, Any]]:
        return self.rows.get(community_did)


class AntiSpamService:
    def __init__(
        self,
        *,
        counters: CounterStore,
        accounts: AccountDirectory,
        account_trust: AccountTrustRepository,
        community_settings: CommunitySettingsSource,
        spam_labels: SpamLabelLookup,
        pds_table: PdsTrustTable,
        engine: TrustScoreEngine,
        trust_settings: TrustSettings,
        fail_open: bool = False,
        settings_cache_seconds: int = 60,
    ) -> None:
        self._counters = counters
        self._accounts = accounts
        self._account_trust = account_trust
        self._community_settings = community_settings
        self._spam_labels = spam_labels
        self._pds = pds_table
        self._engine = engine
        self._trust_settings = trust_settings
        self._fail_open = fail_open
        self._settings_cache_seconds = settings_cache_seconds
        self._queue: Optional[ModerationQueueService] = None

    def bind_queue(self, queue: ModerationQueueService) -> None:
        self._queue = queue

    # --- settings --------------------------------------------------------

    async def load_settings(self, community_did: str) -> AntiSpamSettings:
        cache_key = f"antispam:settings:{community_did}"
        try:
            cached = await self._counters.get(cache_key)
        except CounterStoreError:
            cached = None
        if cached:
            try:
                return AntiSpamSettings.from_mapping(json.loads(cached))
            except (TypeError, ValueError):
                logger.debug("discarding malformed cached anti-spam settings", extra={"community_did": community_did})

        row = await self._community_settings.load(community_did)
        settings = AntiSpamSettings.from_mapping(row or {})
        try:
            await self._counters.set(cache_key, json.dumps(settings.as_dict()), ttl_seconds=self._settings_cache_seconds)
        except CounterStoreError:
            logger.debug("anti-spam settings not cached", extra={"community_did": community_did})
        return settings

    # --- account classification -------------------------------------------

    async def is_account_trusted(self, did: str, community_did: str, trusted_post_threshold: int) -> bool:
        if await self._spam_labels.is_spam_labeled(did):
            return False
        record = await self._account_trust.get(did, community_did)
        if record is None:
            return False
        if not (record.is_trusted or record.approved_post_count >= trusted_post_threshold):
            return False
        score = await self._engine.stored_trust_score(did, community_did)
        if score is not None and score < self._trust_settings.untrusted_score_cutoff:
            return False
        return True

    async def _pds_factor(self, did: str) -> float:
        account = await self._accounts.get(did)
        return await self._pds.factor_for(account.pds_host if account else None)

    async def is_new_account(self, did: str, community_did: str, new_account_days: int) -> bool:
        if await self._spam_labels.is_spam_labeled(did):
            return True
        if await self._pds_factor(did) < self._trust_settings.pds_new_account_cutoff:
            return True
        if new_account_days <= 0:
            return False
        record = await self._account_trust.get(did, community_did)
        if record is None or record.approved_post_count <= 0:
            return True
        account = await self._accounts.get(did)
        if account is None or account.first_seen_at is None:
            return True
        return datetime.now(timezone.utc) - account.first_seen_at < timedelta(days=new_account_days)

    async def account_class(self, did: str, community_did: str, settings: AntiSpamSettings) -> str:
        if await self.is_account_trusted(did, community_did, settings.trusted_post_threshold):
            return ACCOUNT_TRUSTED
        if await self.is_new_account(did, community_did, settings.new_account_days):
            return ACCOUNT_NEW
        return ACCOUNT_ESTABLISHED

    # --- counters --------------------------------------------------------

    async def check_write_rate_limit(
        self,
        did: str,
        community_did: str,
        is_new_account: bool,
        settings: AntiSpamSettings,
        *,
        now: Optional[float] = None,
    ) -> bool:
        """Count this write and return ``True`` when it exceeds the budget."""

        limit = settings.write_budget(is_new_account)
        try:
            allowed = await rate_limit.allow(
                self._counters,
                f"antispam:rate:{community_did}",
                did,
                limit=limit,
                window_seconds=RATE_WINDOW_SECONDS,
                now=now,
            )
        except CounterStoreError as exc:
            obs_metrics.counter_store_error(exc.operation)
            logger.warning(
                "rate limit store unavailable",
                extra={"did": did, "community_did": community_did, "fail_open": self._fail_open},
            )
            return not self._fail_open
        limited = not allowed
        if limited:
            obs_metrics.rate_limited(ACCOUNT_NEW if is_new_account else ACCOUNT_ESTABLISHED)
        return limited

    async def check_burst(self, did: str, community_did: str, settings: AntiSpamSettings, *, now: Optional[float] = None) -> bool:
        key = f"antispam:burst:{community_did}:{did}"
        try:
            count = await self._counters.record_event(key, window_seconds=settings.burst_window_minutes * 60, now=now)
        except CounterStoreError as exc:
            obs_metrics.counter_store_error(exc.operation)
            logger.warning("burst store unavailable", extra={"did": did, "community_did": community_did})
            return False
        return count > settings.burst_post_count

    # --- content checks --------------------------------------------------

    async def needs_first_post_moderation(self, did: str, community_did: str, first_post_queue_count: int) -> bool:
        if first_post_queue_count <= 0:
            return False
        record = await self._account_trust.get(did, community_did)
        approved = record.approved_post_count if record else 0
        return approved < first_post_queue_count

    async def can_create_topic(self, did: str, community_did: str, settings: Optional[AntiSpamSettings] = None) -> bool:
        settings = settings or await self.load_settings(community_did)
        if not settings.topic_creation_delay_enabled:
            return True
        if await self.is_account_trusted(did, community_did, settings.trusted_post_threshold):
            return True
        record = await self._account_trust.get(did, community_did)
        return bool(record and record.approved_post_count > 0)

    async def run_anti_spam_checks(
        self,
        content: ContentSubmission,
        settings: Optional[AntiSpamSettings] = None,
    ) -> AntiSpamCheckResult:
        settings = settings or await self.load_settings(content.community_did)
        if await self.is_account_trusted(content.author_did, content.community_did, settings.trusted_post_threshold):
            return AntiSpamCheckResult()
        account = await self._accounts.get(content.author_did)
        if account is not None and account.is_privileged:
            return AntiSpamCheckResult()

        reasons: list[HoldReason] = []
        matched = check_word_filter(content.content, content.title, settings.word_filter)
        if matched:
            reasons.append(HoldReason(QueueReason.WORD_FILTER.value, matched))

        if await self.is_new_account(content.author_did, content.community_did, settings.new_account_days):
            if await self.needs_first_post_moderation(content.author_did, content.community_did, settings.first_post_queue_count):
                reasons.append(HoldReason(QueueReason.FIRST_POST.value))
            if settings.link_hold_enabled and contains_url(content.content):
                reasons.append(HoldReason(QueueReason.LINK_HOLD.value))

        if await self.check_burst(content.author_did, content.community_did, settings):
            reasons.append(HoldReason(QueueReason.BURST.value))

        result = AntiSpamCheckResult(held=bool(reasons), reasons=reasons)
        if result.held:
            for reason in reasons:
                obs_metrics.content_held(reason.reason)
            logger.info(
                "content held for review",
                extra={
                    "author_did": content.author_did,
                    "community_did": content.community_did,
                    "reasons": [reason.reason for reason in reasons],
                },
            )
            if self._queue is not None and content.content_uri:
                await self._queue.hold(
                    content_uri=content.content_uri,
                    content_type=content.content_type,
                    author_did=content.author_did,
                    community_did=content.community_did,
                    reasons=[(reason.reason, reason.matched_words) for reason in reasons],
                )
        return result
