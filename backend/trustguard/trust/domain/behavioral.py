"""Behavioral heuristics that raise flags for moderator review."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, Sequence

from trustguard.trust.domain.config import TrustSettings
from trustguard.trust.domain.exceptions import InvalidInputError, NotFoundError
from trustguard.trust.domain.models import BehavioralFlag, FlagStatus, FlagType
from trustguard.trust.domain.pagination import Page, paginate_in_memory

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")
REVIEW_STATUSES = frozenset({FlagStatus.DISMISSED.value, FlagStatus.ACTION_TAKEN.value})


def trigrams(text: str) -> set[str]:
    normalised = _WHITESPACE.sub(" ", _NON_ALNUM.sub("", (text or "").lower())).strip()
    return {normalised[i : i + 3] for i in range(len(normalised) - 2)}


def jaccard(a: set[str], b: set[str]) -> float:
    if not a and not b:
        return 1.0
    intersection = len(a & b)
    union = len(a) + len(b) - intersection
    return intersection / union if union else 0.0


@dataclass(slots=True)
class PostRecord:
    uri: str
    author_did: str
    content: str


@dataclass(slots=True)
class ReactionActivity:
    author_did: str
    total: int
    unique_targets: int


class ActivitySource(Protocol):
    """Read-only view of the content tables owned by the content service."""

    async def reaction_activity(self, *, community_did: Optional[str], since: Optional[datetime]) -> Sequence[ReactionActivity]:
        ...

    async def recent_posts(self, *, community_did: Optional[str], since: datetime) -> Sequence[PostRecord]:
        ...


class FlagRepository(Protocol):
    async def create(self, flag: BehavioralFlag) -> BehavioralFlag:
        ...

    async def list_page(
        self,
        *,
        flag_type: Optional[str],
        status: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> Page[BehavioralFlag]:
        ...

    async def get(self, flag_id: str) -> Optional[BehavioralFlag]:
        ...

    async def set_status(self, flag_id: str, status: str) -> Optional[BehavioralFlag]:
        ...

    async def count_pending(self) -> int:
        ...


def similar_author_groups(posts: Sequence[PostRecord], *, threshold: float, min_authors: int) -> list[list[str]]:
    """Groups of distinct authors whose posts are near-duplicates of one anchor post."""

    prints = [(post, trigrams(post.content)) for post in posts]
    groups: dict[str, set[str]] = {}
    for i, (a, grams_a) in enumerate(prints):
        if len(grams_a) < 3:
            continue
        for b, grams_b in prints[i + 1 :]:
            if a.author_did == b.author_did or len(grams_b) < 3:
                continue
            if jaccard(grams_a, grams_b) >= threshold:
                group = groups.setdefault(a.uri, set())
                group.add(a.author_did)
                group.add(b.author_did)
    return [sorted(dids) for dids in groups.values() if len(dids) >= min_authors]


class BehavioralHeuristics:
    def __init__(self, *, activity: ActivitySource, flags: FlagRepository, settings: TrustSettings) -> None:
        self._activity = activity
        self._flags = flags
        self._settings = settings

    async def _persist(self, flag_type: FlagType, affected: Sequence[str], details: str, community_id: Optional[str]) -> BehavioralFlag:
        flag = BehavioralFlag(
            id=str(uuid.uuid4()),
            flag_type=flag_type.value,
            affected_dids=list(affected),
            details=details,
            community_did=community_id,
            status=FlagStatus.PENDING.value,
            detected_at=datetime.now(timezone.utc),
        )
        stored = await self._flags.create(flag)
        logger.warning("behavioral flag raised", extra={"flag_type": flag.flag_type, "affected": len(affected), "community_did": community_id})
        return stored

    async def detect_burst_voting(self, community_id: Optional[str] = None) -> list[BehavioralFlag]:
        window = self._settings.burst_window_minutes
        since = datetime.now(timezone.utc) - timedelta(minutes=window)
        rows = await self._activity.reaction_activity(community_did=community_id, since=since)
        bursts = [row for row in rows if row.total > self._settings.burst_reaction_threshold]
        if not bursts:
            return []
        details = "Burst voting detected: " + "; ".join(f"{row.author_did}: {row.total} reactions in {window}min" for row in bursts)
        return [await self._persist(FlagType.BURST_VOTING, [row.author_did for row in bursts], details, community_id)]

    async def detect_content_similarity(self, community_id: Optional[str] = None) -> list[BehavioralFlag]:
        since = datetime.now(timezone.utc) - timedelta(hours=self._settings.similarity_window_hours)
        posts = await self._activity.recent_posts(community_did=community_id, since=since)
        groups = await asyncio.to_thread(
            similar_author_groups,
            posts,
            threshold=self._settings.similarity_threshold,
            min_authors=self._settings.similarity_min_posts,
        )
        flags: list[BehavioralFlag] = []
        for dids in groups:
            details = (
                f"High content similarity (Jaccard >= {self._settings.similarity_threshold}) "
                f"detected across {len(dids)} different accounts"
            )
            flags.append(await self._persist(FlagType.CONTENT_SIMILARITY, dids, details, community_id))
        return flags

    async def detect_low_diversity(self, community_id: Optional[str] = None) -> list[BehavioralFlag]:
        rows = await self._activity.reaction_activity(community_did=community_id, since=None)
        narrow = [
            row
            for row in rows
            if row.total > self._settings.low_diversity_min_interactions
            and row.unique_targets < self._settings.low_diversity_min_targets
        ]
        if not narrow:
            return []
        details = "Low interaction diversity: " + "; ".join(
            f"{row.author_did}: {row.total} interactions, {row.unique_targets} unique targets" for row in narrow
        )
        return [await self._persist(FlagType.LOW_DIVERSITY, [row.author_did for row in narrow], details, community_id)]

    async def run_all(self, community_id: Optional[str] = None) -> list[BehavioralFlag]:
        flags: list[BehavioralFlag] = []
        flags.extend(await self.detect_burst_voting(community_id))
        flags.extend(await self.detect_content_similarity(community_id))
        flags.extend(await self.detect_low_diversity(community_id))
        return flags

    # --- review ----------------------------------------------------------

    async def list_flags(
        self,
        *,
        flag_type: Optional[str] = None,
        status: Optional[str] = None,
        limit: int,
        cursor: Optional[str] = None,
    ) -> Page[BehavioralFlag]:
        if flag_type is not None and flag_type not in {item.value for item in FlagType}:
            raise InvalidInputError("invalid_flag_type")
        if status is not None and status not in {item.value for item in FlagStatus}:
            raise InvalidInputError("invalid_status")
        return await self._flags.list_page(flag_type=flag_type, status=status, limit=limit, cursor=cursor)

    async def pending_count(self) -> int:
        return await self._flags.count_pending()

    async def update_status(self, flag_id: str, status: str) -> BehavioralFlag:
        if status not in REVIEW_STATUSES:
            raise InvalidInputError("invalid_status")
        updated = await self._flags.set_status(flag_id, status)
        if updated is None:
            raise NotFoundError("flag_not_found")
        logger.info("behavioral flag reviewed", extra={"flag_id": flag_id, "status": status})
        return updated


@dataclass(slots=True)
class ReactionRecord:
    author_did: str
    subject_uri: str
    community_did: str
    created_at: datetime


@dataclass(slots=True)
class TimedPost:
    post: PostRecord
    community_did: str
    created_at: datetime


class InMemoryActivitySource(ActivitySource):
    def __init__(self) -> None:
        self.reactions: list[ReactionRecord] = []
        self.posts: list[TimedPost] = []

    async def reaction_activity(self, *, community_did: Optional[str], since: Optional[datetime]) -> Sequence[ReactionActivity]:
        totals: dict[str, int] = {}
        targets: dict[str, set[str]] = {}
        for reaction in self.reactions:
            if community_did is not None and reaction.community_did != community_did:
                continue
            if since is not None and reaction.created_at < since:
                continue
            totals[reaction.author_did] = totals.get(reaction.author_did, 0) + 1
            targets.setdefault(reaction.author_did, set()).add(reaction.subject_uri)
        return [
            ReactionActivity(author_did=did, total=total, unique_targets=len(targets[did]))
            for did, total in sorted(totals.items())
        ]

    async def recent_posts(self, *, community_did: Optional[str], since: datetime) -> Sequence[PostRecord]:
        return [
            item.post
            for item in self.posts
            if item.created_at >= since and (community_did is None or item.community_did == community_did)
        ]


class InMemoryFlagRepository(FlagRepository):
    def __init__(self) -> None:
        self.flags: dict[str, BehavioralFlag] = {}

    async def create(self, flag: BehavioralFlag) -> BehavioralFlag:
        self.flags[flag.id] = flag
        return flag

    async def list_page(
        self,
        *,
        flag_type: Optional[str],
        status: Optional[str],
        limit: int,
        cursor: Optional[str],
    ) -> Page[BehavioralFlag]:
        rows = [
            flag
            for flag in self.flags.values()
            if (flag_type is None or flag.flag_type == flag_type) and (status is None or flag.status == status)
        ]
        return paginate_in_memory(rows, limit=limit, cursor=cursor, sort_field="detected_at", key=lambda flag: (flag.detected_at, flag.id))

    async def get(self, flag_id: str) -> Optional[BehavioralFlag]:
        return self.flags.get(flag_id)

    async def set_status(self, flag_id: str, status: str) -> Optional[BehavioralFlag]:
        flag = self.flags.get(flag_id)
        if flag is None:
            return None
        flag.status = status
        return flag

    async def count_pending(self) -> int:
        return sum(1 for flag in self.flags.values() if flag.status == FlagStatus.PENDING.value)
