"""Held content awaiting moderator review."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from trustguard.trust.domain.accounts import AccountTrustRecord, AccountTrustRepository
from trustguard.trust.domain.config import AntiSpamSettings
from trustguard.trust.domain.exceptions import NotFoundError
from trustguard.trust.domain.models import ModerationQueueEntry
from trustguard.trust.domain.pagination import Page, paginate_in_memory

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReviewOutcome:
    content_uri: str
    author_did: str
    approved: bool
    removed_entries: int
    account_trust: Optional[AccountTrustRecord] = None


class ModerationQueueRepository(Protocol):
    async def enqueue(self, entries: Sequence[ModerationQueueEntry]) -> None:
        ...

    async def list_page(self, *, community_did: Optional[str], limit: int, cursor: Optional[str]) -> Page[ModerationQueueEntry]:
        ...

    async def get(self, entry_id: str) -> Optional[ModerationQueueEntry]:
        ...

    async def delete_for_content(self, content_uri: str) -> int:
        ...


class ModerationQueueService:
    def __init__(
        self,
        *,
        repository: ModerationQueueRepository,
        account_trust: AccountTrustRepository,
        settings_loader: Callable[[str], Awaitable[AntiSpamSettings]],
    ) -> None:
        self._repo = repository
        self._account_trust = account_trust
        self._settings_loader = settings_loader

    async def hold(
        self,
        *,
        content_uri: str,
        content_type: str,
        author_did: str,
        community_did: str,
        reasons: Sequence[tuple[str, Optional[Sequence[str]]]],
    ) -> list[ModerationQueueEntry]:
        """Queue one entry per matched reason."""

        now = datetime.now(timezone.utc)
        entries = [
            ModerationQueueEntry(
                id=str(uuid.uuid4()),
                content_uri=content_uri,
                content_type=content_type,
                author_did=author_did,
                community_did=community_did,
                queue_reason=reason,
                matched_words=list(words) if words else None,
                created_at=now,
            )
            for reason, words in reasons
        ]
        if entries:
            await self._repo.enqueue(entries)
        return entries

    async def list_queue(self, *, community_did: Optional[str] = None, limit: int, cursor: Optional[str] = None) -> Page[ModerationQueueEntry]:
        return await self._repo.list_page(community_did=community_did, limit=limit, cursor=cursor)

    async def review(self, entry_id: str, *, approve: bool, reviewer_did: str) -> ReviewOutcome:
        entry = await self._repo.get(entry_id)
        if entry is None:
            raise NotFoundError("queue_entry_not_found")
        removed = await self._repo.delete_for_content(entry.content_uri)
        record = None
        if approve:
            settings = await self._settings_loader(entry.community_did)
            record = await self._account_trust.record_approval(
                entry.author_did,
                entry.community_did,
                trusted_threshold=settings.trusted_post_threshold,
                at=datetime.now(timezone.utc),
            )
        logger.info(
            "moderation queue reviewed",
            extra={
                "content_uri": entry.content_uri,
                "approved": approve,
                "reviewer": reviewer_did,
                "removed_entries": removed,
            },
        )
        return ReviewOutcome(
            content_uri=entry.content_uri,
            author_did=entry.author_did,
            approved=approve,
            removed_entries=removed,
            account_trust=record,
        )


class InMemoryModerationQueueRepository(ModerationQueueRepository):
    def __init__(self) -> None:
        self.entries: dict[str, ModerationQueueEntry] = {}

    async def enqueue(self, entries: Sequence[ModerationQueueEntry]) -> None:
        for entry in entries:
            self.entries[entry.id] = entry

    async def list_page(self, *, community_did: Optional[str], limit: int, cursor: Optional[str]) -> Page[ModerationQueueEntry]:
        rows = [entry for entry in self.entries.values() if community_did is None or entry.community_did == community_did]
        return paginate_in_memory(
            rows,
            limit=limit,
            cursor=cursor,
            sort_field="created_at",
            key=lambda entry: (entry.created_at, entry.id),
        )

    async def get(self, entry_id: str) -> Optional[ModerationQueueEntry]:
        return self.entries.get(entry_id)

    async def delete_for_content(self, content_uri: str) -> int:
        doomed = [entry_id for entry_id, entry in self.entries.items() if entry.content_uri == content_uri]
        for entry_id in doomed:
            del self.entries[entry_id]
        return len(doomed)
