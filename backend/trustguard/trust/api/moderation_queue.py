"""Moderator endpoints for content held by the anti-spam checks."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from trustguard.infra.auth import AuthenticatedUser, require_roles
from trustguard.trust.domain.container import get_queue_service
from trustguard.trust.domain.models import ModerationQueueEntry
from trustguard.trust.domain.moderation_queue import ReviewOutcome
from trustguard.trust.domain.pagination import DEFAULT_LIMIT, MAX_LIMIT

router = APIRouter(prefix="/api/admin/moderation-queue", tags=["moderation-queue"])

_require_moderator = require_roles("admin", "moderator")


class QueueEntryOut(BaseModel):
    id: str
    content_uri: str
    content_type: str
    author_did: str
    community_did: str
    queue_reason: str
    matched_words: Optional[list[str]]
    created_at: str

    @classmethod
    def from_domain(cls, entry: ModerationQueueEntry) -> "QueueEntryOut":
        return cls(
            id=entry.id,
            content_uri=entry.content_uri,
            content_type=entry.content_type,
            author_did=entry.author_did,
            community_did=entry.community_did,
            queue_reason=entry.queue_reason,
            matched_words=list(entry.matched_words) if entry.matched_words else None,
            created_at=entry.created_at.isoformat(),
        )


class QueuePageOut(BaseModel):
    items: list[QueueEntryOut]
    cursor: Optional[str]


class ReviewOut(BaseModel):
    content_uri: str
    author_did: str
    approved: bool
    removed_entries: int
    approved_post_count: Optional[int] = None
    author_trusted: Optional[bool] = None

    @classmethod
    def from_domain(cls, outcome: ReviewOutcome) -> "ReviewOut":
        record = outcome.account_trust
        return cls(
            content_uri=outcome.content_uri,
            author_did=outcome.author_did,
            approved=outcome.approved,
            removed_entries=outcome.removed_entries,
            approved_post_count=record.approved_post_count if record else None,
            author_trusted=record.is_trusted if record else None,
        )


@router.get("", response_model=QueuePageOut)
async def list_queue(
    community_did: Optional[str] = Query(default=None),
    limit: int = Query(default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    cursor: Optional[str] = Query(default=None),
    _: AuthenticatedUser = Depends(_require_moderator),
) -> QueuePageOut:
    page = await get_queue_service().list_queue(community_did=community_did, limit=limit, cursor=cursor)
    return QueuePageOut(items=[QueueEntryOut.from_domain(entry) for entry in page.items], cursor=page.cursor)


@router.post("/{entry_id}/approve", response_model=ReviewOut)
async def approve_entry(entry_id: str, user: AuthenticatedUser = Depends(_require_moderator)) -> ReviewOut:
    outcome = await get_queue_service().review(entry_id, approve=True, reviewer_did=user.did)
    return ReviewOut.from_domain(outcome)


@router.post("/{entry_id}/reject", response_model=ReviewOut)
async def reject_entry(entry_id: str, user: AuthenticatedUser = Depends(_require_moderator)) -> ReviewOut:
    outcome = await get_queue_service().review(entry_id, approve=False, reviewer_did=user.did)
    return ReviewOut.from_domain(outcome)
