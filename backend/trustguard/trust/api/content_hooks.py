"""Hooks the content service calls around topic and reply writes."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from trustguard.infra.auth import AuthenticatedUser, get_current_user
from trustguard.trust.domain.anti_spam import ContentSubmission
from trustguard.trust.domain.container import get_recorder, get_write_gate
from trustguard.trust.domain.exceptions import InvalidInputError

router = APIRouter(prefix="/api/trust", tags=["trust-hooks"])


class WriteCheckIn(BaseModel):
    community_did: str = Field(min_length=1)
    content_type: Literal["topic", "reply"]
    content: str = ""
    title: Optional[str] = None
    content_uri: Optional[str] = None


class HoldReasonOut(BaseModel):
    reason: str
    matched_words: Optional[list[str]] = None


class WriteCheckOut(BaseModel):
    account_class: str
    held: bool
    reasons: list[HoldReasonOut]


class InteractionIn(BaseModel):
    interaction_type: Literal["reply", "reaction", "co_participation"]
    community_did: str = Field(min_length=1)
    target_did: Optional[str] = None
    topic_uri: Optional[str] = None


class InteractionOut(BaseModel):
    recorded: int


@router.post("/write-check", response_model=WriteCheckOut)
async def write_check(
    payload: WriteCheckIn,
    user: AuthenticatedUser = Depends(get_current_user),
) -> WriteCheckOut:
    decision = await get_write_gate().enforce(
        ContentSubmission(
            author_did=user.did,
            community_did=payload.community_did,
            content_type=payload.content_type,
            content=payload.content,
            title=payload.title,
            content_uri=payload.content_uri,
        )
    )
    return WriteCheckOut(
        account_class=decision.account_class,
        held=decision.held,
        reasons=[HoldReasonOut(**reason.as_dict()) for reason in decision.result.reasons],
    )


@router.post("/interactions", response_model=InteractionOut)
async def record_interaction(
    payload: InteractionIn,
    user: AuthenticatedUser = Depends(get_current_user),
) -> InteractionOut:
    recorder = get_recorder()
    if payload.interaction_type == "co_participation":
        if not payload.topic_uri:
            raise InvalidInputError("topic_uri_required")
        pairs = await recorder.record_co_participation(payload.topic_uri, payload.community_did)
        return InteractionOut(recorded=pairs)
    if not payload.target_did:
        raise InvalidInputError("target_did_required")
    if payload.interaction_type == "reply":
        recorded = await recorder.record_reply(user.did, payload.target_did, payload.community_did)
    else:
        recorded = await recorder.record_reaction(user.did, payload.target_did, payload.community_did)
    return InteractionOut(recorded=int(recorded))
