"""Domain records for the trust graph, sybil clusters and anti-spam state."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

GLOBAL_SCOPE = ""


def scope_key(community_did: str | None) -> str:
    """Map an optional community to the storage scope ("" is global)."""
    return community_did or GLOBAL_SCOPE


class AccountRole(str, enum.Enum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class InteractionType(str, enum.Enum):
    REPLY = "reply"
    REACTION = "reaction"
    CO_PARTICIPATION = "co_participation"


class ClusterStatus(str, enum.Enum):
    FLAGGED = "flagged"
    MONITORING = "monitoring"
    DISMISSED = "dismissed"
    BANNED = "banned"


class MemberRole(str, enum.Enum):
    CORE = "core"
    PERIPHERAL = "peripheral"


class FlagType(str, enum.Enum):
    BURST_VOTING = "burst_voting"
    CONTENT_SIMILARITY = "content_similarity"
    LOW_DIVERSITY = "low_diversity"


class FlagStatus(str, enum.Enum):
    PENDING = "pending"
    DISMISSED = "dismissed"
    ACTION_TAKEN = "action_taken"


class QueueReason(str, enum.Enum):
    WORD_FILTER = "word_filter"
    FIRST_POST = "first_post"
    LINK_HOLD = "link_hold"
    BURST = "burst"


class FilterStatus(str, enum.Enum):
    ACTIVE = "active"
    MONITORED = "monitored"
    FILTERED = "filtered"


PRIVILEGED_ROLES = frozenset({AccountRole.MODERATOR.value, AccountRole.ADMIN.value})


@dataclass(slots=True)
class Account:
    did: str
    handle: Optional[str] = None
    role: str = AccountRole.USER.value
    is_banned: bool = False
    first_seen_at: Optional[datetime] = None
    reputation_score: int = 0
    pds_host: Optional[str] = None

    @property
    def is_privileged(self) -> bool:
        return self.role in PRIVILEGED_ROLES


@dataclass(slots=True)
class InteractionEdge:
    source_did: str
    target_did: str
    community_did: str
    interaction_type: str
    weight: int
    first_interaction_at: datetime
    last_interaction_at: datetime


@dataclass(slots=True)
class TrustSeed:
    id: str
    did: str
    community_did: str
    added_by: str
    reason: Optional[str]
    created_at: datetime
    handle: Optional[str] = None
    implicit: bool = False


@dataclass(slots=True)
class PdsTrustFactor:
    id: str
    pds_host: str
    trust_factor: float
    is_default: bool
    updated_at: datetime


@dataclass(slots=True)
class TrustScore:
    did: str
    community_did: str
    score: float
    computed_at: datetime


@dataclass(slots=True)
class TrustComputationResult:
    total_nodes: int
    total_edges: int
    iterations: int
    converged: bool
    duration_ms: int

    def as_dict(self) -> dict[str, object]:
        return {
            "total_nodes": self.total_nodes,
            "total_edges": self.total_edges,
            "iterations": self.iterations,
            "converged": self.converged,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class SybilClusterMember:
    cluster_id: str
    did: str
    role: str
    joined_at: datetime


@dataclass(slots=True)
class SybilCluster:
    id: str
    cluster_hash: str
    internal_edge_count: int
    external_edge_count: int
    member_count: int
    status: str
    detected_at: datetime
    updated_at: datetime
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    members: list[SybilClusterMember] = field(default_factory=list)

    @property
    def suspicion_ratio(self) -> float:
        total = self.internal_edge_count + self.external_edge_count
        if total <= 0:
            return 0.0
        return self.internal_edge_count / total


@dataclass(slots=True)
class BehavioralFlag:
    id: str
    flag_type: str
    affected_dids: Sequence[str]
    details: str
    community_did: Optional[str]
    status: str
    detected_at: datetime


@dataclass(slots=True)
class ModerationQueueEntry:
    id: str
    content_uri: str
    content_type: str
    author_did: str
    community_did: str
    queue_reason: str
    matched_words: Optional[Sequence[str]]
    created_at: datetime


@dataclass(slots=True)
class AccountFilter:
    did: str
    community_did: str
    status: str
    reason: Optional[str]
    updated_at: datetime


@dataclass(slots=True)
class ModerationAction:
    action: str
    target_did: str
    moderator_did: str
    community_did: str
    reason: Optional[str]
    created_at: datetime
