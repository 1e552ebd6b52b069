"""Outbound events emitted after trust state transitions commit."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class TrustEvent:
    @property
    def name(self) -> str:
        return type(self).__name__

    def payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TrustRecomputed(TrustEvent):
    community_did: str
    total_nodes: int
    total_edges: int
    iterations: int
    converged: bool
    duration_ms: int
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ClusterFlagged(TrustEvent):
    cluster_id: str
    cluster_hash: str
    member_count: int
    suspicion_ratio: float
    is_new: bool
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ClusterStatusChanged(TrustEvent):
    cluster_id: str
    previous_status: str
    status: str
    reviewer_did: str
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ClusterBanPropagated(TrustEvent):
    cluster_id: str
    banned_dids: Sequence[str]
    monitored_dids: Sequence[str]
    occurred_at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class AccountsFiltered(TrustEvent):
    trigger_did: str
    ban_count: int
    filtered_dids: Sequence[str]
    community_did: Optional[str] = None
    occurred_at: datetime = field(default_factory=_now)


class EventSink(Protocol):
    async def emit(self, event: TrustEvent) -> None:
        ...


class LoggingEventSink(EventSink):
    """Default sink: the event becomes a structured log line."""

    async def emit(self, event: TrustEvent) -> None:
        payload = event.payload()
        payload.pop("occurred_at", None)
        logger.info("trust.event.%s", event.name, extra={"event": event.name, **payload})


class CollectingEventSink(EventSink):
    def __init__(self) -> None:
        self.events: list[TrustEvent] = []

    async def emit(self, event: TrustEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[TrustEvent]:
        return [event for event in self.events if isinstance(event, event_type)]
