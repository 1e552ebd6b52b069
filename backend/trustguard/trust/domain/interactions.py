"""Interaction recorder feeding the weighted who-talks-to-whom graph."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping, Optional, Protocol, Sequence

from trustguard.trust.domain.models import InteractionEdge, InteractionType

logger = logging.getLogger(__name__)

MAX_CO_PARTICIPATION_AUTHORS = 50


class InteractionRepository(Protocol):
    async def upsert(
        self,
        *,
        source_did: str,
        target_did: str,
        community_did: str,
        interaction_type: str,
        at: datetime,
    ) -> None:
        """Insert the edge with weight 1 or bump weight and ``last_interaction_at``."""
        ...

    async def list_edges(self, community_did: Optional[str] = None) -> Sequence[InteractionEdge]:
        """All edge rows, or only those of one community."""
        ...

    async def topic_participants(self, topic_uri: str) -> Sequence[str]:
        """Authors of the replies under a topic (may contain duplicates)."""
        ...

    async def partners(self, dids: Sequence[str]) -> Mapping[str, set[str]]:
        """Distinct accounts each DID has interacted with, in either direction."""
        ...


class InteractionRecorder:
    def __init__(self, repository: InteractionRepository) -> None:
        self._repo = repository

    async def _record(self, source_did: str, target_did: str, community_did: str, interaction_type: InteractionType) -> bool:
        if not source_did or not target_did or source_did == target_did:
            return False
        await self._repo.upsert(
            source_did=source_did,
            target_did=target_did,
            community_did=community_did,
            interaction_type=interaction_type.value,
            at=datetime.now(timezone.utc),
        )
        return True

    async def record_reply(self, actor_did: str, target_did: str, community_did: str) -> bool:
        recorded = await self._record(actor_did, target_did, community_did, InteractionType.REPLY)
        if recorded:
            logger.debug("interaction.reply", extra={"actor": actor_did, "target": target_did, "community": community_did})
        return recorded

    async def record_reaction(self, actor_did: str, target_did: str, community_did: str) -> bool:
        recorded = await self._record(actor_did, target_did, community_did, InteractionType.REACTION)
        if recorded:
            logger.debug("interaction.reaction", extra={"actor": actor_did, "target": target_did, "community": community_did})
        return recorded

    async def record_co_participation(self, topic_uri: str, community_did: str) -> int:
        """Pair up every distinct reply author of a topic. Returns the pair count."""

        authors = sorted(set(await self._repo.topic_participants(topic_uri)))
        if len(authors) < 2:
            return 0
        if len(authors) > MAX_CO_PARTICIPATION_AUTHORS:
            logger.debug("interaction.co_participation.skipped", extra={"topic_uri": topic_uri, "authors": len(authors)})
            return 0
        pairs = 0
        for i, author_a in enumerate(authors):
            for author_b in authors[i + 1 :]:
                if await self._record(author_a, author_b, community_did, InteractionType.CO_PARTICIPATION):
                    pairs += 1
        logger.debug(
            "interaction.co_participation",
            extra={"topic_uri": topic_uri, "authors": len(authors), "community": community_did},
        )
        return pairs


class InMemoryInteractionRepository(InteractionRepository):
    def __init__(self) -> None:
        self._edges: dict[tuple[str, str, str, str], InteractionEdge] = {}
        self.participants: dict[str, list[str]] = {}

    def add_reply(self, topic_uri: str, author_did: str) -> None:
        self.participants.setdefault(topic_uri, []).append(author_did)

    async def upsert(
        self,
        *,
        source_did: str,
        target_did: str,
        community_did: str,
        interaction_type: str,
        at: datetime,
    ) -> None:
        key = (source_did, target_did, community_did, interaction_type)
        edge = self._edges.get(key)
        if edge is None:
            self._edges[key] = InteractionEdge(
                source_did=source_did,
                target_did=target_did,
                community_did=community_did,
                interaction_type=interaction_type,
                weight=1,
                first_interaction_at=at,
                last_interaction_at=at,
            )
            return
        edge.weight += 1
        edge.last_interaction_at = at

    async def list_edges(self, community_did: Optional[str] = None) -> Sequence[InteractionEdge]:
        return [
            edge
            for edge in self._edges.values()
            if community_did is None or edge.community_did == community_did
        ]

    async def topic_participants(self, topic_uri: str) -> Sequence[str]:
        return list(self.participants.get(topic_uri, []))

    async def partners(self, dids: Sequence[str]) -> Mapping[str, set[str]]:
        wanted = set(dids)
        result: dict[str, set[str]] = {did: set() for did in wanted}
        for edge in self._edges.values():
            if edge.source_did in wanted:
                result[edge.source_did].add(edge.target_did)
            if edge.target_did in wanted:
                result[edge.target_did].add(edge.source_did)
        return result
