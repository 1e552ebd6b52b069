"""Cascade moderator bans across accounts linked to the banned one."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, Protocol, Sequence, TypeVar

from trustguard.obs import metrics as obs_metrics
from trustguard.trust.domain.accounts import AccountDirectory
from trustguard.trust.domain.config import TrustSettings
from trustguard.trust.domain.events import (
    AccountsFiltered,
    ClusterBanPropagated,
    EventSink,
    LoggingEventSink,
)
from trustguard.trust.domain.exceptions import BanPropagationError, NotFoundError
from trustguard.trust.domain.models import Account, FilterStatus, MemberRole
from trustguard.trust.domain.sybil import ClusterRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class BanCheckResult:
    propagated: bool
    ban_count: int
    filtered_dids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BanPropagationResult:
    cluster_id: str
    banned_dids: list[str] = field(default_factory=list)
    monitored_dids: list[str] = field(default_factory=list)
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class AccountBanResult:
    account: Account
    propagation: Optional[BanCheckResult] = None
    propagation_error: Optional[str] = None


class BanRepository(Protocol):
    async def linked_by_interaction(self, did: str, *, min_weight: int) -> set[str]:
        """Accounts sharing interaction weight >= ``min_weight`` with ``did`` (both directions summed)."""
        ...

    async def banned_dids(self, dids: Iterable[str]) -> set[str]:
        ...

    async def set_account_ban(
        self,
        did: str,
        *,
        banned: bool,
        moderator_did: str,
        reason: Optional[str],
        community_did: str,
        at: datetime,
    ) -> Optional[Account]:
        """Flip the ban flag and write the audit row in one transaction."""
        ...

    async def apply_filters(
        self,
        dids: Sequence[str],
        *,
        status: str,
        reason: str,
        moderator_did: str,
        community_did: str,
        at: datetime,
    ) -> list[str]:
        """Place accounts into a filter state with audit rows, atomically."""
        ...

    async def apply_cluster_ban(
        self,
        *,
        core_dids: Sequence[str],
        peripheral_dids: Sequence[str],
        cluster_id: str,
        moderator_did: str,
        at: datetime,
    ) -> tuple[list[str], list[str]]:
        """Ban core members and monitor peripheral ones in one transaction."""
        ...


class BanPropagationService:
    def __init__(
        self,
        *,
        repository: BanRepository,
        clusters: ClusterRepository,
        accounts: AccountDirectory,
        settings: TrustSettings,
        events: EventSink | None = None,
    ) -> None:
        self._repo = repository
        self._clusters = clusters
        self._accounts = accounts
        self._settings = settings
        self._events = events or LoggingEventSink()

    async def _with_retries(self, label: str, operation: Callable[[], Awaitable[T]]) -> tuple[T, int]:
        attempts = max(1, self._settings.ban_propagation_retries)
        for attempt in range(1, attempts + 1):
            try:
                return await operation(), attempt
            except BanPropagationError:
                if attempt >= attempts:
                    raise
                logger.warning("ban propagation attempt failed; retrying", extra={"operation": label, "attempt": attempt})
                await asyncio.sleep(0.05 * attempt)
        raise BanPropagationError()  # pragma: no cover - loop always returns or raises

    async def linked_accounts(self, did: str) -> set[str]:
        cluster = await self._clusters.cluster_for_member(did)
        if cluster is not None:
            linked = {member.did for member in cluster.members}
        else:
            linked = await self._repo.linked_by_interaction(did, min_weight=self._settings.ban_link_min_weight)
        linked.add(did)
        return linked

    async def check_ban_propagation(
        self,
        target_did: str,
        *,
        moderator_did: str = "system",
        community_did: Optional[str] = None,
    ) -> BanCheckResult:
        linked = await self.linked_accounts(target_did)
        banned = await self._repo.banned_dids(linked)
        ban_count = len(banned)
        if ban_count < self._settings.ban_propagation_threshold:
            return BanCheckResult(propagated=False, ban_count=ban_count)
        remaining = sorted(linked - banned)
        if not remaining:
            return BanCheckResult(propagated=False, ban_count=ban_count)
        reason = f"ban_propagation:{target_did}:{ban_count}"
        try:
            filtered, _ = await self._with_retries(
                "filter",
                lambda: self._repo.apply_filters(
                    remaining,
                    status=FilterStatus.FILTERED.value,
                    reason=reason,
                    moderator_did=moderator_did,
                    community_did=community_did or "",
                    at=datetime.now(timezone.utc),
                ),
            )
        except BanPropagationError:
            obs_metrics.ban_propagation("linked", "error")
            raise
        obs_metrics.ban_propagation("linked", "ok")
        logger.info(
            "ban propagated to linked accounts",
            extra={"target_did": target_did, "ban_count": ban_count, "filtered": len(filtered)},
        )
        await self._events.emit(
            AccountsFiltered(trigger_did=target_did, ban_count=ban_count, filtered_dids=filtered, community_did=community_did)
        )
        return BanCheckResult(propagated=True, ban_count=ban_count, filtered_dids=filtered)

    async def propagate_ban(self, cluster_id: str, *, moderator_did: str = "system") -> BanPropagationResult:
        cluster = await self._clusters.get(cluster_id)
        if cluster is None:
            raise NotFoundError("cluster_not_found")
        core = sorted(member.did for member in cluster.members if member.role == MemberRole.CORE.value)
        peripheral = sorted(member.did for member in cluster.members if member.role != MemberRole.CORE.value)
        result = BanPropagationResult(cluster_id=cluster_id)
        try:
            (banned, monitored), attempts = await self._with_retries(
                "cluster",
                lambda: self._repo.apply_cluster_ban(
                    core_dids=core,
                    peripheral_dids=peripheral,
                    cluster_id=cluster_id,
                    moderator_did=moderator_did,
                    at=datetime.now(timezone.utc),
                ),
            )
        except BanPropagationError as exc:
            obs_metrics.ban_propagation("cluster", "error")
            logger.error("cluster ban propagation failed", extra={"cluster_id": cluster_id}, exc_info=exc)
            result.attempts = max(1, self._settings.ban_propagation_retries)
            result.error = exc.code
            return result
        obs_metrics.ban_propagation("cluster", "ok")
        result.banned_dids = banned
        result.monitored_dids = monitored
        result.attempts = attempts
        logger.info(
            "cluster ban propagated",
            extra={"cluster_id": cluster_id, "banned": len(banned), "monitored": len(monitored)},
        )
        await self._events.emit(ClusterBanPropagated(cluster_id=cluster_id, banned_dids=banned, monitored_dids=monitored))
        return result

    async def ban_account(
        self,
        did: str,
        *,
        moderator_did: str,
        reason: Optional[str] = None,
        community_did: Optional[str] = None,
    ) -> AccountBanResult:
        account = await self._repo.set_account_ban(
            did,
            banned=True,
            moderator_did=moderator_did,
            reason=reason,
            community_did=community_did or "",
            at=datetime.now(timezone.utc),
        )
        if account is None:
            raise NotFoundError("account_not_found")
        outcome = AccountBanResult(account=account)
        try:
            outcome.propagation = await self.check_ban_propagation(
                did, moderator_did=moderator_did, community_did=community_did
            )
        except BanPropagationError as exc:
            logger.error("ban propagation failed; ban kept", extra={"target_did": did}, exc_info=exc)
            outcome.propagation_error = exc.code
        return outcome

    async def unban_account(
        self,
        did: str,
        *,
        moderator_did: str,
        reason: Optional[str] = None,
        community_did: Optional[str] = None,
    ) -> Account:
        account = await self._repo.set_account_ban(
            did,
            banned=False,
            moderator_did=moderator_did,
            reason=reason,
            community_did=community_did or "",
            at=datetime.now(timezone.utc),
        )
        if account is None:
            raise NotFoundError("account_not_found")
        return account


class InMemoryBanRepository(BanRepository):
    """Works on the shared in-memory account directory and interaction store."""

    def __init__(self, accounts, interactions) -> None:
        self._accounts = accounts
        self._interactions = interactions
        self.filters: dict[tuple[str, str], str] = {}
        self.actions: list[dict[str, object]] = []
        self.fail_times = 0

    def _maybe_fail(self) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise BanPropagationError()

    async def linked_by_interaction(self, did: str, *, min_weight: int) -> set[str]:
        totals: dict[str, int] = {}
        for edge in await self._interactions.list_edges():
            if edge.source_did == did:
                other = edge.target_did
            elif edge.target_did == did:
                other = edge.source_did
            else:
                continue
            totals[other] = totals.get(other, 0) + edge.weight
        return {other for other, weight in totals.items() if weight >= min_weight}

    async def banned_dids(self, dids: Iterable[str]) -> set[str]:
        return {did for did in dids if did in self._accounts.accounts and self._accounts.accounts[did].is_banned}

    async def set_account_ban(
        self,
        did: str,
        *,
        banned: bool,
        moderator_did: str,
        reason: Optional[str],
        community_did: str,
        at: datetime,
    ) -> Optional[Account]:
        account = self._accounts.accounts.get(did)
        if account is None:
            return None
        account.is_banned = banned
        self.actions.append({"action": "ban" if banned else "unban", "target_did": did, "moderator_did": moderator_did, "reason": reason})
        return account

    async def apply_filters(
        self,
        dids: Sequence[str],
        *,
        status: str,
        reason: str,
        moderator_did: str,
        community_did: str,
        at: datetime,
    ) -> list[str]:
        self._maybe_fail()
        for did in dids:
            self.filters[(did, community_did)] = status
            self.actions.append({"action": f"filter:{status}", "target_did": did, "moderator_did": moderator_did, "reason": reason})
        return list(dids)

    async def apply_cluster_ban(
        self,
        *,
        core_dids: Sequence[str],
        peripheral_dids: Sequence[str],
        cluster_id: str,
        moderator_did: str,
        at: datetime,
    ) -> tuple[list[str], list[str]]:
        self._maybe_fail()
        banned: list[str] = []
        for did in core_dids:
            account = self._accounts.accounts.get(did)
            if account is None:
                continue
            account.is_banned = True
            banned.append(did)
            self.actions.append({"action": "ban", "target_did": did, "moderator_did": moderator_did, "reason": f"sybil_cluster:{cluster_id}"})
        monitored: list[str] = []
        for did in peripheral_dids:
            self.filters[(did, "")] = FilterStatus.MONITORED.value
            monitored.append(did)
            self.actions.append({"action": "filter:monitored", "target_did": did, "moderator_did": moderator_did, "reason": f"sybil_cluster:{cluster_id}"})
        return banned, monitored
