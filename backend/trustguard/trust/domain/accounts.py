"""Account lookups and per-community posting trust."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional, Protocol, Sequence

from trustguard.trust.domain.models import Account


class AccountDirectory(Protocol):
    async def get(self, did: str) -> Optional[Account]:
        ...

    async def get_many(self, dids: Iterable[str]) -> Mapping[str, Account]:
        ...

    async def list_privileged(self) -> Sequence[Account]:
        """Accounts whose role makes them implicit trust seeds."""
        ...


class InMemoryAccountDirectory(AccountDirectory):
    def __init__(self, accounts: Iterable[Account] = ()) -> None:
        self.accounts: dict[str, Account] = {account.did: account for account in accounts}

    def add(self, account: Account) -> Account:
        self.accounts[account.did] = account
        return account

    async def get(self, did: str) -> Optional[Account]:
        return self.accounts.get(did)

    async def get_many(self, dids: Iterable[str]) -> Mapping[str, Account]:
        return {did: self.accounts[did] for did in dids if did in self.accounts}

    async def list_privileged(self) -> Sequence[Account]:
        return sorted(
            (account for account in self.accounts.values() if account.is_privileged),
            key=lambda account: account.did,
        )


@dataclass(slots=True)
class AccountTrustRecord:
    """Per-community posting history used by the anti-spam checks."""

    did: str
    community_did: str
    approved_post_count: int = 0
    is_trusted: bool = False
    trusted_at: Optional[datetime] = None


class AccountTrustRepository(Protocol):
    async def get(self, did: str, community_did: str) -> Optional[AccountTrustRecord]:
        ...

    async def record_approval(self, did: str, community_did: str, *, trusted_threshold: int, at: datetime) -> AccountTrustRecord:
        """Increment ``approved_post_count`` and mark trusted at the threshold."""
        ...


class InMemoryAccountTrustRepository(AccountTrustRepository):
    def __init__(self) -> None:
        self.records: dict[tuple[str, str], AccountTrustRecord] = {}

    def put(self, record: AccountTrustRecord) -> AccountTrustRecord:
        self.records[(record.did, record.community_did)] = record
        return record

    async def get(self, did: str, community_did: str) -> Optional[AccountTrustRecord]:
        return self.records.get((did, community_did))

    async def record_approval(self, did: str, community_did: str, *, trusted_threshold: int, at: datetime) -> AccountTrustRecord:
        record = self.records.setdefault((did, community_did), AccountTrustRecord(did=did, community_did=community_did))
        record.approved_post_count += 1
        if not record.is_trusted and record.approved_post_count >= trusted_threshold:
            record.is_trusted = True
            record.trusted_at = at
        return record
