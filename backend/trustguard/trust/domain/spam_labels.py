"""Spam-label lookups against an external moderation-label service."""

from __future__ import annotations

from typing import Iterable, Mapping, Protocol

SPAM_LABEL_VALUES = frozenset({"spam", "!spam", "spam-account"})


def is_spam_value(value: object) -> bool:
    return str(value or "").strip().lower() in SPAM_LABEL_VALUES


class SpamLabelLookup(Protocol):
    async def is_spam_labeled(self, did: str) -> bool:
        ...

    async def batch_is_spam_labeled(self, dids: Iterable[str]) -> Mapping[str, bool]:
        ...


class StaticSpamLabels(SpamLabelLookup):
    """Fixed label set; the default when no labeler is configured."""

    def __init__(self, labeled: Iterable[str] = ()) -> None:
        self.labeled: set[str] = set(labeled)

    async def is_spam_labeled(self, did: str) -> bool:
        return did in self.labeled

    async def batch_is_spam_labeled(self, dids: Iterable[str]) -> Mapping[str, bool]:
        return {did: did in self.labeled for did in dids}
