"""Spam-label lookups against an AT protocol labeler over XRPC."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional, Sequence

import httpx

from trustguard.infra.counters import CounterStore, CounterStoreError
from trustguard.trust.domain.spam_labels import SpamLabelLookup, is_spam_value

logger = logging.getLogger(__name__)

QUERY_LABELS_PATH = "/xrpc/com.atproto.label.queryLabels"


def spam_labeled_dids(labels: Sequence[Mapping[str, Any]], *, sources: Sequence[str] = ()) -> set[str]:
    """DIDs carrying an active spam label, honouring negation labels."""

    active: dict[str, bool] = {}
    for label in labels:
        if sources and label.get("src") not in sources:
            continue
        if not is_spam_value(label.get("val")):
            continue
        uri = str(label.get("uri") or "")
        if not uri.startswith("did:"):
            continue
        active[uri] = not bool(label.get("neg"))
    return {did for did, labeled in active.items() if labeled}


class LabelerSpamLabels(SpamLabelLookup):
    """Queries the labeler and caches verdicts in the counter store.

    Lookup failures count as "not labeled" and are not cached.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        sources: Sequence[str] = (),
        counters: Optional[CounterStore] = None,
        cache_seconds: int = 300,
        timeout: float = 3.0,
    ) -> None:
        self._http = http
        self._base_url = base_url.rstrip("/")
        self._sources = tuple(sources)
        self._counters = counters
        self._cache_seconds = cache_seconds
        self._timeout = timeout

    @staticmethod
    def _cache_key(did: str) -> str:
        return f"spamlabel:{did}"

    async def _cached(self, did: str) -> Optional[bool]:
        if self._counters is None:
            return None
        try:
            value = await self._counters.get(self._cache_key(did))
        except CounterStoreError:
            return None
        if value is None:
            return None
        return value == "1"

    async def _remember(self, verdicts: Mapping[str, bool]) -> None:
        if self._counters is None or self._cache_seconds <= 0:
            return
        for did, labeled in verdicts.items():
            try:
                await self._counters.set(self._cache_key(did), "1" if labeled else "0", ttl_seconds=self._cache_seconds)
            except CounterStoreError:
                logger.debug("spam label verdict not cached", extra={"did": did})
                return

    async def _query(self, dids: Sequence[str]) -> Optional[set[str]]:
        params: list[tuple[str, str]] = [("uriPatterns", did) for did in dids]
        params.extend(("sources", source) for source in self._sources)
        try:
            response = await self._http.get(f"{self._base_url}{QUERY_LABELS_PATH}", params=params, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("spam label lookup failed", extra={"dids": len(dids), "error": str(exc)})
            return None
        labels = payload.get("labels") if isinstance(payload, dict) else None
        return spam_labeled_dids(labels or [], sources=self._sources)

    async def batch_is_spam_labeled(self, dids: Iterable[str]) -> Mapping[str, bool]:
        wanted = list(dict.fromkeys(dids))
        result: dict[str, bool] = {}
        missing: list[str] = []
        for did in wanted:
            cached = await self._cached(did)
            if cached is None:
                missing.append(did)
            else:
                result[did] = cached
        if missing:
            labeled = await self._query(missing)
            if labeled is None:
                result.update({did: False for did in missing})
            else:
                fresh = {did: did in labeled for did in missing}
                await self._remember(fresh)
                result.update(fresh)
        return result

    async def is_spam_labeled(self, did: str) -> bool:
        verdicts = await self.batch_is_spam_labeled([did])
        return verdicts.get(did, False)
