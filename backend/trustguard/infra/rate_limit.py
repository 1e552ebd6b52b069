"""Fixed-window rate limiting on top of the shared counter store."""

from __future__ import annotations

import math
import time
from typing import Optional

from trustguard.infra.counters import CounterStore


def window_slot(now: float, window_seconds: int) -> int:
	"""Index of the fixed window ``now`` falls into."""
	window = max(1, int(window_seconds))
	return int(math.floor(now / window))


def window_key(kind: str, actor_id: str, *, window_seconds: int, now: Optional[float] = None) -> str:
	now = now if now is not None else time.time()
	return f"{kind}:{actor_id}:{window_slot(now, window_seconds)}"


async def allow(
	store: CounterStore,
	kind: str,
	actor_id: str,
	*,
	limit: int,
	window_seconds: int = 60,
	now: Optional[float] = None,
) -> bool:
	"""Count one attempt and return True while it is still within ``limit``.

	Every attempt is counted, including rejected ones, so a client hammering a
	closed window does not get a fresh budget until the window rolls over.
	"""

	if limit <= 0:
		return False
	key = window_key(kind, actor_id, window_seconds=window_seconds, now=now)
	count = await store.incr(key, ttl_seconds=max(1, int(window_seconds)) * 2)
	return count <= limit


class RateLimitExceeded(Exception):
	"""Raised when the rate limit has been hit."""

	def __init__(self, scope: str, *, limit: int, retry_after: int = 60) -> None:
		super().__init__(f"rate_limited:{scope}")
		self.scope = scope
		self.limit = limit
		self.retry_after = retry_after
