"""Shared counter store used for rate limiting and batch cooldown markers.

The store is an explicit dependency (never ambient state) so the backing
service can be swapped: Redis in production, an in-memory fake in unit tests.
Every mutating call is atomic per key.
"""

from __future__ import annotations

import time
import uuid
from typing import Optional, Protocol

from redis.exceptions import RedisError

from trustguard.infra.redis import RedisProxy, redis_client


class CounterStoreError(RuntimeError):
	"""Raised when the backing counter store cannot serve a request."""

	def __init__(self, operation: str, key: str) -> None:
		super().__init__(f"counter_store_{operation}_failed:{key}")
		self.operation = operation
		self.key = key


class CounterStore(Protocol):
	"""Key-value counters with atomic increment and TTL."""

	async def incr(self, key: str, *, ttl_seconds: int) -> int:
		...

	async def get(self, key: str) -> Optional[str]:
		...

	async def set(self, key: str, value: str, *, ttl_seconds: int | None = None, only_if_absent: bool = False) -> bool:
		...

	async def delete(self, key: str) -> None:
		...

	async def record_event(self, key: str, *, window_seconds: int, now: float | None = None) -> int:
		"""Append an event to a rolling window and return the events inside it."""
		...


class RedisCounterStore:
	"""Counter store backed by Redis strings and sorted sets."""

	def __init__(self, redis: RedisProxy | None = None) -> None:
		self._redis = redis or redis_client

	async def incr(self, key: str, *, ttl_seconds: int) -> int:
		try:
			async with self._redis.pipeline(transaction=True) as pipe:
				pipe.incr(key)
				pipe.expire(key, ttl_seconds)
				count, _ = await pipe.execute()
		except RedisError as exc:
			raise CounterStoreError("incr", key) from exc
		return int(count)

	async def get(self, key: str) -> Optional[str]:
		try:
			value = await self._redis.get(key)
		except RedisError as exc:
			raise CounterStoreError("get", key) from exc
		return None if value is None else str(value)

	async def set(self, key: str, value: str, *, ttl_seconds: int | None = None, only_if_absent: bool = False) -> bool:
		try:
			result = await self._redis.set(key, value, ex=ttl_seconds, nx=only_if_absent)
		except RedisError as exc:
			raise CounterStoreError("set", key) from exc
		return bool(result)

	async def delete(self, key: str) -> None:
		try:
			await self._redis.delete(key)
		except RedisError as exc:
			raise CounterStoreError("delete", key) from exc

	async def record_event(self, key: str, *, window_seconds: int, now: float | None = None) -> int:
		now = now if now is not None else time.time()
		window_start = now - window_seconds
		member = f"{now:.6f}:{uuid.uuid4().hex}"
		try:
			async with self._redis.pipeline(transaction=True) as pipe:
				pipe.zremrangebyscore(key, "-inf", window_start)
				pipe.zadd(key, {member: now})
				pipe.zcard(key)
				pipe.expire(key, window_seconds + 60)
				_, _, count, _ = await pipe.execute()
		except RedisError as exc:
			raise CounterStoreError("record_event", key) from exc
		return int(count)


class InMemoryCounterStore:
	"""Deterministic in-process store for unit tests and local development."""

	def __init__(self, clock=time.time) -> None:
		self._clock = clock
		self._values: dict[str, tuple[str, float | None]] = {}
		self._events: dict[str, list[float]] = {}

	def _live(self, key: str) -> Optional[str]:
		entry = self._values.get(key)
		if entry is None:
			return None
		value, expires_at = entry
		if expires_at is not None and expires_at <= self._clock():
			self._values.pop(key, None)
			return None
		return value

	async def incr(self, key: str, *, ttl_seconds: int) -> int:
		current = int(self._live(key) or 0) + 1
		self._values[key] = (str(current), self._clock() + ttl_seconds)
		return current

	async def get(self, key: str) -> Optional[str]:
		return self._live(key)

	async def set(self, key: str, value: str, *, ttl_seconds: int | None = None, only_if_absent: bool = False) -> bool:
		if only_if_absent and self._live(key) is not None:
			return False
		expires_at = self._clock() + ttl_seconds if ttl_seconds else None
		self._values[key] = (value, expires_at)
		return True

	async def delete(self, key: str) -> None:
		self._values.pop(key, None)
		self._events.pop(key, None)

	async def record_event(self, key: str, *, window_seconds: int, now: float | None = None) -> int:
		now = now if now is not None else self._clock()
		window_start = now - window_seconds
		events = [ts for ts in self._events.get(key, []) if ts > window_start]
		events.append(now)
		self._events[key] = events
		return len(events)
