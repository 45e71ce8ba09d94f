"""Local query cache for feed pages, post copies and vote state.

Values are replaced, never mutated in place: every writer builds a new value
and calls ``set``. That keeps ``snapshot``/``restore`` cheap (they hold
references) and makes a page replacement a single synchronous step that no
other coroutine can observe half-done.

Each key has at most one in-flight fetch task. Starting a new fetch, or an
optimistic write through ``cancel``, cancels the previous one so a stale read
cannot land on top of newer local state.

A restore leaves alone any key whose fetch landed after the snapshot was
taken: that value came from the store and is newer than the snapshot.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

logger = logging.getLogger(__name__)

CacheKey = tuple
Fetcher = Callable[[], Awaitable[Any]]

_MISSING = object()


@dataclass(slots=True)
class CacheEntry:
	value: Any
	stale: bool = False
	updated_at: float = 0.0
	# Sequence number of the fetch that produced the value; 0 for local writes
	load: int = 0


class FeedCache:
	def __init__(self) -> None:
		self._entries: Dict[CacheKey, CacheEntry] = {}
		self._inflight: Dict[CacheKey, asyncio.Task] = {}
		self._fetchers: Dict[CacheKey, Fetcher] = {}
		self._loads = 0

	# --- reads ---
	def get(self, key: CacheKey, default: Any = None) -> Any:
		entry = self._entries.get(key)
		return entry.value if entry is not None else default

	def has(self, key: CacheKey) -> bool:
		return key in self._entries

	def is_stale(self, key: CacheKey) -> bool:
		entry = self._entries.get(key)
		return entry is None or entry.stale

	def keys(self, prefix: CacheKey = ()) -> list[CacheKey]:
		size = len(prefix)
		return [key for key in self._entries if key[:size] == prefix]

	def in_flight(self, key: CacheKey) -> Optional[asyncio.Task]:
		task = self._inflight.get(key)
		if task is None or task.done():
			return None
		return task

	# --- writes ---
	def set(self, key: CacheKey, value: Any) -> None:
		self._entries[key] = CacheEntry(value=value, stale=False, updated_at=time.monotonic())

	def set_loaded(self, key: CacheKey, value: Any) -> None:
		"""Store a value read from the store; a later ``restore`` will not roll it back."""
		self._loads += 1
		self._entries[key] = CacheEntry(value=value, stale=False, updated_at=time.monotonic(), load=self._loads)

	def update(self, key: CacheKey, updater: Callable[[Any], Any]) -> Any:
		"""Apply ``updater`` to a present value; absent keys are left alone."""
		entry = self._entries.get(key)
		if entry is None:
			return None
		value = updater(entry.value)
		self._entries[key] = CacheEntry(value=value, stale=entry.stale, updated_at=time.monotonic(), load=entry.load)
		return value

	def remove(self, key: CacheKey) -> None:
		self._entries.pop(key, None)

	def snapshot(self, keys: Iterable[CacheKey]) -> Dict[CacheKey, Any]:
		state: Dict[CacheKey, Any] = {}
		for key in keys:
			entry = self._entries.get(key)
			state[key] = _MISSING if entry is None else CacheEntry(entry.value, entry.stale, entry.updated_at, entry.load)
		return state

	def restore(self, state: Dict[CacheKey, Any]) -> None:
		for key, entry in state.items():
			current = self._entries.get(key)
			saved_load = 0 if entry is _MISSING else entry.load
			if current is not None and current.load > saved_load:
				continue
			if entry is _MISSING:
				self._entries.pop(key, None)
			else:
				self._entries[key] = CacheEntry(entry.value, entry.stale, entry.updated_at, entry.load)

	# --- fetches ---
	def fetch(self, key: CacheKey, fetcher: Fetcher, *, remember: bool = True) -> asyncio.Task:
		self.cancel(key)
		if remember:
			self._fetchers[key] = fetcher
		task = asyncio.create_task(self._run(key, fetcher), name=f"cache-fetch:{key!r}")
		self._inflight[key] = task
		task.add_done_callback(lambda done, key=key: self._finished(key, done))
		return task

	async def _run(self, key: CacheKey, fetcher: Fetcher) -> Any:
		value = await fetcher()
		self.set_loaded(key, value)
		return value

	def _finished(self, key: CacheKey, task: asyncio.Task) -> None:
		if self._inflight.get(key) is task:
			self._inflight.pop(key, None)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.warning("cache fetch failed key=%s error=%s", key[:2], exc.__class__.__name__)

	def cancel(self, key: CacheKey) -> bool:
		task = self._inflight.pop(key, None)
		if task is None or task.done():
			return False
		task.cancel()
		return True

	def forget(self, key: CacheKey) -> None:
		self._fetchers.pop(key, None)

	def invalidate(self, key: Optional[CacheKey] = None, *, prefix: Optional[CacheKey] = None) -> list[asyncio.Task]:
		"""Mark entries stale and refetch those with a remembered fetcher."""
		if key is not None:
			targets = [key]
		else:
			targets = self.keys(prefix or ())
			targets.extend(k for k in self._fetchers if k[: len(prefix or ())] == (prefix or ()) and k not in targets)
		tasks: list[asyncio.Task] = []
		for target in targets:
			entry = self._entries.get(target)
			if entry is not None:
				entry.stale = True
			fetcher = self._fetchers.get(target)
			if fetcher is not None:
				tasks.append(self.fetch(target, fetcher))
		return tasks

	async def aclose(self) -> None:
		tasks = [task for task in self._inflight.values() if not task.done()]
		self._inflight.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError, Exception):
				await task


__all__ = ["CacheEntry", "CacheKey", "FeedCache", "Fetcher"]
