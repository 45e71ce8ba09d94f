"""Durable queue for posts created while the device is offline.

Entries live as one JSON array under a fixed storage key. Draining is
at-least-once: an entry is marked synced only after its create succeeded, so
a crash between the create and the save replays it on the next drain.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

import ulid

from nearfeed.domain.feed.models import OfflineRecord, Post, utcnow
from nearfeed.domain.feed.schemas import CreatePostRequest
from nearfeed.domain.feed.signals import ConnectivityMonitor
from nearfeed.infra.storage import KeyValueStorage
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)

CreatePost = Callable[[CreatePostRequest], Awaitable[Post]]
Validator = Callable[[CreatePostRequest], CreatePostRequest]


class OfflineSyncQueue:
	def __init__(
		self,
		storage: KeyValueStorage,
		create_post: CreatePost,
		connectivity: ConnectivityMonitor,
		*,
		validate: Optional[Validator] = None,
		config: Settings = settings,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self._storage = storage
		self._create_post = create_post
		self._connectivity = connectivity
		self._validate = validate
		self._key = config.offline_storage_key
		self._retention = timedelta(days=config.offline_retention_days)
		self._clock = clock
		# Guards read-modify-write of the stored array
		self._lock = asyncio.Lock()
		self._draining = False
		self._rerun = False
		self._tasks: set[asyncio.Task] = set()

	async def _load(self) -> list[OfflineRecord]:
		raw = await self._storage.get_item(self._key)
		if not raw:
			return []
		try:
			items = json.loads(raw)
			if not isinstance(items, list):
				raise ValueError("offline queue is not a list")
			return [OfflineRecord.from_json(item) for item in items]
		except (ValueError, KeyError, TypeError) as exc:
			logger.warning("offline queue unreadable, treating as empty error=%s", exc.__class__.__name__)
			return []

	async def _save(self, records: list[OfflineRecord]) -> None:
		await self._storage.set_item(self._key, json.dumps([record.to_json() for record in records]))

	async def records(self) -> list[OfflineRecord]:
		async with self._lock:
			return await self._load()

	async def enqueue(self, payload: CreatePostRequest) -> str:
		if self._validate is not None:
			payload = self._validate(payload)
		record = OfflineRecord(id=str(ulid.new()), payload=payload, created_at=self._clock())
		async with self._lock:
			records = await self._load()
			records.append(record)
			await self._save(records)
		obs_metrics.offline_sync("queued")
		logger.info("post queued offline", extra={"record_id": record.id})
		if self._connectivity.connected:
			self._schedule_drain()
		return record.id

	def _schedule_drain(self) -> asyncio.Task:
		task = asyncio.create_task(self.drain(), name="offline-drain")
		self._tasks.add(task)
		task.add_done_callback(self._drain_done)
		return task

	def _drain_done(self, task: asyncio.Task) -> None:
		self._tasks.discard(task)
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			logger.warning("offline drain failed error=%s", exc.__class__.__name__)

	async def drain(self) -> int:
		"""Create every unsynced entry in order; returns how many were synced.

		A call made while a drain is running returns 0 at once and makes the
		running drain take one more pass for entries added since it started.
		"""
		if not self._connectivity.connected:
			return 0
		if self._draining:
			self._rerun = True
			return 0
		self._draining = True
		try:
			attempted: set[str] = set()
			synced = 0
			while True:
				self._rerun = False
				pending = await self._pending(attempted)
				attempted.update(record.id for record in pending)
				synced += await self._sync(pending)
				if not self._rerun or not self._connectivity.connected:
					break
			await self.purge()
			if attempted:
				logger.info("offline drain finished", extra={"synced": synced, "pending": len(attempted)})
			return synced
		finally:
			self._draining = False
			self._rerun = False

	async def _pending(self, skip: set[str]) -> list[OfflineRecord]:
		async with self._lock:
			return [record for record in await self._load() if not record.synced and record.id not in skip]

	async def _sync(self, pending: list[OfflineRecord]) -> int:
		synced = 0
		for record in pending:
			if not self._connectivity.connected:
				break
			try:
				await self._create_post(record.payload)
			except asyncio.CancelledError:
				raise
			except Exception as exc:
				obs_metrics.offline_sync("failed")
				logger.warning(
					"offline entry sync failed record_id=%s error=%s",
					record.id,
					exc.__class__.__name__,
				)
				continue
			await self._mark_synced(record.id)
			synced += 1
			obs_metrics.offline_sync("synced")
		return synced

	async def _mark_synced(self, record_id: str) -> None:
		# Re-read so entries enqueued during the drain are kept
		async with self._lock:
			records = await self._load()
			for record in records:
				if record.id == record_id:
					record.synced = True
			await self._save(records)

	async def purge(self) -> int:
		"""Drop synced entries older than the retention window."""
		cutoff = self._clock() - self._retention
		async with self._lock:
			records = await self._load()
			kept = [record for record in records if not (record.synced and record.created_at < cutoff)]
			removed = len(records) - len(kept)
			if removed:
				await self._save(kept)
		obs_metrics.offline_purged(removed)
		return removed

	async def aclose(self) -> None:
		tasks = list(self._tasks)
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task


__all__ = ["CreatePost", "OfflineSyncQueue"]
