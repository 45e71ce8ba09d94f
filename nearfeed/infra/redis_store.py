"""Redis-backed document store.

Each collection is a hash ``{namespace}:{collection}`` mapping document id to
its JSON body. Batches run as WATCH/MULTI/EXEC transactions over every hash
they touch, so either all writes land or none do. Every committed batch
publishes the touched ids on ``{namespace}:changes:{collection}``; snapshot
subscriptions re-run their query on each message.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Optional

import ulid
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import NoPermissionError, TimeoutError as RedisTimeoutError, WatchError

from nearfeed.infra.redis import RedisProxy, redis_client
from nearfeed.infra.store import (
	Document,
	Query,
	SnapshotCallback,
	StorePermissionDenied,
	StoreUnavailable,
	WriteBatch,
	apply_query,
	apply_write,
)
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _translate_errors() -> AsyncIterator[None]:
	try:
		yield
	except NoPermissionError as exc:
		raise StorePermissionDenied() from exc
	except (RedisConnectionError, RedisTimeoutError) as exc:
		raise StoreUnavailable() from exc


def _decode(doc_id: str, raw: Any) -> Document:
	if isinstance(raw, bytes):
		raw = raw.decode("utf-8")
	return Document(id=str(doc_id), data=json.loads(raw))


class RedisSubscription:
	def __init__(self, pubsub, task: asyncio.Task) -> None:
		self._pubsub = pubsub
		self._task = task
		self._closed = False

	@property
	def closed(self) -> bool:
		return self._closed

	async def close(self) -> None:
		if self._closed:
			return
		self._closed = True
		self._task.cancel()
		with suppress(asyncio.CancelledError):
			await self._task
		with suppress(RedisConnectionError):
			await self._pubsub.unsubscribe()
			await self._pubsub.aclose()


class RedisDocumentStore:
	"""DocumentStore implementation on plain Redis hashes."""

	def __init__(
		self,
		client: RedisProxy = redis_client,
		*,
		namespace: Optional[str] = None,
		batch_retries: Optional[int] = None,
	) -> None:
		self._client = client
		self._namespace = namespace or settings.store_namespace
		self._batch_retries = max(1, batch_retries or settings.store_batch_retries)

	def _key(self, collection: str) -> str:
		return f"{self._namespace}:{collection}"

	def _channel(self, collection: str) -> str:
		return f"{self._namespace}:changes:{collection}"

	def new_id(self) -> str:
		return str(ulid.new())

	async def get(self, collection: str, doc_id: str) -> Optional[Document]:
		async with _translate_errors():
			raw = await self._client.hget(self._key(collection), doc_id)
		if raw is None:
			return None
		return _decode(doc_id, raw)

	async def query(self, query: Query) -> list[Document]:
		async with _translate_errors():
			rows = await self._client.hgetall(self._key(query.collection))
		documents = [_decode(doc_id, raw) for doc_id, raw in rows.items()]
		return apply_query(query, documents)

	async def commit(self, batch: WriteBatch) -> None:
		if not batch.ops:
			return
		collections = sorted({op.collection for op in batch.ops})
		keys = [self._key(collection) for collection in collections]
		started = time.perf_counter()
		async with _translate_errors():
			for _attempt in range(self._batch_retries):
				async with self._client.pipeline(transaction=True) as pipe:
					try:
						await pipe.watch(*keys)
						states: dict[tuple[str, str], Optional[dict[str, Any]]] = {}
						for op in batch.ops:
							slot = (op.collection, op.doc_id)
							if slot not in states:
								raw = await pipe.hget(self._key(op.collection), op.doc_id)
								states[slot] = _decode(op.doc_id, raw).data if raw is not None else None
							# DocumentNotFound here aborts before MULTI, so nothing is written
							states[slot] = apply_write(op, states[slot])
						pipe.multi()
						touched: dict[str, list[str]] = {}
						for (collection, doc_id), data in states.items():
							if data is None:
								pipe.hdel(self._key(collection), doc_id)
							else:
								pipe.hset(self._key(collection), doc_id, json.dumps(data, separators=(",", ":")))
							touched.setdefault(collection, []).append(doc_id)
						for collection, ids in touched.items():
							pipe.publish(self._channel(collection), json.dumps({"ids": ids}))
						await pipe.execute()
						obs_metrics.observe_batch(time.perf_counter() - started)
						return
					except WatchError:
						obs_metrics.inc_batch_conflict()
						logger.debug("batch conflict on %s, retrying", collections)
						continue
		raise StoreUnavailable("batch_conflict")

	async def subscribe(self, query: Query, on_snapshot: SnapshotCallback) -> RedisSubscription:
		pubsub = self._client.pubsub()
		async with _translate_errors():
			await pubsub.subscribe(self._channel(query.collection))
		task = asyncio.create_task(
			self._listen(pubsub, query, on_snapshot),
			name=f"store-subscription:{query.collection}",
		)
		return RedisSubscription(pubsub, task)

	async def _listen(self, pubsub, query: Query, on_snapshot: SnapshotCallback) -> None:
		await self._deliver(query, on_snapshot)
		while True:
			try:
				message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
			except (RedisConnectionError, RedisTimeoutError):
				logger.warning("change stream lost for collection=%s", query.collection, exc_info=True)
				return
			if message is None:
				continue
			await self._deliver(query, on_snapshot)

	async def _deliver(self, query: Query, on_snapshot: SnapshotCallback) -> None:
		try:
			documents = await self.query(query)
			await on_snapshot(documents)
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("snapshot delivery failed for collection=%s", query.collection)


__all__ = ["RedisDocumentStore", "RedisSubscription"]
