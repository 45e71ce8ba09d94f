"""Live proximity feeds backed by store snapshot subscriptions."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Callable, Dict, Optional

from nearfeed.domain.feed.cache import FeedCache
from nearfeed.domain.feed.models import CachePage, Post, SearchContext, utcnow
from nearfeed.domain.feed.policy import ensure_coordinate, ensure_radius
from nearfeed.domain.feed.proximity import within_radius
from nearfeed.domain.feed.repo import FeedRepository, active_posts_query
from nearfeed.domain.feed.signals import SessionState
from nearfeed.infra.store import Document, StoreSubscription
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[list[Post]], None]


def _fingerprint(posts: list[Post]) -> tuple:
	return tuple(
		(
			post.id,
			post.content,
			post.image_url,
			post.upvotes,
			post.downvotes,
			post.comments_count,
			post.is_active,
			post.has_user_voted,
		)
		for post in posts
	)


class Subscription:
	"""Disposer returned by ``subscribe``; calling it more than once is a no-op."""

	def __init__(self, dispose: Callable[[], None]) -> None:
		self._dispose = dispose
		self._active = True

	@property
	def active(self) -> bool:
		return self._active

	def __call__(self) -> None:
		if not self._active:
			return
		self._active = False
		self._dispose()


class _Listener:
	__slots__ = ("callback", "active")

	def __init__(self, callback: UpdateCallback) -> None:
		self.callback = callback
		self.active = True


class _LiveFeed:
	def __init__(self, context: SearchContext) -> None:
		self.context = context
		self.listeners: list[_Listener] = []
		self.handle: Optional[StoreSubscription] = None
		self.generation = 0
		self.fingerprint: Optional[tuple] = None
		self.closed = False


class RealtimeMergeEngine:
	def __init__(
		self,
		repo: FeedRepository,
		cache: FeedCache,
		session: SessionState,
		*,
		config: Settings = settings,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self._repo = repo
		self._cache = cache
		self._session = session
		self._cap = config.live_candidate_cap
		self._clock = clock
		self._feeds: Dict[SearchContext, _LiveFeed] = {}
		self._closing: set[asyncio.Task] = set()

	def is_live(self, context: SearchContext) -> bool:
		return context in self._feeds

	async def subscribe(self, context: SearchContext, on_update: UpdateCallback) -> Subscription:
		ensure_coordinate(context.latitude, context.longitude)
		ensure_radius(context.radius_km)
		feed = self._feeds.get(context)
		if feed is None:
			feed = _LiveFeed(context)
			self._feeds[context] = feed
			query = active_posts_query(self._clock(), self._cap)
			try:
				handle = await self._repo.store.subscribe(query, lambda docs, feed=feed: self._on_snapshot(feed, docs))
			except Exception:
				self._feeds.pop(context, None)
				feed.closed = True
				raise
			if feed.closed:
				# Every listener was disposed while the subscription was opening
				await handle.close()
			else:
				feed.handle = handle
				obs_metrics.realtime_subscription("open")
		listener = _Listener(on_update)
		feed.listeners.append(listener)
		return Subscription(lambda: self._dispose(feed, listener))

	def _dispose(self, feed: _LiveFeed, listener: _Listener) -> None:
		listener.active = False
		with suppress(ValueError):
			feed.listeners.remove(listener)
		if feed.listeners or feed.closed:
			return
		feed.closed = True
		if self._feeds.get(feed.context) is feed:
			self._feeds.pop(feed.context, None)
		handle, feed.handle = feed.handle, None
		if handle is not None:
			task = asyncio.create_task(handle.close(), name="live-feed-close")
			self._closing.add(task)
			task.add_done_callback(self._closing.discard)
			obs_metrics.realtime_subscription("close")

	async def _on_snapshot(self, feed: _LiveFeed, documents: list[Document]) -> None:
		if feed.closed:
			return
		feed.generation += 1
		generation = feed.generation
		context = feed.context
		candidates = [Post.from_document(doc.data) for doc in documents]
		nearby = [post for post in candidates if within_radius(context.center, post.location, context.radius_km)]
		# One vote lookup per surfaced post; see repo.with_vote_state
		posts = await self._repo.with_vote_state(nearby, self._session.user)
		# No awaits from here on: check-and-replace is one step for the event loop
		if feed.closed:
			obs_metrics.realtime_push("closed")
			return
		if generation != feed.generation:
			obs_metrics.realtime_push("superseded")
			return
		fingerprint = _fingerprint(posts)
		if fingerprint == feed.fingerprint:
			obs_metrics.realtime_push("duplicate")
			return
		feed.fingerprint = fingerprint
		self._cache.set_loaded(context.cache_key(), [CachePage(posts=posts, has_more=False, cursor=None)])
		obs_metrics.realtime_push("applied")
		logger.debug(
			"live feed replaced first page",
			extra={"search_context": context.label(), "candidates": len(candidates), "kept": len(posts)},
		)
		for listener in list(feed.listeners):
			if not listener.active:
				continue
			try:
				listener.callback(posts)
			except Exception:
				logger.exception("live feed listener failed")

	async def aclose(self) -> None:
		for feed in list(self._feeds.values()):
			for listener in list(feed.listeners):
				self._dispose(feed, listener)
		tasks = list(self._closing)
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task


__all__ = ["RealtimeMergeEngine", "Subscription", "UpdateCallback"]
