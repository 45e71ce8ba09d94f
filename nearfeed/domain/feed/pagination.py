"""Cursor-paginated history queries for a proximity feed.

The store can only filter on active/unexpired and sort, so every page is
fetched with the store-side limit and then trimmed by exact distance. The
``has_more`` flag compares the *raw* page size with the limit; a full raw
page whose candidates mostly fall outside the radius still reports more
pages, and a short filtered page can hide further matches. Callers rely on
that behavior (a page may come back with a single post and ``has_more``
set), so it is kept as is.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from nearfeed.domain.feed.cache import FeedCache
from nearfeed.domain.feed.models import (
	CachePage,
	PageResult,
	Post,
	SearchContext,
	author_cache_key,
	utcnow,
)
from nearfeed.domain.feed.policy import ensure_coordinate, ensure_id, ensure_radius
from nearfeed.domain.feed.proximity import within_radius
from nearfeed.domain.feed.repo import FeedRepository, active_posts_query, author_posts_query
from nearfeed.domain.feed.signals import SessionState
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)


class PaginatedQueryEngine:
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
		self._page_size = config.history_page_size
		self._clock = clock

	@property
	def page_size(self) -> int:
		return self._page_size

	async def fetch_page(self, context: SearchContext, cursor: Optional[str] = None) -> PageResult:
		ensure_coordinate(context.latitude, context.longitude)
		ensure_radius(context.radius_km)
		query = active_posts_query(self._clock(), self._page_size).after(cursor)
		documents = await self._repo.store.query(query)
		raw_count = len(documents)
		posts: list[Post] = []
		for doc in documents:
			post = Post.from_document(doc.data)
			if within_radius(context.center, post.location, context.radius_km):
				posts.append(post)
		posts = await self._repo.with_vote_state(posts, self._session.user)
		next_cursor = documents[-1].cursor if documents else None
		obs_metrics.feed_page("nearby", raw_count - len(posts))
		logger.debug(
			"feed page fetched",
			extra={"search_context": context.label(), "raw": raw_count, "kept": len(posts)},
		)
		return PageResult(
			posts=posts,
			next_cursor=next_cursor,
			has_more=raw_count == self._page_size,
			raw_count=raw_count,
		)

	async def _first_pages(self, context: SearchContext) -> list[CachePage]:
		result = await self.fetch_page(context)
		return [CachePage(posts=result.posts, has_more=result.has_more, cursor=result.next_cursor)]

	def refresh(self, context: SearchContext) -> asyncio.Task:
		"""(Re)load the first page of ``context`` into the cache as a tracked fetch."""
		return self._cache.fetch(context.cache_key(), lambda: self._first_pages(context))

	def invalidate(self, context: SearchContext) -> list[asyncio.Task]:
		tasks = self._cache.invalidate(context.cache_key())
		if not tasks:
			tasks = [self.refresh(context)]
		return tasks

	async def load_more(self, context: SearchContext) -> Optional[CachePage]:
		"""Append the next page to the cached chain; ``None`` when nothing is left."""
		key = context.cache_key()
		pages = self._cache.get(key)
		if not pages:
			return (await self.refresh(context))[0]
		last = pages[-1]
		if not last.has_more or not last.cursor:
			return None
		result = await self.fetch_page(context, last.cursor)
		page = CachePage(posts=result.posts, has_more=result.has_more, cursor=result.next_cursor)
		if self._cache.get(key) is not pages:
			# The chain was replaced (refresh or live push) while this page loaded
			logger.debug("dropping stale page append", extra={"search_context": context.label()})
			return None
		self._cache.set(key, [*pages, page])
		return page

	def cached_pages(self, context: SearchContext) -> list[CachePage]:
		return list(self._cache.get(context.cache_key()) or [])

	async def fetch_author_page(self, author_id: str, cursor: Optional[str] = None) -> PageResult:
		ensure_id(author_id, "author_id")
		query = author_posts_query(author_id, self._page_size).after(cursor)
		documents = await self._repo.store.query(query)
		posts = [Post.from_document(doc.data) for doc in documents]
		obs_metrics.feed_page("author", 0)
		return PageResult(
			posts=posts,
			next_cursor=documents[-1].cursor if documents else None,
			has_more=len(documents) == self._page_size,
			raw_count=len(documents),
		)

	async def load_author_posts(self, author_id: str, cursor: Optional[str] = None) -> CachePage:
		key = author_cache_key(author_id)
		result = await self.fetch_author_page(author_id, cursor)
		page = CachePage(posts=result.posts, has_more=result.has_more, cursor=result.next_cursor)
		if cursor is None:
			self._cache.set(key, [page])
		else:
			self._cache.set(key, [*(self._cache.get(key) or []), page])
		return page


__all__ = ["PaginatedQueryEngine"]
