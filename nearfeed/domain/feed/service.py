"""Post lifecycle: create, read, edit and soft delete."""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from nearfeed.domain.feed.cache import FeedCache
from nearfeed.domain.feed.exceptions import NotAuthorized, NotFound, ValidationError
from nearfeed.domain.feed.geohash import GeohashIndexer
from nearfeed.domain.feed.models import (
	NEARBY_PREFIX,
	POSTS,
	AuthenticatedUser,
	CachePage,
	Coordinates,
	Post,
	author_cache_key,
	post_cache_key,
	utcnow,
)
from nearfeed.domain.feed.mutations import cached_feed_keys, patch_cached_post
from nearfeed.domain.feed.policy import (
	clean_post_content,
	ensure_coordinate,
	ensure_id,
	ensure_user,
	resolve_expiry_days,
)
from nearfeed.domain.feed.proximity import within_radius
from nearfeed.domain.feed.repo import FeedRepository
from nearfeed.domain.feed.schemas import CreatePostRequest, UpdatePostRequest
from nearfeed.domain.feed.signals import SessionState
from nearfeed.infra.store import WriteBatch
from nearfeed.obs import logging as obs_logging
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)


def _prepend(pages: list[CachePage], post: Post) -> list[CachePage]:
	if not pages:
		return [CachePage(posts=[post])]
	head = dataclasses.replace(pages[0], posts=[post, *[p for p in pages[0].posts if p.id != post.id]])
	return [head, *pages[1:]]


def _without(pages: list[CachePage], post_id: str) -> list[CachePage]:
	return [dataclasses.replace(page, posts=[p for p in page.posts if p.id != post_id]) for page in pages]


class PostService:
	def __init__(
		self,
		repo: FeedRepository,
		cache: FeedCache,
		session: SessionState,
		*,
		indexer: Optional[GeohashIndexer] = None,
		config: Settings = settings,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self._repo = repo
		self._cache = cache
		self._session = session
		self._config = config
		self._indexer = indexer or GeohashIndexer(config)
		self._clock = clock

	def validate(self, request: CreatePostRequest) -> CreatePostRequest:
		"""Return a normalised copy of ``request`` or raise ``ValidationError``."""
		content = clean_post_content(request.content, config=self._config)
		ensure_coordinate(request.latitude, request.longitude)
		days = resolve_expiry_days(request.expires_in_days, config=self._config)
		return request.model_copy(update={"content": content, "expires_in_days": days})

	def _build_post(self, user: AuthenticatedUser, request: CreatePostRequest, now: datetime) -> Post:
		cell_id = self._indexer.encode(request.latitude, request.longitude)
		return Post(
			id=self._repo.store.new_id(),
			author_id=user.id,
			author_name=user.display_name or self._config.anonymous_display_name,
			author_avatar=user.avatar_url,
			content=request.content,
			image_url=request.image_url,
			latitude=request.latitude,
			longitude=request.longitude,
			cell_id=cell_id,
			cell_prefix_chain=self._indexer.prefix_chain(cell_id),
			created_at=now,
			expires_at=now + timedelta(days=request.expires_in_days or self._config.post_default_expiry_days),
		)

	async def create_post(self, request: CreatePostRequest) -> Post:
		user = ensure_user(self._session.user)
		clean = self.validate(request)
		tokens = obs_logging.bind_context(user_id=user.id, operation="create_post")
		try:
			now = self._clock()
			post = self._build_post(user, clean, now)
			batch = WriteBatch().set(POSTS, post.id, post.to_document())
			await self._repo.bump_profile(batch, user, now, notes_count=1)
			await self._repo.store.commit(batch)
			logger.info("post created", extra={"post_id": post.id, "cell_prefix": post.cell_id[:5]})
		finally:
			obs_logging.reset_context(tokens)
		self._insert_cached(post)
		return post

	def _insert_cached(self, post: Post) -> None:
		self._cache.set(post_cache_key(post.id), post)
		for key in self._cache.keys(NEARBY_PREFIX):
			_, _, lat, lon, radius = key
			if within_radius(Coordinates(lat, lon), post.location, radius):
				self._cache.update(key, lambda pages: _prepend(pages, post))
		self._cache.update(author_cache_key(post.author_id), lambda pages: _prepend(pages, post))

	async def get_post(self, post_id: str) -> Optional[Post]:
		ensure_id(post_id, "post_id")
		post = await self._repo.get_post(post_id)
		if post is None:
			return None
		[post] = await self._repo.with_vote_state([post], self._session.user)
		self._cache.set(post_cache_key(post_id), post)
		return post

	async def _owned_post(self, post_id: str) -> tuple[AuthenticatedUser, Post]:
		user = ensure_user(self._session.user)
		ensure_id(post_id, "post_id")
		post = await self._repo.get_post(post_id)
		if post is None or not post.is_active:
			raise NotFound()
		if post.author_id != user.id:
			logger.warning("post ownership check failed", extra={"post_id": post_id})
			raise NotAuthorized()
		return user, post

	async def update_post(self, request: UpdatePostRequest) -> Post:
		fields: dict = {}
		if request.content is not None:
			fields["content"] = clean_post_content(request.content, config=self._config)
		if request.image_url is not None:
			fields["image_url"] = request.image_url.strip() or None
		if not fields:
			raise ValidationError("nothing_to_update")
		_, post = await self._owned_post(request.post_id)
		await self._repo.store.commit(WriteBatch().update(POSTS, post.id, fields))
		patch_cached_post(self._cache, post.id, lambda cached: dataclasses.replace(cached, **fields))
		return dataclasses.replace(post, **fields)

	async def delete_post(self, post_id: str) -> None:
		"""Soft delete: the post stays in the store with ``is_active`` cleared."""
		_, post = await self._owned_post(post_id)
		await self._repo.store.commit(WriteBatch().update(POSTS, post.id, {"is_active": False}))
		self._cache.remove(post_cache_key(post.id))
		for key in cached_feed_keys(self._cache):
			self._cache.update(key, lambda pages: _without(pages, post.id))
		logger.info("post deleted", extra={"post_id": post.id})


__all__ = ["PostService"]
