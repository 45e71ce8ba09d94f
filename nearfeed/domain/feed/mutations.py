"""Optimistic votes and comments over the local feed cache.

Every mutation follows the same sequence:

1. cancel in-flight fetches for the mutated post's own keys,
2. snapshot the affected cache entries,
3. apply the local change,
4. write through to the store as one batch,
5. on failure restore the snapshot (or remove exactly what was added) and re-raise,
6. on completion, success or not, refetch the affected keys.

The refetch runs as a tracked cache fetch, so a later mutation of the same key
cancels it before it can overwrite newer optimistic state. Feed pages are
snapshotted and patched but their fetches keep running: a feed refresh that
lands mid-mutation carries store state and is kept over the snapshot.
"""

from __future__ import annotations

import dataclasses
import logging
from datetime import datetime
from typing import Callable, Optional

from nearfeed.domain.feed.cache import CacheKey, FeedCache
from nearfeed.domain.feed.exceptions import NotAuthorized, NotFound, ValidationError
from nearfeed.domain.feed.models import (
	COMMENTS,
	NEARBY_PREFIX,
	POSTS,
	VOTES,
	AuthenticatedUser,
	CachePage,
	Comment,
	CommentPage,
	Post,
	Vote,
	VoteDirection,
	comments_cache_key,
	post_cache_key,
	utcnow,
	vote_cache_key,
)
from nearfeed.domain.feed.policy import clean_comment_content, ensure_id, ensure_user
from nearfeed.domain.feed.repo import FeedRepository, comments_query
from nearfeed.domain.feed.signals import SessionState
from nearfeed.infra.store import WriteBatch
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)

_AUTHOR_PREFIX: tuple = ("posts", "by_author")
_DIRECTIONS = ("up", "down")


@dataclasses.dataclass(frozen=True, slots=True)
class VoteTransition:
	previous: Optional[VoteDirection]
	current: Optional[VoteDirection]
	upvotes_delta: int = 0
	downvotes_delta: int = 0

	@property
	def votes_count_delta(self) -> int:
		return int(self.current is not None) - int(self.previous is not None)


def toggle(current: Optional[VoteDirection], requested: VoteDirection) -> VoteTransition:
	"""Voting the same way twice clears the vote; voting the other way switches it."""
	new: Optional[VoteDirection] = None if current == requested else requested
	up = (new == "up") - (current == "up")
	down = (new == "down") - (current == "down")
	return VoteTransition(previous=current, current=new, upvotes_delta=up, downvotes_delta=down)


def apply_transition(post: Post, transition: VoteTransition) -> Post:
	return dataclasses.replace(
		post,
		upvotes=post.upvotes + transition.upvotes_delta,
		downvotes=post.downvotes + transition.downvotes_delta,
		has_user_voted=transition.current,
	)


def _replace_posts(pages: list[CachePage], post_id: str, change: Callable[[Post], Post]) -> list[CachePage]:
	return [
		dataclasses.replace(page, posts=[change(post) if post.id == post_id else post for post in page.posts])
		for page in pages
	]


def cached_feed_keys(cache: FeedCache) -> list[CacheKey]:
	return cache.keys(NEARBY_PREFIX) + cache.keys(_AUTHOR_PREFIX)


def patch_cached_post(cache: FeedCache, post_id: str, change: Callable[[Post], Post]) -> None:
	"""Apply ``change`` to every cached copy of a post: its own key and each feed page."""
	cache.update(post_cache_key(post_id), lambda post: change(post) if post is not None else None)
	for key in cached_feed_keys(cache):
		cache.update(key, lambda pages: _replace_posts(pages, post_id, change))


class OptimisticMutationCoordinator:
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
		self._config = config
		self._clock = clock

	# --- cache helpers ---
	def _feed_keys(self) -> list[CacheKey]:
		return cached_feed_keys(self._cache)

	def _patch_post(self, post_id: str, change: Callable[[Post], Post]) -> None:
		patch_cached_post(self._cache, post_id, change)

	def _cached_vote(self, post_id: str) -> Optional[VoteDirection]:
		key = vote_cache_key(post_id)
		if self._cache.has(key):
			return self._cache.get(key)
		post = self._cache.get(post_cache_key(post_id))
		if post is not None:
			return post.has_user_voted
		for key in self._feed_keys():
			for page in self._cache.get(key) or []:
				for candidate in page.posts:
					if candidate.id == post_id:
						return candidate.has_user_voted
		return None

	def _cancel(self, keys: list[CacheKey]) -> None:
		for key in keys:
			self._cache.cancel(key)

	def _begin(self, keys: list[CacheKey]) -> dict:
		self._cancel(keys)
		return self._cache.snapshot([*keys, *self._feed_keys()])

	# --- votes ---
	async def vote(self, post_id: str, direction: VoteDirection) -> Optional[VoteDirection]:
		"""Toggle the current user's vote on ``post_id``; returns the resulting vote state."""
		user = ensure_user(self._session.user)
		ensure_id(post_id, "post_id")
		if direction not in _DIRECTIONS:
			raise ValidationError("invalid_direction")

		vote_key = vote_cache_key(post_id)
		snapshot = self._begin([vote_key, post_cache_key(post_id)])
		transition = toggle(self._cached_vote(post_id), direction)
		self._cache.set(vote_key, transition.current)
		self._patch_post(post_id, lambda post: apply_transition(post, transition))
		try:
			await self._write_vote(user, post_id, direction)
		except Exception as exc:
			self._cache.restore(snapshot)
			obs_metrics.optimistic("vote", "rolled_back")
			logger.warning("vote rolled back post_id=%s error=%s", post_id, exc.__class__.__name__)
			raise
		else:
			obs_metrics.optimistic("vote", "committed")
		finally:
			self._reconcile_post(post_id)
		return transition.current

	async def _write_vote(self, user: AuthenticatedUser, post_id: str, direction: VoteDirection) -> None:
		# Derive the batch from the stored vote, not from the optimistic cache
		if await self._repo.get_post(post_id) is None:
			raise NotFound()
		existing = await self._repo.get_user_vote(user.id, post_id)
		transition = toggle(existing.direction if existing else None, direction)
		now = self._clock()
		batch = WriteBatch()
		if existing is not None:
			batch.delete(VOTES, existing.id)
		if transition.current is not None:
			vote = Vote(
				id=self._repo.store.new_id(),
				voter_id=user.id,
				post_id=post_id,
				direction=transition.current,
				created_at=now,
			)
			batch.set(VOTES, vote.id, vote.to_document())
		increments = {
			name: delta
			for name, delta in (("upvotes", transition.upvotes_delta), ("downvotes", transition.downvotes_delta))
			if delta
		}
		if increments:
			batch.update(POSTS, post_id, increments=increments)
		if transition.votes_count_delta:
			await self._repo.bump_profile(batch, user, now, votes_count=transition.votes_count_delta)
		await self._repo.store.commit(batch)

	async def _fetch_vote(self, post_id: str) -> Optional[VoteDirection]:
		user = self._session.user
		if user is None:
			return None
		vote = await self._repo.get_user_vote(user.id, post_id)
		return vote.direction if vote else None

	async def _fetch_post(self, post_id: str) -> Optional[Post]:
		post = await self._repo.get_post(post_id)
		if post is None:
			return None
		[post] = await self._repo.with_vote_state([post], self._session.user)
		fresh = post
		for key in self._feed_keys():
			self._cache.update(key, lambda pages: _replace_posts(pages, post_id, lambda _: fresh))
		return fresh

	def _reconcile_post(self, post_id: str) -> None:
		self._cache.fetch(vote_cache_key(post_id), lambda: self._fetch_vote(post_id))
		self._cache.fetch(post_cache_key(post_id), lambda: self._fetch_post(post_id))

	# --- comments ---
	async def fetch_comment_page(self, post_id: str, cursor: Optional[str] = None) -> CommentPage:
		ensure_id(post_id, "post_id")
		size = self._config.comments_page_size
		documents = await self._repo.store.query(comments_query(post_id, size).after(cursor))
		return CommentPage(
			comments=[Comment.from_document(doc.data) for doc in documents],
			has_more=len(documents) == size,
			cursor=documents[-1].cursor if documents else None,
		)

	async def list_comments(self, post_id: str, cursor: Optional[str] = None) -> CommentPage:
		key = comments_cache_key(post_id)
		page = await self.fetch_comment_page(post_id, cursor)
		if cursor is None:
			self._cache.set(key, [page])
		else:
			self._cache.set(key, [*(self._cache.get(key) or []), page])
		return page

	async def _first_comment_pages(self, post_id: str) -> list[CommentPage]:
		return [await self.fetch_comment_page(post_id)]

	def _reconcile_comments(self, post_id: str) -> None:
		self._cache.fetch(comments_cache_key(post_id), lambda: self._first_comment_pages(post_id))
		self._cache.fetch(post_cache_key(post_id), lambda: self._fetch_post(post_id))

	def _bump_comment_count(self, post_id: str, delta: int) -> None:
		self._patch_post(post_id, lambda post: dataclasses.replace(post, comments_count=post.comments_count + delta))

	async def add_comment(self, post_id: str, content: str) -> Comment:
		user = ensure_user(self._session.user)
		ensure_id(post_id, "post_id")
		text = clean_comment_content(content, config=self._config)

		key = comments_cache_key(post_id)
		# No snapshot: a failure removes only the provisional comment
		self._cancel([key, post_cache_key(post_id)])
		comment = Comment(
			id=self._repo.store.new_id(),
			post_id=post_id,
			author_id=user.id,
			author_name=user.display_name or self._config.anonymous_display_name,
			author_avatar=user.avatar_url,
			content=text,
			created_at=self._clock(),
			pending=True,
		)

		def insert(pages: list[CommentPage]) -> list[CommentPage]:
			if not pages:
				return [CommentPage(comments=[comment])]
			head = dataclasses.replace(pages[0], comments=[comment, *pages[0].comments])
			return [head, *pages[1:]]

		def without_comment(pages: list[CommentPage]) -> list[CommentPage]:
			return [
				dataclasses.replace(page, comments=[c for c in page.comments if c.id != comment.id])
				for page in pages
			]

		self._cache.update(key, insert)
		self._bump_comment_count(post_id, 1)
		try:
			batch = (
				WriteBatch()
				.set(COMMENTS, comment.id, comment.to_document())
				.update(POSTS, post_id, increments={"comments_count": 1})
			)
			await self._repo.store.commit(batch)
		except Exception as exc:
			# Only the provisional comment is taken back; concurrent additions stay
			self._cache.update(key, without_comment)
			self._bump_comment_count(post_id, -1)
			obs_metrics.optimistic("comment_add", "rolled_back")
			logger.warning("comment rolled back post_id=%s error=%s", post_id, exc.__class__.__name__)
			raise
		else:
			obs_metrics.optimistic("comment_add", "committed")
		finally:
			self._reconcile_comments(post_id)
		return dataclasses.replace(comment, pending=False)

	async def delete_comment(self, comment_id: str) -> None:
		user = ensure_user(self._session.user)
		ensure_id(comment_id, "comment_id")
		comment = await self._repo.get_comment(comment_id)
		if comment is None:
			raise NotFound()
		if comment.author_id != user.id:
			raise NotAuthorized()

		post_id = comment.post_id
		key = comments_cache_key(post_id)
		snapshot = self._begin([key, post_cache_key(post_id)])
		self._cache.update(
			key,
			lambda pages: [
				dataclasses.replace(page, comments=[c for c in page.comments if c.id != comment_id])
				for page in pages
			],
		)
		self._bump_comment_count(post_id, -1)
		try:
			batch = (
				WriteBatch()
				.delete(COMMENTS, comment_id)
				.update(POSTS, post_id, increments={"comments_count": -1})
			)
			await self._repo.store.commit(batch)
		except Exception as exc:
			self._cache.restore(snapshot)
			obs_metrics.optimistic("comment_delete", "rolled_back")
			logger.warning("comment delete rolled back comment_id=%s error=%s", comment_id, exc.__class__.__name__)
			raise
		else:
			obs_metrics.optimistic("comment_delete", "committed")
		finally:
			self._reconcile_comments(post_id)


__all__ = [
	"OptimisticMutationCoordinator",
	"VoteTransition",
	"apply_transition",
	"cached_feed_keys",
	"patch_cached_post",
	"toggle",
]
