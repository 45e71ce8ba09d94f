"""Typed access to the feed collections of the document store."""

from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Optional, Sequence

from nearfeed.domain.feed.models import (
	COMMENTS,
	POSTS,
	USERS,
	VOTES,
	AuthenticatedUser,
	Comment,
	Post,
	UserProfile,
	Vote,
	to_millis,
)
from nearfeed.infra.store import DocumentStore, Query, WriteBatch
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import settings


def active_posts_query(now: datetime, limit: int) -> Query:
	"""Active, unexpired posts ordered by expiry then newest first."""
	return (
		Query(POSTS)
		.where("is_active", "==", True)
		.where("expires_at", ">", to_millis(now))
		.order("expires_at")
		.order("created_at", descending=True)
		.limited(limit)
	)


def author_posts_query(author_id: str, limit: int) -> Query:
	return (
		Query(POSTS)
		.where("author_id", "==", author_id)
		.where("is_active", "==", True)
		.order("created_at", descending=True)
		.limited(limit)
	)


def comments_query(post_id: str, limit: int) -> Query:
	return Query(COMMENTS).where("post_id", "==", post_id).order("created_at", descending=True).limited(limit)


class FeedRepository:
	def __init__(self, store: DocumentStore) -> None:
		self.store = store

	async def get_post(self, post_id: str) -> Optional[Post]:
		doc = await self.store.get(POSTS, post_id)
		return Post.from_document(doc.data) if doc else None

	async def get_comment(self, comment_id: str) -> Optional[Comment]:
		doc = await self.store.get(COMMENTS, comment_id)
		return Comment.from_document(doc.data) if doc else None

	async def get_user(self, user_id: str) -> Optional[UserProfile]:
		doc = await self.store.get(USERS, user_id)
		return UserProfile.from_document(doc.data) if doc else None

	def new_profile(self, user: AuthenticatedUser, now: datetime) -> UserProfile:
		name = user.display_name or settings.anonymous_display_name
		return UserProfile(
			id=user.id,
			username=name,
			email="",
			display_name=name,
			avatar_url=user.avatar_url,
			created_at=now,
			last_active_at=now,
		)

	async def ensure_profile(self, user: AuthenticatedUser, now: datetime) -> UserProfile:
		"""Create the user document on first sign-in, otherwise touch ``last_active_at``."""
		profile = await self.get_user(user.id)
		if profile is None:
			profile = self.new_profile(user, now)
			await self.store.commit(WriteBatch().set(USERS, user.id, profile.to_document()))
			return profile
		await self.store.commit(WriteBatch().update(USERS, user.id, {"last_active_at": to_millis(now)}))
		return dataclasses.replace(profile, last_active_at=now)

	async def bump_profile(self, batch: WriteBatch, user: AuthenticatedUser, now: datetime, **increments: int) -> None:
		"""Add profile counter increments to ``batch``, creating the document if needed."""
		if await self.get_user(user.id) is not None:
			batch.update(USERS, user.id, increments=increments)
			return
		data = self.new_profile(user, now).to_document()
		for name, delta in increments.items():
			data[name] = max(delta, 0)
		batch.set(USERS, user.id, data)

	async def get_user_vote(self, voter_id: str, post_id: str) -> Optional[Vote]:
		query = Query(VOTES).where("voter_id", "==", voter_id).where("post_id", "==", post_id).limited(1)
		docs = await self.store.query(query)
		obs_metrics.inc_vote_lookup()
		return Vote.from_document(docs[0].data) if docs else None

	async def with_vote_state(self, posts: Sequence[Post], user: Optional[AuthenticatedUser]) -> list[Post]:
		"""Attach ``has_user_voted`` with one vote lookup per post."""
		if user is None:
			return [dataclasses.replace(post, has_user_voted=None) for post in posts]
		enriched: list[Post] = []
		for post in posts:
			vote = await self.get_user_vote(user.id, post.id)
			enriched.append(dataclasses.replace(post, has_user_voted=vote.direction if vote else None))
		return enriched


__all__ = [
	"FeedRepository",
	"active_posts_query",
	"author_posts_query",
	"comments_query",
]
