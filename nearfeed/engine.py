"""Composition root wiring the feed services to host signals."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from nearfeed import obs
from nearfeed.domain.feed.cache import FeedCache
from nearfeed.domain.feed.exceptions import ValidationError
from nearfeed.domain.feed.models import AuthenticatedUser, Post, SearchContext, UserProfile, utcnow
from nearfeed.domain.feed.mutations import OptimisticMutationCoordinator
from nearfeed.domain.feed.offline import OfflineSyncQueue
from nearfeed.domain.feed.pagination import PaginatedQueryEngine
from nearfeed.domain.feed.policy import ensure_coordinate, ensure_radius
from nearfeed.domain.feed.poller import DistanceThrottledPoller
from nearfeed.domain.feed.realtime import RealtimeMergeEngine, Subscription, UpdateCallback
from nearfeed.domain.feed.repo import FeedRepository
from nearfeed.domain.feed.schemas import CreatePostRequest
from nearfeed.domain.feed.service import PostService
from nearfeed.domain.feed.signals import AppLifecycle, ConnectivityMonitor, SessionState
from nearfeed.infra.storage import KeyValueStorage
from nearfeed.infra.store import DocumentStore
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)

_VOTES_PREFIX: tuple = ("votes",)


class FeedEngine:
	"""Owns the feed cache and every service that reads or writes it.

	The host application supplies the store, durable storage and the three
	signal sources, then calls ``start()``. ``aclose()`` cancels live
	subscriptions, the poller and every tracked background task.
	"""

	def __init__(
		self,
		store: DocumentStore,
		storage: KeyValueStorage,
		*,
		session: Optional[SessionState] = None,
		connectivity: Optional[ConnectivityMonitor] = None,
		lifecycle: Optional[AppLifecycle] = None,
		config: Settings = settings,
		clock: Callable[[], datetime] = utcnow,
	) -> None:
		self.config = config
		self.session = session or SessionState()
		self.connectivity = connectivity or ConnectivityMonitor()
		self.lifecycle = lifecycle or AppLifecycle()
		self.cache = FeedCache()
		self.repo = FeedRepository(store)
		self.pagination = PaginatedQueryEngine(self.repo, self.cache, self.session, config=config, clock=clock)
		self.realtime = RealtimeMergeEngine(self.repo, self.cache, self.session, config=config, clock=clock)
		self.mutations = OptimisticMutationCoordinator(self.repo, self.cache, self.session, config=config, clock=clock)
		self.posts = PostService(self.repo, self.cache, self.session, config=config, clock=clock)
		self.offline = OfflineSyncQueue(
			storage,
			self.posts.create_post,
			self.connectivity,
			validate=self.posts.validate,
			config=config,
			clock=clock,
		)
		self.poller = DistanceThrottledPoller(self.pagination, self.current_context, config=config)
		self._clock = clock
		self._latitude: Optional[float] = None
		self._longitude: Optional[float] = None
		self._radius_km = config.default_search_radius_km
		self._disconnects: list[Callable[[], None]] = []
		self._started = False

	# --- location ---
	def set_location(self, latitude: float, longitude: float) -> SearchContext:
		ensure_coordinate(latitude, longitude)
		self._latitude, self._longitude = latitude, longitude
		return self.current_context()

	def set_search_radius(self, radius_km: float) -> Optional[SearchContext]:
		ensure_radius(radius_km)
		self._radius_km = radius_km
		return self.current_context()

	def current_context(self) -> Optional[SearchContext]:
		if self._latitude is None or self._longitude is None:
			return None
		return SearchContext.create(self._latitude, self._longitude, self._radius_km, config=self.config)

	def _require_context(self) -> SearchContext:
		context = self.current_context()
		if context is None:
			raise ValidationError("location_required")
		return context

	# --- session ---
	async def sign_in(self, user: AuthenticatedUser) -> UserProfile:
		self.session.sign_in(user)
		self.cache.invalidate(prefix=_VOTES_PREFIX)
		return await self.repo.ensure_profile(user, self._clock())

	def sign_out(self) -> None:
		self.session.sign_out()
		for key in self.cache.keys(_VOTES_PREFIX):
			self.cache.remove(key)

	# --- feed entry points ---
	async def watch_nearby(self, on_update: UpdateCallback) -> Subscription:
		return await self.realtime.subscribe(self._require_context(), on_update)

	async def publish(self, request: CreatePostRequest) -> Optional[Post]:
		"""Create a post now, or queue it when offline; ``None`` means it was queued."""
		if not self.connectivity.connected:
			await self.offline.enqueue(request)
			return None
		return await self.posts.create_post(request)

	# --- lifecycle ---
	async def _on_reconnected(self) -> None:
		await self.offline.drain()

	async def _on_foreground(self) -> None:
		await self.poller.on_foreground()
		await self.offline.drain()

	async def _on_background(self) -> None:
		await self.poller.on_background()

	def start(self) -> None:
		if self._started:
			return
		self._started = True
		obs.init()
		self._disconnects = [
			self.connectivity.reconnected.connect(self._on_reconnected),
			self.lifecycle.foreground.connect(self._on_foreground),
			self.lifecycle.background.connect(self._on_background),
		]
		if self.lifecycle.is_active:
			self.poller.start()
		logger.info("feed engine started")

	async def aclose(self) -> None:
		for disconnect in self._disconnects:
			disconnect()
		self._disconnects = []
		await self.poller.aclose()
		await self.realtime.aclose()
		await self.offline.aclose()
		await self.cache.aclose()
		self._started = False
		logger.info("feed engine closed")


__all__ = ["FeedEngine"]
