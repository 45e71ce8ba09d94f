"""Periodic feed refresh that only fires after the user actually moved."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Callable, Optional

from nearfeed.domain.feed.models import SearchContext
from nearfeed.domain.feed.pagination import PaginatedQueryEngine
from nearfeed.domain.feed.proximity import distance_km
from nearfeed.obs import metrics as obs_metrics
from nearfeed.settings import Settings, settings

logger = logging.getLogger(__name__)

LocationSource = Callable[[], Optional[SearchContext]]


class DistanceThrottledPoller:
	def __init__(
		self,
		pagination: PaginatedQueryEngine,
		location: LocationSource,
		*,
		config: Settings = settings,
	) -> None:
		self._pagination = pagination
		self._location = location
		self._interval = config.poll_interval_seconds
		self._min_distance_m = config.poll_min_distance_m
		self._last: Optional[SearchContext] = None
		self._task: Optional[asyncio.Task] = None

	@property
	def running(self) -> bool:
		return self._task is not None and not self._task.done()

	def start(self) -> None:
		if self.running:
			return
		self._task = asyncio.create_task(self._loop(), name="feed-poller")

	def stop(self) -> None:
		task, self._task = self._task, None
		if task is not None and not task.done():
			task.cancel()

	async def check(self, *, wait: bool = False) -> bool:
		"""Invalidate the current feed if the location moved far enough; returns whether it did.

		With ``wait`` the call returns only once the refetch it started has landed.
		"""
		context = self._location()
		if context is None:
			obs_metrics.poller_check("no_location")
			return False
		last = self._last
		if last is not None and last.radius_km == context.radius_km:
			moved_m = distance_km(last.center, context.center) * 1000.0
			if moved_m < self._min_distance_m:
				obs_metrics.poller_check("skipped")
				return False
		tasks = self._pagination.invalidate(context)
		self._last = context
		obs_metrics.poller_check("invalidated")
		logger.debug("poller invalidated feed", extra={"search_context": context.label()})
		if wait and tasks:
			await asyncio.gather(*tasks)
		return True

	async def _loop(self) -> None:
		while True:
			await asyncio.sleep(self._interval)
			try:
				await self.check()
			except asyncio.CancelledError:
				raise
			except Exception:
				obs_metrics.poller_check("error")
				logger.exception("poller check failed")

	async def on_foreground(self) -> None:
		self.start()
		await self.check()

	async def on_background(self) -> None:
		self.stop()

	async def aclose(self) -> None:
		task, self._task = self._task, None
		if task is None:
			return
		task.cancel()
		with suppress(asyncio.CancelledError):
			await task


__all__ = ["DistanceThrottledPoller", "LocationSource"]
