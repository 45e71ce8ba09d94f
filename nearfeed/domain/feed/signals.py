"""Host-driven signals: auth session, connectivity and app lifecycle.

The host application feeds state changes in; the engine subscribes listeners
that run as tracked tasks so a failing listener is logged instead of breaking
the emitter.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Awaitable, Callable, Literal, Optional

from nearfeed.domain.feed.models import AuthenticatedUser

logger = logging.getLogger(__name__)

Listener = Callable[[], Awaitable[None]]
AppState = Literal["active", "background"]


class Signal:
	def __init__(self, name: str) -> None:
		self.name = name
		self._listeners: list[Listener] = []
		self._tasks: set[asyncio.Task] = set()

	def connect(self, listener: Listener) -> Callable[[], None]:
		self._listeners.append(listener)

		def disconnect() -> None:
			with suppress(ValueError):
				self._listeners.remove(listener)

		return disconnect

	def emit(self) -> list[asyncio.Task]:
		tasks = []
		for listener in list(self._listeners):
			task = asyncio.create_task(self._run(listener), name=f"signal:{self.name}")
			self._tasks.add(task)
			task.add_done_callback(self._tasks.discard)
			tasks.append(task)
		return tasks

	async def _run(self, listener: Listener) -> None:
		try:
			await listener()
		except asyncio.CancelledError:
			raise
		except Exception:
			logger.exception("signal listener failed signal=%s", self.name)

	async def aclose(self) -> None:
		tasks = list(self._tasks)
		self._tasks.clear()
		for task in tasks:
			task.cancel()
		for task in tasks:
			with suppress(asyncio.CancelledError):
				await task


class SessionState:
	"""Holds the signed-in user; ``None`` means no auth context."""

	def __init__(self, user: Optional[AuthenticatedUser] = None) -> None:
		self.user = user

	def sign_in(self, user: AuthenticatedUser) -> None:
		self.user = user

	def sign_out(self) -> None:
		self.user = None


class ConnectivityMonitor:
	def __init__(self, connected: bool = True) -> None:
		self._connected = connected
		self.reconnected = Signal("reconnected")

	@property
	def connected(self) -> bool:
		return self._connected

	def set_connected(self, connected: bool) -> list[asyncio.Task]:
		previous = self._connected
		self._connected = connected
		if connected and not previous:
			logger.info("connectivity restored")
			return self.reconnected.emit()
		if previous and not connected:
			logger.info("connectivity lost")
		return []

	async def aclose(self) -> None:
		await self.reconnected.aclose()


class AppLifecycle:
	def __init__(self, state: AppState = "active") -> None:
		self._state: AppState = state
		self.foreground = Signal("foreground")
		self.background = Signal("background")

	@property
	def state(self) -> AppState:
		return self._state

	@property
	def is_active(self) -> bool:
		return self._state == "active"

	def set_state(self, state: AppState) -> list[asyncio.Task]:
		previous = self._state
		self._state = state
		if state == previous:
			return []
		if state == "active":
			return self.foreground.emit()
		return self.background.emit()

	async def aclose(self) -> None:
		await self.foreground.aclose()
		await self.background.aclose()


__all__ = ["AppLifecycle", "AppState", "ConnectivityMonitor", "SessionState", "Signal"]
