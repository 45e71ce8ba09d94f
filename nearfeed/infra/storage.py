"""Durable key-value storage used for client-local state such as the offline queue."""

from __future__ import annotations

from typing import Optional, Protocol

from nearfeed.infra.redis import RedisProxy, redis_client


class KeyValueStorage(Protocol):
	async def get_item(self, key: str) -> Optional[str]: ...

	async def set_item(self, key: str, value: str) -> None: ...

	async def remove_item(self, key: str) -> None: ...


class RedisKeyValueStorage:
	"""String values stored under plain Redis keys."""

	def __init__(self, client: RedisProxy = redis_client) -> None:
		self._client = client

	async def get_item(self, key: str) -> Optional[str]:
		value = await self._client.get(key)
		if value is None:
			return None
		if isinstance(value, bytes):
			return value.decode("utf-8")
		return str(value)

	async def set_item(self, key: str, value: str) -> None:
		await self._client.set(key, value)

	async def remove_item(self, key: str) -> None:
		await self._client.delete(key)


__all__ = ["KeyValueStorage", "RedisKeyValueStorage"]
