"""Shared Redis client for the document store and the offline queue storage.

Modules hold on to ``redis_client`` at import time, so it is a proxy whose
target can be replaced later (fakeredis in tests, a differently configured
client in a host application) without re-importing anything.
"""

from __future__ import annotations

import redis.asyncio as redis

from nearfeed.settings import settings


class RedisProxy:
	def __init__(self, client: redis.Redis):
		self._client: redis.Redis = client

	@property
	def client(self) -> redis.Redis:
		return self._client

	def set_client(self, client: redis.Redis) -> None:
		self._client = client

	def __getattr__(self, item):
		# Only reached for names the proxy itself does not define
		return getattr(self._client, item)


redis_client: RedisProxy = RedisProxy(redis.from_url(settings.redis_url, decode_responses=True))


def set_redis_client(client: redis.Redis) -> None:
	redis_client.set_client(client)


__all__ = ["RedisProxy", "redis_client", "set_redis_client"]
