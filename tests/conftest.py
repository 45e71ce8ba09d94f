from datetime import datetime, timedelta, timezone
from itertools import count

import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from nearfeed.domain.feed.cache import FeedCache
from nearfeed.domain.feed.geohash import GeohashIndexer
from nearfeed.domain.feed.models import POSTS, AuthenticatedUser, Post
from nearfeed.domain.feed.repo import FeedRepository
from nearfeed.domain.feed.signals import SessionState
from nearfeed.infra.redis_store import RedisDocumentStore
from nearfeed.infra.store import WriteBatch
from nearfeed.settings import settings

FIXED_NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)
CENTER = (40.7128, -74.0060)


@pytest_asyncio.fixture(autouse=True)
async def fake_redis():
	from nearfeed.infra.redis import redis_client, set_redis_client
	original = redis_client.client
	client = FakeRedis(decode_responses=True)
	set_redis_client(client)
	try:
		yield client
	finally:
		await client.flushall()
		set_redis_client(original)


@pytest.fixture(autouse=True)
def force_test_settings():
	"""Keep log output readable and sampling off while tests run."""
	original_env = settings.environment
	original_rate = settings.obs_log_sampling_rate_info
	settings.environment = "test"
	settings.obs_log_sampling_rate_info = 1.0
	try:
		yield
	finally:
		settings.environment = original_env
		settings.obs_log_sampling_rate_info = original_rate


@pytest.fixture
def now() -> datetime:
	return FIXED_NOW


@pytest.fixture
def clock(now):
	return lambda: now


@pytest.fixture
def store() -> RedisDocumentStore:
	return RedisDocumentStore()


@pytest.fixture
def repo(store) -> FeedRepository:
	return FeedRepository(store)


@pytest.fixture
def user() -> AuthenticatedUser:
	return AuthenticatedUser(id="user-1", display_name="Ada")


@pytest.fixture
def session(user) -> SessionState:
	return SessionState(user)


@pytest_asyncio.fixture
async def cache():
	feed_cache = FeedCache()
	try:
		yield feed_cache
	finally:
		await feed_cache.aclose()


@pytest.fixture
def make_post(now):
	indexer = GeohashIndexer()
	sequence = count()

	def _make(
		latitude: float = CENTER[0],
		longitude: float = CENTER[1],
		*,
		author_id: str = "author-1",
		minutes_ago: int | None = None,
		is_active: bool = True,
		expires_in: timedelta = timedelta(days=7),
		**overrides,
	) -> Post:
		index = next(sequence)
		created = now - timedelta(minutes=index if minutes_ago is None else minutes_ago)
		cell_id = indexer.encode(latitude, longitude)
		fields = dict(
			id=f"post-{index:03d}",
			author_id=author_id,
			author_name="Author",
			content=f"post number {index}",
			latitude=latitude,
			longitude=longitude,
			cell_id=cell_id,
			cell_prefix_chain=indexer.prefix_chain(cell_id),
			created_at=created,
			expires_at=created + expires_in,
			is_active=is_active,
		)
		fields.update(overrides)
		return Post(**fields)

	return _make


@pytest.fixture
def seed_posts(store):
	async def _seed(*posts: Post) -> None:
		batch = WriteBatch()
		for post in posts:
			batch.set(POSTS, post.id, post.to_document())
		await store.commit(batch)

	return _seed
