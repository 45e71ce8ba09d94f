import asyncio

import pytest
import pytest_asyncio

from nearfeed.domain.feed.exceptions import ValidationError
from nearfeed.domain.feed.models import POSTS, USERS, AuthenticatedUser
from nearfeed.domain.feed.schemas import CreatePostRequest
from nearfeed.domain.feed.signals import AppLifecycle, ConnectivityMonitor, SessionState
from nearfeed.engine import FeedEngine
from nearfeed.infra.storage import RedisKeyValueStorage
from nearfeed.infra.store import Query


@pytest_asyncio.fixture
async def engine(store, clock):
    feed_engine = FeedEngine(
        store,
        RedisKeyValueStorage(),
        session=SessionState(),
        connectivity=ConnectivityMonitor(connected=False),
        lifecycle=AppLifecycle("background"),
        clock=clock,
    )
    feed_engine.start()
    try:
        yield feed_engine
    finally:
        await feed_engine.aclose()


def _request() -> CreatePostRequest:
    return CreatePostRequest(content="Street fair today", latitude=40.7128, longitude=-74.0060)


@pytest.mark.asyncio
async def test_location_and_radius_form_the_context(engine):
    assert engine.current_context() is None
    context = engine.set_location(40.712811, -74.006019)
    assert (context.latitude, context.longitude, context.radius_km) == (40.7128, -74.006, 5.0)
    assert engine.set_search_radius(2.0).radius_km == 2.0
    with pytest.raises(ValidationError):
        engine.set_search_radius(-1)


@pytest.mark.asyncio
async def test_watch_requires_a_location(engine):
    with pytest.raises(ValidationError):
        await engine.watch_nearby(lambda posts: None)


@pytest.mark.asyncio
async def test_sign_in_creates_the_profile(engine, store):
    profile = await engine.sign_in(AuthenticatedUser(id="user-9", display_name="Grace"))
    assert profile.display_name == "Grace"
    assert (await store.get(USERS, "user-9")).data["notes_count"] == 0


@pytest.mark.asyncio
async def test_offline_post_is_published_on_reconnect(engine, store):
    await engine.sign_in(AuthenticatedUser(id="user-9", display_name="Grace"))

    assert await engine.publish(_request()) is None
    assert await store.query(Query(POSTS)) == []

    await asyncio.gather(*engine.connectivity.set_connected(True))

    posts = await store.query(Query(POSTS))
    assert [doc.data["content"] for doc in posts] == ["Street fair today"]
    assert all(record.synced for record in await engine.offline.records())


@pytest.mark.asyncio
async def test_lifecycle_drives_the_poller(engine):
    assert not engine.poller.running
    engine.set_location(40.7128, -74.0060)

    await asyncio.gather(*engine.lifecycle.set_state("active"))
    assert engine.poller.running

    await asyncio.gather(*engine.lifecycle.set_state("background"))
    assert not engine.poller.running
