import asyncio
import dataclasses

import pytest

from nearfeed.domain.feed.cache import FeedCache
from nearfeed.domain.feed.models import POSTS, VOTES, SearchContext
from nearfeed.domain.feed.realtime import RealtimeMergeEngine
from nearfeed.domain.feed.repo import FeedRepository
from nearfeed.infra.store import Document, apply_query

CENTER = (40.7128, -74.0060)


class _Handle:
    def __init__(self, store: "_StubStore") -> None:
        self._store = store

    async def close(self) -> None:
        self._store.closed += 1


class _StubStore:
    """In-memory store whose pushes are driven by the test."""

    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict]] = {POSTS: {}, VOTES: {}}
        self.subscriptions = []
        self.closed = 0
        self.vote_gate: asyncio.Event | None = None

    def new_id(self) -> str:  # pragma: no cover - not used here
        return "id"

    async def get(self, collection, doc_id):  # pragma: no cover - not used here
        data = self.collections[collection].get(doc_id)
        return Document(doc_id, dict(data)) if data else None

    async def query(self, query):
        if query.collection == VOTES and self.vote_gate is not None:
            await self.vote_gate.wait()
        docs = [Document(doc_id, dict(data)) for doc_id, data in self.collections[query.collection].items()]
        return apply_query(query, docs)

    async def commit(self, batch):  # pragma: no cover - not used here
        raise NotImplementedError

    async def subscribe(self, query, on_snapshot):
        self.subscriptions.append((query, on_snapshot))
        return _Handle(self)

    def put(self, post) -> None:
        self.collections[POSTS][post.id] = post.to_document()

    async def push(self) -> None:
        for query, on_snapshot in list(self.subscriptions):
            await on_snapshot(await self.query(query))


@pytest.fixture
def stub_store():
    return _StubStore()


@pytest.fixture
def engine(stub_store, cache, session, clock):
    return RealtimeMergeEngine(FeedRepository(stub_store), cache, session, clock=clock)


@pytest.fixture
def context():
    return SearchContext.create(*CENTER)


@pytest.mark.asyncio
async def test_push_replaces_first_page_with_nearby_posts(engine, stub_store, cache, context, make_post):
    near = make_post()
    far = make_post(41.8781, -87.6298)
    stub_store.put(near)
    stub_store.put(far)
    updates = []

    await engine.subscribe(context, updates.append)
    await stub_store.push()

    pages = cache.get(context.cache_key())
    assert len(pages) == 1
    assert [post.id for post in pages[0].posts] == [near.id]
    assert pages[0].has_more is False and pages[0].cursor is None
    assert [[post.id for post in batch] for batch in updates] == [[near.id]]
    assert stub_store.subscriptions[0][0].limit == 50


@pytest.mark.asyncio
async def test_identical_redelivery_is_a_no_op(engine, stub_store, cache, context, make_post):
    post = make_post()
    stub_store.put(post)
    updates = []
    await engine.subscribe(context, updates.append)

    await stub_store.push()
    first_pages = cache.get(context.cache_key())
    await stub_store.push()

    assert len(updates) == 1
    assert cache.get(context.cache_key()) is first_pages

    stub_store.put(dataclasses.replace(post, upvotes=3))
    await stub_store.push()
    assert len(updates) == 2
    assert cache.get(context.cache_key())[0].posts[0].upvotes == 3


@pytest.mark.asyncio
async def test_dispose_is_idempotent_and_stops_writes(engine, stub_store, cache, context, make_post):
    stub_store.put(make_post())
    updates = []
    unsubscribe = await engine.subscribe(context, updates.append)

    unsubscribe()
    unsubscribe()
    await asyncio.sleep(0)
    await stub_store.push()

    assert stub_store.closed == 1
    assert not cache.has(context.cache_key())
    assert updates == []
    assert not engine.is_live(context)


@pytest.mark.asyncio
async def test_push_in_flight_during_dispose_is_discarded(engine, stub_store, cache, context, make_post):
    stub_store.put(make_post())
    stub_store.vote_gate = asyncio.Event()
    updates = []
    unsubscribe = await engine.subscribe(context, updates.append)

    push = asyncio.create_task(stub_store.push())
    await asyncio.sleep(0)
    unsubscribe()
    stub_store.vote_gate.set()
    await push

    assert not cache.has(context.cache_key())
    assert updates == []


@pytest.mark.asyncio
async def test_same_context_shares_one_store_subscription(engine, stub_store, context, make_post):
    stub_store.put(make_post())
    first, second = [], []
    unsubscribe_first = await engine.subscribe(context, first.append)
    await engine.subscribe(context, second.append)

    assert len(stub_store.subscriptions) == 1

    unsubscribe_first()
    await stub_store.push()
    await asyncio.sleep(0)

    assert first == []
    assert len(second) == 1
    assert stub_store.closed == 0
    await engine.aclose()
    assert stub_store.closed == 1


@pytest.mark.asyncio
async def test_failing_listener_does_not_block_others(engine, stub_store, context, make_post):
    stub_store.put(make_post())
    received = []

    def broken(posts):
        raise RuntimeError("listener bug")

    await engine.subscribe(context, broken)
    await engine.subscribe(context, received.append)
    await stub_store.push()

    assert len(received) == 1


@pytest.mark.asyncio
async def test_contexts_do_not_share_cache_entries(stub_store, session, clock, make_post):
    cache = FeedCache()
    engine = RealtimeMergeEngine(FeedRepository(stub_store), cache, session, clock=clock)
    stub_store.put(make_post())
    wide = SearchContext.create(*CENTER, radius_km=10)
    narrow = SearchContext.create(*CENTER, radius_km=1)
    await engine.subscribe(wide, lambda posts: None)
    await engine.subscribe(narrow, lambda posts: None)

    assert len(stub_store.subscriptions) == 2
    await stub_store.push()
    assert cache.has(wide.cache_key()) and cache.has(narrow.cache_key())
    await engine.aclose()
