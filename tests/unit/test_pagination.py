import pytest

from nearfeed.domain.feed.exceptions import InvalidCoordinate
from nearfeed.domain.feed.models import VOTES, CachePage, SearchContext, Vote
from nearfeed.domain.feed.pagination import PaginatedQueryEngine
from nearfeed.domain.feed.signals import SessionState
from nearfeed.infra.store import WriteBatch

CENTER = (40.7128, -74.0060)
FAR_AWAY = (41.8781, -87.6298)


@pytest.fixture
def context():
    return SearchContext.create(*CENTER)


@pytest.fixture
def engine(repo, cache, session, clock):
    return PaginatedQueryEngine(repo, cache, session, clock=clock)


@pytest.mark.asyncio
async def test_full_raw_page_reports_more_even_when_mostly_filtered(engine, context, make_post, seed_posts):
    near = make_post(CENTER[0] + 0.001, CENTER[1])
    far = [make_post(*FAR_AWAY) for _ in range(19)]
    await seed_posts(near, *far)

    result = await engine.fetch_page(context)

    assert [post.id for post in result.posts] == [near.id]
    assert result.raw_count == 20
    assert result.has_more is True
    assert result.next_cursor is not None


@pytest.mark.asyncio
async def test_expired_and_inactive_posts_are_excluded(engine, context, make_post, seed_posts):
    live = make_post()
    expired = make_post(minutes_ago=60 * 24 * 8)
    hidden = make_post(is_active=False)
    await seed_posts(live, expired, hidden)

    result = await engine.fetch_page(context)

    assert [post.id for post in result.posts] == [live.id]
    assert result.has_more is False


@pytest.mark.asyncio
async def test_cursor_continues_after_the_last_raw_document(engine, context, make_post, seed_posts):
    posts = [make_post() for _ in range(25)]
    await seed_posts(*posts)

    first = await engine.fetch_page(context)
    second = await engine.fetch_page(context, first.next_cursor)

    assert len(first.posts) == 20 and first.has_more
    assert len(second.posts) == 5 and not second.has_more
    assert not {p.id for p in first.posts} & {p.id for p in second.posts}
    # Soonest expiry first
    expiries = [p.expires_at for p in first.posts + second.posts]
    assert expiries == sorted(expiries)


@pytest.mark.asyncio
async def test_posts_carry_the_viewer_vote(engine, context, make_post, seed_posts, store, user, now):
    voted, other = make_post(), make_post()
    await seed_posts(voted, other)
    vote = Vote(id="vote-1", voter_id=user.id, post_id=voted.id, direction="down", created_at=now)
    await store.commit(WriteBatch().set(VOTES, vote.id, vote.to_document()))

    result = await engine.fetch_page(context)

    by_id = {post.id: post for post in result.posts}
    assert by_id[voted.id].has_user_voted == "down"
    assert by_id[other.id].has_user_voted is None


@pytest.mark.asyncio
async def test_anonymous_viewer_has_no_vote_state(repo, cache, clock, context, make_post, seed_posts):
    await seed_posts(make_post())
    engine = PaginatedQueryEngine(repo, cache, SessionState(), clock=clock)
    result = await engine.fetch_page(context)
    assert result.posts[0].has_user_voted is None


@pytest.mark.asyncio
async def test_invalid_context_fails_before_querying(engine):
    with pytest.raises(InvalidCoordinate):
        await engine.fetch_page(SearchContext(91.0, 0.0, 5.0))


@pytest.mark.asyncio
async def test_refresh_then_load_more_builds_the_page_chain(engine, context, make_post, seed_posts):
    await seed_posts(*[make_post() for _ in range(21)])

    pages = await engine.refresh(context)
    assert len(pages) == 1 and pages[0].has_more

    appended = await engine.load_more(context)
    assert appended is not None and len(appended.posts) == 1
    assert [len(page.posts) for page in engine.cached_pages(context)] == [20, 1]
    assert await engine.load_more(context) is None


@pytest.mark.asyncio
async def test_load_more_drops_page_when_chain_was_replaced(engine, context, cache, make_post, seed_posts, monkeypatch):
    await seed_posts(*[make_post() for _ in range(21)])
    await engine.refresh(context)
    replacement = [CachePage(posts=[], has_more=False, cursor=None)]
    original_fetch = engine.fetch_page

    async def fetch_then_replace(ctx, cursor=None):
        result = await original_fetch(ctx, cursor)
        cache.set(ctx.cache_key(), replacement)
        return result

    monkeypatch.setattr(engine, "fetch_page", fetch_then_replace)

    assert await engine.load_more(context) is None
    assert cache.get(context.cache_key()) is replacement


@pytest.mark.asyncio
async def test_author_feed_lists_only_that_author(engine, make_post, seed_posts):
    mine = [make_post(author_id="me") for _ in range(3)]
    await seed_posts(*mine, make_post(author_id="someone-else"), make_post(author_id="me", is_active=False))

    page = await engine.load_author_posts("me")

    assert [post.id for post in page.posts] == [post.id for post in sorted(mine, key=lambda p: p.created_at, reverse=True)]
    assert page.has_more is False


def test_search_context_rounding_shares_cache_keys():
    a = SearchContext.create(40.712811, -74.006019)
    b = SearchContext.create(40.712849, -74.005951)
    assert a == b
    assert a.cache_key() == ("posts", "nearby", 40.7128, -74.006, 5.0)
    assert SearchContext.create(40.7128, -74.006, 2.499).radius_km == 2.5
    assert a.center.latitude == pytest.approx(40.7128)
