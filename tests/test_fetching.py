import pytest
import respx
from httpx import Response

from context_search.constants import REDDIT_BASE, REDDIT_SEARCH_URL
from context_search.errors import QueryValidationError, UpstreamRequestError
from context_search.fetching import RedditSearcher, _post_from_listing


def _child(pid, ups=1, comments=0, **extra):
    data = {
        "id": pid,
        "name": f"t3_{pid}",
        "title": f"Title {pid}",
        "subreddit": "learnpython",
        "author": "someone",
        "url": f"https://example.com/{pid}?ref=x#frag",
        "permalink": f"/r/learnpython/comments/{pid}/title/",
        "selftext": "body text",
        "ups": ups,
        "num_comments": comments,
        "upvote_ratio": 0.95,
        "created_utc": 1_700_000_000,
        "thumbnail": "self",
    }
    data.update(extra)
    return {"kind": "t3", "data": data}


def _listing(children, after=None):
    return {"kind": "Listing", "data": {"after": after, "children": children}}


class TestPostFromListing:
    def test_maps_fields(self):
        post = _post_from_listing(_child("abc", ups=42, comments=7)["data"])
        assert post is not None
        assert post.id == "t3_abc"
        assert post.upvotes == 42
        assert post.comments == 7
        assert post.link == "https://example.com/abc?ref=x"
        assert post.thumbnail is None
        assert post.upvote_ratio == 0.95

    def test_id_falls_back_to_prefixed_id(self):
        data = _child("xyz")["data"]
        del data["name"]
        assert _post_from_listing(data).id == "t3_xyz"

    def test_missing_id_is_skipped(self):
        assert _post_from_listing({"title": "no id"}) is None

    def test_defaults_for_missing_fields(self):
        post = _post_from_listing({"name": "t3_q", "permalink": "/r/x/comments/q/t/"})
        assert post.title == "Untitled Post"
        assert post.author == "deleted"
        assert post.link == "https://www.reddit.com/r/x/comments/q/t"
        assert post.snippet == ""

    def test_snippet_truncated(self):
        post = _post_from_listing(_child("s", selftext="x" * 5000)["data"])
        assert len(post.snippet) == 1000


@pytest.mark.asyncio
@respx.mock
async def test_search_paginates_dedups_and_sorts(fake_sleep):
    route = respx.get(REDDIT_SEARCH_URL).mock(
        side_effect=[
            Response(200, json=_listing([_child("a", ups=5), _child("b", ups=50)], after="t3_b")),
            Response(200, json=_listing([_child("b", ups=50), _child("c", ups=20)])),
        ]
    )

    async with RedditSearcher(sleep=fake_sleep) as searcher:
        posts = await searcher.search("python async", sort="top", time_range="week")

    assert [p.id for p in posts] == ["t3_b", "t3_c", "t3_a"]
    assert route.call_count == 2
    first = route.calls[0].request.url.params
    assert first["q"] == "python async"
    assert first["sort"] == "top"
    assert first["t"] == "week"
    assert first["type"] == "link"
    assert route.calls[1].request.url.params["after"] == "t3_b"
    assert "User-Agent" in route.calls[0].request.headers


@pytest.mark.asyncio
@respx.mock
async def test_search_stops_at_max_pages(fake_sleep):
    route = respx.get(REDDIT_SEARCH_URL).mock(
        return_value=Response(200, json=_listing([_child("a")], after="next"))
    )
    async with RedditSearcher(sleep=fake_sleep, max_pages=2) as searcher:
        await searcher.search("q")
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_search_truncates_to_limit(fake_sleep):
    respx.get(REDDIT_SEARCH_URL).mock(
        return_value=Response(200, json=_listing([_child(str(i), ups=i) for i in range(10)]))
    )
    async with RedditSearcher(sleep=fake_sleep) as searcher:
        posts = await searcher.search("q", limit=3)
    assert [p.upvotes for p in posts] == [9, 8, 7]


@pytest.mark.asyncio
@respx.mock
async def test_search_retries_server_errors(fake_sleep):
    respx.get(REDDIT_SEARCH_URL).mock(
        side_effect=[Response(503), Response(200, json=_listing([_child("a")]))]
    )
    async with RedditSearcher(sleep=fake_sleep) as searcher:
        posts = await searcher.search("q")
    assert len(posts) == 1
    assert fake_sleep.delays == [1.0]


@pytest.mark.asyncio
@respx.mock
async def test_search_rate_limit_waits_fixed_delay_despite_retry_after(fake_sleep):
    respx.get(REDDIT_SEARCH_URL).mock(
        side_effect=[
            Response(429, headers={"retry-after": "0"}),
            Response(200, json=_listing([_child("a")])),
        ]
    )
    async with RedditSearcher(sleep=fake_sleep) as searcher:
        posts = await searcher.search("q")
    assert len(posts) == 1
    assert fake_sleep.delays == [5.0]


@pytest.mark.asyncio
@respx.mock
async def test_search_forbidden_is_not_retried(fake_sleep):
    route = respx.get(REDDIT_SEARCH_URL).mock(return_value=Response(403))
    async with RedditSearcher(sleep=fake_sleep) as searcher:
        with pytest.raises(UpstreamRequestError):
            await searcher.search("q")
    assert route.call_count == 1


@pytest.mark.asyncio
async def test_search_rejects_bad_parameters():
    async with RedditSearcher() as searcher:
        with pytest.raises(QueryValidationError):
            await searcher.search("q", sort="random")
        with pytest.raises(QueryValidationError):
            await searcher.search("q", time_range="decade")


@pytest.mark.asyncio
@respx.mock
async def test_get_details_returns_top_comments(fake_sleep):
    comments = {
        "data": {
            "children": [
                {"kind": "t1", "data": {"body": "First!"}},
                {"kind": "t1", "data": {"body": "[deleted]"}},
                {"kind": "more", "data": {}},
                {"kind": "t1", "data": {"body": "Second"}},
            ]
        }
    }
    route = respx.get(f"{REDDIT_BASE}/r/py/comments/abc/title.json").mock(
        return_value=Response(200, json=[_listing([]), comments])
    )

    async with RedditSearcher(sleep=fake_sleep) as searcher:
        text = await searcher.get_details("https://www.reddit.com/r/py/comments/abc/title/")

    assert text == "First!\n---\nSecond"
    assert route.calls[0].request.url.params["sort"] == "top"


@pytest.mark.asyncio
@respx.mock
async def test_get_details_failure_returns_empty(fake_sleep):
    respx.get(f"{REDDIT_BASE}/r/py/comments/abc/title.json").mock(
        return_value=Response(404)
    )
    async with RedditSearcher(sleep=fake_sleep) as searcher:
        assert await searcher.get_details("/r/py/comments/abc/title/") == ""
        assert await searcher.get_details("") == ""
