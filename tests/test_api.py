import httpx
import pytest
from aiolimiter import AsyncLimiter
from fastapi.testclient import TestClient

from conftest import FakeClock, make_post
from context_search.cache import TwoTierCache, make_cache_key
from context_search.concurrency import ConcurrencyLimiter
from context_search.config import Settings
from context_search.embeddings import SemanticFilter
from context_search.errors import UpstreamTimeout
from context_search.llm import RelevanceScorer
from context_search.main import Services, create_app
from context_search.pipeline import ContextSearchPipeline
from context_search.rate_limit import InboundRateLimiter
from test_pipeline import FakeExpander, FakeSearcher, ScoreChat, UniformEmbedder


class BrokenExpander:
    def __init__(self, error):
        self.error = error

    async def expand(self, query):
        raise self.error


class CountingCache(TwoTierCache):
    def __init__(self):
        super().__init__()
        self.reads: list[str] = []

    async def get(self, key):
        self.reads.append(key)
        return await super().get(key)


class FakeServices(Services):
    def __init__(self, results, scores, expander=None):
        searcher = FakeSearcher(results)
        super().__init__(
            settings=Settings(),
            http=httpx.AsyncClient(),
            cache=TwoTierCache(),
            rate_limiter=InboundRateLimiter(2.0, clock=FakeClock()),
            embedding_limiter=ConcurrencyLimiter(2),
            llm_limiter=AsyncLimiter(30, 60),
            searcher=searcher,
            semantic_filter=SemanticFilter(UniformEmbedder()),
        )
        self.scores = scores
        self.expander = expander or FakeExpander(list(results))
        self.api_keys: list = []

    def pipeline(self, api_key=None):
        self.api_keys.append(api_key)
        return ContextSearchPipeline(
            searcher=self.searcher,
            expander=self.expander,
            semantic_filter=self.semantic_filter,
            scorer=RelevanceScorer(ScoreChat(self.scores)),
            cache=self.cache,
        )


@pytest.fixture
def services():
    posts = [make_post("t3_a", upvotes=50), make_post("t3_b", upvotes=5)]
    return FakeServices({"q1": posts}, {"t3_a": 9, "t3_b": 3})


@pytest.fixture
def client(services):
    with TestClient(create_app(services), raise_server_exceptions=False) as c:
        yield c


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


class TestContextFilter:
    def test_success(self, client):
        resp = client.post("/api/context/filter", json={"query": "best cat food"})

        assert resp.status_code == 200
        body = resp.json()
        assert [p["id"] for p in body["posts"]] == ["t3_a"]
        assert body["posts"][0]["relevance_score"] == 9.0
        assert "heuristic_score" not in body["posts"][0]
        assert body["query_context"] == ["q1"]
        assert body["filter_stats"] == {
            "input": 2,
            "semantic_pass": 2,
            "analyzed": 2,
            "output": 1,
        }
        assert body["cached"] is False

    def test_repeat_is_cached_and_not_rate_limited(self, client):
        first = client.post("/api/context/filter", json={"query": "cats"}).json()
        resp = client.post("/api/context/filter", json={"query": "cats"})

        assert resp.status_code == 200
        assert resp.json()["cached"] is True
        assert resp.json()["posts"] == first["posts"]

    @pytest.mark.parametrize("payload", [{}, {"query": "a"}, {"query": 5}, {"query": "x" * 250}])
    def test_invalid_query(self, client, payload):
        resp = client.post("/api/context/filter", json=payload)
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_cache_miss_reads_cache_once(self, services):
        services.cache = CountingCache()
        with TestClient(create_app(services)) as client:
            resp = client.post("/api/context/filter", json={"query": "cats"})

        assert resp.status_code == 200
        assert services.cache.reads == [make_cache_key("filter", "cats")]

    @pytest.mark.parametrize("path", ["/api/context/filter", "/api/context/intent"])
    @pytest.mark.parametrize(
        "body",
        [
            {},
            {"json": ["cats"]},
            {"content": b"not json", "headers": {"content-type": "application/json"}},
        ],
        ids=["missing", "not-an-object", "malformed"],
    )
    def test_bad_body_is_400(self, client, path, body):
        resp = client.post(path, **body)
        assert resp.status_code == 400
        assert resp.json() == {"error": "Query required"}

    def test_rate_limited(self, client):
        assert client.post("/api/context/filter", json={"query": "cats"}).status_code == 200
        resp = client.post("/api/context/filter", json={"query": "dogs"})

        assert resp.status_code == 429
        assert resp.json()["retry_after_ms"] == 2001
        assert int(resp.headers["Retry-After"]) >= 1

    def test_forwarded_identities_limited_separately(self, client):
        a = client.post(
            "/api/context/filter",
            json={"query": "cats"},
            headers={"x-forwarded-for": "10.0.0.1"},
        )
        b = client.post(
            "/api/context/filter",
            json={"query": "dogs"},
            headers={"x-forwarded-for": "10.0.0.2"},
        )
        assert a.status_code == b.status_code == 200

    def test_api_key_header_passed_through(self, client, services):
        client.post(
            "/api/context/filter",
            json={"query": "cats"},
            headers={"x-groq-api-key": "gsk-user"},
        )
        assert services.api_keys == ["gsk-user"]

    def test_upstream_timeout_maps_to_504(self):
        services = FakeServices(
            {"q1": []},
            {},
            expander=BrokenExpander(UpstreamTimeout("groq timed out", service="groq")),
        )
        with TestClient(create_app(services)) as client:
            resp = client.post("/api/context/filter", json={"query": "cats"})
        assert resp.status_code == 504
        assert resp.json()["error"] == "groq timed out"

    def test_unexpected_error_maps_to_500(self):
        services = FakeServices(
            {"q1": []}, {}, expander=BrokenExpander(KeyError("boom"))
        )
        with TestClient(create_app(services), raise_server_exceptions=False) as client:
            resp = client.post("/api/context/filter", json={"query": "cats"})
        assert resp.status_code == 500
        assert resp.json()["error"] == "Search Pipeline Failed"


def test_intent_endpoint(client):
    resp = client.post("/api/context/intent", json={"query": "how to cook rice"})
    assert resp.status_code == 200
    assert resp.json()["queries"] == ["q1"]
    assert resp.json()["intent"] == "problem"


class TestRedditSearch:
    def test_search_and_cache(self, client, services):
        first = client.get("/api/reddit", params={"keywords": "q1", "sort": "hot"})
        second = client.get("/api/reddit", params={"keywords": "q1", "sort": "hot"})

        assert first.status_code == 200
        body = first.json()
        assert body["total_results"] == 2
        assert body["sort"] == "hot"
        assert body["cached"] is False
        assert second.json()["cached"] is True
        assert services.searcher.calls == ["q1"]

    def test_unknown_sort_falls_back_to_top(self, client):
        resp = client.get("/api/reddit", params={"keywords": "q1", "sort": "weird"})
        assert resp.json()["sort"] == "top"

    def test_missing_keywords(self, client):
        resp = client.get("/api/reddit")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Keywords parameter is required"

    def test_keywords_too_long(self, client):
        resp = client.get("/api/reddit", params={"keywords": "k" * 201})
        assert resp.status_code == 400
