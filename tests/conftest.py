import pytest

from context_search.models import Post


def make_post(pid: str = "t3_a", **kwargs) -> Post:
    defaults = {
        "title": f"Post {pid}",
        "subreddit": "python",
        "author": "someone",
        "link": f"https://www.reddit.com/r/python/comments/{pid}/",
        "snippet": "",
        "upvotes": 10,
        "comments": 2,
        "created_utc": 1_700_000_000.0,
        "upvote_ratio": 0.9,
    }
    defaults.update(kwargs)
    return Post(id=pid, **defaults)


@pytest.fixture
def post_factory():
    return make_post


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class RecordingSleep:
    """Stands in for asyncio.sleep in retry loops and records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def fake_sleep():
    return RecordingSleep()
