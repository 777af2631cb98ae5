from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional, TypedDict, cast

import httpx

from context_search.constants import (
    DETAILS_FETCH_LIMIT,
    DETAILS_TOP_COMMENTS,
    REDDIT_BASE,
    REDDIT_SEARCH_URL,
    REDDIT_USER_AGENT,
    SEARCH_MAX_PAGES,
    SEARCH_PAGE_SIZE,
    SEARCH_RESULT_LIMIT,
    SEARCH_SORTS,
    SEARCH_TIME_RANGES,
    SEARCH_TIMEOUT,
    SNIPPET_MAX_CHARS,
)
from context_search.errors import (
    QueryValidationError,
    UpstreamError,
    UpstreamUnavailable,
)
from context_search.models import Post
from context_search.retry import (
    SEARCH_RETRY_POLICY,
    RetryPolicy,
    call_with_retry,
    classify_response,
)
from context_search.url_utils import normalize_url, permalink_path, permalink_url

logger = logging.getLogger(__name__)

_REMOVED_BODIES = {"[deleted]", "[removed]"}


class RedditListingPost(TypedDict, total=False):
    id: str
    name: str
    title: str
    subreddit: str
    author: str
    url: str
    permalink: str
    selftext: str
    ups: int
    num_comments: int
    upvote_ratio: float
    created_utc: float
    thumbnail: str


class RedditChild(TypedDict, total=False):
    kind: str
    data: dict[str, Any]


class RedditListing(TypedDict, total=False):
    after: Optional[str]
    children: list[RedditChild]


def _post_from_listing(p: RedditListingPost) -> Optional[Post]:
    post_id = p.get("name") or (f"t3_{p['id']}" if p.get("id") else "")
    if not post_id:
        return None

    permalink = p.get("permalink") or ""
    link = p.get("url") or (permalink_url(permalink) if permalink else "")
    thumbnail = p.get("thumbnail") or ""
    created = p.get("created_utc")
    ratio = p.get("upvote_ratio")

    return Post(
        id=post_id,
        title=p.get("title") or "Untitled Post",
        subreddit=p.get("subreddit") or "u/unknown",
        author=p.get("author") or "deleted",
        link=normalize_url(link),
        snippet=(p.get("selftext") or "")[:SNIPPET_MAX_CHARS],
        upvotes=int(p.get("ups") or 0),
        comments=int(p.get("num_comments") or 0),
        created_utc=float(created) if created is not None else None,
        thumbnail=thumbnail if thumbnail.startswith("http") else None,
        permalink=permalink or None,
        upvote_ratio=float(ratio) if ratio is not None else None,
    )


class RedditSearcher:
    """Paginated keyword search over Reddit's public JSON endpoints."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        policy: RetryPolicy = SEARCH_RETRY_POLICY,
        max_pages: int = SEARCH_MAX_PAGES,
        page_size: int = SEARCH_PAGE_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(SEARCH_TIMEOUT, connect=5.0),
        )
        self.policy = policy
        self.max_pages = max_pages
        self.page_size = page_size
        self._sleep = sleep

    async def _get_json(self, url: str, params: dict[str, str | int]) -> Any:
        async def _request() -> Any:
            resp = await self.client.get(
                url, params=params, headers={"User-Agent": REDDIT_USER_AGENT}
            )
            if resp.status_code != 200:
                raise classify_response(resp, "reddit")
            try:
                return resp.json()
            except ValueError as e:
                raise UpstreamUnavailable(
                    "reddit returned malformed JSON", service="reddit"
                ) from e

        return await call_with_retry(
            _request, self.policy, label="reddit", sleep=self._sleep
        )

    async def search(
        self,
        query: str,
        sort: str = "relevance",
        time_range: str = "all",
        limit: int = SEARCH_RESULT_LIMIT,
    ) -> list[Post]:
        if sort not in SEARCH_SORTS:
            raise QueryValidationError(f"Invalid sort parameter: {sort}")
        if time_range not in SEARCH_TIME_RANGES:
            raise QueryValidationError("Invalid time parameter")

        posts: list[Post] = []
        seen: set[str] = set()
        after: Optional[str] = None

        for page in range(self.max_pages):
            params: dict[str, str | int] = {
                "q": query,
                "limit": self.page_size,
                "sort": sort,
                "t": time_range,
                "type": "link",  # Only posts, no subreddits/users
                "include_over_18": "off",
                "raw_json": 1,
            }
            if after:
                params["after"] = after

            data = await self._get_json(REDDIT_SEARCH_URL, params)
            raw = data.get("data") if isinstance(data, dict) else None
            listing = cast(RedditListing, raw if isinstance(raw, dict) else {})
            children = listing.get("children") or []

            for child in children:
                post = _post_from_listing(
                    cast(RedditListingPost, child.get("data") or {})
                )
                if post is None or post.id in seen:
                    continue
                seen.add(post.id)
                posts.append(post)

            after = listing.get("after")
            logger.debug(
                f"Reddit page {page + 1} for {query!r}: {len(children)} hits"
            )
            if not after or not children:
                break

        posts.sort(key=lambda p: (p.upvotes, p.comments), reverse=True)
        return posts[:limit]

    async def get_details(
        self, permalink: str, top_k: int = DETAILS_TOP_COMMENTS
    ) -> str:
        """Top comment bodies for one post. Empty string on any failure."""
        path = permalink_path(permalink)
        if not path:
            return ""

        try:
            data = await self._get_json(
                f"{REDDIT_BASE}{path}.json",
                {"limit": DETAILS_FETCH_LIMIT, "sort": "top", "raw_json": 1},
            )
        except UpstreamError as e:
            logger.warning(f"Failed to fetch post details for {path}: {e}")
            return ""

        # data[0] is the post listing, data[1] the comments
        if not isinstance(data, list) or len(data) < 2 or not isinstance(data[1], dict):
            return ""
        children = (data[1].get("data") or {}).get("children") or []

        bodies: list[str] = []
        for c in children:
            if not isinstance(c, dict) or c.get("kind") != "t1":
                continue
            body = (c.get("data") or {}).get("body")
            if isinstance(body, str) and body.strip() and body not in _REMOVED_BODIES:
                bodies.append(body)
            if len(bodies) >= top_k:
                break
        return "\n---\n".join(bodies)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> RedditSearcher:
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
