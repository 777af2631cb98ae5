"""Typed data models for Reddit context search."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Optional, TypedDict

from context_search.constants import (
    RELEVANCE_MAX,
    RELEVANCE_MIN,
    SIMILARITY_MAX,
    SIMILARITY_MIN,
)


class PostDict(TypedDict, total=False):
    """Serialized Post payload for caching and API boundaries."""

    id: str
    title: str
    subreddit: str
    author: str
    link: str
    snippet: str
    upvotes: int
    comments: int
    created_utc: Optional[float]
    thumbnail: Optional[str]
    permalink: Optional[str]
    upvote_ratio: Optional[float]
    frequency_bonus: Optional[int]
    semantic_score: Optional[float]
    heuristic_score: Optional[float]
    relevance_score: Optional[float]


class FilterStatsDict(TypedDict):
    input: int
    semantic_pass: int
    analyzed: int
    output: int


class RateLimitDict(TypedDict):
    remaining: int
    limit: int
    reset_at: float
    observed_at: float
    reset_in_seconds: float


@dataclass
class Post:
    """A Reddit post, enriched additively as it moves through the pipeline."""

    id: str
    title: str
    subreddit: str = ""
    author: str = "deleted"
    link: str = ""
    snippet: str = ""
    upvotes: int = 0
    comments: int = 0
    created_utc: Optional[float] = None
    thumbnail: Optional[str] = None
    permalink: Optional[str] = None
    upvote_ratio: Optional[float] = None
    # Enrichment, one field per stage
    frequency_bonus: Optional[int] = None  # Extra query appearances (dedup)
    semantic_score: Optional[float] = None  # Cosine similarity to the query
    heuristic_score: Optional[float] = None  # Engagement/recency pre-rank
    relevance_score: Optional[float] = None  # LLM score, 0-10

    def enrich(self, **fields: Any) -> Post:
        """Return a copy with enrichment fields set, validated to their ranges."""
        if "frequency_bonus" in fields:
            bonus = int(fields["frequency_bonus"])
            if bonus < 0:
                raise ValueError(f"frequency_bonus must be >= 0, got {bonus}")
            fields["frequency_bonus"] = bonus
        if "semantic_score" in fields:
            fields["semantic_score"] = _clip(
                fields["semantic_score"], SIMILARITY_MIN, SIMILARITY_MAX
            )
        if "heuristic_score" in fields:
            h = float(fields["heuristic_score"])
            fields["heuristic_score"] = h if math.isfinite(h) and h > 0 else 0.0
        if "relevance_score" in fields:
            fields["relevance_score"] = _clip(
                fields["relevance_score"], RELEVANCE_MIN, RELEVANCE_MAX
            )
        return replace(self, **fields)

    @classmethod
    def from_dict(cls, d: PostDict) -> Post:
        """Create Post from dict (e.g., from cache/API response)."""
        return cls(
            id=str(d.get("id", "")),
            title=str(d.get("title", "")),
            subreddit=str(d.get("subreddit", "")),
            author=str(d.get("author", "deleted")),
            link=str(d.get("link", "")),
            snippet=str(d.get("snippet", "")),
            upvotes=int(d.get("upvotes", 0) or 0),
            comments=int(d.get("comments", 0) or 0),
            created_utc=d.get("created_utc"),
            thumbnail=d.get("thumbnail"),
            permalink=d.get("permalink"),
            upvote_ratio=d.get("upvote_ratio"),
            frequency_bonus=d.get("frequency_bonus"),
            semantic_score=d.get("semantic_score"),
            heuristic_score=d.get("heuristic_score"),
            relevance_score=d.get("relevance_score"),
        )

    def to_dict(self) -> PostDict:
        """Serialize for API responses. The heuristic pre-rank stays internal."""
        data = asdict(self)
        data.pop("heuristic_score", None)
        return data  # type: ignore[return-value]


def _clip(value: Any, lo: float, hi: float) -> float:
    v = float(value)
    if math.isnan(v):
        return lo
    return min(hi, max(lo, v))


@dataclass
class FilterStats:
    input: int = 0
    semantic_pass: int = 0
    analyzed: int = 0
    output: int = 0

    def to_dict(self) -> FilterStatsDict:
        return {
            "input": self.input,
            "semantic_pass": self.semantic_pass,
            "analyzed": self.analyzed,
            "output": self.output,
        }


@dataclass(frozen=True)
class RateLimitSnapshot:
    """Provider rate-limit telemetry observed on one response."""

    remaining: int
    limit: int
    reset_at: float  # Absolute epoch seconds
    observed_at: float  # Epoch seconds when the headers were read

    @property
    def used(self) -> int:
        return max(0, self.limit - self.remaining)

    @property
    def reset_in_seconds(self) -> float:
        return max(0.0, self.reset_at - self.observed_at)

    @classmethod
    def from_reset_in(
        cls, remaining: int, limit: int, reset_in_seconds: float, observed_at: float
    ) -> RateLimitSnapshot:
        return cls(
            remaining=remaining,
            limit=limit,
            reset_at=observed_at + max(0.0, reset_in_seconds),
            observed_at=observed_at,
        )

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> RateLimitSnapshot:
        return cls(
            remaining=int(d["remaining"]),
            limit=int(d["limit"]),
            reset_at=float(d["reset_at"]),
            observed_at=float(d["observed_at"]),
        )

    def to_dict(self) -> RateLimitDict:
        return {
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_at,
            "observed_at": self.observed_at,
            "reset_in_seconds": self.reset_in_seconds,
        }


def latest_snapshot(
    *snapshots: Optional[RateLimitSnapshot],
) -> Optional[RateLimitSnapshot]:
    """Most recently observed snapshot, ignoring missing ones."""
    present = [s for s in snapshots if s is not None]
    if not present:
        return None
    return max(present, key=lambda s: s.observed_at)


@dataclass
class SearchResponse:
    """Final pipeline output, also the payload stored in the cache."""

    posts: list[Post]
    query_context: list[str]
    filter_stats: FilterStats = field(default_factory=FilterStats)
    cached: bool = False
    rate_limit: Optional[RateLimitSnapshot] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "posts": [p.to_dict() for p in self.posts],
            "query_context": list(self.query_context),
            "filter_stats": self.filter_stats.to_dict(),
            "cached": self.cached,
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> SearchResponse:
        stats = d.get("filter_stats") or {}
        rate_limit = d.get("rate_limit")
        return cls(
            posts=[Post.from_dict(p) for p in d.get("posts", [])],
            query_context=[str(q) for q in d.get("query_context", [])],
            filter_stats=FilterStats(
                input=int(stats.get("input", 0)),
                semantic_pass=int(stats.get("semantic_pass", 0)),
                analyzed=int(stats.get("analyzed", 0)),
                output=int(stats.get("output", 0)),
            ),
            cached=bool(d.get("cached", False)),
            rate_limit=RateLimitSnapshot.from_dict(rate_limit) if rate_limit else None,
        )
