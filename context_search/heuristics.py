"""Cross-query deduplication and the cheap engagement/recency pre-rank."""

from __future__ import annotations

import math
import time
from collections import Counter
from collections.abc import Sequence
from typing import Optional

from context_search.constants import (
    HEURISTIC_CANDIDATE_CAP,
    HEURISTIC_COMMENT_WEIGHT,
    HEURISTIC_DEFAULT_UPVOTE_RATIO,
)
from context_search.models import Post


def build_frequency(query_results: Sequence[Sequence[Post]]) -> Counter[str]:
    """Number of distinct query result lists each post id appears in."""
    frequency: Counter[str] = Counter()
    for posts in query_results:
        # A query that returns the same id twice still counts once
        frequency.update({p.id for p in posts})
    return frequency


def deduplicate(query_results: Sequence[Sequence[Post]]) -> list[Post]:
    """Flatten per-query results, keeping the first occurrence of each id.

    Each survivor carries ``frequency_bonus`` = appearances - 1. How much the
    bonus weighs is left to downstream stages.
    """
    frequency = build_frequency(query_results)
    unique: dict[str, Post] = {}
    for posts in query_results:
        for post in posts:
            if post.id not in unique:
                unique[post.id] = post.enrich(
                    frequency_bonus=frequency.get(post.id, 1) - 1
                )
    return list(unique.values())


def _finite_or(value: Optional[float], default: float) -> float:
    if value is None:
        return default
    try:
        v = float(value)
    except (TypeError, ValueError):
        return default
    return v if math.isfinite(v) else default


def heuristic_score(post: Post, now: Optional[float] = None) -> float:
    """(upvotes * ratio + comments * 2) / max(1, log10(hours_old + 1)).

    Missing ratio counts as 0.5, a missing timestamp as "now". Never returns
    NaN, infinity or a negative number.
    """
    now = time.time() if now is None else now
    upvotes = _finite_or(post.upvotes, 0.0)
    comments = _finite_or(post.comments, 0.0)
    ratio = _finite_or(post.upvote_ratio, HEURISTIC_DEFAULT_UPVOTE_RATIO)
    created = _finite_or(post.created_utc, now)

    hours_ago = max(0.0, (now - created) / 3600)
    recency_penalty = max(1.0, math.log10(hours_ago + 1))

    score = (upvotes * ratio + comments * HEURISTIC_COMMENT_WEIGHT) / recency_penalty
    if not math.isfinite(score) or score < 0:
        return 0.0
    return score


def pre_rank(
    posts: Sequence[Post],
    cap: int = HEURISTIC_CANDIDATE_CAP,
    now: Optional[float] = None,
) -> list[Post]:
    """Attach heuristic scores and keep the ``cap`` best for costly scoring."""
    now = time.time() if now is None else now
    scored = [p.enrich(heuristic_score=heuristic_score(p, now)) for p in posts]
    scored.sort(key=lambda p: p.heuristic_score or 0.0, reverse=True)
    return scored[:cap]
