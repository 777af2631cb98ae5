"""Multi-stage retrieval and ranking: expand, search, dedup, filter, score."""

from __future__ import annotations

import logging
import re
from typing import Optional

from context_search.cache import TwoTierCache, make_cache_key
from context_search.concurrency import gather_outcomes
from context_search.constants import (
    CACHE_TTL_QUERY_EXPANSION,
    CACHE_TTL_SEARCH_RESULTS,
    HEURISTIC_CANDIDATE_CAP,
    QUERY_MAX_LENGTH,
    QUERY_MIN_LENGTH,
    SCORING_MIN_RELEVANCE,
    SEARCH_RESULT_LIMIT,
)
from context_search.embeddings import SemanticFilter
from context_search.errors import QueryValidationError
from context_search.fetching import RedditSearcher
from context_search.heuristics import deduplicate, pre_rank
from context_search.llm import Expansion, QueryExpander, RelevanceScorer
from context_search.models import (
    FilterStats,
    Post,
    SearchResponse,
    latest_snapshot,
)

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[<>"]')


def validate_query(raw: object) -> str:
    if not isinstance(raw, str):
        raise QueryValidationError("Query required")
    query = _UNSAFE_CHARS.sub("", raw.strip())
    if len(query) < QUERY_MIN_LENGTH:
        raise QueryValidationError("Query too short")
    if len(query) > QUERY_MAX_LENGTH:
        raise QueryValidationError(
            f"Query must be at most {QUERY_MAX_LENGTH} characters"
        )
    return query


class ContextSearchPipeline:
    def __init__(
        self,
        searcher: RedditSearcher,
        expander: QueryExpander,
        semantic_filter: SemanticFilter,
        scorer: RelevanceScorer,
        cache: TwoTierCache,
        *,
        heuristic_cap: int = HEURISTIC_CANDIDATE_CAP,
        min_relevance: float = SCORING_MIN_RELEVANCE,
        per_query_limit: int = SEARCH_RESULT_LIMIT,
    ) -> None:
        self.searcher = searcher
        self.expander = expander
        self.semantic_filter = semantic_filter
        self.scorer = scorer
        self.cache = cache
        self.heuristic_cap = heuristic_cap
        self.min_relevance = min_relevance
        self.per_query_limit = per_query_limit

    async def cached_response(self, query: str) -> Optional[SearchResponse]:
        cached = await self.cache.get(make_cache_key("filter", query))
        if not cached:
            return None
        response = SearchResponse.from_dict(cached)
        response.cached = True
        return response

    async def expand_cached(self, query: str) -> Expansion:
        key = make_cache_key("intent", query)
        cached = await self.cache.get(key)
        if cached:
            return Expansion.from_dict(cached)
        expansion = await self.expander.expand(query)
        self.cache.set(key, expansion.to_dict(), CACHE_TTL_QUERY_EXPANSION)
        return expansion

    async def _search_all(self, queries: list[str]) -> list[list[Post]]:
        outcomes = await gather_outcomes(
            self.searcher.search(q, sort="relevance", limit=self.per_query_limit)
            for q in queries
        )
        results: list[list[Post]] = []
        for q, outcome in zip(queries, outcomes):
            if outcome.ok and outcome.value is not None:
                results.append(outcome.value)
            else:
                logger.warning(f"Search for {q!r} failed, continuing without it: {outcome.error}")
                results.append([])
        return results

    async def run(self, query: str, *, use_cache: bool = True) -> SearchResponse:
        """Answer ``query`` end to end.

        Callers that already looked the query up pass ``use_cache=False`` so
        the cache is read only once per request.
        """
        if use_cache:
            cached = await self.cached_response(query)
            if cached is not None:
                logger.info(f"Cache hit for {query!r}")
                return cached

        expansion = await self.expander.expand(query)
        queries = expansion.queries

        query_results = await self._search_all(queries)
        unique = deduplicate(query_results)
        stats = FilterStats(input=len(unique))
        logger.info(
            "Collected %d raw / %d unique posts across %d queries",
            sum(len(r) for r in query_results),
            len(unique),
            len(queries),
        )
        if not unique:
            return SearchResponse(
                posts=[],
                query_context=queries,
                filter_stats=stats,
                rate_limit=expansion.rate_limit,
            )

        relevant = await self.semantic_filter.filter(unique, query, expansion.intent)
        stats.semantic_pass = len(relevant)
        if not relevant:
            return SearchResponse(
                posts=[],
                query_context=queries,
                filter_stats=stats,
                rate_limit=expansion.rate_limit,
            )

        candidates = pre_rank(relevant, cap=self.heuristic_cap)
        stats.analyzed = len(candidates)

        scoring = await self.scorer.score(candidates, query)
        final = sorted(
            (
                p
                for p in scoring.posts
                if (p.relevance_score or 0.0) >= self.min_relevance
            ),
            key=lambda p: p.relevance_score or 0.0,
            reverse=True,
        )
        stats.output = len(final)

        response = SearchResponse(
            posts=final,
            query_context=queries,
            filter_stats=stats,
            rate_limit=latest_snapshot(expansion.rate_limit, scoring.rate_limit),
        )
        if final:
            self.cache.set(
                make_cache_key("filter", query),
                response.to_dict(),
                CACHE_TTL_SEARCH_RESULTS,
            )
        return response
