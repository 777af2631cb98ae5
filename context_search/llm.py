from __future__ import annotations

import asyncio
import json
import logging
import math
import re
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from aiolimiter import AsyncLimiter

from context_search.concurrency import gather_outcomes
from context_search.constants import (
    CHAT_TIMEOUT,
    GROQ_CHAT_URL,
    LLM_EXPANSION_TEMPERATURE,
    LLM_HTTP_USER_AGENT,
    LLM_MAX_EXPANDED_QUERIES,
    LLM_MODEL,
    LLM_REQUEST_WINDOW,
    LLM_REQUESTS_PER_WINDOW,
    LLM_SCORING_TEMPERATURE,
    RELEVANCE_MAX,
    RELEVANCE_MIN,
    SCORING_BATCH_SIZE,
    SCORING_FALLBACK_SCORE,
    SCORING_SNIPPET_CHARS,
)
from context_search.embeddings import classify_intent, normalize_intent
from context_search.errors import (
    ModelOutputParseError,
    UpstreamRateLimited,
    UpstreamRequestError,
    UpstreamUnavailable,
)
from context_search.llm_utils import (
    build_messages,
    build_payload,
    extract_json_value,
    sanitize_prompt_text,
)
from context_search.models import Post, RateLimitSnapshot, latest_snapshot
from context_search.retry import (
    CHAT_RETRY_POLICY,
    RetryPolicy,
    call_with_retry,
    classify_response,
)

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DAILY_QUOTA_MARKERS = ("tokens per day", " tpd", "requests per day", " rpd")


def parse_reset_duration(value: Optional[str]) -> Optional[float]:
    """Seconds from a Groq reset header (``2m59.56s``, ``850ms``, ``12``)."""
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    total = 0.0
    matched = False
    for amount, unit in _DURATION_PART.findall(value):
        matched = True
        n = float(amount)
        if unit == "ms":
            total += n / 1000
        elif unit == "h":
            total += n * 3600
        elif unit == "m":
            total += n * 60
        else:
            total += n
    return total if matched else None


def _header_int(headers: Mapping[str, str], name: str) -> Optional[int]:
    raw = headers.get(name)
    if raw is None:
        return None
    try:
        return int(float(raw))
    except ValueError:
        return None


def parse_rate_limit(
    headers: Mapping[str, str], observed_at: float
) -> Optional[RateLimitSnapshot]:
    """Request-budget telemetry from ``x-ratelimit-*-requests`` headers."""
    remaining = _header_int(headers, "x-ratelimit-remaining-requests")
    limit = _header_int(headers, "x-ratelimit-limit-requests")
    reset_in = parse_reset_duration(headers.get("x-ratelimit-reset-requests"))
    if remaining is None or limit is None:
        return None
    return RateLimitSnapshot.from_reset_in(
        remaining=max(0, remaining),
        limit=max(0, limit),
        reset_in_seconds=reset_in or 0.0,
        observed_at=observed_at,
    )


@dataclass
class ChatResult:
    content: str
    rate_limit: Optional[RateLimitSnapshot] = None


class GroqChatClient:
    """OpenAI-compatible chat completions against Groq, in JSON mode."""

    def __init__(
        self,
        api_key: Optional[str],
        client: Optional[httpx.AsyncClient] = None,
        model: str = LLM_MODEL,
        limiter: Optional[AsyncLimiter] = None,
        policy: RetryPolicy = CHAT_RETRY_POLICY,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            timeout=CHAT_TIMEOUT
        )
        self.model = model
        self.limiter = limiter or AsyncLimiter(
            LLM_REQUESTS_PER_WINDOW, LLM_REQUEST_WINDOW
        )
        self.policy = policy
        self._clock = clock
        self._sleep = sleep

    async def _request(self, payload: dict[str, object]) -> ChatResult:
        async with self.limiter:
            resp = await self.client.post(
                GROQ_CHAT_URL,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "User-Agent": LLM_HTTP_USER_AGENT,
                },
                json=payload,
            )
        snapshot = parse_rate_limit(resp.headers, self._clock())

        if resp.status_code == 200:
            try:
                data = resp.json()
                content = data["choices"][0]["message"]["content"]
            except (ValueError, KeyError, IndexError, TypeError) as e:
                raise UpstreamUnavailable(
                    "groq returned a malformed completion", service="groq"
                ) from e
            return ChatResult(content=content or "", rate_limit=snapshot)

        err = classify_response(resp, "groq")
        if isinstance(err, UpstreamRateLimited):
            detail = (err.details or "").lower()
            if any(marker in detail for marker in _DAILY_QUOTA_MARKERS):
                err.retryable = False
        raise err

    async def chat(
        self, messages: list[dict[str, str]], temperature: float
    ) -> ChatResult:
        if not self.api_key:
            raise UpstreamRequestError("Missing GROQ_API_KEY", service="groq")
        payload = build_payload(self.model, messages, temperature)
        return await call_with_retry(
            lambda: self._request(payload),
            self.policy,
            label="groq",
            sleep=self._sleep,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


@dataclass
class Expansion:
    """Up to three search phrasings derived from one user query."""

    queries: list[str]
    intent: str
    rate_limit: Optional[RateLimitSnapshot] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "queries": list(self.queries),
            "intent": self.intent,
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> Expansion:
        rate_limit = d.get("rate_limit")
        return cls(
            queries=[str(q) for q in d.get("queries", [])],
            intent=str(d.get("intent", "")),
            rate_limit=RateLimitSnapshot.from_dict(rate_limit) if rate_limit else None,
        )


EXPANSION_SYSTEM_PROMPT = "You are a Reddit Search Expert."


def _expansion_prompt(query: str) -> str:
    return f"""
Translate this query into 3 boolean search queries for Reddit search and
classify the kind of content the user is after.
User Query: "{query}"

Output JSON format:
{{
  "queries": [
    "Broad query with OR",
    "Specific field target query",
    "Problem solving query"
  ],
  "intent": "how-to | story | trend | problem"
}}
"""


def parse_expansion(content: str, query: str) -> tuple[list[str], str]:
    """Queries and intent from the model's reply, falling back to ``[query]``."""
    try:
        parsed = extract_json_value(content)
    except ModelOutputParseError as e:
        logger.warning(f"Query expansion unparseable, using raw query: {e}")
        return [query], classify_intent(query)

    raw_queries: object = None
    intent: Optional[str] = None
    if isinstance(parsed, dict):
        raw_queries = parsed.get("queries")
        raw_intent = parsed.get("intent")
        intent = normalize_intent(raw_intent) if isinstance(raw_intent, str) else None
    elif isinstance(parsed, list):
        raw_queries = parsed

    queries: list[str] = []
    if isinstance(raw_queries, list):
        for q in raw_queries:
            if isinstance(q, str) and q.strip() and q.strip() not in queries:
                queries.append(q.strip())
    if not queries:
        queries = [query]
    return queries[:LLM_MAX_EXPANDED_QUERIES], intent or classify_intent(query)


class QueryExpander:
    def __init__(self, chat: GroqChatClient) -> None:
        self.chat = chat

    async def expand(self, query: str) -> Expansion:
        prompt = _expansion_prompt(sanitize_prompt_text(query))
        result = await self.chat.chat(
            build_messages(EXPANSION_SYSTEM_PROMPT, prompt),
            LLM_EXPANSION_TEMPERATURE,
        )
        queries, intent = parse_expansion(result.content, query)
        logger.info(f"Expanded {query!r} into {len(queries)} queries ({intent})")
        return Expansion(queries=queries, intent=intent, rate_limit=result.rate_limit)


SCORING_SYSTEM_PROMPT = "You are a Viral Content Strategist."


def _scoring_prompt(query: str, batch: Sequence[Post]) -> str:
    simplified = [
        {
            "id": p.id,
            "title": sanitize_prompt_text(p.title),
            "subreddit": sanitize_prompt_text(p.subreddit),
            "snippet": sanitize_prompt_text(p.snippet[:SCORING_SNIPPET_CHARS]),
        }
        for p in batch
    ]
    return f"""
Rate each post 0-10 on Viral Potential & Relevance to the query.
Query: "{query}"

JSON Output: {{ "post_id": score }}
Posts:
{json.dumps(simplified)}
"""


def _coerce_score(value: object) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        score = float(value)
    elif isinstance(value, str):
        try:
            score = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(score):
        return None
    return min(RELEVANCE_MAX, max(RELEVANCE_MIN, score))


def parse_batch_scores(content: str, batch_ids: Sequence[str]) -> dict[str, float]:
    """Scores for the ids of one batch. Unparseable output yields no scores."""
    try:
        parsed = extract_json_value(content)
    except ModelOutputParseError as e:
        logger.warning(f"Relevance scores unparseable: {e}")
        return {}
    if isinstance(parsed, dict) and isinstance(parsed.get("scores"), dict):
        parsed = parsed["scores"]
    if not isinstance(parsed, dict):
        return {}

    scores: dict[str, float] = {}
    for pid in batch_ids:
        score = _coerce_score(parsed.get(pid))
        if score is not None:
            scores[pid] = score
    return scores


@dataclass
class ScoringResult:
    posts: list[Post]
    rate_limit: Optional[RateLimitSnapshot] = None
    failed_batches: int = 0


class RelevanceScorer:
    """Batched LLM relevance scoring with per-batch fault isolation.

    A failed batch gives each of its posts the neutral fallback score; posts
    the model left out of an otherwise good reply score 0.
    """

    def __init__(
        self,
        chat: GroqChatClient,
        batch_size: int = SCORING_BATCH_SIZE,
        fallback_score: float = SCORING_FALLBACK_SCORE,
    ) -> None:
        self.chat = chat
        self.batch_size = batch_size
        self.fallback_score = fallback_score

    async def _score_batch(
        self, batch: Sequence[Post], query: str
    ) -> tuple[dict[str, float], Optional[RateLimitSnapshot]]:
        result = await self.chat.chat(
            build_messages(SCORING_SYSTEM_PROMPT, _scoring_prompt(query, batch)),
            LLM_SCORING_TEMPERATURE,
        )
        return parse_batch_scores(result.content, [p.id for p in batch]), result.rate_limit

    async def score(self, posts: Sequence[Post], query: str) -> ScoringResult:
        if not posts:
            return ScoringResult(posts=[])

        clean_query = sanitize_prompt_text(query)
        batches = [
            list(posts[i : i + self.batch_size])
            for i in range(0, len(posts), self.batch_size)
        ]
        outcomes = await gather_outcomes(
            self._score_batch(batch, clean_query) for batch in batches
        )

        scores: dict[str, float] = {}
        snapshots: list[Optional[RateLimitSnapshot]] = []
        failed = 0
        for idx, (batch, outcome) in enumerate(zip(batches, outcomes)):
            if outcome.ok and outcome.value is not None:
                batch_scores, snapshot = outcome.value
                scores.update(batch_scores)
                snapshots.append(snapshot)
                continue
            failed += 1
            logger.error(
                "Scoring batch %d/%d failed, using fallback score %.1f: %s",
                idx + 1,
                len(batches),
                self.fallback_score,
                outcome.error,
            )
            for p in batch:
                scores[p.id] = self.fallback_score

        scored = [p.enrich(relevance_score=scores.get(p.id, 0.0)) for p in posts]
        return ScoringResult(
            posts=scored,
            rate_limit=latest_snapshot(*snapshots),
            failed_batches=failed,
        )
