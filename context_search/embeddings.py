from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from typing import Optional

import httpx
import numpy as np
from numpy.typing import NDArray
from sklearn.metrics.pairwise import cosine_similarity as sk_cosine_similarity

from context_search.concurrency import ConcurrencyLimiter
from context_search.constants import (
    EMBEDDING_MAX_CONCURRENT,
    EMBEDDING_SNIPPET_CHARS,
    EMBEDDING_TIMEOUT,
    HF_API_URL,
    INTENT_HOW_TO,
    INTENT_PROBLEM,
    INTENT_STORY,
    INTENT_TREND,
    SEMANTIC_THRESHOLD_DEFAULT,
    SEMANTIC_THRESHOLDS,
    SIMILARITY_MAX,
    SIMILARITY_MIN,
)
from context_search.errors import (
    ContextSearchError,
    UpstreamRequestError,
    UpstreamUnavailable,
)
from context_search.models import Post
from context_search.retry import (
    EMBEDDING_RETRY_POLICY,
    RetryPolicy,
    call_with_retry,
    classify_response,
)

logger = logging.getLogger(__name__)


class EmbeddingClient:
    """Batched text embeddings from the HuggingFace inference API.

    Every call is admitted through a shared ``ConcurrencyLimiter`` sized to
    the provider's concurrency allowance, then retried per the embedding
    policy.
    """

    def __init__(
        self,
        api_key: Optional[str],
        limiter: Optional[ConcurrencyLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        url: str = HF_API_URL,
        policy: RetryPolicy = EMBEDDING_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.api_key = api_key
        self.limiter = limiter or ConcurrencyLimiter(EMBEDDING_MAX_CONCURRENT)
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            timeout=EMBEDDING_TIMEOUT
        )
        self.url = url
        self.policy = policy
        self._sleep = sleep

    async def _request(self, texts: list[str]) -> NDArray[np.float64]:
        resp = await self.client.post(
            self.url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={"inputs": texts, "options": {"wait_for_model": True}},
        )
        if resp.status_code != 200:
            raise classify_response(resp, "embeddings")

        try:
            vectors = np.asarray(resp.json(), dtype=np.float64)
        except (ValueError, TypeError) as e:
            raise UpstreamUnavailable(
                "embeddings returned a malformed payload", service="embeddings"
            ) from e
        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise UpstreamUnavailable(
                f"embeddings returned shape {vectors.shape} for {len(texts)} inputs",
                service="embeddings",
            )
        return vectors

    async def embed(self, texts: Sequence[str]) -> NDArray[np.float64]:
        if not texts:
            return np.zeros((0, 0), dtype=np.float64)
        if not self.api_key:
            raise UpstreamRequestError("Missing HF_API_KEY", service="embeddings")

        batch = list(texts)

        async def _call() -> NDArray[np.float64]:
            return await call_with_retry(
                lambda: self._request(batch),
                self.policy,
                label="embeddings",
                sleep=self._sleep,
            )

        return await self.limiter.run(_call)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


def cosine_similarities(
    query: NDArray[np.floating], matrix: NDArray[np.floating]
) -> NDArray[np.float64]:
    """Cosine similarity of one vector against each row. Zero vectors score 0."""
    if matrix.size == 0:
        return np.zeros(0, dtype=np.float64)
    sims = sk_cosine_similarity(
        np.asarray(query, dtype=np.float64).reshape(1, -1),
        np.asarray(matrix, dtype=np.float64),
    )[0]
    return np.clip(sims, SIMILARITY_MIN, SIMILARITY_MAX)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise ValueError(f"Vector shapes differ: {va.shape} vs {vb.shape}")
    return float(cosine_similarities(va, vb.reshape(1, -1))[0])


_INTENT_ALIASES = {
    "how-to": INTENT_HOW_TO,
    "howto": INTENT_HOW_TO,
    "how_to": INTENT_HOW_TO,
    "how to": INTENT_HOW_TO,
    "story": INTENT_STORY,
    "trend": INTENT_TREND,
    "problem": INTENT_PROBLEM,
}

_INTENT_KEYWORDS: list[tuple[str, re.Pattern[str]]] = [
    (INTENT_HOW_TO, re.compile(r"\b(how (to|do|can)|tutorial|guide|step[- ]by[- ]step|tips)\b", re.I)),
    (INTENT_STORY, re.compile(r"\b(story|stories|experience|happened|journey|confession)\b", re.I)),
    (INTENT_TREND, re.compile(r"\b(trend(s|ing)?|latest|new(est)?|20\d\d|popular|viral)\b", re.I)),
]


def normalize_intent(intent: Optional[str]) -> Optional[str]:
    if not intent:
        return None
    return _INTENT_ALIASES.get(intent.strip().lower())


def classify_intent(query: str) -> str:
    """Coarse query-style label from keywords. Defaults to ``problem``."""
    for label, pattern in _INTENT_KEYWORDS:
        if pattern.search(query):
            return label
    return INTENT_PROBLEM


def adaptive_threshold(intent: Optional[str]) -> float:
    label = normalize_intent(intent)
    if label is None:
        return SEMANTIC_THRESHOLD_DEFAULT
    return SEMANTIC_THRESHOLDS[label]


def embedding_text(post: Post) -> str:
    return f"{post.title} {post.snippet[:EMBEDDING_SNIPPET_CHARS]}".strip()


class SemanticFilter:
    """Keeps posts whose embedding is close enough to the query's.

    With ``fail_closed`` (the default) an embedding failure yields no posts,
    so unverified content never reaches the scoring stage. Fail-open returns
    the candidates unscored instead.
    """

    def __init__(self, embedder: EmbeddingClient, fail_closed: bool = True) -> None:
        self.embedder = embedder
        self.fail_closed = fail_closed

    async def filter(
        self,
        posts: Sequence[Post],
        query: str,
        intent: Optional[str] = INTENT_PROBLEM,
        threshold: Optional[float] = None,
    ) -> list[Post]:
        if not posts:
            return []

        cutoff = adaptive_threshold(intent) if threshold is None else threshold
        texts = [query, *(embedding_text(p) for p in posts)]

        try:
            vectors = await self.embedder.embed(texts)
        except ContextSearchError as e:
            if self.fail_closed:
                logger.error(f"Semantic filter failed, dropping {len(posts)} candidates: {e}")
                return []
            logger.warning(f"Semantic filter failed, passing {len(posts)} candidates unscored: {e}")
            return list(posts)

        scores = cosine_similarities(vectors[0], vectors[1:])
        kept = [
            post.enrich(semantic_score=float(score))
            for post, score in zip(posts, scores)
            if score >= cutoff
        ]
        logger.info(
            "Semantic filter kept %d/%d posts (threshold %.2f)",
            len(kept),
            len(posts),
            cutoff,
        )
        return kept
