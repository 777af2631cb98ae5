from __future__ import annotations

import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from aiolimiter import AsyncLimiter
from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from context_search.cache import MemoryStore, RemoteStore, TwoTierCache, make_cache_key
from context_search.concurrency import ConcurrencyLimiter
from context_search.config import Settings
from context_search.constants import (
    CACHE_TTL_SEARCH_RESULTS,
    EMBEDDING_MAX_CONCURRENT,
    LLM_REQUEST_WINDOW,
    LLM_REQUESTS_PER_WINDOW,
    QUERY_MAX_LENGTH,
    SEARCH_RESULT_LIMIT,
    SEARCH_TIMEOUT,
)
from context_search.embeddings import EmbeddingClient, SemanticFilter
from context_search.errors import ClientRateLimited, ContextSearchError, QueryValidationError
from context_search.fetching import RedditSearcher
from context_search.llm import GroqChatClient, QueryExpander, RelevanceScorer
from context_search.logging_config import configure_logging, get_logger
from context_search.pipeline import ContextSearchPipeline, validate_query
from context_search.rate_limit import InboundRateLimiter, client_identity

logger = get_logger(__name__)


@dataclass
class Services:
    """Process-wide collaborators, built once at startup and shared by requests."""

    settings: Settings
    http: httpx.AsyncClient
    cache: TwoTierCache
    rate_limiter: InboundRateLimiter
    embedding_limiter: ConcurrencyLimiter
    llm_limiter: AsyncLimiter
    searcher: RedditSearcher
    semantic_filter: SemanticFilter

    @classmethod
    def build(cls, settings: Settings) -> Services:
        http = httpx.AsyncClient(
            follow_redirects=True, timeout=httpx.Timeout(SEARCH_TIMEOUT, connect=5.0)
        )
        remote = (
            RemoteStore(settings.redis_rest_url, settings.redis_rest_token, client=http)
            if settings.remote_cache_enabled
            else None
        )
        embedding_limiter = ConcurrencyLimiter(EMBEDDING_MAX_CONCURRENT)
        embedder = EmbeddingClient(
            settings.hf_api_key, limiter=embedding_limiter, client=http
        )
        return cls(
            settings=settings,
            http=http,
            cache=TwoTierCache(MemoryStore(), remote),
            rate_limiter=InboundRateLimiter(settings.rate_limit_interval),
            embedding_limiter=embedding_limiter,
            llm_limiter=AsyncLimiter(LLM_REQUESTS_PER_WINDOW, LLM_REQUEST_WINDOW),
            searcher=RedditSearcher(client=http),
            semantic_filter=SemanticFilter(
                embedder, fail_closed=not settings.semantic_fail_open
            ),
        )

    def pipeline(self, api_key: Optional[str] = None) -> ContextSearchPipeline:
        """Pipeline for one request; a caller-supplied key overrides the server's."""
        chat = GroqChatClient(
            api_key or self.settings.groq_api_key,
            client=self.http,
            limiter=self.llm_limiter,
        )
        return ContextSearchPipeline(
            searcher=self.searcher,
            expander=QueryExpander(chat),
            semantic_filter=self.semantic_filter,
            scorer=RelevanceScorer(chat),
            cache=self.cache,
        )

    def start(self) -> None:
        self.cache.start()

    async def close(self) -> None:
        await self.cache.close()
        await self.http.aclose()


class QueryRequest(BaseModel):
    query: Any = None


def _enforce_rate_limit(request: Request, services: Services) -> None:
    peer = request.client.host if request.client else None
    identity = client_identity(request.headers, peer)
    check = services.rate_limiter.check(identity)
    if not check.allowed:
        raise ClientRateLimited(
            "Rate limit exceeded. Please wait before searching again.",
            retry_after=check.retry_after_ms / 1000,
        )


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = services is None
        svc = services
        if svc is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            svc = Services.build(settings)
        svc.start()
        app.state.services = svc
        logger.info("services_started", remote_cache=svc.cache.remote is not None)
        try:
            yield
        finally:
            if owned:
                await svc.close()
            else:
                await svc.cache.close()

    app = FastAPI(title="Reddit Context Search API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ContextSearchError)
    async def context_search_error_handler(
        request: Request, exc: ContextSearchError
    ) -> JSONResponse:
        headers = {}
        if exc.status_code == 429 and exc.retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.retry_after)))
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=str(exc))
        return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        # Missing, malformed or non-object bodies
        err = QueryValidationError("Query required")
        return JSONResponse(err.to_dict(), status_code=err.status_code)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("pipeline_crashed", path=request.url.path)
        return JSONResponse(
            {"error": "Search Pipeline Failed", "details": str(exc)}, status_code=500
        )

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/api/context/filter")
    async def context_filter(
        req: QueryRequest,
        request: Request,
        x_groq_api_key: Optional[str] = Header(default=None),
    ):
        query = validate_query(req.query)
        svc: Services = request.app.state.services
        pipeline = svc.pipeline(x_groq_api_key)

        cached = await pipeline.cached_response(query)
        if cached is not None:
            return cached.to_dict()

        _enforce_rate_limit(request, svc)
        response = await pipeline.run(query, use_cache=False)
        logger.info(
            "context_search_done",
            query=query,
            **response.filter_stats.to_dict(),
        )
        return response.to_dict()

    @app.post("/api/context/intent")
    async def context_intent(
        req: QueryRequest,
        request: Request,
        x_groq_api_key: Optional[str] = Header(default=None),
    ):
        query = validate_query(req.query)
        svc: Services = request.app.state.services
        expansion = await svc.pipeline(x_groq_api_key).expand_cached(query)
        return expansion.to_dict()

    @app.get("/api/reddit")
    async def reddit_search(
        request: Request,
        keywords: Optional[str] = Query(default=None),
        sort: str = Query(default="top"),
        time: str = Query(default="all"),
    ):
        keywords = (keywords or "").strip()
        if not keywords:
            raise QueryValidationError("Keywords parameter is required")
        if len(keywords) > QUERY_MAX_LENGTH:
            raise QueryValidationError(
                f"Keywords must be less than {QUERY_MAX_LENGTH} characters"
            )
        sort_type = "hot" if sort == "hot" else "top"

        svc: Services = request.app.state.services
        cache_key = make_cache_key("reddit-search", keywords, sort_type, time)
        cached = await svc.cache.get(cache_key)
        if cached:
            return {**cached, "cached": True}

        _enforce_rate_limit(request, svc)
        posts = await svc.searcher.search(
            keywords, sort=sort_type, time_range=time, limit=SEARCH_RESULT_LIMIT
        )
        response = {
            "posts": [p.to_dict() for p in posts],
            "cached": False,
            "query": keywords,
            "sort": sort_type,
            "total_results": len(posts),
        }
        svc.cache.set(cache_key, response, CACHE_TTL_SEARCH_RESULTS)
        return response

    return app


app = create_app()
