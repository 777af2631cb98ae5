"""Timeout and backoff handling for outbound HTTP calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from context_search.constants import (
    CHAT_BACKOFF_BASE,
    CHAT_BACKOFF_MAX,
    CHAT_MAX_ATTEMPTS,
    CHAT_RATE_LIMIT_DELAY,
    CHAT_TIMEOUT,
    EMBEDDING_BACKOFF_BASE,
    EMBEDDING_BACKOFF_MAX,
    EMBEDDING_MAX_ATTEMPTS,
    EMBEDDING_RATE_LIMIT_DELAY,
    EMBEDDING_TIMEOUT,
    SEARCH_BACKOFF_BASE,
    SEARCH_BACKOFF_MAX,
    SEARCH_MAX_ATTEMPTS,
    SEARCH_RATE_LIMIT_DELAY,
    SEARCH_TIMEOUT,
)
from context_search.errors import (
    UpstreamError,
    UpstreamRateLimited,
    UpstreamRequestError,
    UpstreamTimeout,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    base_delay: float
    max_delay: float
    rate_limit_delay: float
    timeout: float
    # Use the server Retry-After when longer than rate_limit_delay
    honor_retry_after: bool = False


SEARCH_RETRY_POLICY = RetryPolicy(
    max_attempts=SEARCH_MAX_ATTEMPTS,
    base_delay=SEARCH_BACKOFF_BASE,
    max_delay=SEARCH_BACKOFF_MAX,
    rate_limit_delay=SEARCH_RATE_LIMIT_DELAY,
    timeout=SEARCH_TIMEOUT,
)
EMBEDDING_RETRY_POLICY = RetryPolicy(
    max_attempts=EMBEDDING_MAX_ATTEMPTS,
    base_delay=EMBEDDING_BACKOFF_BASE,
    max_delay=EMBEDDING_BACKOFF_MAX,
    rate_limit_delay=EMBEDDING_RATE_LIMIT_DELAY,
    timeout=EMBEDDING_TIMEOUT,
)
CHAT_RETRY_POLICY = RetryPolicy(
    max_attempts=CHAT_MAX_ATTEMPTS,
    base_delay=CHAT_BACKOFF_BASE,
    max_delay=CHAT_BACKOFF_MAX,
    rate_limit_delay=CHAT_RATE_LIMIT_DELAY,
    timeout=CHAT_TIMEOUT,
    honor_retry_after=True,
)


def parse_retry_after(value: str) -> float | None:
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    now = datetime.now(dt.tzinfo)
    delta = (dt - now).total_seconds()
    return max(0.0, delta)


def retry_after_seconds(resp: httpx.Response) -> float | None:
    header = resp.headers.get("retry-after")
    if not header:
        return None
    return parse_retry_after(header)


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()[:300]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str):
                return msg.strip()
        if isinstance(err, str):
            return err.strip()
    return resp.text.strip()[:300]


def classify_response(resp: httpx.Response, service: str) -> UpstreamError:
    """Map a non-2xx response onto the upstream error taxonomy."""
    status = resp.status_code
    detail = _error_message(resp)
    if status == 429:
        return UpstreamRateLimited(
            f"{service} rate limit exceeded (429)",
            service=service,
            status=status,
            details=detail,
            retry_after=retry_after_seconds(resp),
        )
    if status in {408, 504}:
        return UpstreamTimeout(
            f"{service} timed out ({status})",
            service=service,
            status=status,
            details=detail,
        )
    if status >= 500:
        return UpstreamUnavailable(
            f"{service} unavailable ({status})",
            service=service,
            status=status,
            details=detail,
        )
    return UpstreamRequestError(
        f"{service} rejected the request ({status})",
        service=service,
        status=status,
        details=detail,
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, UpstreamError) and exc.retryable


def _make_wait(policy: RetryPolicy) -> Callable[[RetryCallState], float]:
    backoff = wait_exponential(
        multiplier=policy.base_delay, exp_base=2, max=policy.max_delay
    )

    def _wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, UpstreamRateLimited):
            if policy.honor_retry_after and exc.retry_after is not None:
                return max(policy.rate_limit_delay, exc.retry_after)
            return policy.rate_limit_delay
        return backoff(retry_state)

    return _wait


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    label: str = "upstream",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``fn`` with a per-attempt timeout, retrying transient upstream errors.

    Timeouts and transport failures are converted to ``UpstreamTimeout`` and
    ``UpstreamUnavailable``. Rate-limited attempts wait the policy's fixed
    delay instead of doubling, or a longer server ``Retry-After`` when the
    policy honours it.
    Exhausting the policy re-raises the last error.
    """

    async def _attempt() -> T:
        try:
            async with asyncio.timeout(policy.timeout):
                return await fn()
        except (TimeoutError, httpx.TimeoutException) as e:
            raise UpstreamTimeout(
                f"{label} timed out after {policy.timeout:.0f}s", service=label
            ) from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(
                f"{label} connection failed", service=label, details=str(e)
            ) from e

    def _before_sleep(retry_state: RetryCallState) -> None:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs",
            label,
            retry_state.attempt_number,
            policy.max_attempts,
            exc,
            delay,
        )

    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        retry=retry_if_exception(_is_retryable),
        wait=_make_wait(policy),
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            return await _attempt()
    raise AssertionError("unreachable")  # pragma: no cover
