from __future__ import annotations

import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Optional

from context_search.constants import (
    RATE_LIMIT_MAX_IDENTITIES,
    RATE_LIMIT_MIN_INTERVAL,
)


@dataclass(frozen=True)
class RateCheck:
    allowed: bool
    retry_after_ms: int = 0


class InboundRateLimiter:
    """Per-identity minimum interval between allowed requests."""

    def __init__(
        self,
        min_interval: float = RATE_LIMIT_MIN_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        max_identities: int = RATE_LIMIT_MAX_IDENTITIES,
    ) -> None:
        self.min_interval = min_interval
        self.max_identities = max_identities
        self._clock = clock
        self._last_allowed: dict[str, float] = {}

    def check(self, identity: str) -> RateCheck:
        now = self._clock()
        last = self._last_allowed.get(identity)
        if last is not None:
            elapsed = now - last
            if elapsed < self.min_interval:
                wait_ms = int((self.min_interval - elapsed) * 1000) + 1
                return RateCheck(allowed=False, retry_after_ms=wait_ms)

        self._last_allowed[identity] = now
        if len(self._last_allowed) > self.max_identities:
            self.prune(now)
        return RateCheck(allowed=True)

    def prune(self, now: Optional[float] = None) -> int:
        """Forget identities whose next request would be allowed anyway."""
        now = self._clock() if now is None else now
        stale = [
            k for k, t in self._last_allowed.items() if now - t >= self.min_interval
        ]
        for k in stale:
            del self._last_allowed[k]
        return len(stale)


def client_identity(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer or "anonymous"
