"""Client-side estimate of rate-limit recovery between real provider syncs."""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Optional

from context_search.constants import USAGE_TICK_INTERVAL
from context_search.models import RateLimitSnapshot


@dataclass(frozen=True)
class UsageEstimate:
    remaining: int
    limit: int
    reset_in_seconds: int
    percent_used: int  # 0-100
    resets_at: float
    last_updated: float  # When the snapshot was observed
    recovered: bool  # Reset time has passed; budget is full again


def _project(snap: RateLimitSnapshot, now: float) -> UsageEstimate:
    total_window = snap.reset_at - snap.observed_at
    if total_window <= 0 or now >= snap.reset_at:
        return UsageEstimate(
            remaining=snap.limit,
            limit=snap.limit,
            reset_in_seconds=0,
            percent_used=0,
            resets_at=snap.reset_at,
            last_updated=snap.observed_at,
            recovered=True,
        )

    elapsed = max(0.0, now - snap.observed_at)
    progress = min(elapsed / total_window, 1.0)
    recovered_credits = round(snap.used * progress)
    current_used = max(snap.used - recovered_credits, 0)
    percent_used = round(current_used / snap.limit * 100) if snap.limit > 0 else 0
    return UsageEstimate(
        remaining=snap.limit - current_used,
        limit=snap.limit,
        reset_in_seconds=max(0, math.ceil(snap.reset_at - now)),
        percent_used=percent_used,
        resets_at=snap.reset_at,
        last_updated=snap.observed_at,
        recovered=False,
    )


class UsagePredictor:
    """Linear interpolation of recovered budget toward the reset time.

    Purely for display; the next real response re-establishes ground truth
    through ``sync``.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._snapshot: Optional[RateLimitSnapshot] = None

    @property
    def snapshot(self) -> Optional[RateLimitSnapshot]:
        return self._snapshot

    def sync(self, snapshot: RateLimitSnapshot) -> UsageEstimate:
        self._snapshot = snapshot
        return _project(snapshot, snapshot.observed_at)

    def estimate(self, now: Optional[float] = None) -> Optional[UsageEstimate]:
        if self._snapshot is None:
            return None
        return _project(self._snapshot, self._clock() if now is None else now)

    async def run(
        self,
        on_tick: Callable[[UsageEstimate], None],
        interval: float = USAGE_TICK_INTERVAL,
    ) -> None:
        """Tick roughly once per ``interval`` until the budget has recovered.

        A ``sync`` while running simply changes what the next tick reports.
        """
        while True:
            await asyncio.sleep(interval)
            est = self.estimate()
            if est is None:
                continue
            on_tick(est)
            if est.recovered:
                return
