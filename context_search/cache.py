"""Two-tier cache: a durable remote key-value store in front of a process-local one."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import quote

import httpx

from context_search.constants import (
    CACHE_KEY_MAX_LENGTH,
    CACHE_SWEEP_INTERVAL,
    REMOTE_CACHE_TIMEOUT,
)
from context_search.retry import classify_response

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")


def make_cache_key(namespace: str, *parts: str) -> str:
    key = ":".join([namespace, *parts]).lower()
    key = _WHITESPACE.sub("-", key)
    return key[:CACHE_KEY_MAX_LENGTH]


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class MemoryStore:
    """Process-local store. Expired entries are never returned."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[Any]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        expired = [k for k, e in self._entries.items() if e.expires_at <= now]
        for k in expired:
            del self._entries[k]
        return len(expired)


class RemoteStore:
    """Durable store speaking the Upstash Redis REST protocol."""

    def __init__(
        self,
        url: str,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.url = url.rstrip("/")
        self._owns_client = client is None
        self.client: httpx.AsyncClient = client or httpx.AsyncClient(
            timeout=REMOTE_CACHE_TIMEOUT
        )
        self._headers = {"Authorization": f"Bearer {token}"}

    async def get(self, key: str) -> Optional[Any]:
        resp = await self.client.get(
            f"{self.url}/get/{quote(key, safe='')}", headers=self._headers
        )
        if resp.status_code != 200:
            raise classify_response(resp, "cache")
        result = resp.json().get("result")
        if result is None:
            return None
        return json.loads(result)

    async def set(self, key: str, value: Any, ttl: int) -> None:
        resp = await self.client.post(
            self.url,
            headers=self._headers,
            json=["SET", key, json.dumps(value), "EX", int(ttl)],
        )
        if resp.status_code != 200:
            raise classify_response(resp, "cache")

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class TwoTierCache:
    """Remote-first reads, local writes plus fire-and-forget remote writes.

    Remote failures never reach the caller: reads fall back to the local
    store and writes are only logged.
    """

    def __init__(
        self,
        memory: Optional[MemoryStore] = None,
        remote: Optional[RemoteStore] = None,
        sweep_interval: float = CACHE_SWEEP_INTERVAL,
    ) -> None:
        self.memory = memory or MemoryStore()
        self.remote = remote
        self.sweep_interval = sweep_interval
        self._pending: set[asyncio.Task[None]] = set()
        self._sweeper: Optional[asyncio.Task[None]] = None

    async def get(self, key: str) -> Optional[Any]:
        if self.remote is not None:
            try:
                value = await self.remote.get(key)
                if value is not None:
                    logger.debug(f"Remote cache hit for {key}")
                    return value
            except Exception as e:
                logger.warning(f"Remote cache get failed for {key}: {e}")
        return self.memory.get(key)

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.memory.set(key, value, ttl)
        if self.remote is not None:
            task = asyncio.get_running_loop().create_task(
                self.remote.set(key, value, ttl)
            )
            self._pending.add(task)
            task.add_done_callback(self._on_remote_write_done)

    def _on_remote_write_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Remote cache set failed: {exc}")

    async def flush(self) -> None:
        """Wait for dispatched remote writes. Their failures stay in the log."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def start(self) -> None:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            removed = self.memory.sweep()
            if removed:
                logger.debug(f"Cache sweep removed {removed} expired entries")

    async def close(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.flush()
        if self.remote is not None:
            await self.remote.close()
