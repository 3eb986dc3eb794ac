"""
Short-lived response cache and in-flight request de-duplication.
"""
from __future__ import annotations
import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

_MISSING = object()


def make_cache_key(method: str, path: str, body: Any = None) -> str:
    """Key a request by (method, path, serialized body)."""
    if body is None:
        serialized = ""
    elif isinstance(body, Mapping):
        serialized = json.dumps(dict(body), sort_keys=True, default=str)
    elif isinstance(body, bytes):
        serialized = body.decode("utf-8", errors="replace")
    else:
        serialized = str(body)
    return f"{(method or 'GET').upper()}:{path}:{serialized}"


class ResponseCache:
    """TTL cache for successful GET responses."""

    def __init__(self, ttl: float = 300.0, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries: Dict[str, Tuple[Any, float]] = {}

    def get(self, key: str, default: Any = None) -> Any:
        """Cached value for `key`, or `default` when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return default
        value, stored_at = entry
        if self._clock() - stored_at >= self.ttl:
            del self._entries[key]
            return default
        return value

    def contains(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def put(self, key: str, value: Any) -> None:
        self._entries[key] = (value, self._clock())

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [key for key, (_, stored_at) in self._entries.items() if now - stored_at >= self.ttl]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class RequestCoalescer:
    """Runs at most one operation per key at a time; concurrent callers share its outcome."""

    def __init__(self):
        self._in_flight: Dict[str, asyncio.Future] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    def owns(self, key: str) -> bool:
        """True when the running task is the operation registered for `key`."""
        return self._in_flight.get(key) is asyncio.current_task()

    async def run(self, key: str, factory: Callable[[], Awaitable[Any]], join: bool = True) -> Any:
        """Await the operation for `key`, starting it with `factory` if needed.

        With join=False a fresh operation is always started; it becomes the
        one later callers attach to.
        """
        task = self._in_flight.get(key) if join else None
        if task is None:
            task = asyncio.ensure_future(factory())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._settle(key, done))
        else:
            logger.debug("Request deduplication: waiting for pending request %s", key)
        # A cancelled waiter must not cancel the shared operation
        return await asyncio.shield(task)

    def _settle(self, key: str, task: asyncio.Future) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the outcome as retrieved even if every waiter was cancelled
        if not task.cancelled():
            task.exception()

    def clear(self) -> None:
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
