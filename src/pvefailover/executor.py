"""
Fallback-capable request execution across the hosts of one cluster.
"""
from __future__ import annotations
import logging
import time
from dataclasses import dataclass, asdict
from typing import Any, Callable, List, Mapping, Optional

from .cache import RequestCoalescer, ResponseCache, make_cache_key
from .errors import ApiError, HostsExhausted, NetworkError, NoHostsAvailable, is_retryable
from .host_registry import HostRegistry
from .http_client import ProxmoxClient, RequestBody

logger = logging.getLogger(__name__)

_MISSING = object()


class StatusListener:
    """Receives connection state changes. Override the methods you need."""

    def connected(self, active_host: str, is_fallback: bool) -> None:
        pass

    def unavailable(self, reason: str) -> None:
        pass

    def degraded(self, reason: str) -> None:
        """All hosts failed while a fallback was active; keep showing the last good state."""

    def backup_hosts_changed(self, hosts: List[str]) -> None:
        pass

    def summary_updated(self, summary: Any) -> None:
        pass


def notify(listener: StatusListener, event: str, *args) -> None:
    """Call a listener hook; listener failures are logged, never raised."""
    try:
        getattr(listener, event)(*args)
    except Exception:
        logger.exception("Status listener failed handling %s", event)


@dataclass
class ConnectionStats:
    total_calls: int = 0
    total_failures: int = 0
    consecutive_failures: int = 0
    last_success_at: Optional[float] = None
    average_response_time_ms: float = 0.0

    def record(self, success: bool, response_time_ms: float = 0.0, now: Optional[float] = None) -> None:
        self.total_calls += 1
        if success:
            successes = self.total_calls - self.total_failures
            self.average_response_time_ms += (response_time_ms - self.average_response_time_ms) / successes
            self.consecutive_failures = 0
            self.last_success_at = now if now is not None else time.time()
        else:
            self.total_failures += 1
            self.consecutive_failures += 1

    def to_dict(self) -> dict:
        return asdict(self)


class FallbackExecutor:
    """Tries the registry's ordered hosts one at a time until one answers."""

    def __init__(
        self,
        client: ProxmoxClient,
        registry: HostRegistry,
        cache: Optional[ResponseCache] = None,
        coalescer: Optional[RequestCoalescer] = None,
        listener: Optional[StatusListener] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.registry = registry
        self.cache = cache if cache is not None else ResponseCache(ttl=client.cfg.cache_ttl, clock=clock)
        self.coalescer = coalescer if coalescer is not None else RequestCoalescer()
        self.listener = listener or StatusListener()
        self.stats = ConnectionStats()
        self._clock = clock
        self.active_host: Optional[str] = None
        self.fallback_active = False

    async def execute(
        self,
        path: str,
        method: str = "GET",
        body: RequestBody = None,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        skip_cache: bool = False,
        force_refresh: bool = False,
    ) -> Any:
        """Run one API request with caching, de-duplication and host fallback.

        skip_cache bypasses the cache and de-duplication entirely.
        force_refresh skips the cache read and joining an in-flight call,
        but still stores the fresh result.
        """
        # Fail fast on configuration problems, before touching the network
        self.client.credentials.validate()

        method = (method or "GET").upper()
        cacheable = method == "GET" and not skip_cache
        if not cacheable:
            return await self._attempt_hosts(path, method, body, headers, timeout)

        key = make_cache_key(method, path, body)
        if not force_refresh:
            cached = self.cache.get(key, _MISSING)
            if cached is not _MISSING:
                return cached

        async def fetch_and_store():
            result = await self._attempt_hosts(path, method, body, headers, timeout)
            # A call superseded by a forced refresh must not overwrite the newer result
            if self.coalescer.owns(key):
                self.cache.put(key, result)
            return result

        return await self.coalescer.run(key, fetch_and_store, join=not force_refresh)

    async def _attempt_hosts(self, path, method, body, headers, timeout) -> Any:
        hosts = self.registry.ordered_host_list()
        if not hosts:
            raise NoHostsAvailable("No available hosts found")

        last_error: Optional[BaseException] = None
        tried: List[str] = []
        for host in hosts:
            tried.append(host)
            started = time.monotonic()
            try:
                result = await self.client.send(host, path, method=method, headers=headers, body=body, timeout=timeout)
            except (ApiError, NetworkError) as e:
                self._record_failure(host)
                logger.warning("API call failed via %s for %s %s: %s", host, method, path, e)
                if not is_retryable(e):
                    # The host answered; another host would give the same answer
                    raise
                last_error = e
                continue

            elapsed_ms = (time.monotonic() - started) * 1000
            self.registry.record_outcome(host, True, elapsed_ms)
            self.stats.record(True, elapsed_ms, now=self._clock())
            self._mark_connected(host)
            return result

        error = HostsExhausted(tried, last_error)
        self._mark_failed(error)
        raise error from last_error

    def _record_failure(self, host: str) -> None:
        self.registry.record_outcome(host, False)
        self.stats.record(False)

    def _mark_connected(self, host: str) -> None:
        is_fallback = host != self.registry.primary_host
        if is_fallback and not self.fallback_active:
            logger.info("Running in fallback via %s (primary: %s)", host, self.registry.primary_host)
        self.active_host = host
        self.fallback_active = is_fallback
        notify(self.listener, "connected", host, is_fallback)

    def _mark_failed(self, error: HostsExhausted) -> None:
        reason = str(error)
        if self.fallback_active:
            # Stale but displayed beats flapping to unavailable
            logger.error("Connection failed (fallback active), keeping last good state: %s", reason)
            notify(self.listener, "degraded", reason)
        else:
            logger.error("All hosts failed, marking connection unavailable: %s", reason)
            notify(self.listener, "unavailable", reason)

    def get_debug_status(self) -> dict:
        status = self.registry.get_debug_status()
        status.update({
            "active_host": self.active_host,
            "fallback_active": self.fallback_active,
            "ordered_hosts": self.registry.ordered_host_list(),
            "cache_entries": len(self.cache),
            "in_flight": len(self.coalescer),
            "stats": self.stats.to_dict(),
        })
        return status
