"""
One connection to one Proxmox VE cluster.

Owns a fresh host registry, response cache, executor, health monitor and
status poller. Nothing is shared between connections.
"""
from __future__ import annotations
import logging
import random
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional

from .cache import RequestCoalescer, ResponseCache
from .cluster import ClusterPoller, ClusterService
from .config import ConnectionConfig, Credentials, parse_host_list
from .errors import ProxmoxError
from .executor import FallbackExecutor, StatusListener
from .health import PROBE_PATH, HealthMonitor
from .host_registry import HostRegistry
from .http_client import ProxmoxClient, RequestBody

logger = logging.getLogger(__name__)


class ClusterConnection:
    def __init__(
        self,
        credentials: Credentials,
        cfg: Optional[ConnectionConfig] = None,
        listener: Optional[StatusListener] = None,
        client: Optional[ProxmoxClient] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        self.cfg = cfg or ConnectionConfig()
        self.client = client or ProxmoxClient(credentials, self.cfg)
        self.registry = HostRegistry(self.cfg, clock=clock)
        self.cache = ResponseCache(ttl=self.cfg.cache_ttl, clock=clock)
        self.coalescer = RequestCoalescer()
        self.executor = FallbackExecutor(
            self.client, self.registry, self.cache, self.coalescer,
            listener=listener or StatusListener(), clock=clock,
        )
        self.cluster = ClusterService(self.executor)
        self.health_monitor = HealthMonitor(self.executor, rng=rng)
        self.poller = ClusterPoller(self.cluster, rng=rng)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, primary_host: Optional[str] = None, backup_hosts: Optional[Iterable[str] | str] = None) -> None:
        primary = primary_host or self.client.credentials.hostname
        backups = parse_host_list(backup_hosts, exclude=primary)
        self.registry.initialize(primary, backups)
        self.health_monitor.backup_hosts = backups

    def set_primary_host(self, host: str) -> None:
        self.registry.set_primary_host(host)
        self.executor.fallback_active = False
        # Responses from the old primary's view of the cluster are no longer wanted
        self.cache.clear()

    def update_credentials(self, credentials: Credentials) -> None:
        self.client.update_credentials(credentials)
        if credentials.hostname and credentials.hostname != self.registry.primary_host:
            self.set_primary_host(credentials.hostname)

    def cleanup(self) -> List[str]:
        """Periodic maintenance: forget stale hosts and expired cache entries."""
        self.cache.cleanup()
        return self.registry.sweep_stale_hosts()

    def start_health_monitoring(self) -> None:
        self.health_monitor.start()

    def stop_health_monitoring(self) -> None:
        self.health_monitor.stop()

    def start_polling(self) -> None:
        self.poller.start()

    def stop_polling(self) -> None:
        self.poller.stop()

    async def close(self) -> None:
        await self.health_monitor.wait_closed()
        await self.poller.wait_closed()
        self.coalescer.clear()
        self.cache.clear()

    async def __aenter__(self) -> "ClusterConnection":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

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
        return await self.executor.execute(
            path, method=method, body=body, headers=headers, timeout=timeout,
            skip_cache=skip_cache, force_refresh=force_refresh,
        )

    async def test_connection(self, credentials: Optional[Credentials] = None) -> bool:
        """Check the primary host only, optionally with candidate credentials."""
        try:
            client = ProxmoxClient(credentials, self.cfg) if credentials is not None else self.client
            data = await client.send(None, PROBE_PATH, timeout=self.cfg.probe_timeout)
        except ProxmoxError as e:
            logger.warning("Connection test failed: %s", e)
            return False
        info = data.get("data") if isinstance(data, dict) else None
        version = info.get("version") if isinstance(info, dict) else None
        logger.info("Primary API connection OK. Version: %s", version)
        return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_ordered_host_list(self) -> List[str]:
        return self.registry.ordered_host_list()

    def get_debug_status(self) -> dict:
        status = self.executor.get_debug_status()
        status.update({
            "backup_hosts": list(self.health_monitor.backup_hosts),
            "last_health_check": self.health_monitor.last_check_at,
            "health_monitoring": self.health_monitor.running,
            "polling": self.poller.running,
        })
        return status
