"""
Background health monitoring and backup host discovery.
"""
from __future__ import annotations
import asyncio
import logging
import random
import time
from typing import Any, List, Optional

from .errors import ProxmoxError
from .executor import FallbackExecutor, notify

logger = logging.getLogger(__name__)

CLUSTER_STATUS_PATH = "/api2/json/cluster/status"
PROBE_PATH = "/api2/json/version"


def online_node_addresses(status_payload: Any) -> Optional[List[str]]:
    """Addresses of online nodes in a cluster/status response, or None if the payload is unusable."""
    data = status_payload.get("data") if isinstance(status_payload, dict) else None
    if not isinstance(data, list):
        return None
    addresses = []
    for item in data:
        if not isinstance(item, dict):
            continue
        if item.get("type") == "node" and item.get("online") == 1 and item.get("ip"):
            if item["ip"] not in addresses:
                addresses.append(item["ip"])
    return addresses


class HealthMonitor:
    """Periodically discovers cluster members and probes a bounded set of hosts."""

    def __init__(self, executor: FallbackExecutor, backup_hosts: Optional[List[str]] = None,
                 interval: Optional[float] = None, rng: Optional[random.Random] = None):
        self.executor = executor
        self.registry = executor.registry
        self.client = executor.client
        self.interval = interval if interval is not None else self.client.cfg.health_check_interval
        self.backup_hosts: List[str] = list(backup_hosts or [])
        self.last_check_at: Optional[float] = None
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        logger.info("Starting health monitoring every %ss", self.interval)
        self._task = asyncio.ensure_future(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Stopped health monitoring")

    async def wait_closed(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> None:
        """One health check pass. Never raises."""
        try:
            await self._check()
        except Exception:
            logger.exception("Health check failed")

    async def _check(self) -> None:
        self.last_check_at = time.time()
        try:
            status = await self.executor.execute(CLUSTER_STATUS_PATH, force_refresh=True)
        except ProxmoxError as e:
            logger.warning("Health check: failed to get cluster status: %s", e)
            return

        online = online_node_addresses(status)
        if online is None:
            logger.warning("Health check: invalid cluster status response")
            return

        self._update_backup_hosts(online)

        for host in self.select_probe_hosts(online):
            await self.probe(host)

        self.registry.sweep_stale_hosts()

    def _update_backup_hosts(self, online: List[str]) -> None:
        primary = self.registry.primary_host
        discovered = [ip for ip in online if ip != primary]
        if sorted(discovered) != sorted(self.backup_hosts):
            logger.info("Updating backup hosts: %s -> %s", ",".join(sorted(self.backup_hosts)), ",".join(sorted(discovered)))
            self.backup_hosts = discovered
            notify(self.executor.listener, "backup_hosts_changed", list(discovered))

    def select_probe_hosts(self, online: List[str]) -> List[str]:
        """Primary, preferred (if different) and one random other member."""
        selected: List[str] = []
        for host in (self.registry.primary_host, self.registry.preferred_host):
            if host and host not in selected:
                selected.append(host)
        others = [ip for ip in online if ip not in selected]
        if others:
            selected.append(self._rng.choice(others))
        return selected

    async def probe(self, host: str) -> bool:
        """Contact `host` directly and feed the result into the registry."""
        started = time.monotonic()
        try:
            await self.client.send(host, PROBE_PATH, timeout=self.client.cfg.probe_timeout)
        except ProxmoxError as e:
            self.registry.record_outcome(host, False)
            logger.info("Health check FAILED: %s - %s", host, e)
            return False
        elapsed_ms = (time.monotonic() - started) * 1000
        self.registry.record_outcome(host, True, elapsed_ms)
        logger.debug("Health check OK: %s - %.0fms", host, elapsed_ms)
        return True
