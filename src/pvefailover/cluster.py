"""
Cluster level helpers built on the fallback executor: status summaries,
VM/container lookup and power actions, and the periodic status poller.
"""
from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ProxmoxError, ResourceNotFound
from .executor import FallbackExecutor, notify
from .health import CLUSTER_STATUS_PATH, online_node_addresses

logger = logging.getLogger(__name__)

CLUSTER_RESOURCES_PATH = "/api2/json/cluster/resources"
VM_TYPES = ("qemu", "lxc")
VM_ACTIONS = ("start", "stop", "shutdown", "reboot", "suspend", "resume")
NODE_ACTIONS = ("shutdown", "reboot")
# A node shutdown waits for its guests to stop
NODE_SHUTDOWN_TIMEOUT = 60.0


@dataclass
class ClusterSummary:
    node_count: int = 0
    online_node_ips: List[str] = field(default_factory=list)
    vm_count: int = 0
    lxc_count: int = 0


@dataclass
class NodeStatus:
    node: str
    cpu_percent: float = 0.0
    memory_percent: float = 0.0


def node_status_from(node: str, payload: Any) -> Optional[NodeStatus]:
    """CPU and memory usage as percentages, or None if the payload has no data."""
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        return None
    memory = data.get("memory") or {}
    used = memory.get("used") or 0
    total = memory.get("total") or 0
    return NodeStatus(
        node=node,
        cpu_percent=round((data.get("cpu") or 0) * 100, 1),
        memory_percent=round(used / total * 100, 1) if total > 0 else 0.0,
    )


def _data_list(payload: Any) -> List[Dict[str, Any]]:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def summarize(status_payload: Any, resources_payload: Any) -> ClusterSummary:
    """Count online nodes and running guests."""
    summary = ClusterSummary()
    summary.node_count = sum(
        1 for item in _data_list(status_payload) if item.get("type") == "node" and item.get("online") == 1
    )
    summary.online_node_ips = online_node_addresses(status_payload) or []
    for resource in _data_list(resources_payload):
        if resource.get("status") != "running":
            continue
        if resource.get("type") == "qemu":
            summary.vm_count += 1
        elif resource.get("type") == "lxc":
            summary.lxc_count += 1
    return summary


def _check_vm_type(vm_type: str) -> None:
    if vm_type not in VM_TYPES:
        raise ValueError(f"Unsupported guest type: {vm_type}")


class ClusterService:
    def __init__(self, executor: FallbackExecutor):
        self.executor = executor

    async def fetch_summary(self, force_refresh: bool = True) -> ClusterSummary:
        status = await self.executor.execute(CLUSTER_STATUS_PATH, force_refresh=force_refresh)
        resources = await self.executor.execute(CLUSTER_RESOURCES_PATH, force_refresh=force_refresh)
        return summarize(status, resources)

    async def find_vm_node(self, vmid: int, vm_type: str) -> str:
        """Name of the node currently running the guest."""
        _check_vm_type(vm_type)
        # Guests migrate, so never trust a cached resource list here
        resources = await self.executor.execute(CLUSTER_RESOURCES_PATH, skip_cache=True)
        for resource in _data_list(resources):
            if str(resource.get("vmid")) == str(vmid) and resource.get("type") == vm_type and resource.get("node"):
                return resource["node"]
        raise ResourceNotFound(f"Resource {vm_type}/{vmid} not found in cluster resources")

    async def vm_action(self, vmid: int, vm_type: str, action: str) -> Any:
        if action not in VM_ACTIONS:
            raise ValueError(f"Unsupported action: {action}")
        node = await self.find_vm_node(vmid, vm_type)
        logger.info("Action %s on %s %s (node %s)", action, vm_type, vmid, node)
        body = {"overrule-shutdown": "1"} if action == "stop" else None
        path = f"/api2/json/nodes/{node}/{vm_type}/{vmid}/status/{action}"
        return await self.executor.execute(path, method="POST", body=body)

    async def is_vm_running(self, vmid: int, vm_type: str) -> bool:
        node = await self.find_vm_node(vmid, vm_type)
        path = f"/api2/json/nodes/{node}/{vm_type}/{vmid}/status/current"
        result = await self.executor.execute(path, skip_cache=True)
        data = result.get("data") if isinstance(result, dict) else None
        return isinstance(data, dict) and data.get("status") == "running"

    async def fetch_node_status(self, node: str) -> NodeStatus:
        status = node_status_from(node, await self.executor.execute(f"/api2/json/nodes/{node}/status"))
        if status is None:
            raise ProxmoxError(f"Invalid status response from node {node}")
        return status

    async def node_power_action(self, node: str, action: str) -> Any:
        """Shut down or reboot a whole node."""
        if action not in NODE_ACTIONS:
            raise ValueError(f"Unsupported node action: {action}")
        timeout = NODE_SHUTDOWN_TIMEOUT if action == "shutdown" else None
        logger.info("Node action %s on %s", action, node)
        return await self.executor.execute(
            f"/api2/json/nodes/{node}/status", method="POST", body={"command": action}, timeout=timeout,
        )

    async def search_resources(self, query: str) -> List[Dict[str, Any]]:
        """Guests whose vmid or name contains `query` (case-insensitive)."""
        resources = await self.executor.execute(CLUSTER_RESOURCES_PATH)
        q = (query or "").lower()
        matches = []
        for resource in _data_list(resources):
            if resource.get("type") not in VM_TYPES:
                continue
            name = resource.get("name") or ""
            if q in str(resource.get("vmid", "")) or q in name.lower():
                matches.append({
                    "name": f"{name or 'Unknown'} ({resource.get('type')} {resource.get('vmid')})",
                    "vmid": resource.get("vmid"),
                    "type": resource.get("type"),
                    "node": resource.get("node"),
                })
        return matches


class ClusterPoller:
    """Refreshes the cluster summary on a fixed interval, after an initial random delay."""

    def __init__(self, service: ClusterService, interval: Optional[float] = None,
                 jitter: Optional[float] = None, rng: Optional[random.Random] = None):
        cfg = service.executor.client.cfg
        self.service = service
        self.interval = interval if interval is not None else cfg.poll_interval
        self.jitter = jitter if jitter is not None else cfg.poll_jitter
        self.last_summary: Optional[ClusterSummary] = None
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.stop()
        if not self.interval or self.interval <= 0:
            logger.info("Polling disabled (interval <= 0)")
            return
        logger.info("Starting cluster status polling every %ss", self.interval)
        self._task = asyncio.ensure_future(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.info("Stopped cluster status polling")

    async def wait_closed(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run(self) -> None:
        await asyncio.sleep(self._rng.uniform(0, self.jitter) if self.jitter > 0 else 0)
        while True:
            await self.poll()
            await asyncio.sleep(self.interval)

    async def poll(self) -> Optional[ClusterSummary]:
        try:
            summary = await self.service.fetch_summary(force_refresh=True)
        except ProxmoxError as e:
            logger.error("Update status failed: %s", e)
            return None
        self.last_summary = summary
        notify(self.service.executor.listener, "summary_updated", summary)
        return summary
