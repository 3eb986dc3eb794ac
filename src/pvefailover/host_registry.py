"""
Per-host health tracking, preference scoring and fallback ordering.

The registry is the only owner of host health and breaker state. Every
public method is a short in-memory critical section guarded by one lock,
so the health monitor and foreground requests can share an instance.
"""
from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional

from .circuit_breaker import CircuitBreakerRegistry, CircuitState
from .config import ConnectionConfig

logger = logging.getLogger(__name__)

BASE_SCORE = 1000
FAILURE_PENALTY = 100
PRIMARY_BONUS = 50
PREFERRED_SENTINEL_SCORE = float("inf")


class HostStatus(Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class HostHealth:
    address: str
    last_seen_at: float = 0.0
    last_response_time_ms: float = 0.0
    consecutive_failure_count: int = 0
    last_failure_at: float = 0.0
    status: HostStatus = HostStatus.UNKNOWN

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


class HostRegistry:
    def __init__(self, cfg: Optional[ConnectionConfig] = None, clock: Callable[[], float] = time.time):
        self.cfg = cfg or ConnectionConfig()
        self._clock = clock
        self._lock = threading.RLock()
        self._hosts: Dict[str, HostHealth] = {}
        self._breakers = CircuitBreakerRegistry(
            failure_threshold=self.cfg.circuit_breaker_threshold,
            recovery_timeout=self.cfg.circuit_breaker_timeout,
            clock=clock,
        )
        self.primary_host: Optional[str] = None
        self.preferred_host: Optional[str] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, primary_host: str, backup_hosts: Iterable[str] = ()) -> None:
        """Seed the registry with the primary and any known backups.

        Known hosts start out healthy and recently seen, so they are fallback
        candidates from the first request on.
        """
        backups = [h for h in backup_hosts if h and h != primary_host]
        with self._lock:
            self.primary_host = primary_host
            self.preferred_host = primary_host
            self.record_outcome(primary_host, True, 0)
            for host in backups:
                self.record_outcome(host, True, 0)
        logger.info("Host registry initialized. Primary: %s, Backups: %d", primary_host, len(backups))

    def set_primary_host(self, host: str) -> None:
        with self._lock:
            self.primary_host = host
            if host not in self._hosts:
                # Seeded like initialize() so it is ordered before the first probe
                self._hosts[host] = HostHealth(address=host, last_seen_at=self._clock(), status=HostStatus.HEALTHY)
            # Give the new primary a clean slate so it is tried first
            self._breakers.reset(host)
            self.preferred_host = host
        logger.info("Primary host updated to: %s", host)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def record_outcome(self, host: str, success: bool, response_time_ms: float = 0) -> None:
        with self._lock:
            now = self._clock()
            info = self._hosts.get(host)
            if info is None:
                info = self._hosts[host] = HostHealth(address=host)

            if success:
                info.last_seen_at = now
                info.last_response_time_ms = response_time_ms or 0
                info.consecutive_failure_count = 0
                info.status = HostStatus.HEALTHY
                self._breakers.reset(host)
                self._compute_preferred_host()
            else:
                info.consecutive_failure_count += 1
                info.last_failure_at = now
                info.status = HostStatus.UNHEALTHY
                self._breakers.record_failure(host)

    def breaker_state(self, host: str) -> CircuitState:
        with self._lock:
            return self._breakers.state_of(host)

    def get_health(self, host: str) -> Optional[HostHealth]:
        with self._lock:
            return self._hosts.get(host)

    @property
    def hosts(self) -> List[str]:
        with self._lock:
            return list(self._hosts)

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def _score(self, info: HostHealth) -> float:
        score = BASE_SCORE - info.last_response_time_ms - info.consecutive_failure_count * FAILURE_PENALTY
        if info.address == self.primary_host:
            score += PRIMARY_BONUS
        return score

    def compute_preferred_host(self) -> Optional[str]:
        with self._lock:
            return self._compute_preferred_host()

    def _compute_preferred_host(self) -> Optional[str]:
        now = self._clock()
        best_host = None
        best_score = float("-inf")

        for host, info in self._hosts.items():
            if self._breakers.state_of(host) == CircuitState.OPEN:
                continue
            if now - info.last_seen_at > self.cfg.recent_host_window:
                continue
            score = self._score(info)
            # Strict comparison keeps the first host seen on ties
            if score > best_score:
                best_score = score
                best_host = host

        if best_host is not None and best_host != self.preferred_host:
            logger.info("Preferred host switched: %s -> %s (score: %s)", self.preferred_host, best_host, best_score)
            self.preferred_host = best_host
        return self.preferred_host

    def ordered_host_list(self) -> List[str]:
        """Hosts in the order the fallback executor should try them."""
        with self._lock:
            now = self._clock()
            candidates = []

            preferred = self.preferred_host
            if preferred:
                info = self._hosts.get(preferred)
                if (info is not None
                        and self._breakers.state_of(preferred) != CircuitState.OPEN
                        and now - info.last_seen_at < self.cfg.recent_host_window):
                    candidates.append((PREFERRED_SENTINEL_SCORE, preferred))
                else:
                    # Not recent enough to lead; it ranks with the others below
                    preferred = None

            for host, info in self._hosts.items():
                if host == preferred:
                    continue
                if self._breakers.state_of(host) == CircuitState.OPEN:
                    continue
                if now - info.last_seen_at > self.cfg.max_host_age:
                    continue
                # Backups rank by latency only
                candidates.append((-info.last_response_time_ms, host))

            # sort() is stable, hosts with equal latency keep insertion order
            candidates.sort(key=lambda c: c[0], reverse=True)

            if not candidates:
                return [self.primary_host] if self.primary_host else []
            return [host for _, host in candidates]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_stale_hosts(self) -> List[str]:
        """Forget hosts not seen for longer than max_host_age. Returns the removed hosts."""
        with self._lock:
            now = self._clock()
            stale = [host for host, info in self._hosts.items() if now - info.last_seen_at > self.cfg.max_host_age]
            for host in stale:
                del self._hosts[host]
                self._breakers.remove(host)
        for host in stale:
            logger.debug("Cleaned up old host: %s", host)
        return stale

    def get_debug_status(self) -> dict:
        with self._lock:
            return {
                "primary": self.primary_host,
                "preferred": self.preferred_host,
                "hosts": {host: info.to_dict() for host, info in self._hosts.items()},
                "breakers": self._breakers.snapshot(),
            }
