from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Iterable, List, Optional

from .errors import CredentialsInvalid


def _get_env_var(primary: str, fallback: str, default: str = None):
    """Get environment variable, checking primary name first, then fallback name.

    Args:
        primary: Primary environment variable name (e.g., PVEFAILOVER_TIMEOUT)
        fallback: Fallback environment variable name (e.g., PROXMOX_TIMEOUT)
        default: Default value if neither is set

    Returns:
        Environment variable value or default
    """
    value = os.getenv(primary)
    if value is not None:
        return value
    value = os.getenv(fallback)
    if value is not None:
        return value
    return default


DEFAULT_PORT = 8006
DEFAULT_USER_AGENT = "PVEFailover/1.0"


@dataclass
class Credentials:
    """API token credentials for one Proxmox VE cluster."""
    hostname: str = _get_env_var("PVEFAILOVER_HOST", "PROXMOX_HOST", "")
    username: str = _get_env_var("PVEFAILOVER_USERNAME", "PROXMOX_USERNAME", "")
    token_id: str = _get_env_var("PVEFAILOVER_TOKEN_ID", "PROXMOX_TOKEN_ID", "")
    token_secret: str = _get_env_var("PVEFAILOVER_TOKEN_SECRET", "PROXMOX_TOKEN_SECRET", "")
    # Secure by default: only skip certificate checks when explicitly allowed
    allow_self_signed_certs: bool = os.getenv("PVEFAILOVER_ALLOW_SELF_SIGNED", "0") == "1"

    def validate(self) -> None:
        """Raise CredentialsInvalid naming the first missing field."""
        for field_name, label in (
            ("hostname", "Hostname"),
            ("username", "Username"),
            ("token_id", "Token ID"),
            ("token_secret", "Token Secret"),
        ):
            if not getattr(self, field_name):
                raise CredentialsInvalid(f"{label} is required")

    @property
    def authorization(self) -> str:
        return f"PVEAPIToken={self.username}!{self.token_id}={self.token_secret}"


@dataclass
class ConnectionConfig:
    port: int = int(os.getenv("PVEFAILOVER_PORT", str(DEFAULT_PORT)))
    user_agent: str = os.getenv("PVEFAILOVER_UA", DEFAULT_USER_AGENT)
    # Per host call deadline, seconds
    timeout: float = float(os.getenv("PVEFAILOVER_TIMEOUT", "15"))
    probe_timeout: float = float(os.getenv("PVEFAILOVER_PROBE_TIMEOUT", "5"))
    # Response cache
    cache_ttl: float = float(os.getenv("PVEFAILOVER_CACHE_TTL", "300"))  # 5 minutes
    # Circuit Breaker configuration
    circuit_breaker_threshold: int = int(os.getenv("PVEFAILOVER_CB_THRESHOLD", "3"))
    circuit_breaker_timeout: float = float(os.getenv("PVEFAILOVER_CB_TIMEOUT", "60.0"))
    # Host ageing
    max_host_age: float = float(os.getenv("PVEFAILOVER_MAX_HOST_AGE", "300"))
    recent_host_window: float = float(os.getenv("PVEFAILOVER_RECENT_HOST_WINDOW", "120"))
    # Background tasks
    health_check_interval: float = float(os.getenv("PVEFAILOVER_HEALTH_INTERVAL", "60"))
    poll_interval: float = float(os.getenv("PVEFAILOVER_POLL_INTERVAL", "300"))  # 0 = polling disabled
    poll_jitter: float = float(os.getenv("PVEFAILOVER_POLL_JITTER", "30"))

    def __post_init__(self):
        if self.circuit_breaker_threshold < 1:
            raise ValueError("circuit_breaker_threshold must be at least 1")
        self.user_agent = self.user_agent or DEFAULT_USER_AGENT


def parse_host_list(raw: Optional[str | Iterable[str]], exclude: Optional[str] = None) -> List[str]:
    """Turn a comma-separated host setting into a clean list.

    Blank entries, duplicates and `exclude` (normally the primary host) are dropped.
    """
    if not raw:
        return []
    items = raw.split(",") if isinstance(raw, str) else list(raw)
    hosts: List[str] = []
    for item in items:
        host = (item or "").strip()
        if host and host != exclude and host not in hosts:
            hosts.append(host)
    return hosts
