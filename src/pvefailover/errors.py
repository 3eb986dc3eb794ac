"""
Error types raised by the connection core.

Every failure is classified once, at the HTTP client boundary, so the
fallback executor only has to ask `is_retryable()`.
"""
from __future__ import annotations
from typing import List, Optional


class ProxmoxError(Exception):
    """Base class for everything the connection core raises."""


class CredentialsInvalid(ProxmoxError):
    """Credentials are incomplete; raised before any network attempt."""


class NetworkError(ProxmoxError):
    """The host could not be reached (DNS, refused connection, TLS, ...)."""

    def __init__(self, message: str, host: Optional[str] = None):
        super().__init__(message)
        self.host = host


class RequestTimeout(NetworkError):
    """No response arrived within the per-call deadline."""


class ApiError(ProxmoxError):
    """The host answered, but rejected the request with a non-2xx status."""

    def __init__(self, status_code: int, body_excerpt: str = "", host: Optional[str] = None):
        super().__init__(f"API Error {status_code} via {host}: {body_excerpt}")
        self.status_code = status_code
        self.body_excerpt = body_excerpt
        self.host = host


class HostsExhausted(NetworkError):
    """Every candidate host failed with a network-level error."""

    def __init__(self, hosts_tried: List[str], last_error: Optional[BaseException]):
        host = hosts_tried[-1] if hosts_tried else None
        super().__init__(
            f"All connection attempts failed ({', '.join(hosts_tried)}). Last error: {last_error}",
            host=host,
        )
        self.hosts_tried = list(hosts_tried)
        self.last_error = last_error


class NoHostsAvailable(ProxmoxError):
    """The host registry produced no host to try."""


class ResourceNotFound(ProxmoxError):
    """A VM or container could not be located in the cluster resources."""


def is_retryable(error: BaseException) -> bool:
    """True when the same request may be tried against another host."""
    if isinstance(error, HostsExhausted):
        return False
    return isinstance(error, NetworkError)
