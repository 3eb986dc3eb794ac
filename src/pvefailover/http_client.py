"""
Single-host HTTP client for the Proxmox VE API.

Issues exactly one request to one named host and classifies the outcome:
a parsed body, an ApiError (host answered with non-2xx), or a NetworkError
(host could not be reached in time).
"""
from __future__ import annotations
import asyncio
import ipaddress
import json
import logging
from typing import Any, Dict, Mapping, Optional, Union

import httpx

from .config import ConnectionConfig, Credentials
from .errors import ApiError, NetworkError, RequestTimeout

logger = logging.getLogger(__name__)

BODY_EXCERPT_LENGTH = 200

RequestBody = Union[str, bytes, Mapping[str, Any], None]


def _get_auth_headers(credentials: Credentials) -> Dict[str, str]:
    """Get the API token header for the given credentials."""
    return {"Authorization": credentials.authorization}


def _build_headers(cfg: ConnectionConfig, credentials: Credentials, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    headers = {
        "User-Agent": cfg.user_agent,
        "Accept": "application/json",
        **_get_auth_headers(credentials),
    }
    if extra:
        headers.update(extra)
    return headers


def _format_host(host: str) -> str:
    """Bracket IPv6 literals for use in a URL authority."""
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return host
    if address.version == 6:
        return f"[{address.compressed}]"
    return host


def _build_url(host: str, port: int, path: str) -> str:
    if not path.startswith("/"):
        path = "/" + path
    return f"https://{_format_host(host)}:{port}{path}"


def _encode_body(body: RequestBody) -> Dict[str, Any]:
    """Proxmox expects form encoded bodies for write calls."""
    if body is None:
        return {}
    if isinstance(body, Mapping):
        return {"data": dict(body)}
    if isinstance(body, str):
        body = body.encode("utf-8")
    return {"content": body}


def _parse_body(text: str) -> Any:
    """Return the JSON document, or the raw text when the body is not JSON."""
    try:
        return json.loads(text)
    except ValueError:
        return text


class ProxmoxClient:
    """Sends one authenticated request to one host; knows nothing about fallback."""

    def __init__(
        self,
        credentials: Credentials,
        cfg: Optional[ConnectionConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        credentials.validate()
        self._credentials = credentials
        self.cfg = cfg or ConnectionConfig()
        self._transport = transport

    @property
    def credentials(self) -> Credentials:
        return self._credentials

    def update_credentials(self, credentials: Credentials) -> None:
        credentials.validate()
        self._credentials = credentials

    async def send(
        self,
        host: Optional[str],
        path: str,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        body: RequestBody = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Perform the request and return the parsed response body.

        `host` of None means the hostname from the credentials.
        Raises ApiError, RequestTimeout or NetworkError.
        """
        target = host or self._credentials.hostname
        method = (method or "GET").upper()
        deadline = timeout if timeout is not None else self.cfg.timeout
        url = _build_url(target, self.cfg.port, path)
        request_headers = _build_headers(self.cfg, self._credentials, headers)
        payload = _encode_body(body) if method != "GET" else {}
        if "content" in payload:
            request_headers.setdefault("Content-Type", "application/x-www-form-urlencoded")

        logger.debug("API call attempt: %s %s", method, url)
        try:
            response = await asyncio.wait_for(
                self._request(method, url, request_headers, payload, deadline),
                timeout=deadline,
            )
        except asyncio.TimeoutError:
            raise RequestTimeout(f"Request to {target} timed out after {deadline}s", host=target)
        except httpx.TimeoutException as e:
            raise RequestTimeout(f"Request to {target} timed out: {e}", host=target) from e
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            # Covers DNS failures, refused connections and TLS handshake errors
            raise NetworkError(f"Cannot reach Proxmox host {target}: {e}", host=target) from e

        text = response.text
        if not response.is_success:
            excerpt = (text or f"(Status: {response.status_code} {response.reason_phrase})")[:BODY_EXCERPT_LENGTH]
            raise ApiError(response.status_code, excerpt, host=target)

        return _parse_body(text)

    async def _request(self, method: str, url: str, headers: Dict[str, str], payload: Dict[str, Any], deadline: float) -> httpx.Response:
        async with httpx.AsyncClient(
            http2=True,
            timeout=httpx.Timeout(deadline),
            verify=not self._credentials.allow_self_signed_certs,
            transport=self._transport,
        ) as client:
            return await client.request(method, url, headers=headers, **payload)
