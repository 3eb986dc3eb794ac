import pytest
import os
import sys

# Add src to python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from src.pvefailover.config import ConnectionConfig, Credentials
from src.pvefailover.errors import ApiError, NetworkError
from tests.fakes import FakeClock


@pytest.fixture
def credentials():
    return Credentials(
        hostname="10.0.0.1",
        username="root@pam",
        token_id="monitor",
        token_secret="secret",
        allow_self_signed_certs=True,
    )


@pytest.fixture
def connection_config():
    return ConnectionConfig(
        port=8006,
        timeout=2,
        probe_timeout=1,
        cache_ttl=300,
        circuit_breaker_threshold=3,
        circuit_breaker_timeout=60,
        max_host_age=300,
        recent_host_window=120,
        health_check_interval=60,
        poll_interval=0,
        poll_jitter=0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def network_error():
    def _make(host):
        return NetworkError(f"Cannot reach Proxmox host {host}", host=host)
    return _make


@pytest.fixture
def api_error():
    def _make(host, status=401):
        return ApiError(status, "authentication failure", host=host)
    return _make
