import pytest
from unittest.mock import MagicMock

from src.pvefailover.config import Credentials
from src.pvefailover.connection import ClusterConnection
from src.pvefailover.errors import CredentialsInvalid
from src.pvefailover.executor import StatusListener
from src.pvefailover.health import PROBE_PATH
from tests.fakes import FakeClient


@pytest.fixture
def make_connection(credentials, connection_config, clock):
    def _make(responses=None, listener=None):
        client = FakeClient(credentials, connection_config, responses)
        return ClusterConnection(credentials, connection_config, listener=listener, client=client, clock=clock)
    return _make


class TestInitialize:
    def test_primary_defaults_to_credentials_host(self, make_connection):
        conn = make_connection()
        conn.initialize(backup_hosts=" 10.0.0.2, 10.0.0.1,,10.0.0.3,10.0.0.2 ")

        assert conn.registry.primary_host == "10.0.0.1"
        assert conn.registry.hosts == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]
        assert conn.health_monitor.backup_hosts == ["10.0.0.2", "10.0.0.3"]
        assert conn.get_ordered_host_list() == ["10.0.0.1", "10.0.0.2", "10.0.0.3"]

    def test_connections_share_nothing(self, make_connection):
        first, second = make_connection(), make_connection()
        first.initialize("10.0.0.1", ["10.0.0.2"])
        second.initialize("10.1.0.1")

        assert first.registry is not second.registry
        assert first.cache is not second.cache
        assert second.registry.hosts == ["10.1.0.1"]

    def test_components_share_one_cache(self, make_connection):
        conn = make_connection()
        assert conn.executor.cache is conn.cache
        assert conn.executor.coalescer is conn.coalescer


class TestPrimaryChanges:
    @pytest.mark.asyncio
    async def test_set_primary_host_clears_cache_and_fallback(self, make_connection, network_error):
        conn = make_connection({"10.0.0.1": network_error("10.0.0.1"), "10.0.0.2": {"data": []}})
        conn.initialize("10.0.0.1", ["10.0.0.2"])
        await conn.execute("/api2/json/nodes")
        assert conn.executor.fallback_active is True
        assert len(conn.cache) == 1

        conn.set_primary_host("10.0.0.2")

        assert conn.registry.primary_host == "10.0.0.2"
        assert conn.executor.fallback_active is False
        assert len(conn.cache) == 0

    @pytest.mark.asyncio
    async def test_new_primary_is_used_immediately(self, make_connection):
        conn = make_connection({"10.0.0.1": "old cluster", "10.0.0.9": "new cluster"})
        conn.initialize("10.0.0.1", ["10.0.0.2"])
        assert await conn.execute("/api2/json/nodes") == "old cluster"

        conn.set_primary_host("10.0.0.9")

        assert conn.get_ordered_host_list()[0] == "10.0.0.9"
        assert await conn.execute("/api2/json/nodes") == "new cluster"
        assert conn.client.hosts_called() == ["10.0.0.1", "10.0.0.9"]

    def test_update_credentials_moves_primary(self, make_connection):
        conn = make_connection()
        conn.initialize()

        conn.update_credentials(Credentials(hostname="10.0.0.5", username="root@pam", token_id="t", token_secret="s"))

        assert conn.client.credentials.hostname == "10.0.0.5"
        assert conn.registry.primary_host == "10.0.0.5"

    def test_update_credentials_rejects_incomplete(self, make_connection):
        conn = make_connection()
        conn.initialize()

        with pytest.raises(CredentialsInvalid):
            conn.update_credentials(Credentials(hostname="10.0.0.5", username="", token_id="t", token_secret="s"))
        assert conn.registry.primary_host == "10.0.0.1"


class TestConnectionTest:
    @pytest.mark.asyncio
    async def test_primary_reachable(self, make_connection):
        conn = make_connection({("10.0.0.1", PROBE_PATH): {"data": {"version": "8.2.4"}}})
        conn.initialize("10.0.0.1", ["10.0.0.2"])

        assert await conn.test_connection() is True
        assert conn.client.calls == [("10.0.0.1", PROBE_PATH, "GET")]

    @pytest.mark.asyncio
    async def test_primary_unreachable_does_not_fall_back(self, make_connection):
        conn = make_connection({("10.0.0.2", PROBE_PATH): {"data": {}}})
        conn.initialize("10.0.0.1", ["10.0.0.2"])

        assert await conn.test_connection() is False
        assert conn.client.hosts_called() == ["10.0.0.1"]

    @pytest.mark.asyncio
    async def test_invalid_candidate_credentials(self, make_connection):
        conn = make_connection()
        candidate = Credentials(hostname="10.0.0.1", username="root@pam", token_id="", token_secret="")

        assert await conn.test_connection(candidate) is False
        assert conn.client.calls == []


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager_stops_background_tasks(self, make_connection):
        async with make_connection() as conn:
            conn.initialize()
            conn.start_health_monitoring()
            conn.start_polling()
            assert conn.health_monitor.running
            # poll_interval is 0 in the test config
            assert not conn.poller.running

        assert not conn.health_monitor.running
        assert len(conn.coalescer) == 0

    @pytest.mark.asyncio
    async def test_debug_status(self, make_connection):
        listener = MagicMock(spec=StatusListener)
        conn = make_connection({"10.0.0.1": "ok"}, listener=listener)
        conn.initialize("10.0.0.1", ["10.0.0.2"])
        await conn.execute("/api2/json/version")

        status = conn.get_debug_status()

        assert status["active_host"] == "10.0.0.1"
        assert status["backup_hosts"] == ["10.0.0.2"]
        assert status["health_monitoring"] is False
        assert status["polling"] is False
        assert set(status["hosts"]) == {"10.0.0.1", "10.0.0.2"}
        listener.connected.assert_called_once_with("10.0.0.1", False)

    def test_cleanup_sweeps_stale_hosts(self, make_connection, clock):
        conn = make_connection()
        conn.initialize("10.0.0.1", ["10.0.0.2"])
        clock.advance(301)
        conn.registry.record_outcome("10.0.0.1", True, 10)

        assert conn.cleanup() == ["10.0.0.2"]
