import asyncio
import json
import httpx
import pytest

from src.pvefailover.config import Credentials
from src.pvefailover.errors import ApiError, CredentialsInvalid, NetworkError, RequestTimeout
from src.pvefailover.http_client import ProxmoxClient, _build_url, _parse_body


def make_client(credentials, connection_config, handler):
    return ProxmoxClient(credentials, connection_config, transport=httpx.MockTransport(handler))


class TestHelpers:
    def test_build_url(self):
        assert _build_url("10.0.0.1", 8006, "/api2/json/version") == "https://10.0.0.1:8006/api2/json/version"
        assert _build_url("pve1", 8006, "api2/json/nodes") == "https://pve1:8006/api2/json/nodes"

    def test_build_url_brackets_ipv6(self):
        assert _build_url("fd00::2", 8006, "/api2/json/version") == "https://[fd00::2]:8006/api2/json/version"
        assert _build_url("[fd00::2]", 8006, "/x") == "https://[fd00::2]:8006/x"
        assert _build_url("2001:db8:0:0:0:0:0:1", 8006, "/x") == "https://[2001:db8::1]:8006/x"

    def test_parse_body(self):
        assert _parse_body('{"data": 1}') == {"data": 1}
        assert _parse_body("OK") == "OK"
        assert _parse_body("") == ""


class TestProxmoxClient:
    def test_rejects_incomplete_credentials(self, connection_config):
        with pytest.raises(CredentialsInvalid, match="Token ID"):
            ProxmoxClient(Credentials(hostname="h", username="u", token_id="", token_secret="s"), connection_config)

    @pytest.mark.asyncio
    async def test_request_shape(self, credentials, connection_config):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["method"] = request.method
            seen["auth"] = request.headers["Authorization"]
            seen["accept"] = request.headers["Accept"]
            return httpx.Response(200, json={"data": {"version": "8.2"}})

        client = make_client(credentials, connection_config, handler)
        result = await client.send("10.0.0.2", "/api2/json/version")

        assert result == {"data": {"version": "8.2"}}
        assert seen == {
            "url": "https://10.0.0.2:8006/api2/json/version",
            "method": "GET",
            "auth": "PVEAPIToken=root@pam!monitor=secret",
            "accept": "application/json",
        }

    @pytest.mark.asyncio
    async def test_ipv6_host(self, credentials, connection_config):
        seen = {}

        def handler(request):
            seen["host"] = request.url.host
            seen["port"] = request.url.port
            return httpx.Response(200, json={"data": {"version": "8.2"}})

        client = make_client(credentials, connection_config, handler)

        assert await client.send("fd00::2", "/api2/json/version") == {"data": {"version": "8.2"}}
        assert seen == {"host": "fd00::2", "port": 8006}

    @pytest.mark.asyncio
    async def test_none_host_uses_credentials_hostname(self, credentials, connection_config):
        hosts = []

        def handler(request):
            hosts.append(request.url.host)
            return httpx.Response(200, text="")

        client = make_client(credentials, connection_config, handler)
        assert await client.send(None, "/api2/json/version") == ""
        assert hosts == ["10.0.0.1"]

    @pytest.mark.asyncio
    async def test_non_json_body_is_returned_as_text(self, credentials, connection_config):
        client = make_client(credentials, connection_config, lambda request: httpx.Response(200, text="UPID:pve1:0001"))
        assert await client.send("10.0.0.1", "/x") == "UPID:pve1:0001"

    @pytest.mark.asyncio
    async def test_form_body_for_post(self, credentials, connection_config):
        seen = {}

        def handler(request):
            seen["content"] = request.content
            seen["type"] = request.headers.get("Content-Type")
            return httpx.Response(200, json={"data": "UPID"})

        client = make_client(credentials, connection_config, handler)
        await client.send("10.0.0.1", "/status/stop", method="POST", body={"overrule-shutdown": "1"})

        assert seen["content"] == b"overrule-shutdown=1"
        assert seen["type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_string_body_for_post(self, credentials, connection_config):
        seen = {}

        def handler(request):
            seen["content"] = request.content
            seen["type"] = request.headers.get("Content-Type")
            return httpx.Response(200, text="")

        client = make_client(credentials, connection_config, handler)
        await client.send("10.0.0.1", "/status/stop", method="POST", body="overrule-shutdown=1")

        assert seen["content"] == b"overrule-shutdown=1"
        assert seen["type"] == "application/x-www-form-urlencoded"

    @pytest.mark.asyncio
    async def test_non_2xx_is_api_error(self, credentials, connection_config):
        body = "authentication failure " * 20
        client = make_client(credentials, connection_config, lambda request: httpx.Response(401, text=body))

        with pytest.raises(ApiError) as excinfo:
            await client.send("10.0.0.1", "/api2/json/nodes")

        assert excinfo.value.status_code == 401
        assert excinfo.value.host == "10.0.0.1"
        assert len(excinfo.value.body_excerpt) == 200
        assert not isinstance(excinfo.value, NetworkError)

    @pytest.mark.asyncio
    async def test_empty_error_body_gets_status_text(self, credentials, connection_config):
        client = make_client(credentials, connection_config, lambda request: httpx.Response(500))

        with pytest.raises(ApiError) as excinfo:
            await client.send("10.0.0.1", "/x")
        assert "500" in excinfo.value.body_excerpt

    @pytest.mark.asyncio
    async def test_connection_refused_is_network_error(self, credentials, connection_config):
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        client = make_client(credentials, connection_config, handler)
        with pytest.raises(NetworkError) as excinfo:
            await client.send("10.0.0.9", "/x")
        assert excinfo.value.host == "10.0.0.9"
        assert not isinstance(excinfo.value, RequestTimeout)

    @pytest.mark.asyncio
    async def test_transport_timeout_is_request_timeout(self, credentials, connection_config):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        client = make_client(credentials, connection_config, handler)
        with pytest.raises(RequestTimeout):
            await client.send("10.0.0.1", "/x")

    @pytest.mark.asyncio
    async def test_deadline_aborts_slow_response(self, credentials, connection_config):
        finished = []

        async def handler(request):
            await asyncio.sleep(1)
            finished.append(True)
            return httpx.Response(200, text=json.dumps({"data": 1}))

        client = make_client(credentials, connection_config, handler)
        with pytest.raises(RequestTimeout):
            await client.send("10.0.0.1", "/x", timeout=0.05)
        await asyncio.sleep(0)
        assert finished == []

    @pytest.mark.asyncio
    async def test_update_credentials(self, credentials, connection_config):
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, text="")

        client = make_client(credentials, connection_config, handler)
        client.update_credentials(Credentials(hostname="10.0.0.1", username="ops@pve", token_id="t", token_secret="s"))
        await client.send(None, "/x")

        assert seen == ["PVEAPIToken=ops@pve!t=s"]
        with pytest.raises(CredentialsInvalid):
            client.update_credentials(Credentials(hostname="", username="u", token_id="t", token_secret="s"))
