"""
Tests for the JSON-RPC provider plugin client
"""
import json

import httpx
import pytest

from stackctl.models.enums import ErrorCodes
from stackctl.models.exceptions import ProviderError, ProviderFatalError, ProviderTransientError
from stackctl.providers.rpc import RPCProvider

DESCRIBE = {
    "name": "dns-plugin",
    "version": "2.1.0",
    "resource_types": {
        "dns_record": {"force_new": ["zone"], "required": ["zone", "name"], "stable": ["fqdn"]},
    },
}


class PluginServer:
    """Answers JSON-RPC calls from a table of canned results"""

    def __init__(self):
        self.requests = []
        self.results = {"provider.describe": DESCRIBE}
        self.responses = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        method = body["method"]
        if method in self.responses:
            return self.responses[method](body)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": self.results.get(method)})

    @property
    def methods(self):
        return [r["method"] for r in self.requests]


@pytest.fixture
def server():
    """Fake plugin endpoint"""
    return PluginServer()


@pytest.fixture
async def provider(server):
    """Configured RPC provider talking to the fake plugin"""
    rpc = RPCProvider("http://plugin.local/", transport=httpx.MockTransport(server))
    await rpc.configure()
    yield rpc
    await rpc.close()


class TestRPCProvider:
    """Test cases for RPCProvider"""

    @pytest.mark.asyncio
    async def test_configure_reads_schemas(self, provider, server):
        assert provider.plugin_name == "dns-plugin"
        assert provider.version == "2.1.0"
        assert provider.resource_types() == ["dns_record"]
        schema = provider.get_schema("dns_record")
        assert schema.force_new == frozenset({"zone"})
        assert schema.required == frozenset({"zone", "name"})
        assert schema.stable == frozenset({"fqdn"})
        assert server.requests[0]["jsonrpc"] == "2.0"

    def test_schema_before_configure(self):
        with pytest.raises(ProviderError) as exc_info:
            RPCProvider("http://plugin.local").get_schema("dns_record")

        assert exc_info.value.code == ErrorCodes.PROVIDER_NOT_CONFIGURED

    @pytest.mark.asyncio
    async def test_unsupported_type(self, provider):
        with pytest.raises(ProviderFatalError):
            provider.get_schema("dns_zone")

    @pytest.mark.asyncio
    async def test_create_and_read(self, provider, server):
        server.results["resource.create"] = {"id": 42, "attributes": {"fqdn": "www.example.com"}}
        server.results["resource.read"] = {"attributes": {"fqdn": "www.example.com"}}

        created = await provider.create("dns_record", {"zone": "example.com", "name": "www"})
        attributes = await provider.read("dns_record", created.id, {"zone": "example.com", "name": "www"})

        assert created.id == "42"
        assert attributes == {"fqdn": "www.example.com"}
        assert server.requests[1]["params"] == {"type": "dns_record", "config": {"zone": "example.com", "name": "www"}}
        assert server.requests[2]["params"]["id"] == "42"

    @pytest.mark.asyncio
    async def test_read_missing_resource(self, provider):
        assert await provider.read("dns_record", "7", {}) is None

    @pytest.mark.asyncio
    async def test_update_and_delete(self, provider, server):
        server.results["resource.update"] = {"attributes": {"ttl": 60}}

        attributes = await provider.update("dns_record", "7", {"ttl": 300}, {"ttl": 60})
        await provider.delete("dns_record", "7", {"ttl": 60})

        assert attributes == {"ttl": 60}
        assert server.methods[-2:] == ["resource.update", "resource.delete"]
        assert server.requests[-2]["params"]["old_config"] == {"ttl": 300}

    @pytest.mark.asyncio
    async def test_transient_rpc_error(self, provider, server):
        server.responses["resource.create"] = lambda body: httpx.Response(200, json={
            "jsonrpc": "2.0",
            "id": body["id"],
            "error": {"code": -32000, "message": "rate limited", "data": {"transient": True, "code": "Throttled"}},
        })

        with pytest.raises(ProviderTransientError) as exc_info:
            await provider.create("dns_record", {"zone": "example.com", "name": "www"})

        assert exc_info.value.provider_code == "Throttled"
        assert "rate limited" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_fatal_rpc_error(self, provider, server):
        server.responses["resource.create"] = lambda body: httpx.Response(200, json={
            "jsonrpc": "2.0", "id": body["id"], "error": {"code": -32602, "message": "zone not found"},
        })

        with pytest.raises(ProviderFatalError) as exc_info:
            await provider.create("dns_record", {"zone": "missing", "name": "www"})

        assert exc_info.value.provider_code == "-32602"

    @pytest.mark.parametrize("status, error_class", [
        (429, ProviderTransientError),
        (503, ProviderTransientError),
        (404, ProviderFatalError),
    ])
    @pytest.mark.asyncio
    async def test_http_status_classification(self, provider, server, status, error_class):
        server.responses["resource.delete"] = lambda body: httpx.Response(status)

        with pytest.raises(error_class):
            await provider.delete("dns_record", "7", {})

    @pytest.mark.asyncio
    async def test_invalid_response(self, provider, server):
        server.responses["resource.read"] = lambda body: httpx.Response(200, content=b"<html>")

        with pytest.raises(ProviderFatalError):
            await provider.read("dns_record", "7", {})

    @pytest.mark.asyncio
    async def test_unreachable_plugin_is_transient(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        rpc = RPCProvider("http://plugin.local", transport=httpx.MockTransport(refuse))

        with pytest.raises(ProviderTransientError):
            await rpc.configure()
        await rpc.close()
