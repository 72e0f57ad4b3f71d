"""
Provider plugin reached over JSON-RPC 2.0 on HTTP
"""
import itertools
import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from config.logging import get_logger
from ..models.data_models import ProviderResult, ResourceSchema
from ..models.enums import ErrorCodes
from ..models.exceptions import ProviderError, ProviderFatalError, ProviderTransientError
from ..services.interfaces import Provider
from ..utils.powertools import trace_provider_operation

logger = get_logger("provider.rpc")

_request_ids = itertools.count(1)


@dataclass
class RPCRequest:
    """JSON-RPC request structure"""
    method: str
    params: Dict[str, Any] = field(default_factory=dict)
    jsonrpc: str = "2.0"
    id: int = field(default_factory=lambda: next(_request_ids))


@dataclass
class RPCResponse:
    """JSON-RPC response structure"""
    jsonrpc: str
    id: Any
    result: Any = None
    error: Optional[Dict[str, Any]] = None


class RPCProvider(Provider):
    """Out-of-process provider plugin

    The plugin serves ``POST {url}/rpc`` with the methods ``provider.describe``,
    ``resource.create``, ``resource.read``, ``resource.update`` and
    ``resource.delete``. ``provider.describe`` lists each resource type's
    ``force_new``, ``required`` and ``stable`` attribute names. A JSON-RPC error whose ``data.transient`` is true,
    HTTP 429 and 5xx responses and connection failures are retried by the
    executor; every other error is fatal.
    """

    name = "rpc"

    def __init__(self, server_url: str, timeout: int = 30, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.server_url = server_url.rstrip('/')
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._schemas: Dict[str, ResourceSchema] = {}
        self.version = "0.0.0"
        self.plugin_name: Optional[str] = None

    async def __aenter__(self):
        await self.configure()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.server_url,
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport
            )

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def configure(self) -> None:
        """Fetch the plugin's name, version and resource schemas"""
        await self.connect()
        described = await self._call("provider.describe") or {}
        self.plugin_name = described.get("name", self.name)
        self.version = str(described.get("version", self.version))
        self._schemas = {
            resource_type: ResourceSchema(
                resource_type=resource_type,
                force_new=frozenset(fields.get("force_new", [])),
                required=frozenset(fields.get("required", [])),
                stable=frozenset(fields.get("stable", []))
            )
            for resource_type, fields in (described.get("resource_types") or {}).items()
        }
        logger.info(
            f"Configured plugin {self.plugin_name} {self.version} at {self.server_url}",
            resource_types=sorted(self._schemas),
        )

    def resource_types(self) -> List[str]:
        self._require_configured()
        return list(self._schemas)

    def get_schema(self, resource_type: str) -> ResourceSchema:
        self._require_configured()
        if resource_type not in self._schemas:
            raise ProviderFatalError(f"Plugin does not support resource type {resource_type}")
        return self._schemas[resource_type]

    def _require_configured(self) -> None:
        if self.plugin_name is None:
            raise ProviderError(ErrorCodes.PROVIDER_NOT_CONFIGURED, "RPC provider used before configure()")

    @trace_provider_operation("create")
    async def create(self, resource_type: str, config: Dict[str, Any]) -> ProviderResult:
        result = await self._call("resource.create", type=resource_type, config=config)
        return ProviderResult(id=str(result["id"]), attributes=result.get("attributes", {}))

    @trace_provider_operation("read")
    async def read(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        result = await self._call("resource.read", type=resource_type, id=resource_id, config=config)
        if not result:
            return None
        return result.get("attributes", {})

    @trace_provider_operation("update")
    async def update(
        self,
        resource_type: str,
        resource_id: str,
        old_config: Dict[str, Any],
        new_config: Dict[str, Any]
    ) -> Dict[str, Any]:
        result = await self._call(
            "resource.update", type=resource_type, id=resource_id, old_config=old_config, new_config=new_config
        )
        return (result or {}).get("attributes", {})

    @trace_provider_operation("delete")
    async def delete(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> None:
        await self._call("resource.delete", type=resource_type, id=resource_id, config=config)

    async def _call(self, method: str, **params) -> Any:
        response = await self._send_request(RPCRequest(method=method, params=params))
        return response.result

    async def _send_request(self, request: RPCRequest) -> RPCResponse:
        """Send a JSON-RPC request to the plugin"""
        if not self._client:
            await self.connect()

        try:
            response = await self._client.post(
                "/rpc",
                json=asdict(request),
                headers={"Content-Type": "application/json"}
            )
        except httpx.TransportError as e:
            raise ProviderTransientError(
                f"Cannot reach provider plugin at {self.server_url}: {e}",
                action=request.method
            )

        if response.status_code == 429 or response.status_code >= 500:
            raise ProviderTransientError(
                f"Provider plugin returned HTTP {response.status_code}",
                action=request.method,
                provider_code=str(response.status_code)
            )
        if response.status_code >= 400:
            raise ProviderFatalError(
                f"Provider plugin rejected {request.method}: HTTP {response.status_code}",
                action=request.method,
                provider_code=str(response.status_code)
            )

        try:
            rpc_response = RPCResponse(**response.json())
        except (json.JSONDecodeError, TypeError) as e:
            raise ProviderFatalError(f"Invalid JSON-RPC response from provider plugin: {e}", action=request.method)

        if rpc_response.error:
            error = rpc_response.error
            data = error.get("data") or {}
            error_class = ProviderTransientError if data.get("transient") else ProviderFatalError
            raise error_class(
                f"{request.method} failed: {error.get('message', 'unknown error')}",
                action=request.method,
                provider_code=str(data.get("code", error.get("code"))),
                details={"rpc_error": error}
            )

        return rpc_response
