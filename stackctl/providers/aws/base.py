"""
Base class for AWS resource handlers and boto3 error classification
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional

import boto3
from botocore.exceptions import ClientError, ConnectionError, EndpointConnectionError

from ...models.data_models import ProviderResult, ResourceSchema
from ...models.exceptions import ProviderError, ProviderFatalError, ProviderTransientError

# Error codes AWS documents as retryable, plus eventual-consistency conflicts
TRANSIENT_ERROR_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'ThrottledException',
    'RequestLimitExceeded',
    'TooManyRequestsException',
    'SlowDown',
    'ServiceUnavailable',
    'InternalError',
    'InternalFailure',
    'RequestTimeout',
    'OperationAborted',
    'DistributionNotDisabled',
    'ResourceInUse',
    'ResourceInUseFault',
    'ScalingActivityInProgress',
    'ScalingActivityInProgressFault',
    'IncorrectState',
})


def client_error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', '')


def translate_error(error: Exception, resource_type: str, action: str) -> ProviderError:
    """Map a boto3 exception to a transient or fatal provider error"""
    if isinstance(error, ClientError):
        code = client_error_code(error)
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode', 0)
        message = error.response.get('Error', {}).get('Message', str(error))
        error_class = ProviderTransientError if code in TRANSIENT_ERROR_CODES or status >= 500 else ProviderFatalError
        return error_class(
            f"{action} {resource_type} failed: {code}: {message}",
            action=action,
            provider_code=code,
            details={"resource_type": resource_type, "http_status": status}
        )
    if isinstance(error, (EndpointConnectionError, ConnectionError)):
        return ProviderTransientError(
            f"{action} {resource_type} failed: {error}",
            action=action,
            details={"resource_type": resource_type}
        )
    return ProviderFatalError(
        f"{action} {resource_type} failed: {error}",
        action=action,
        details={"resource_type": resource_type}
    )


class ClientFactory:
    """Creates boto3 clients on demand and reuses them"""

    def __init__(self, session: boto3.Session, **client_kwargs):
        self.session = session
        self.client_kwargs = client_kwargs
        self._clients: Dict[str, Any] = {}

    @property
    def region(self) -> str:
        return self.session.region_name or "us-east-1"

    def get(self, service: str):
        if service not in self._clients:
            self._clients[service] = self.session.client(service, **self.client_kwargs)
        return self._clients[service]


class ResourceHandler(ABC):
    """CRUD for one AWS resource type.

    Handlers make blocking boto3 calls; the provider runs them off the event loop.
    ``config`` is the evaluated declaration; ``attributes`` returned from every
    operation are what other resources can reference.
    """

    resource_type: str = ""
    force_new: FrozenSet[str] = frozenset()
    required: FrozenSet[str] = frozenset()
    # Computed attributes that keep their value across an update
    stable: FrozenSet[str] = frozenset({"arn"})
    # Error codes meaning the resource does not exist
    not_found_codes: FrozenSet[str] = frozenset()

    def __init__(self, clients: ClientFactory):
        self.clients = clients

    @classmethod
    def schema(cls) -> ResourceSchema:
        return ResourceSchema(
            resource_type=cls.resource_type,
            force_new=cls.force_new,
            required=cls.required,
            stable=cls.stable
        )

    @classmethod
    def prepare(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        """Evaluated config as it is diffed and recorded"""
        return config

    def is_not_found(self, error: Exception) -> bool:
        return isinstance(error, ClientError) and client_error_code(error) in self.not_found_codes

    @abstractmethod
    def create(self, config: Dict[str, Any]) -> ProviderResult:
        pass

    @abstractmethod
    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        pass


def tag_list(tags: Optional[Dict[str, Any]], key: str = 'Key', value: str = 'Value'):
    return [{key: str(k), value: str(v)} for k, v in sorted((tags or {}).items())]

