"""
Shared fixtures: an in-memory provider and state backend
"""
import copy
import itertools
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from config.environments import get_config
from stackctl.models.data_models import (
    Configuration, DeposedObject, LockInfo, OutputValue, ProviderResult, ResourceSchema, ResourceState, StateRecord
)
from stackctl.models.exceptions import ProviderFatalError, StateLockError
from stackctl.models.serialization import deserialize_state, new_lock_info, serialize_state
from stackctl.services.interfaces import Provider, StateBackend
from stackctl.services.loader import DeclarationLoader
from stackctl.services.retry import RetryConfig, RetryHandler

DEFAULT_SCHEMAS = {
    "test_bucket": ResourceSchema("test_bucket", force_new=frozenset({"name"}), required=frozenset({"name"})),
    "test_policy": ResourceSchema("test_policy", force_new=frozenset({"bucket"}), required=frozenset({"bucket"})),
    "test_cdn": ResourceSchema("test_cdn", required=frozenset({"origin"})),
    "test_object": ResourceSchema("test_object", force_new=frozenset({"bucket", "key"})),
}


class FakeProvider(Provider):
    """Provider double that keeps resources in a dict and records every call"""

    name = "fake"
    version = "1.0.0"

    def __init__(self, schemas: Optional[Dict[str, ResourceSchema]] = None):
        self.schemas = dict(DEFAULT_SCHEMAS if schemas is None else schemas)
        self.resources: Dict[str, Tuple[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, ...]] = []
        self.failures: Dict[Tuple[str, str], List[Exception]] = {}
        self.hooks: Dict[Tuple[str, str], Callable[[], None]] = {}
        self._ids = itertools.count(1)

    def fail(self, action: str, resource_type: str, *errors: Exception) -> None:
        """Raise ``errors`` one per call for ``action`` on ``resource_type``"""
        self.failures.setdefault((action, resource_type), []).extend(errors)

    def _maybe_fail(self, action: str, resource_type: str) -> None:
        hook = self.hooks.get((action, resource_type))
        if hook:
            hook()
        pending = self.failures.get((action, resource_type))
        if pending:
            raise pending.pop(0)

    def provider_calls(self, action: Optional[str] = None) -> List[Tuple[str, ...]]:
        return [c for c in self.calls if c[0] != "configure" and (action is None or c[0] == action)]

    async def configure(self) -> None:
        self.calls.append(("configure",))

    def resource_types(self) -> List[str]:
        return list(self.schemas)

    def get_schema(self, resource_type: str) -> ResourceSchema:
        if resource_type not in self.schemas:
            raise ProviderFatalError(f"Unsupported resource type {resource_type}")
        return self.schemas[resource_type]

    async def create(self, resource_type: str, config: Dict[str, Any]) -> ProviderResult:
        self.calls.append(("create", resource_type, config.get("name", "")))
        self._maybe_fail("create", resource_type)
        resource_id = f"{resource_type}-{next(self._ids)}"
        attributes = self._attributes(resource_id, config)
        self.resources[resource_id] = (resource_type, attributes)
        return ProviderResult(id=resource_id, attributes=attributes)

    async def read(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        self.calls.append(("read", resource_type, resource_id))
        self._maybe_fail("read", resource_type)
        if resource_id not in self.resources:
            return None
        return dict(self.resources[resource_id][1])

    async def update(
        self,
        resource_type: str,
        resource_id: str,
        old_config: Dict[str, Any],
        new_config: Dict[str, Any]
    ) -> Dict[str, Any]:
        self.calls.append(("update", resource_type, resource_id))
        self._maybe_fail("update", resource_type)
        attributes = self._attributes(resource_id, new_config)
        self.resources[resource_id] = (resource_type, attributes)
        return attributes

    async def delete(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> None:
        self.calls.append(("delete", resource_type, resource_id))
        self._maybe_fail("delete", resource_type)
        self.resources.pop(resource_id, None)

    def _attributes(self, resource_id: str, config: Dict[str, Any]) -> Dict[str, Any]:
        return dict(config, id=resource_id, arn=f"arn:fake:{resource_id}", domain_name=f"{resource_id}.example.net")


class MemoryStateBackend(StateBackend):
    """State backend that keeps serialized copies in memory"""

    def __init__(self):
        self.document: Optional[Dict[str, Any]] = None
        self.saves: List[Dict[str, Any]] = []
        self.lock: Optional[LockInfo] = None

    def describe(self) -> str:
        return "memory"

    async def initialize(self) -> None:
        pass

    async def load(self) -> Optional[StateRecord]:
        if self.document is None:
            return None
        return deserialize_state(copy.deepcopy(self.document))

    async def save(self, state: StateRecord) -> None:
        state.serial += 1
        self.document = copy.deepcopy(serialize_state(state))
        self.saves.append(self.document)

    async def acquire_lock(self, operation: str) -> LockInfo:
        if self.lock is not None:
            raise StateLockError("State memory is locked", {"id": self.lock.id})
        self.lock = new_lock_info(operation, "memory")
        return self.lock

    async def release_lock(self, lock: LockInfo) -> None:
        self.lock = None

    async def force_unlock(self, lock_id: str) -> None:
        if self.lock is None or self.lock.id != lock_id:
            raise StateLockError(f"No lock {lock_id}")
        self.lock = None


def load_config(text: str, cli_vars: Optional[Dict[str, str]] = None, environ=None) -> Configuration:
    """Load a single declaration document"""
    loader = DeclarationLoader(environ={} if environ is None else environ)
    return loader.load_documents([("main.stack.yaml", text)], cli_vars=cli_vars)


async def no_sleep(delay: float) -> None:
    pass


@pytest.fixture
def fake_provider():
    """Provider double with the default test schemas"""
    return FakeProvider()


@pytest.fixture
def memory_backend():
    """Empty in-memory state backend"""
    return MemoryStateBackend()


@pytest.fixture
def retry_handler():
    """Retry handler that never sleeps"""
    return RetryHandler(RetryConfig(max_retries=3, base_delay=0.0, jitter=False), sleep=no_sleep)


@pytest.fixture
def test_settings():
    """Settings for the testing environment"""
    return get_config("testing")


@pytest.fixture
def sample_state():
    """State Record holding one bucket with a deposed predecessor"""
    return StateRecord(
        lineage="4f1c2a8e-0000-4000-8000-000000000001",
        resources=[
            ResourceState(
                address="test_bucket.site",
                type="test_bucket",
                name="site",
                id="test_bucket-2",
                config={"name": "site"},
                attributes={"id": "test_bucket-2", "arn": "arn:fake:test_bucket-2"},
                created_at=datetime(2024, 1, 1, 10, 0, 0),
                updated_at=datetime(2024, 1, 1, 10, 0, 0),
                deposed=[DeposedObject("test_bucket-1", {"name": "old"}, {"id": "test_bucket-1"})]
            )
        ],
        outputs={"bucket": OutputValue(value="site"), "token": OutputValue(value="s3cr3t", sensitive=True)}
    )
