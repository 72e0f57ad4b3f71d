"""
Abstract service interfaces for stackctl
"""
import asyncio
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from ..models.data_models import LockInfo, ProviderResult, ResourceSchema, StateRecord
from ..models.exceptions import StateLockError


class Provider(ABC):
    """Abstract interface to the remote control plane that owns resources"""

    name: str = ""
    version: str = "0.0.0"

    @abstractmethod
    async def configure(self) -> None:
        """Validate credentials and prepare clients"""
        pass

    @abstractmethod
    def resource_types(self) -> List[str]:
        """Resource types this provider manages"""
        pass

    @abstractmethod
    def get_schema(self, resource_type: str) -> ResourceSchema:
        """Describe which attributes force replacement"""
        pass

    def prepare_config(self, resource_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
        """Complete an evaluated config before it is diffed and applied"""
        return config

    @abstractmethod
    async def create(self, resource_type: str, config: Dict[str, Any]) -> ProviderResult:
        """Create a resource and return its identifier and attributes"""
        pass

    @abstractmethod
    async def read(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Read current attributes, or None if the resource no longer exists"""
        pass

    @abstractmethod
    async def update(
        self,
        resource_type: str,
        resource_id: str,
        old_config: Dict[str, Any],
        new_config: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Update a resource in place and return its attributes"""
        pass

    @abstractmethod
    async def delete(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> None:
        """Delete a resource; deleting an already-deleted resource succeeds"""
        pass

    async def close(self) -> None:
        """Release clients"""
        pass


class StateBackend(ABC):
    """Abstract interface for State Record persistence and locking"""

    lock_timeout: float = 0.0
    lock_poll_interval: float = 1.0

    @abstractmethod
    async def initialize(self) -> None:
        """Prepare storage for the State Record"""
        pass

    @abstractmethod
    async def load(self) -> Optional[StateRecord]:
        """Load the current State Record, or None if none exists"""
        pass

    @abstractmethod
    async def save(self, state: StateRecord) -> None:
        """Persist the State Record, incrementing its serial"""
        pass

    @abstractmethod
    async def acquire_lock(self, operation: str) -> LockInfo:
        """Take the single-writer lock or raise StateLockError"""
        pass

    @abstractmethod
    async def release_lock(self, lock: LockInfo) -> None:
        """Release a lock taken by this process"""
        pass

    @abstractmethod
    async def force_unlock(self, lock_id: str) -> None:
        """Remove a lock left behind by another run"""
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human-readable location of the state"""
        pass

    @asynccontextmanager
    async def locked(self, operation: str) -> AsyncIterator[LockInfo]:
        """Hold the state lock for the duration of the block

        Retries acquisition until ``lock_timeout`` seconds have passed.
        """
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                lock = await self.acquire_lock(operation)
                break
            except StateLockError:
                if time.monotonic() >= deadline:
                    raise
                await asyncio.sleep(self.lock_poll_interval)
        try:
            yield lock
        finally:
            await self.release_lock(lock)
