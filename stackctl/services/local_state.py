"""
Local file State Record backend
"""
import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from config.logging import get_logger
from .interfaces import StateBackend
from ..models.data_models import LockInfo, StateRecord
from ..models.exceptions import StateError, StateLockError
from ..models.serialization import deserialize_state, new_lock_info, serialize_lock, serialize_state

logger = get_logger("state.local")


class LocalStateBackend(StateBackend):
    """State Record in a JSON file, guarded by a sibling ``.lock`` file"""

    def __init__(self, path: str, lock_timeout: float = 0.0):
        """Initialize local state backend

        Args:
            path: Path of the state file
            lock_timeout: Seconds to keep retrying a held lock
        """
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.backup_path = self.path.with_name(self.path.name + ".backup")
        self.lock_timeout = lock_timeout

    def describe(self) -> str:
        return str(self.path)

    async def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    async def load(self) -> Optional[StateRecord]:
        """Load the State Record

        Returns:
            State Record or None if no state file exists
        """
        if not self.path.exists():
            logger.info(f"No state found at {self.path}")
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StateError(f"State file {self.path} is corrupted: {e}", {"path": str(self.path)})
        except OSError as e:
            raise StateError(f"Failed to read state file {self.path}: {e}", {"path": str(self.path)})
        return deserialize_state(data)

    async def save(self, state: StateRecord) -> None:
        """Write the State Record atomically, keeping the previous copy as a backup

        Args:
            state: State Record to save; its serial is incremented
        """
        state.serial += 1
        state.updated_at = datetime.now()
        state_json = json.dumps(serialize_state(state), indent=2, default=str)

        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            if self.path.exists():
                shutil.copyfile(self.path, self.backup_path)
            tmp_path.write_text(state_json + "\n", encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise StateError(f"Failed to write state file {self.path}: {e}", {"path": str(self.path)})

        logger.debug(f"Saved state serial {state.serial} to {self.path}")

    async def acquire_lock(self, operation: str) -> LockInfo:
        lock = new_lock_info(operation, str(self.path))
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            holder = self._read_lock() or {}
            raise StateLockError(
                f"State {self.path} is locked by {holder.get('who', 'unknown')} "
                f"(operation {holder.get('operation', 'unknown')}, lock id {holder.get('id', 'unknown')})",
                holder
            )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(serialize_lock(lock), f, indent=2)

        logger.info(f"Acquired state lock {lock.id} for {operation}")
        return lock

    async def release_lock(self, lock: LockInfo) -> None:
        holder = self._read_lock()
        if holder is None:
            logger.warning(f"State lock {lock.id} was already released")
            return
        if holder.get("id") != lock.id:
            raise StateLockError(f"State lock is held by {holder.get('id')}, not {lock.id}", holder)
        self.lock_path.unlink(missing_ok=True)
        logger.info(f"Released state lock {lock.id}")

    async def force_unlock(self, lock_id: str) -> None:
        holder = self._read_lock()
        if holder is None:
            raise StateLockError(f"State {self.path} is not locked")
        if holder.get("id") != lock_id:
            raise StateLockError(f"Lock id {lock_id} does not match the current lock {holder.get('id')}", holder)
        self.lock_path.unlink(missing_ok=True)
        logger.warning(f"Force-unlocked state lock {lock_id}")

    def _read_lock(self) -> Optional[Dict[str, Any]]:
        try:
            return json.loads(self.lock_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError):
            # A lock file that cannot be parsed still holds the lock
            return {"id": "unreadable", "who": "unknown", "operation": "unknown"}
