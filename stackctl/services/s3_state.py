"""
S3-based State Record backend
"""
import asyncio
import json
from datetime import datetime
from typing import Any, Dict, Optional

import boto3
from botocore.exceptions import ClientError

from config.logging import get_logger
from .interfaces import StateBackend
from ..models.data_models import LockInfo, StateRecord
from ..models.exceptions import StateError, StateLockError
from ..models.serialization import deserialize_state, new_lock_info, serialize_lock, serialize_state

logger = get_logger("state.s3")

LOCK_CONFLICT_CODES = ('PreconditionFailed', 'ConditionalRequestConflict', '412', '409')


class S3StateBackend(StateBackend):
    """State Record stored as an S3 object with history copies and a lock object"""

    def __init__(self, s3_client, bucket: str, prefix: str, region: str = "us-east-1", lock_timeout: float = 0.0):
        """Initialize S3 state backend

        Args:
            s3_client: boto3 S3 client
            bucket: Bucket holding the state
            prefix: Key prefix for this stack
            region: Region used when the bucket has to be created
            lock_timeout: Seconds to keep retrying a held lock
        """
        self.s3_client = s3_client
        self.bucket_name = bucket
        self.prefix = prefix.strip("/")
        self.region = region
        self.lock_timeout = lock_timeout

    @classmethod
    def from_session(cls, session: boto3.Session, bucket: str, prefix: str, lock_timeout: float = 0.0, **client_kwargs):
        return cls(session.client('s3', **client_kwargs), bucket, prefix, session.region_name or "us-east-1", lock_timeout)

    def describe(self) -> str:
        return f"s3://{self.bucket_name}/{self._get_state_key()}"

    def _get_state_key(self) -> str:
        return f"{self.prefix}/state/current.json"

    def _get_lock_key(self) -> str:
        return f"{self.prefix}/state/current.lock"

    def _get_history_key(self, timestamp: datetime) -> str:
        """Generate S3 key for a historical state copy

        Args:
            timestamp: Timestamp of the superseded state

        Returns:
            S3 key path for the historical state file
        """
        timestamp_str = timestamp.strftime("%Y%m%d_%H%M%S_%f")
        return f"{self.prefix}/history/{timestamp_str}.json"

    async def _run(self, method: str, **kwargs) -> Dict[str, Any]:
        """Call an S3 client method off the event loop"""
        return await asyncio.to_thread(getattr(self.s3_client, method), **kwargs)

    async def _read_object(self, key: str) -> bytes:
        def read() -> bytes:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body'].read()
        return await asyncio.to_thread(read)

    async def initialize(self) -> None:
        """Ensure the S3 bucket exists, create if it doesn't"""
        try:
            await self._run("head_bucket", Bucket=self.bucket_name)
            logger.info(f"S3 bucket {self.bucket_name} exists")
        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code not in ('404', 'NoSuchBucket'):
                raise StateError(f"Failed to access S3 bucket: {e}", {"bucket": self.bucket_name})
            try:
                if self.region == 'us-east-1':
                    # us-east-1 doesn't need LocationConstraint
                    await self._run("create_bucket", Bucket=self.bucket_name)
                else:
                    await self._run(
                        "create_bucket",
                        Bucket=self.bucket_name,
                        CreateBucketConfiguration={'LocationConstraint': self.region}
                    )
                await self._run(
                    "put_bucket_versioning",
                    Bucket=self.bucket_name,
                    VersioningConfiguration={'Status': 'Enabled'}
                )
                logger.info(f"Created S3 bucket {self.bucket_name}")
            except ClientError as create_error:
                raise StateError(
                    f"Failed to create S3 bucket: {create_error}",
                    {"bucket": self.bucket_name, "region": self.region}
                )

    async def load(self) -> Optional[StateRecord]:
        """Get the current State Record

        Returns:
            State Record or None if not found
        """
        key = self._get_state_key()
        try:
            content = (await self._read_object(key)).decode('utf-8')
            return deserialize_state(json.loads(content))
        except ClientError as e:
            error_code = e.response['Error']['Code']
            if error_code == 'NoSuchKey':
                logger.info(f"No state found at s3://{self.bucket_name}/{key}")
                return None
            raise StateError(f"Failed to retrieve state from S3: {e}", {"bucket": self.bucket_name, "key": key})
        except json.JSONDecodeError as e:
            raise StateError(f"State file is corrupted: {e}", {"bucket": self.bucket_name, "key": key})

    async def save(self, state: StateRecord) -> None:
        """Save the State Record, copying the superseded version to history

        Args:
            state: State Record to save; its serial is incremented
        """
        previous = await self.load()
        if previous:
            await self._save_to_history(previous)

        state.serial += 1
        state.updated_at = datetime.now()
        state_json = json.dumps(serialize_state(state), indent=2, default=str)
        key = self._get_state_key()

        try:
            await self._run(
                "put_object",
                Bucket=self.bucket_name,
                Key=key,
                Body=state_json.encode('utf-8'),
                ContentType='application/json',
                Metadata={
                    'lineage': state.lineage,
                    'serial': str(state.serial),
                    'timestamp': state.updated_at.isoformat(),
                }
            )
        except ClientError as e:
            raise StateError(f"Failed to save state to S3: {e}", {"bucket": self.bucket_name, "key": key})

        logger.info(f"Saved state serial {state.serial} to s3://{self.bucket_name}/{key}")

    async def _save_to_history(self, state: StateRecord) -> None:
        history_key = self._get_history_key(state.updated_at)
        try:
            await self._run(
                "put_object",
                Bucket=self.bucket_name,
                Key=history_key,
                Body=json.dumps(serialize_state(state), indent=2, default=str).encode('utf-8'),
                ContentType='application/json',
                Metadata={'lineage': state.lineage, 'serial': str(state.serial)}
            )
        except ClientError as e:
            raise StateError(f"Failed to save historical state: {e}", {"bucket": self.bucket_name, "key": history_key})

    async def acquire_lock(self, operation: str) -> LockInfo:
        lock = new_lock_info(operation, self.describe())
        try:
            await self._run(
                "put_object",
                Bucket=self.bucket_name,
                Key=self._get_lock_key(),
                Body=json.dumps(serialize_lock(lock)).encode('utf-8'),
                ContentType='application/json',
                IfNoneMatch='*'
            )
        except ClientError as e:
            if e.response['Error']['Code'] in LOCK_CONFLICT_CODES:
                holder = await self._read_lock() or {}
                raise StateLockError(
                    f"State {self.describe()} is locked by {holder.get('who', 'unknown')} "
                    f"(operation {holder.get('operation', 'unknown')}, lock id {holder.get('id', 'unknown')})",
                    holder
                )
            raise StateError(f"Failed to write state lock: {e}", {"bucket": self.bucket_name})

        logger.info(f"Acquired state lock {lock.id} for {operation}")
        return lock

    async def release_lock(self, lock: LockInfo) -> None:
        holder = await self._read_lock()
        if holder is None:
            logger.warning(f"State lock {lock.id} was already released")
            return
        if holder.get("id") != lock.id:
            raise StateLockError(f"State lock is held by {holder.get('id')}, not {lock.id}", holder)
        await self._delete_lock()
        logger.info(f"Released state lock {lock.id}")

    async def force_unlock(self, lock_id: str) -> None:
        holder = await self._read_lock()
        if holder is None:
            raise StateLockError(f"State {self.describe()} is not locked")
        if holder.get("id") != lock_id:
            raise StateLockError(f"Lock id {lock_id} does not match the current lock {holder.get('id')}", holder)
        await self._delete_lock()
        logger.warning(f"Force-unlocked state lock {lock_id}")

    async def _read_lock(self) -> Optional[Dict[str, Any]]:
        try:
            return json.loads((await self._read_object(self._get_lock_key())).decode('utf-8'))
        except ClientError as e:
            if e.response['Error']['Code'] in ('NoSuchKey', '404'):
                return None
            raise StateError(f"Failed to read state lock: {e}", {"bucket": self.bucket_name})
        except json.JSONDecodeError:
            return {"id": "unreadable", "who": "unknown", "operation": "unknown"}

    async def _delete_lock(self) -> None:
        try:
            await self._run("delete_object", Bucket=self.bucket_name, Key=self._get_lock_key())
        except ClientError as e:
            raise StateError(f"Failed to delete state lock: {e}", {"bucket": self.bucket_name})
