"""
JSON serialization of the State Record
"""
import os
import socket
import uuid
from datetime import datetime
from typing import Dict, Any

from .data_models import StateRecord, ResourceState, DeposedObject, OutputValue, LockInfo
from .exceptions import StateError

STATE_FORMAT_VERSION = 1


def serialize_state(state: StateRecord) -> Dict[str, Any]:
    """Serialize a State Record to a JSON-compatible dictionary

    Args:
        state: State Record to serialize

    Returns:
        Dictionary representation of the state
    """
    return {
        "version": STATE_FORMAT_VERSION,
        "lineage": state.lineage,
        "serial": state.serial,
        "updatedAt": state.updated_at.isoformat(),
        "resources": [
            {
                "address": resource.address,
                "type": resource.type,
                "name": resource.name,
                "id": resource.id,
                "config": resource.config,
                "attributes": resource.attributes,
                "dependencies": resource.dependencies,
                "createdAt": resource.created_at.isoformat(),
                "updatedAt": resource.updated_at.isoformat(),
                "deposed": [
                    {"id": d.id, "config": d.config, "attributes": d.attributes}
                    for d in resource.deposed
                ]
            }
            for resource in state.resources
        ],
        "outputs": {
            name: {"value": output.value, "sensitive": output.sensitive}
            for name, output in state.outputs.items()
        }
    }


def deserialize_state(data: Dict[str, Any]) -> StateRecord:
    """Deserialize a State Record

    Args:
        data: Dictionary representation of the state

    Returns:
        State Record

    Raises:
        StateError: If the document is not a readable state
    """
    try:
        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateError(f"Unsupported state format version: {version}")

        resources = []
        for resource_data in data["resources"]:
            resources.append(ResourceState(
                address=resource_data["address"],
                type=resource_data["type"],
                name=resource_data["name"],
                id=resource_data["id"],
                config=resource_data.get("config", {}),
                attributes=resource_data.get("attributes", {}),
                dependencies=resource_data.get("dependencies", []),
                created_at=datetime.fromisoformat(resource_data["createdAt"]),
                updated_at=datetime.fromisoformat(resource_data["updatedAt"]),
                deposed=[
                    DeposedObject(id=d["id"], config=d.get("config", {}), attributes=d.get("attributes", {}))
                    for d in resource_data.get("deposed", [])
                ]
            ))

        outputs = {
            name: OutputValue(value=output["value"], sensitive=output.get("sensitive", False))
            for name, output in data.get("outputs", {}).items()
        }

        return StateRecord(
            lineage=data["lineage"],
            serial=data["serial"],
            resources=resources,
            outputs=outputs,
            updated_at=datetime.fromisoformat(data["updatedAt"])
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        raise StateError(f"State file is corrupted: {e}")


def new_lock_info(operation: str, path: str) -> LockInfo:
    """Describe a lock about to be taken by this process"""
    user = os.environ.get("USER") or os.environ.get("USERNAME") or "unknown"
    return LockInfo(
        id=str(uuid.uuid4()),
        operation=operation,
        who=f"{user}@{socket.gethostname()}",
        created_at=datetime.now(),
        path=path
    )


def serialize_lock(lock: LockInfo) -> Dict[str, Any]:
    return {
        "id": lock.id,
        "operation": lock.operation,
        "who": lock.who,
        "createdAt": lock.created_at.isoformat(),
        "path": lock.path,
    }
