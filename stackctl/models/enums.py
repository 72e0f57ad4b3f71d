"""
Enumeration classes for stackctl
"""
from enum import Enum


class ChangeAction(Enum):
    """Per-resource actions a plan can propose"""
    NO_OP = "no-op"
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class StepAction(Enum):
    """Executable provider operations a change expands into"""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    DELETE_DEPOSED = "delete-deposed"


class VariableType(Enum):
    """Declared types of input variables"""
    STRING = "string"
    NUMBER = "number"
    BOOL = "bool"
    LIST = "list"
    MAP = "map"
    ANY = "any"


class ErrorCodes(Enum):
    """Error codes for provisioning operations"""
    PARSE_ERROR = 'DECL_001'
    UNDEFINED_REFERENCE = 'DECL_002'
    VALIDATION_FAILED = 'DECL_003'
    CYCLIC_DEPENDENCY = 'PLAN_001'
    STALE_PLAN = 'PLAN_002'
    PROVIDER_TRANSIENT = 'PROVIDER_001'
    PROVIDER_FATAL = 'PROVIDER_002'
    PROVIDER_NOT_CONFIGURED = 'PROVIDER_003'
    STATE_FILE_CORRUPTED = 'STATE_001'
    STATE_LOCKED = 'STATE_002'
    APPLY_FAILED = 'APPLY_001'
    APPLY_CANCELLED = 'APPLY_002'
