"""
Custom exceptions for stackctl
"""
from datetime import datetime
from typing import Dict, Any, List, Optional
from .enums import ErrorCodes


class StackException(Exception):
    """Base exception for provisioning operations"""

    def __init__(self, code: ErrorCodes, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.timestamp = datetime.now()
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for reporting"""
        return {
            "code": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "details": self.details
        }


class ParseError(StackException):
    """Malformed declaration input"""

    def __init__(self, message: str, location: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        self.location = location
        if location:
            message = f"{location}: {message}"
        super().__init__(ErrorCodes.PARSE_ERROR, message, {**(details or {}), "location": location})


class UndefinedReferenceError(StackException):
    """A declaration references a variable, resource or attribute that does not exist"""

    def __init__(self, reference: str, location: Optional[str] = None, message: Optional[str] = None):
        self.reference = reference
        self.location = location
        text = message or f"Reference to undeclared {reference}"
        if location:
            text = f"{location}: {text}"
        super().__init__(
            ErrorCodes.UNDEFINED_REFERENCE,
            text,
            {"reference": reference, "location": location}
        )


class ValidationError(StackException):
    """Declarations are well formed but semantically invalid"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCodes.VALIDATION_FAILED, message, details)


class CyclicDependencyError(StackException):
    """The resource dependency graph contains a cycle"""

    def __init__(self, cycle: List[str]):
        self.cycle = cycle
        super().__init__(
            ErrorCodes.CYCLIC_DEPENDENCY,
            f"Dependency cycle: {' -> '.join(cycle)}",
            {"cycle": cycle}
        )


class ProviderError(StackException):
    """Base class for errors reported by a provider call"""

    def __init__(
        self,
        code: ErrorCodes,
        message: str,
        address: Optional[str] = None,
        action: Optional[str] = None,
        provider_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.address = address
        self.action = action
        self.provider_code = provider_code
        super().__init__(code, message, {
            **(details or {}),
            "address": address,
            "action": action,
            "provider_code": provider_code,
        })


class ProviderTransientError(ProviderError):
    """Provider error expected to resolve on retry (throttling, propagation delay)"""

    def __init__(self, message: str, **kwargs):
        super().__init__(ErrorCodes.PROVIDER_TRANSIENT, message, **kwargs)


class ProviderFatalError(ProviderError):
    """Provider error that will not resolve on retry"""

    def __init__(self, message: str, **kwargs):
        super().__init__(ErrorCodes.PROVIDER_FATAL, message, **kwargs)


class StateError(StackException):
    """The State Record could not be read or written"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCodes.STATE_FILE_CORRUPTED, message, details)


class StateLockError(StackException):
    """Another run holds the state lock"""

    def __init__(self, message: str, lock_info: Optional[Dict[str, Any]] = None):
        self.lock_info = lock_info or {}
        super().__init__(ErrorCodes.STATE_LOCKED, message, {"lock": self.lock_info})


class StalePlanError(StackException):
    """A saved plan no longer matches the current state or declarations"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(ErrorCodes.STALE_PLAN, message, details)


class ApplyError(StackException):
    """Apply stopped on a fatal error; already-applied steps are kept"""

    def __init__(self, message: str, result: Any, code: ErrorCodes = ErrorCodes.APPLY_FAILED):
        self.result = result
        super().__init__(code, message, result.to_dict() if result is not None else {})


class ApplyCancelled(ApplyError):
    """Apply stopped because the operator requested cancellation"""

    def __init__(self, message: str, result: Any):
        super().__init__(message, result, code=ErrorCodes.APPLY_CANCELLED)
