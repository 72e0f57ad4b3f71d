# Service interfaces and implementations for stackctl

from .interfaces import (
    Provider,
    StateBackend
)

from .loader import DeclarationLoader
from .planner import DefaultPlanner
from .executor import ApplyExecutor
from .retry import RetryConfig, RetryHandler
from .local_state import LocalStateBackend
from .s3_state import S3StateBackend

__all__ = [
    'Provider',
    'StateBackend',
    'DeclarationLoader',
    'DefaultPlanner',
    'ApplyExecutor',
    'RetryConfig',
    'RetryHandler',
    'LocalStateBackend',
    'S3StateBackend'
]
