"""
AWS Lambda Powertools utilities and decorators for stackctl.
"""
import functools
import time
from typing import Any, Callable, TypeVar

from config.logging import get_logger, log_provider_operation

F = TypeVar('F', bound=Callable[..., Any])

logger = get_logger("provider")


def trace_provider_operation(operation_name: str):
    """
    Decorator to log provider operations with timing and outcome.

    The wrapped coroutine must take ``resource_type`` as its first positional
    argument after ``self``; ``resource_id`` is picked up when present.

    Args:
        operation_name: Name of the provider operation (e.g. 'create')
    """
    def decorator(func: F) -> F:
        @functools.wraps(func)
        async def async_wrapper(self, resource_type: str, *args, **kwargs):
            start_time = time.monotonic()
            resource_id = kwargs.get('resource_id') or (args[0] if args and isinstance(args[0], str) else 'new')

            logger.debug(
                f"Starting provider operation: {operation_name}",
                operation=operation_name,
                resource_type=resource_type,
                resource_id=resource_id,
            )

            try:
                result = await func(self, resource_type, *args, **kwargs)
            except Exception as e:
                duration_ms = (time.monotonic() - start_time) * 1000
                logger.warning(
                    f"Provider operation failed: {operation_name}",
                    operation=operation_name,
                    resource_type=resource_type,
                    resource_id=resource_id,
                    duration_ms=duration_ms,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                raise

            duration_ms = (time.monotonic() - start_time) * 1000
            log_provider_operation(operation_name, resource_type, getattr(result, 'id', resource_id), duration_ms)
            return result

        return async_wrapper  # type: ignore

    return decorator
