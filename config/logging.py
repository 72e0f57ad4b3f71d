"""
Logging configuration for stackctl using AWS Lambda Powertools.

Structured logs go to stderr so plan and output text on stdout stays
machine readable.
"""
import logging
import os
import sys
from typing import Any, Dict, Optional
from aws_lambda_powertools import Logger
from .settings import settings

# Initialize AWS Lambda Powertools
logger = Logger(
    service=settings.app_name,
    level=settings.logging.level,
    stream=sys.stderr,
    serialize_stacktrace=True,
)

_component_loggers: Dict[str, Logger] = {}


def configure_logging(level: Optional[str] = None) -> None:
    """Configure AWS Lambda Powertools logging."""
    level = (level or settings.logging.level).upper()

    logger.setLevel(level)
    logger.append_keys(
        environment=settings.environment,
        version=settings.app_version,
    )
    for component_logger in _component_loggers.values():
        component_logger.setLevel(level)

    # boto3 and httpx log through the standard library
    logging.basicConfig(
        level=getattr(logging, level),
        stream=sys.stderr,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(max(getattr(logging, level), logging.WARNING))

    os.environ.setdefault("POWERTOOLS_SERVICE_NAME", settings.app_name)
    os.environ.setdefault("POWERTOOLS_LOG_LEVEL", level)
    os.environ.setdefault("POWERTOOLS_LOGGER_SAMPLE_RATE", str(settings.logging.sample_rate))


def get_logger(name: Optional[str] = None) -> Logger:
    """Get a configured logger instance."""
    if not name:
        return logger
    if name not in _component_loggers:
        _component_loggers[name] = Logger(
            service=f"{settings.app_name}.{name}",
            level=settings.logging.level,
            stream=sys.stderr,
        )
    return _component_loggers[name]


# Utility functions for common logging patterns
def log_provider_operation(operation: str, resource_type: str, resource_id: str, duration_ms: float):
    """Log provider operation with structured data."""
    logger.info(
        "Provider operation executed",
        operation=operation,
        resource_type=resource_type,
        resource_id=resource_id,
        duration_ms=duration_ms,
    )


def log_error(error: Exception, context: Optional[Dict[str, Any]] = None):
    """Log error with structured data and stack trace."""
    logger.exception(
        "Error occurred",
        error_type=type(error).__name__,
        error_message=str(error),
        context=context or {},
    )
