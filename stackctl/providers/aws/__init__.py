# AWS provider and its resource handlers

from .provider import AWSProvider, HANDLERS

__all__ = [
    'AWSProvider',
    'HANDLERS'
]
