# Provider implementations

from typing import Dict, Type

from config.settings import Settings
from .aws import AWSProvider
from .rpc import RPCProvider
from ..models.exceptions import ValidationError
from ..services.interfaces import Provider

PROVIDERS: Dict[str, Type[Provider]] = {
    AWSProvider.name: AWSProvider,
    RPCProvider.name: RPCProvider,
}


def create_provider(name: str, settings: Settings) -> Provider:
    """Build the provider a configuration names, from settings only"""
    if name == AWSProvider.name:
        return AWSProvider(settings.aws)
    if name == RPCProvider.name:
        return RPCProvider(settings.rpc.url, settings.rpc.timeout)
    raise ValidationError(
        f"Unknown provider '{name}' (available: {', '.join(sorted(PROVIDERS))})",
        {"provider": name}
    )


__all__ = [
    'PROVIDERS',
    'AWSProvider',
    'RPCProvider',
    'create_provider'
]
