"""
AWS provider backed by boto3
"""
import asyncio
from typing import Any, Dict, List, Optional, Type

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from config.logging import get_logger
from config.settings import AWSSettings
from .base import ClientFactory, ResourceHandler, translate_error
from .cloudfront import CloudFrontDistributionHandler
from .compute import AutoScalingGroupHandler, LaunchTemplateHandler
from .elb import ListenerHandler, LoadBalancerHandler, TargetGroupHandler
from .s3 import S3BucketHandler, S3BucketPolicyHandler, S3ObjectHandler
from ...models.data_models import ProviderResult, ResourceSchema
from ...models.enums import ErrorCodes
from ...models.exceptions import ProviderError, ProviderFatalError
from ...services.interfaces import Provider
from ...utils.aws import client_kwargs, create_session
from ...utils.powertools import trace_provider_operation

logger = get_logger("provider.aws")

HANDLERS: List[Type[ResourceHandler]] = [
    S3BucketHandler,
    S3ObjectHandler,
    S3BucketPolicyHandler,
    CloudFrontDistributionHandler,
    LaunchTemplateHandler,
    TargetGroupHandler,
    LoadBalancerHandler,
    ListenerHandler,
    AutoScalingGroupHandler,
]


class AWSProvider(Provider):
    """Manages the static-site stack's resource types through boto3"""

    name = "aws"
    version = boto3.__version__

    def __init__(self, aws_settings: AWSSettings, session: Optional[boto3.Session] = None):
        """Initialize AWS provider

        Args:
            aws_settings: Region, credentials and optional endpoint override
            session: Pre-built boto3 session; created from settings when omitted
        """
        self.aws_settings = aws_settings
        self.session = session
        self._handler_classes = {handler.resource_type: handler for handler in HANDLERS}
        self._handlers: Dict[str, ResourceHandler] = {}
        self.account_id: Optional[str] = None

    async def configure(self) -> None:
        """Check credentials with STS and build handlers"""
        if self.session is None:
            self.session = create_session(self.aws_settings)
        clients = ClientFactory(self.session, **client_kwargs(self.aws_settings))

        try:
            identity = await asyncio.to_thread(clients.get('sts').get_caller_identity)
        except (BotoCoreError, ClientError) as e:
            raise ProviderFatalError(
                f"AWS credentials are not usable: {e}",
                provider_code=getattr(e, 'response', {}).get('Error', {}).get('Code'),
                details={"region": clients.region}
            )
        self.account_id = identity.get('Account')

        self._handlers = {t: handler_class(clients) for t, handler_class in self._handler_classes.items()}
        logger.info(f"Configured AWS provider for account {self.account_id} in {clients.region}")

    def resource_types(self) -> List[str]:
        return list(self._handler_classes)

    def get_schema(self, resource_type: str) -> ResourceSchema:
        handler_class = self._handler_classes.get(resource_type)
        if handler_class is None:
            raise ProviderFatalError(f"Unsupported resource type {resource_type}", details={"provider": self.name})
        return handler_class.schema()

    def prepare_config(self, resource_type: str, config: Dict[str, Any]) -> Dict[str, Any]:
        handler_class = self._handler_classes.get(resource_type)
        return handler_class.prepare(config) if handler_class else config

    def _handler(self, resource_type: str) -> ResourceHandler:
        if resource_type not in self._handler_classes:
            raise ProviderFatalError(f"Unsupported resource type {resource_type}", details={"provider": self.name})
        if not self._handlers:
            raise ProviderError(ErrorCodes.PROVIDER_NOT_CONFIGURED, "AWS provider used before configure()")
        return self._handlers[resource_type]

    async def _run(self, resource_type: str, action: str, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except ProviderError:
            raise
        except Exception as e:
            raise translate_error(e, resource_type, action) from e

    @trace_provider_operation("create")
    async def create(self, resource_type: str, config: Dict[str, Any]) -> ProviderResult:
        return await self._run(resource_type, "create", self._handler(resource_type).create, config)

    @trace_provider_operation("read")
    async def read(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return await self._run(resource_type, "read", self._handler(resource_type).read, resource_id, config)

    @trace_provider_operation("update")
    async def update(
        self,
        resource_type: str,
        resource_id: str,
        old_config: Dict[str, Any],
        new_config: Dict[str, Any]
    ) -> Dict[str, Any]:
        handler = self._handler(resource_type)
        return await self._run(resource_type, "update", handler.update, resource_id, old_config, new_config)

    @trace_provider_operation("delete")
    async def delete(self, resource_type: str, resource_id: str, config: Dict[str, Any]) -> None:
        await self._run(resource_type, "delete", self._handler(resource_type).delete, resource_id, config)
