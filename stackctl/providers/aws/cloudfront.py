"""
CloudFront distribution handler
"""
import uuid
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .base import ResourceHandler
from ...models.data_models import ProviderResult

# Managed "CachingOptimized" cache policy
DEFAULT_CACHE_POLICY_ID = "658327ea-f89d-4fab-a63d-7e88639e58f6"

WAITER_CONFIG = {'Delay': 30, 'MaxAttempts': 60}


class CloudFrontDistributionHandler(ResourceHandler):
    """``aws_cloudfront_distribution`` with a single origin.

    Deleting a distribution first disables it and waits for the change to
    deploy, since CloudFront refuses to delete an enabled distribution.
    """

    resource_type = "aws_cloudfront_distribution"
    force_new = frozenset()
    required = frozenset({"origin_domain_name"})
    stable = frozenset({"arn", "domain_name"})
    not_found_codes = frozenset({'NoSuchDistribution'})

    @property
    def cloudfront(self):
        return self.clients.get('cloudfront')

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        distribution_config = self._distribution_config(config, caller_reference=str(uuid.uuid4()))
        response = self.cloudfront.create_distribution(DistributionConfig=distribution_config)
        distribution = response['Distribution']
        return ProviderResult(id=distribution['Id'], attributes=self._attributes(distribution, response.get('ETag')))

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = self.cloudfront.get_distribution(Id=resource_id)
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._attributes(response['Distribution'], response.get('ETag'))

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        current = self.cloudfront.get_distribution_config(Id=resource_id)
        caller_reference = current['DistributionConfig']['CallerReference']
        response = self.cloudfront.update_distribution(
            Id=resource_id,
            IfMatch=current['ETag'],
            DistributionConfig=self._distribution_config(new_config, caller_reference)
        )
        return self._attributes(response['Distribution'], response.get('ETag'))

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        try:
            current = self.cloudfront.get_distribution_config(Id=resource_id)
        except ClientError as e:
            if self.is_not_found(e):
                return
            raise

        etag = current['ETag']
        if current['DistributionConfig']['Enabled']:
            disabled = dict(current['DistributionConfig'], Enabled=False)
            response = self.cloudfront.update_distribution(Id=resource_id, IfMatch=etag, DistributionConfig=disabled)
            etag = response['ETag']
            self.cloudfront.get_waiter('distribution_deployed').wait(Id=resource_id, WaiterConfig=WAITER_CONFIG)

        try:
            self.cloudfront.delete_distribution(Id=resource_id, IfMatch=etag)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def _distribution_config(self, config: Dict[str, Any], caller_reference: str) -> Dict[str, Any]:
        origin_id = config.get("origin_id", "origin")
        origin: Dict[str, Any] = {
            'Id': origin_id,
            'DomainName': config["origin_domain_name"],
            'OriginPath': config.get("origin_path", ""),
        }
        if config.get("origin_protocol_policy"):
            # Website endpoints and load balancers are custom origins
            origin['CustomOriginConfig'] = {
                'HTTPPort': 80,
                'HTTPSPort': 443,
                'OriginProtocolPolicy': config["origin_protocol_policy"],
            }
        else:
            origin['S3OriginConfig'] = {'OriginAccessIdentity': ''}

        aliases = config.get("aliases", [])
        distribution_config: Dict[str, Any] = {
            'CallerReference': caller_reference,
            'Comment': config.get("comment", ""),
            'Enabled': bool(config.get("enabled", True)),
            'DefaultRootObject': config.get("default_root_object", "index.html"),
            'PriceClass': config.get("price_class", "PriceClass_100"),
            'Aliases': {'Quantity': len(aliases), 'Items': aliases},
            'Origins': {'Quantity': 1, 'Items': [origin]},
            'DefaultCacheBehavior': {
                'TargetOriginId': origin_id,
                'ViewerProtocolPolicy': config.get("viewer_protocol_policy", "redirect-to-https"),
                'CachePolicyId': config.get("cache_policy_id", DEFAULT_CACHE_POLICY_ID),
                'Compress': True,
            },
        }
        if config.get("acm_certificate_arn"):
            distribution_config['ViewerCertificate'] = {
                'ACMCertificateArn': config["acm_certificate_arn"],
                'SSLSupportMethod': 'sni-only',
                'MinimumProtocolVersion': 'TLSv1.2_2021',
            }
        return distribution_config

    def _attributes(self, distribution: Dict[str, Any], etag: Optional[str]) -> Dict[str, Any]:
        return {
            "id": distribution['Id'],
            "arn": distribution.get('ARN'),
            "domain_name": distribution.get('DomainName'),
            "status": distribution.get('Status'),
            "etag": etag,
        }
