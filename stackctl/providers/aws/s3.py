"""
S3 bucket, object and bucket policy handlers
"""
import hashlib
import json
import mimetypes
from pathlib import Path
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from .base import ResourceHandler, tag_list
from ...models.data_models import ProviderResult
from ...models.exceptions import ValidationError

BUCKET_NOT_FOUND = frozenset({'404', 'NoSuchBucket'})

# Regions whose website endpoint still uses the s3-website-<region> form
DASH_WEBSITE_REGIONS = frozenset({
    'us-east-1', 'us-west-1', 'us-west-2', 'ap-southeast-1', 'ap-southeast-2',
    'ap-northeast-1', 'eu-west-1', 'sa-east-1', 'us-gov-west-1',
})


def website_endpoint(bucket: str, region: str) -> str:
    separator = "-" if region in DASH_WEBSITE_REGIONS else "."
    return f"{bucket}.s3-website{separator}{region}.amazonaws.com"


class S3BucketHandler(ResourceHandler):
    """``aws_s3_bucket``: bucket, optional static website hosting and public access block"""

    resource_type = "aws_s3_bucket"
    force_new = frozenset({"bucket"})
    required = frozenset({"bucket"})
    stable = frozenset({"arn", "region", "bucket_regional_domain_name"})
    not_found_codes = BUCKET_NOT_FOUND

    @property
    def s3(self):
        return self.clients.get('s3')

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        bucket = config["bucket"]
        region = self.clients.region
        kwargs: Dict[str, Any] = {'Bucket': bucket}
        if region != 'us-east-1':
            # us-east-1 doesn't need LocationConstraint
            kwargs['CreateBucketConfiguration'] = {'LocationConstraint': region}
        self.s3.create_bucket(**kwargs)
        self._configure(bucket, {}, config)
        return ProviderResult(id=bucket, attributes=self._attributes(bucket, config))

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            self.s3.head_bucket(Bucket=resource_id)
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._attributes(resource_id, config)

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        self._configure(resource_id, old_config, new_config)
        return self._attributes(resource_id, new_config)

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        try:
            if config.get("force_destroy"):
                self._empty(resource_id)
            self.s3.delete_bucket(Bucket=resource_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def _configure(self, bucket: str, old: Dict[str, Any], new: Dict[str, Any]) -> None:
        if "block_public_policy" in new or "block_public_policy" in old:
            block = bool(new.get("block_public_policy", True))
            self.s3.put_public_access_block(
                Bucket=bucket,
                PublicAccessBlockConfiguration={
                    'BlockPublicAcls': block,
                    'IgnorePublicAcls': block,
                    'BlockPublicPolicy': block,
                    'RestrictPublicBuckets': block,
                }
            )

        website = new.get("website")
        if website:
            website_config: Dict[str, Any] = {
                'IndexDocument': {'Suffix': website.get("index_document", "index.html")}
            }
            if website.get("error_document"):
                website_config['ErrorDocument'] = {'Key': website["error_document"]}
            self.s3.put_bucket_website(Bucket=bucket, WebsiteConfiguration=website_config)
        elif old.get("website"):
            self.s3.delete_bucket_website(Bucket=bucket)

        if new.get("tags"):
            self.s3.put_bucket_tagging(Bucket=bucket, Tagging={'TagSet': tag_list(new["tags"])})
        elif old.get("tags"):
            self.s3.delete_bucket_tagging(Bucket=bucket)

    def _empty(self, bucket: str) -> None:
        paginator = self.s3.get_paginator('list_objects_v2')
        for page in paginator.paginate(Bucket=bucket):
            keys = [{'Key': obj['Key']} for obj in page.get('Contents', [])]
            if keys:
                self.s3.delete_objects(Bucket=bucket, Delete={'Objects': keys, 'Quiet': True})

    def _attributes(self, bucket: str, config: Dict[str, Any]) -> Dict[str, Any]:
        region = self.clients.region
        attributes = {
            "id": bucket,
            "bucket": bucket,
            "arn": f"arn:aws:s3:::{bucket}",
            "region": region,
            "bucket_regional_domain_name": f"{bucket}.s3.{region}.amazonaws.com",
        }
        if config.get("website"):
            attributes["website_endpoint"] = website_endpoint(bucket, region)
        return attributes


class S3ObjectHandler(ResourceHandler):
    """``aws_s3_object``: a single object, from inline ``content`` or a local ``source`` file"""

    resource_type = "aws_s3_object"
    force_new = frozenset({"bucket", "key"})
    required = frozenset({"bucket", "key"})
    not_found_codes = frozenset({'404', 'NoSuchKey', 'NoSuchBucket'})

    @property
    def s3(self):
        return self.clients.get('s3')

    @classmethod
    def prepare(cls, config: Dict[str, Any]) -> Dict[str, Any]:
        """Add ``source_hash``, the MD5 of the ``source`` file, so an edited file plans an update"""
        source = config.get("source")
        if not isinstance(source, str):
            return config
        try:
            digest = hashlib.md5(Path(source).read_bytes()).hexdigest()
        except OSError as e:
            raise ValidationError(f"Cannot read source file {source}: {e.strerror}", {"source": source})
        return dict(config, source_hash=digest)

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        attributes = self._put(config)
        return ProviderResult(id=f"{config['bucket']}/{config['key']}", attributes=attributes)

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        bucket, key = resource_id.split("/", 1)
        try:
            response = self.s3.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return self._attributes(bucket, key, response)

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        return self._put(new_config)

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        bucket, key = resource_id.split("/", 1)
        try:
            self.s3.delete_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def _put(self, config: Dict[str, Any]) -> Dict[str, Any]:
        bucket, key = config["bucket"], config["key"]
        if "source" in config:
            body = Path(config["source"]).read_bytes()
        else:
            body = str(config.get("content", "")).encode("utf-8")
        content_type = config.get("content_type") or mimetypes.guess_type(key)[0] or "binary/octet-stream"

        kwargs: Dict[str, Any] = {'Bucket': bucket, 'Key': key, 'Body': body, 'ContentType': content_type}
        if config.get("acl"):
            kwargs['ACL'] = config["acl"]
        if config.get("cache_control"):
            kwargs['CacheControl'] = config["cache_control"]
        response = self.s3.put_object(**kwargs)
        return self._attributes(bucket, key, response)

    def _attributes(self, bucket: str, key: str, response: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": f"{bucket}/{key}",
            "bucket": bucket,
            "key": key,
            "etag": response.get('ETag', '').strip('"'),
            "version_id": response.get('VersionId'),
        }


class S3BucketPolicyHandler(ResourceHandler):
    """``aws_s3_bucket_policy``: ``policy`` may be a mapping or a JSON document"""

    resource_type = "aws_s3_bucket_policy"
    force_new = frozenset({"bucket"})
    required = frozenset({"bucket", "policy"})
    not_found_codes = frozenset({'NoSuchBucketPolicy', 'NoSuchBucket', '404'})

    @property
    def s3(self):
        return self.clients.get('s3')

    def create(self, config: Dict[str, Any]) -> ProviderResult:
        self._put(config)
        return ProviderResult(id=config["bucket"], attributes={"id": config["bucket"], "bucket": config["bucket"]})

    def read(self, resource_id: str, config: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            response = self.s3.get_bucket_policy(Bucket=resource_id)
        except ClientError as e:
            if self.is_not_found(e):
                return None
            raise
        return {"id": resource_id, "bucket": resource_id, "policy": json.loads(response['Policy'])}

    def update(self, resource_id: str, old_config: Dict[str, Any], new_config: Dict[str, Any]) -> Dict[str, Any]:
        self._put(new_config)
        return {"id": resource_id, "bucket": resource_id}

    def delete(self, resource_id: str, config: Dict[str, Any]) -> None:
        try:
            self.s3.delete_bucket_policy(Bucket=resource_id)
        except ClientError as e:
            if not self.is_not_found(e):
                raise

    def _put(self, config: Dict[str, Any]) -> None:
        policy = config["policy"]
        document = policy if isinstance(policy, str) else json.dumps(policy)
        self.s3.put_bucket_policy(Bucket=config["bucket"], Policy=document)
