"""
boto3 session helpers shared by the AWS provider and the S3 state backend.
"""
from typing import Any, Dict

import boto3
from botocore.config import Config

from config.settings import AWSSettings

# Retries are owned by the apply executor, so botocore makes a single attempt
BOTO_CONFIG = Config(retries={"max_attempts": 1, "mode": "standard"})


def create_session(aws_settings: AWSSettings) -> boto3.Session:
    """Create a boto3 session from settings, never from declarations"""
    session_kwargs = {
        'aws_access_key_id': aws_settings.access_key_id,
        'aws_secret_access_key': aws_settings.secret_access_key,
        'aws_session_token': aws_settings.session_token,
        'region_name': aws_settings.region,
    }
    if isinstance(aws_settings.profile, str) and aws_settings.profile != '':
        session_kwargs['profile_name'] = aws_settings.profile
    return boto3.Session(**session_kwargs)


def client_kwargs(aws_settings: AWSSettings) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"config": BOTO_CONFIG}
    if aws_settings.endpoint_url:
        kwargs["endpoint_url"] = aws_settings.endpoint_url
    return kwargs
