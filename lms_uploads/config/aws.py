"""
boto3 client construction for the S3 storage provider.

Builds the botocore ``Config`` (signature v4, retries, connection pool size and
timeouts) and the S3 client from ``S3Settings``. Credential problems are mapped
to ``ConfigurationError`` so that SDK exception types never leave this module.
"""

from typing import Any, Dict

import boto3
import structlog
from botocore.client import Config
from botocore.exceptions import NoCredentialsError, PartialCredentialsError, ProfileNotFound

from lms_uploads.config.settings import S3Settings
from lms_uploads.utils.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


def get_boto3_config(settings: S3Settings) -> Config:
    """
    Create the botocore Config with connection pooling and retry settings.

    Args:
        settings: S3 provider settings

    Returns:
        Config: botocore configuration object
    """
    return Config(
        region_name=settings.region,
        retries={
            'max_attempts': settings.retry_max_attempts,
            'mode': settings.retry_mode
        },
        max_pool_connections=settings.max_pool_connections,
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
        signature_version='s3v4',
        # S3-compatible endpoints generally only support path-style addressing
        s3={
            'addressing_style': 'path' if settings.endpoint_url else 'virtual'
        }
    )


def get_session_kwargs(settings: S3Settings) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {'region_name': settings.region}

    if settings.access_key_id and settings.secret_access_key:
        kwargs.update({
            'aws_access_key_id': settings.access_key_id,
            'aws_secret_access_key': settings.secret_access_key,
        })
        if settings.session_token:
            kwargs['aws_session_token'] = settings.session_token

    return kwargs


def create_s3_client(settings: S3Settings):
    """
    Create a boto3 S3 client. The client is thread-safe and shared by all
    requests handled by the provider.

    Raises:
        ConfigurationError: If credentials are missing or the profile is unknown
    """
    try:
        session = boto3.session.Session(**get_session_kwargs(settings))
        client_kwargs: Dict[str, Any] = {'config': get_boto3_config(settings)}
        if settings.endpoint_url:
            client_kwargs['endpoint_url'] = settings.endpoint_url
        client = session.client('s3', **client_kwargs)

        logger.info(
            "AWS S3 client initialized",
            region=settings.region,
            bucket=settings.bucket_name,
            endpoint_url=settings.endpoint_url,
            max_pool_connections=settings.max_pool_connections
        )
        return client

    except (NoCredentialsError, PartialCredentialsError) as e:
        logger.error("AWS credential error", error=str(e))
        raise ConfigurationError(f"AWS credentials not found or incomplete: {e}") from e

    except ProfileNotFound as e:
        logger.error("AWS profile error", error=str(e))
        raise ConfigurationError(f"AWS profile not found: {e}") from e
