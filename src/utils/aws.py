# ========================
# src/utils/aws.py
# ========================

"""
AWS Client Helpers

boto3 client construction from pipeline configuration, plus the picklist
lookups used when configuring a run (regions and buckets).
"""

import logging
from typing import List, Optional

import boto3
from botocore.client import Config as BotoConfig

logger = logging.getLogger(__name__)


def _session(config) -> boto3.Session:
    """
    Build a session from the configured access key.

    If no key is configured, standard AWS credential resolution is used
    (environment, shared credentials file, instance profile).
    """
    session_kwargs = {}
    if config.AWS_ACCESS_KEY_ID and config.AWS_SECRET_ACCESS_KEY:
        session_kwargs['aws_access_key_id'] = config.AWS_ACCESS_KEY_ID
        session_kwargs['aws_secret_access_key'] = config.AWS_SECRET_ACCESS_KEY
    return boto3.Session(**session_kwargs)


def create_s3_client(config, region: Optional[str] = None):
    """
    Create a boto3 S3 client.

    Args:
        config (Config): Pipeline configuration
        region (str): Region override, defaults to config.AWS_REGION

    Returns:
        S3 client
    """
    boto_config = BotoConfig(
        signature_version='s3v4',
        retries={'max_attempts': 3, 'mode': 'standard'},
    )
    region = region or config.AWS_REGION or None
    return _session(config).client('s3', region_name=region, config=boto_config)


def create_ec2_client(config, region: Optional[str] = None):
    """Create a boto3 EC2 client (only used to list regions)."""
    region = region or config.AWS_REGION or 'us-east-1'
    return _session(config).client('ec2', region_name=region)


def list_regions(ec2_client) -> List[str]:
    """Sorted names of the regions available to the account."""
    response = ec2_client.describe_regions()
    regions = sorted(region['RegionName'] for region in response.get('Regions', []) if region.get('RegionName'))
    logger.debug(f"Found {len(regions)} AWS regions")
    return regions


def list_buckets(s3_client) -> List[str]:
    """Sorted names of the buckets visible to the credentials."""
    response = s3_client.list_buckets()
    buckets = sorted(bucket['Name'] for bucket in response.get('Buckets', []) if bucket.get('Name'))
    logger.debug(f"Found {len(buckets)} S3 buckets")
    return buckets


def upload_file(s3_client, local_file: str, bucket: str, key: str, callback=None) -> None:
    """Upload a local file to S3 (multipart for large files)."""
    logger.info(f"Uploading {local_file} to s3://{bucket}/{key}")
    s3_client.upload_file(local_file, bucket, key, Callback=callback)
