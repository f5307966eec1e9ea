"""Factory for the cloud storage providers."""
import logging
from typing import Optional

import boto3
from azure.storage.blob import BlobServiceClient
from google.cloud import storage

from cloudstore.config import StorageConfig, load_storage_config
from .aws import AWSStorage
from .azure import AzureStorage
from .google import GoogleStorage
from .interfaces import Storage

logger = logging.getLogger(__name__)


def _aws_storage(config: StorageConfig) -> AWSStorage:
    aws = config.aws
    kwargs = {'region_name': aws.region}
    if aws.access_key and aws.secret_key:
        kwargs['aws_access_key_id'] = aws.access_key
        kwargs['aws_secret_access_key'] = aws.secret_key
    if aws.endpoint_url:
        kwargs['endpoint_url'] = aws.endpoint_url
    s3 = boto3.client('s3', **kwargs)
    return AWSStorage(
        s3,
        region=aws.region,
        delete_timeout=config.transfer.delete_timeout,
        poll_interval=config.transfer.poll_interval,
    )


def _azure_storage(config: StorageConfig) -> AzureStorage:
    if not config.azure.connection_string:
        raise ValueError("Azure connection string not found in environment variables")
    try:
        client = BlobServiceClient.from_connection_string(config.azure.connection_string)
    except ValueError as e:
        logger.error(f"Invalid Azure connection string: {str(e)}")
        raise ValueError("Invalid Azure connection string format")
    return AzureStorage(
        client,
        delete_timeout=config.transfer.delete_timeout,
        poll_interval=config.transfer.poll_interval,
    )


def _google_storage(config: StorageConfig) -> GoogleStorage:
    gcp = config.gcp
    if gcp.credentials_file:
        client = storage.Client.from_service_account_json(gcp.credentials_file, project=gcp.project_id)
    else:
        # application default credentials
        client = storage.Client(project=gcp.project_id)
    return GoogleStorage(
        client,
        project_id=gcp.project_id,
        region=gcp.region,
        delete_timeout=config.transfer.delete_timeout,
        poll_interval=config.transfer.poll_interval,
    )


PROVIDERS = {
    'aws': _aws_storage,
    'azure': _azure_storage,
    'gcp': _google_storage,
}


def get_storage_provider(provider_type: str, config: Optional[StorageConfig] = None) -> Storage:
    """Build the storage provider for ``provider_type`` ('aws', 'azure' or 'gcp')."""
    factory = PROVIDERS.get(provider_type.lower())
    if not factory:
        raise ValueError(f"Unsupported provider type: {provider_type}")

    config = config or load_storage_config()
    logging.basicConfig(level=getattr(logging, config.log_level, logging.INFO))

    provider = factory(config)
    provider.set_properties(
        block_size=config.transfer.block_size,
        concurrency=config.transfer.concurrency,
    )
    logger.info(f"Initialized {provider_type} storage provider")
    return provider
