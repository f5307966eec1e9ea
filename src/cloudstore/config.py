"""Configuration for cloudstore, read from the environment."""
import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _int_env(name: str) -> Optional[int]:
    value = os.getenv(name)
    return int(value) if value else None


@dataclass
class AWSConfig:
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    region: str = 'us-east-1'
    endpoint_url: Optional[str] = None


@dataclass
class AzureConfig:
    connection_string: Optional[str] = None


@dataclass
class GCPConfig:
    project_id: Optional[str] = None
    credentials_file: Optional[str] = None
    region: Optional[str] = None


@dataclass
class TransferSettings:
    """Overrides applied on top of each provider's default properties."""
    block_size: Optional[int] = None
    concurrency: Optional[int] = None
    delete_timeout: float = 300.0   # seconds
    poll_interval: float = 2.0      # seconds


@dataclass
class StorageConfig:
    aws: AWSConfig = field(default_factory=AWSConfig)
    azure: AzureConfig = field(default_factory=AzureConfig)
    gcp: GCPConfig = field(default_factory=GCPConfig)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    log_level: str = 'INFO'


def load_storage_config() -> StorageConfig:
    """Load storage configuration from environment variables."""
    aws_config = AWSConfig(
        access_key=os.getenv('AWS_ACCESS_KEY'),
        secret_key=os.getenv('AWS_SECRET_KEY'),
        region=os.getenv('AWS_REGION', 'us-east-1'),
        endpoint_url=os.getenv('AWS_ENDPOINT_URL'),
    )

    azure_config = AzureConfig(
        connection_string=os.getenv('AZURE_STORAGE_CONNECTION_STRING'),
    )

    gcp_config = GCPConfig(
        project_id=os.getenv('GOOGLE_CLOUD_PROJECT'),
        credentials_file=os.getenv('GOOGLE_APPLICATION_CREDENTIALS'),
        region=os.getenv('GCP_REGION'),
    )

    transfer_settings = TransferSettings(
        block_size=_int_env('CLOUDSTORE_BLOCK_SIZE'),
        concurrency=_int_env('CLOUDSTORE_CONCURRENCY'),
        delete_timeout=float(os.getenv('CLOUDSTORE_DELETE_TIMEOUT', '300')),
        poll_interval=float(os.getenv('CLOUDSTORE_POLL_INTERVAL', '2')),
    )

    return StorageConfig(
        aws=aws_config,
        azure=azure_config,
        gcp=gcp_config,
        transfer=transfer_settings,
        log_level=os.getenv('CLOUDSTORE_LOG_LEVEL', 'INFO').upper(),
    )
