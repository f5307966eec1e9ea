"""Transfer properties for the cloud storage providers."""
import dataclasses
from dataclasses import dataclass

MB = 1024 * 1024


@dataclass(frozen=True)
class TransferProperties:
    """Tunables shared by every provider."""
    # Bytes per block of a chunked transfer
    block_size: int = 8 * MB
    # Max simultaneous block operations / managed transfer workers
    concurrency: int = 8

    def __post_init__(self):
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if isinstance(value, int) and value <= 0:
                raise ValueError(f"{field.name} must be positive, got {value}")

    def with_changes(self, **changes) -> 'TransferProperties':
        """Return a copy with the given fields replaced; ``None`` values are ignored."""
        names = {field.name for field in dataclasses.fields(self)}
        unknown = set(changes) - names
        if unknown:
            raise TypeError(
                f"unknown {type(self).__name__} fields: {', '.join(sorted(unknown))}"
            )
        return dataclasses.replace(
            self, **{k: v for k, v in changes.items() if v is not None}
        )

    def overrides(self) -> dict:
        """Fields that differ from the class defaults; empty strings count as unset."""
        defaults = type(self)()
        changes = {}
        for field in dataclasses.fields(self):
            value = getattr(self, field.name)
            if value == '' or value == getattr(defaults, field.name):
                continue
            changes[field.name] = value
        return changes


@dataclass(frozen=True)
class AWSStorageProperties(TransferProperties):
    """S3 properties. Parts other than the last must be at least 5MB."""
    region: str = 'us-east-1'
    block_size: int = 5 * MB
    concurrency: int = 5


@dataclass(frozen=True)
class AzureStorageProperties(TransferProperties):
    """Azure Blob properties."""
    # https://docs.microsoft.com/en-us/rest/api/storageservices/understanding-block-blobs--append-blobs--and-page-blobs
    block_size: int = 100 * MB
    append_block_size: int = 4 * MB
    concurrency: int = 8


@dataclass(frozen=True)
class GoogleStorageProperties(TransferProperties):
    """GCS properties. The block size doubles as the resumable upload chunk size."""
    region: str = ''
    block_size: int = 5 * MB
    concurrency: int = 8
