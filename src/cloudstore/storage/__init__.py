"""Object storage across AWS S3, Azure Blob Storage and Google Cloud Storage."""
from .config import (
    AWSStorageProperties,
    AzureStorageProperties,
    GoogleStorageProperties,
    TransferProperties,
)
from .errors import (
    BlockPlanError,
    BlockTransferError,
    DeleteTimeoutError,
    ObjectNotFoundError,
    StorageError,
    TransferCancelled,
    TransferError,
)
from .interfaces import Storage, StorageInstance, TransferAdapter, UploadSession
from .io import BufferSink, BytesSource, FileSink, FileSource
from .plan import BlockRange, plan_blocks
from .transfer import (
    BlockOutcome,
    PendingTransfer,
    RetryPolicy,
    TransferContext,
    TransferExecutor,
    TransferResult,
    retry_transfer,
)
