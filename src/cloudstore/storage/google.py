"""Google Cloud Storage implementation of the storage interfaces."""
import logging
import uuid
from typing import BinaryIO, List, Optional

from google.api_core.exceptions import NotFound
from google.cloud import storage
from google.cloud.storage.constants import PUBLIC_ACCESS_PREVENTION_ENFORCED

from .config import GoogleStorageProperties
from .errors import ObjectNotFoundError
from .interfaces import (
    DEFAULT_CONTENT_TYPE,
    Storage,
    StorageInstance,
    TransferAdapter,
    UploadSession,
    wait_until_absent,
)
from .plan import BlockRange

logger = logging.getLogger(__name__)

# Limit of source objects in one compose request
MAX_COMPOSE_SOURCES = 32
# Resumable upload chunks must be a multiple of 256KB
CHUNK_SIZE_MULTIPLE = 256 * 1024


def resumable_chunk_size(block_size: int) -> int:
    """Round ``block_size`` down to a legal resumable upload chunk size."""
    return max(CHUNK_SIZE_MULTIPLE, block_size - block_size % CHUNK_SIZE_MULTIPLE)


class GCSComposeSession(UploadSession):
    """Uploads each block as a component object and composes them on commit.

    Components of more than one compose request are first composed into
    intermediate objects. Components and intermediates are deleted once the
    final object exists, or on abort.
    """

    def __init__(self, bucket, name: str, content_type: str, blocks: List[BlockRange]):
        self.bucket = bucket
        self.name = name
        self.content_type = content_type
        self._prefix = f"{name}.{uuid.uuid4().hex[:12]}"
        self.component_names = [f"{self._prefix}.part-{block.index:06d}" for block in blocks]
        self._intermediate_names: List[str] = []

    def stage(self, block: BlockRange, data: bytes) -> None:
        self.bucket.blob(self.component_names[block.index]).upload_from_string(data)

    def commit(self) -> None:
        sources = [self.bucket.blob(name) for name in self.component_names]
        level = 0
        while len(sources) > MAX_COMPOSE_SOURCES:
            composed = []
            for start in range(0, len(sources), MAX_COMPOSE_SOURCES):
                group = sources[start:start + MAX_COMPOSE_SOURCES]
                if len(group) == 1:
                    composed.append(group[0])
                    continue
                target = self.bucket.blob(
                    f"{self._prefix}.compose-{level}-{start // MAX_COMPOSE_SOURCES:06d}"
                )
                target.compose(group)
                self._intermediate_names.append(target.name)
                composed.append(target)
            sources = composed
            level += 1

        logger.debug(f"Composing '{self.name}' from {len(sources)} objects")
        destination = self.bucket.blob(self.name)
        destination.content_type = self.content_type
        destination.compose(sources)
        self._delete_staged()

    def abort(self) -> None:
        logger.info(f"Deleting staged components of '{self.name}'")
        self._delete_staged()

    def _delete_staged(self):
        names = self.component_names + self._intermediate_names
        # components that never made it to the bucket are skipped
        self.bucket.delete_blobs(
            [self.bucket.blob(name) for name in names],
            on_error=lambda blob: None,
        )


class GCSTransferAdapter(TransferAdapter):
    """Ranged reads and composed uploads against one bucket."""

    def __init__(self, bucket):
        self.bucket = bucket

    def object_size(self, name: str) -> int:
        blob = self.bucket.get_blob(name)
        if blob is None:
            raise ObjectNotFoundError(name, self.bucket.name)
        return blob.size

    def read_range(self, name: str, offset: int, length: int) -> bytes:
        # end is inclusive
        return self.bucket.blob(name).download_as_bytes(start=offset, end=offset + length - 1)

    def begin_upload(self, name: str, content_type: str, blocks: List[BlockRange]) -> UploadSession:
        return GCSComposeSession(self.bucket, name, content_type, blocks)


class GoogleStorageInstance(StorageInstance):
    """A GCS bucket."""

    def __init__(self, client: storage.Client, name: str,
                 props: GoogleStorageProperties, **kwargs):
        super().__init__(name, props, **kwargs)
        self.client = client

    @property
    def bucket(self):
        return self.client.bucket(self.name)

    def transfer_adapter(self) -> TransferAdapter:
        return GCSTransferAdapter(self.bucket)

    def delete(self) -> None:
        logger.info(f"Deleting bucket '{self.name}'.")
        bucket = self.bucket
        bucket.delete()
        wait_until_absent(
            bucket.exists,
            f"bucket '{self.name}'",
            self.delete_timeout,
            self.poll_interval,
        )

    def list_objects(self, prefix: str = "") -> List[str]:
        objects = []
        iterator = self.client.list_blobs(self.name, prefix=prefix or None)
        for page in iterator.pages:
            names = [blob.name for blob in page]
            logger.debug(f"Retrieved {len(names)} objects in bucket '{self.name}' "
                         f"filtered by path '{prefix}'")
            objects.extend(names)
        return objects

    def delete_object(self, name: str) -> None:
        logger.info(f"Deleting object '{name}' in bucket '{self.name}'.")
        self.bucket.blob(name).delete()

    def upload(self, name: str, content_type: Optional[str], data: BinaryIO, size: int) -> None:
        logger.info(f"Uploading object with name '{name}' of size {size} to bucket '{self.name}'.")
        blob = self.bucket.blob(name, chunk_size=resumable_chunk_size(self.props.block_size))
        blob.upload_from_file(data, size=size, content_type=content_type or DEFAULT_CONTENT_TYPE)

    def download(self, name: str, data: BinaryIO) -> None:
        logger.info(f"Downloading object with name '{name}' from bucket '{self.name}'.")
        blob = self.bucket.blob(name, chunk_size=resumable_chunk_size(self.props.block_size))
        blob.download_to_file(data)


class GoogleStorage(Storage):
    """GCS buckets of one project."""

    def __init__(self, client: storage.Client, project_id: Optional[str] = None,
                 region: Optional[str] = None,
                 props: Optional[GoogleStorageProperties] = None, **kwargs):
        super().__init__(**kwargs)
        self.client = client
        self.project_id = project_id or client.project
        self.props = props or GoogleStorageProperties()
        if region:
            self.props = self.props.with_changes(region=region)

    def _instance(self, name: str) -> GoogleStorageInstance:
        return GoogleStorageInstance(
            self.client, name, self.props,
            delete_timeout=self.delete_timeout,
            poll_interval=self.poll_interval,
        )

    def new_instance(self, name: str) -> GoogleStorageInstance:
        try:
            self.client.get_bucket(name)
            logger.debug(f"Found existing bucket '{name}'")
        except NotFound:
            logger.info(f"Bucket '{name}' was not found so creating it.")
            bucket = self.client.bucket(name)
            bucket.iam_configuration.public_access_prevention = PUBLIC_ACCESS_PREVENTION_ENFORCED
            self.client.create_bucket(
                bucket,
                project=self.project_id,
                location=self.props.region or None,
            )
        return self._instance(name)

    def list_instances(self) -> List[GoogleStorageInstance]:
        """List buckets of the project, only those in the configured region if one is set."""
        location = self.props.region.upper()
        instances = []
        for page in self.client.list_buckets(project=self.project_id).pages:
            for bucket in page:
                if location and bucket.location != location:
                    continue
                instances.append(self._instance(bucket.name))
        return instances
