"""Azure Blob Storage implementation of the storage interfaces."""
import logging
from typing import BinaryIO, List, Optional

from azure.core.exceptions import ResourceExistsError, ResourceNotFoundError
from azure.storage.blob import BlobBlock, BlobServiceClient, ContentSettings

from .config import AzureStorageProperties
from .errors import ObjectNotFoundError
from .interfaces import (
    DEFAULT_CONTENT_TYPE,
    Storage,
    StorageInstance,
    TransferAdapter,
    UploadSession,
    wait_until_absent,
)
from .plan import BlockRange, encode_block_id

logger = logging.getLogger(__name__)


class AzureBlockSession(UploadSession):
    """Staged block upload of a block blob, committed as one block list."""

    def __init__(self, blob_client, content_type: str, blocks: List[BlockRange]):
        self.blob_client = blob_client
        self.content_type = content_type
        self.block_ids = [encode_block_id(block.index) for block in blocks]

    def stage(self, block: BlockRange, data: bytes) -> None:
        self.blob_client.stage_block(
            block_id=self.block_ids[block.index],
            data=data,
            length=len(data),
        )

    def commit(self) -> None:
        logger.debug(f"Committing {len(self.block_ids)} blocks of blob "
                     f"'{self.blob_client.blob_name}'")
        self.blob_client.commit_block_list(
            [BlobBlock(block_id=block_id) for block_id in self.block_ids],
            content_settings=ContentSettings(content_type=self.content_type),
        )

    def abort(self) -> None:
        # uncommitted blocks are discarded by the service after a week
        logger.info(f"Leaving {len(self.block_ids)} uncommitted blocks of blob "
                    f"'{self.blob_client.blob_name}' to expire")


class AzureTransferAdapter(TransferAdapter):
    """Ranged downloads and staged blocks against one container."""

    def __init__(self, container_client):
        self.container_client = container_client

    def object_size(self, name: str) -> int:
        try:
            return self.container_client.get_blob_client(name).get_blob_properties().size
        except ResourceNotFoundError as e:
            raise ObjectNotFoundError(name, self.container_client.container_name) from e

    def read_range(self, name: str, offset: int, length: int) -> bytes:
        downloader = self.container_client.get_blob_client(name).download_blob(
            offset=offset, length=length
        )
        return downloader.readall()

    def begin_upload(self, name: str, content_type: str, blocks: List[BlockRange]) -> UploadSession:
        return AzureBlockSession(self.container_client.get_blob_client(name), content_type, blocks)


class AzureStorageInstance(StorageInstance):
    """An Azure blob container."""

    def __init__(self, service_client: BlobServiceClient, name: str,
                 props: AzureStorageProperties, **kwargs):
        super().__init__(name, props, **kwargs)
        self.service_client = service_client

    @property
    def container_client(self):
        return self.service_client.get_container_client(self.name)

    def transfer_adapter(self) -> TransferAdapter:
        return AzureTransferAdapter(self.container_client)

    def _container_exists(self) -> bool:
        try:
            self.container_client.get_container_properties()
            return True
        except ResourceNotFoundError:
            return False

    def delete(self) -> None:
        logger.info(f"Deleting container '{self.name}'.")
        self.container_client.delete_container()
        wait_until_absent(
            self._container_exists,
            f"container '{self.name}'",
            self.delete_timeout,
            self.poll_interval,
        )

    def list_objects(self, prefix: str = "") -> List[str]:
        blobs = []
        pages = self.container_client.list_blobs(name_starts_with=prefix or None).by_page()
        for page in pages:
            names = [blob.name for blob in page]
            logger.debug(f"Retrieved {len(names)} blobs in container '{self.name}' "
                         f"filtered by path '{prefix}'")
            blobs.extend(names)
        return blobs

    def delete_object(self, name: str) -> None:
        logger.info(f"Deleting blob with name '{name}' in container '{self.name}'.")
        self.container_client.get_blob_client(name).delete_blob(delete_snapshots='include')

    def upload(self, name: str, content_type: Optional[str], data: BinaryIO, size: int) -> None:
        """Write ``data`` to an append blob, one append block at a time."""
        blob_client = self.container_client.get_blob_client(name)
        logger.info(f"Uploading blob with name '{name}' of size {size} to container '{self.name}'.")

        blob_client.create_append_blob(
            content_settings=ContentSettings(content_type=content_type or DEFAULT_CONTENT_TYPE)
        )
        while True:
            chunk = data.read(self.props.append_block_size)
            if not chunk:
                break
            logger.debug(f"Appending block of size {len(chunk)} to blob '{name}'")
            blob_client.append_block(chunk, length=len(chunk))

    def download(self, name: str, data: BinaryIO) -> None:
        logger.info(f"Downloading blob with name '{name}' from container '{self.name}'.")
        # parallel range writes need a seekable target
        seekable = hasattr(data, 'seekable') and data.seekable()
        downloader = self.container_client.get_blob_client(name).download_blob(
            max_concurrency=self.props.concurrency if seekable else 1
        )
        downloader.readinto(data)


class AzureStorage(Storage):
    """Blob containers of one storage account."""

    def __init__(self, service_client: BlobServiceClient,
                 props: Optional[AzureStorageProperties] = None, **kwargs):
        super().__init__(**kwargs)
        self.service_client = service_client
        self.props = props or AzureStorageProperties()

    def _instance(self, name: str) -> AzureStorageInstance:
        return AzureStorageInstance(
            self.service_client, name, self.props,
            delete_timeout=self.delete_timeout,
            poll_interval=self.poll_interval,
        )

    def new_instance(self, name: str) -> AzureStorageInstance:
        container_client = self.service_client.get_container_client(name)
        try:
            container_client.get_container_properties()
            logger.debug(f"Found existing container '{name}'")
        except ResourceNotFoundError:
            logger.info(f"Container '{name}' was not found so creating it.")
            # no public_access means the container is private
            try:
                container_client.create_container()
            except ResourceExistsError:
                logger.debug(f"Container '{name}' was created concurrently")
        return self._instance(name)

    def list_instances(self) -> List[AzureStorageInstance]:
        instances = []
        for page in self.service_client.list_containers().by_page():
            instances.extend(self._instance(container.name) for container in page)
        return instances
