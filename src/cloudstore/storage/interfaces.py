"""Storage interfaces shared by the cloud providers."""
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, List, Optional

from .config import TransferProperties
from .errors import DeleteTimeoutError
from .io import FileSink, FileSource, as_sink
from .plan import BlockRange, plan_blocks
from .transfer import PendingTransfer, TransferContext, TransferExecutor, TransferResult

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'


class UploadSession(ABC):
    """A staged upload of one object, made visible by commit."""

    @abstractmethod
    def stage(self, block: BlockRange, data: bytes) -> None:
        """Upload one block. Safe to call concurrently for distinct blocks."""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Assemble the staged blocks into the final object."""
        pass

    @abstractmethod
    def abort(self) -> None:
        """Release whatever was staged."""
        pass


class TransferAdapter(ABC):
    """Provider primitives driven by the TransferExecutor."""

    @abstractmethod
    def object_size(self, name: str) -> int:
        """Return the size of an object; raise ObjectNotFoundError if absent."""
        pass

    @abstractmethod
    def read_range(self, name: str, offset: int, length: int) -> bytes:
        """Read ``length`` bytes of an object starting at ``offset``."""
        pass

    @abstractmethod
    def begin_upload(self, name: str, content_type: str, blocks: List[BlockRange]) -> UploadSession:
        """Start a staged upload of ``name`` for the given plan."""
        pass

    def block_size_for(self, size: int, block_size: int) -> int:
        """Return the block size to upload an object of ``size`` bytes with."""
        return block_size


def wait_until_absent(exists: Callable[[], bool], resource: str,
                      timeout: float, interval: float):
    """Poll ``exists`` until it returns False.

    Args:
        exists: returns whether the deleted resource is still reported
        resource: description used in log and error messages
        timeout: seconds to keep polling
        interval: seconds between polls

    Raises:
        DeleteTimeoutError: if the resource is still there after ``timeout`` seconds
    """
    deadline = time.monotonic() + timeout
    while exists():
        if time.monotonic() >= deadline:
            logger.error(f"Timed out waiting for {resource} to be deleted")
            raise DeleteTimeoutError(resource, timeout)
        logger.debug(f"Waiting for {resource} to be deleted.")
        time.sleep(interval)


class StorageInstance(ABC):
    """A bucket or blob container and the objects in it."""

    def __init__(self, name: str, props: TransferProperties,
                 delete_timeout: float = 300.0, poll_interval: float = 2.0):
        self._name = name
        self.props = props
        self.delete_timeout = delete_timeout
        self.poll_interval = poll_interval

    @property
    def name(self) -> str:
        return self._name

    def __repr__(self):
        return f"{type(self).__name__}({self._name!r})"

    @abstractmethod
    def delete(self) -> None:
        """Delete the container and wait until the provider no longer reports it."""
        pass

    @abstractmethod
    def list_objects(self, prefix: str = "") -> List[str]:
        """List object names under ``prefix``, following every page."""
        pass

    @abstractmethod
    def delete_object(self, name: str) -> None:
        """Delete an object."""
        pass

    @abstractmethod
    def upload(self, name: str, content_type: Optional[str], data: BinaryIO, size: int) -> None:
        """Stream ``data`` to an object with the provider's own uploader."""
        pass

    @abstractmethod
    def download(self, name: str, data: BinaryIO) -> None:
        """Stream an object into a writable file object."""
        pass

    @abstractmethod
    def transfer_adapter(self) -> TransferAdapter:
        """Return the primitives used for chunked transfers."""
        pass

    def _executor(self) -> TransferExecutor:
        return TransferExecutor(self.props.concurrency)

    def upload_file(self, name: str, content_type: Optional[str], path: str,
                    context: Optional[TransferContext] = None) -> TransferResult:
        """Upload a local file, in concurrent blocks when it spans more than one.

        Raises:
            TransferError: if any block failed or the commit did not succeed
        """
        content_type = content_type or DEFAULT_CONTENT_TYPE
        adapter = self.transfer_adapter()
        with open(path, 'rb') as f:
            size = os.fstat(f.fileno()).st_size
            blocks = plan_blocks(size, adapter.block_size_for(size, self.props.block_size))
            logger.info(f"Uploading file '{path}' as '{name}' ({size} bytes, "
                        f"{len(blocks)} blocks) to container '{self._name}'.")

            if len(blocks) <= 1:
                self.upload(name, content_type, f, size)
                return TransferResult(name, size, [])

            session = adapter.begin_upload(name, content_type, blocks)
            result = self._executor().upload(session, name, FileSource(f), blocks, size, context)

        result.raise_for_errors()
        return result

    def download_async(self, name: str, data, context: Optional[TransferContext] = None) -> PendingTransfer:
        """Start a chunked download of ``name`` into a positional sink.

        ``data`` is a sink with ``write_at`` or a real file opened for writing.
        The object size is resolved before any block starts and is available
        on the returned handle.
        """
        adapter, size, blocks = self._plan_download(name)
        return self._executor().download(adapter, name, as_sink(data), blocks, size, context)

    def _plan_download(self, name: str):
        adapter = self.transfer_adapter()
        size = adapter.object_size(name)
        blocks = plan_blocks(size, self.props.block_size)
        logger.info(f"Downloading '{name}' ({size} bytes, {len(blocks)} blocks) "
                    f"from container '{self._name}'.")
        return adapter, size, blocks

    def download_file(self, name: str, path: str,
                      context: Optional[TransferContext] = None) -> TransferResult:
        """Download an object to a local file in concurrent blocks.

        The file is only opened once the object is known to exist. It is
        truncated to the object size on success and removed if any block failed.

        Raises:
            ObjectNotFoundError: if the object does not exist; ``path`` is untouched
            TransferError: if any block failed
        """
        adapter, size, blocks = self._plan_download(name)
        result = None
        fd = os.open(path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            with os.fdopen(fd, 'r+b') as f:
                sink = FileSink(f)
                pending = self._executor().download(adapter, name, sink, blocks, size, context)
                result = pending.wait()
                if result.ok:
                    sink.truncate(result.size)
        finally:
            if result is None or not result.ok:
                _remove_partial(path)

        result.raise_for_errors()
        return result


def _remove_partial(path: str):
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    logger.warning(f"Removed partially downloaded file '{path}'")


class Storage(ABC):
    """A cloud account's object store: creates, finds and lists containers."""

    props: TransferProperties

    def __init__(self, delete_timeout: float = 300.0, poll_interval: float = 2.0):
        self.delete_timeout = delete_timeout
        self.poll_interval = poll_interval

    def set_properties(self, props: Optional[TransferProperties] = None, **changes) -> None:
        """Merge new defaults into the properties used by instances created from now on.

        Only the fields of ``props`` that differ from the class defaults are
        applied, so a partially filled value never resets a configured region
        or size. Use keyword ``changes`` to set a field back to its default.
        Instances already returned keep the properties they were created with.
        """
        if props is not None:
            if not isinstance(props, type(self.props)):
                raise TypeError(
                    f"expected {type(self.props).__name__}, got {type(props).__name__}"
                )
            self.props = self.props.with_changes(**props.overrides())
        if changes:
            self.props = self.props.with_changes(**changes)

    @abstractmethod
    def new_instance(self, name: str) -> StorageInstance:
        """Return the named container, creating it privately if absent."""
        pass

    @abstractmethod
    def list_instances(self) -> List[StorageInstance]:
        """Return every container visible to this account."""
        pass
