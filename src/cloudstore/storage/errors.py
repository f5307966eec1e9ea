"""Exceptions raised by the storage layer."""
from typing import List, Optional


class StorageError(Exception):
    """Base class for storage errors."""


class BlockPlanError(StorageError, ValueError):
    """Invalid size or block size handed to the block planner."""


class ObjectNotFoundError(StorageError):
    """Object does not exist in the container."""
    def __init__(self, name: str, container: str):
        super().__init__(f"object '{name}' not found in container '{container}'")
        self.name = name
        self.container = container


class TransferCancelled(StorageError):
    """Transfer context was cancelled or its deadline passed."""


class BlockTransferError(StorageError):
    """A single block of a chunked transfer failed."""
    def __init__(self, index: int, message: str):
        super().__init__(f"block {index}: {message}")
        self.index = index


class TransferError(StorageError):
    """One or more blocks of a chunked transfer failed."""
    def __init__(self, message: str, errors: Optional[List[Optional[Exception]]] = None, result=None):
        super().__init__(message)
        self.errors = errors or []
        self.result = result

    @property
    def failed_blocks(self) -> List[int]:
        return [i for i, e in enumerate(self.errors) if e is not None]


class DeleteTimeoutError(StorageError):
    """A container or object was still present when the delete wait expired."""
    def __init__(self, resource: str, timeout: float):
        super().__init__(f"{resource} still exists {timeout:.0f}s after delete")
        self.resource = resource
        self.timeout = timeout
