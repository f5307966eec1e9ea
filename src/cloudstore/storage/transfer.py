"""Concurrent chunked transfers.

Every block of a plan becomes one task on a bounded thread pool. All tasks
are submitted before any result is awaited and the caller joins on the full
set, so one failing block never cuts its siblings short. Each task owns the
outcome slot at its block index.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .errors import BlockTransferError, TransferCancelled, TransferError
from .plan import BlockRange

logger = logging.getLogger(__name__)


class TransferContext:
    """Cancellation flag and optional deadline shared by the tasks of a transfer."""

    def __init__(self, timeout: Optional[float] = None):
        self._cancelled = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self):
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        if self._cancelled.is_set():
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self):
        """Raise TransferCancelled if the transfer should not go on."""
        if self._cancelled.is_set():
            raise TransferCancelled("transfer was cancelled")
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise TransferCancelled("transfer deadline exceeded")


@dataclass
class BlockOutcome:
    """Result of one block: bytes moved, or the error that stopped it."""
    index: int
    size: int = 0
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class TransferResult:
    """Aggregated outcome of a chunked transfer."""
    name: str
    size: int
    outcomes: List[BlockOutcome] = field(default_factory=list)
    error: Optional[TransferError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def bytes_transferred(self) -> int:
        return sum(o.size for o in self.outcomes if o.ok)

    @property
    def errors(self) -> List[Optional[Exception]]:
        return [o.error for o in self.outcomes]

    def raise_for_errors(self):
        if self.error is not None:
            raise self.error


class PendingTransfer:
    """Handle on block tasks that are running in the background."""

    def __init__(self, name: str, size: int, executor: Optional[ThreadPoolExecutor],
                 futures: list, outcomes: List[BlockOutcome], failed: threading.Event,
                 context: TransferContext, operation: str):
        self.name = name
        self.size = size
        self.context = context
        self._executor = executor
        self._futures = futures
        self._outcomes = outcomes
        self._failed = failed
        self._operation = operation
        self._result: Optional[TransferResult] = None
        self._lock = threading.Lock()

    def done(self) -> bool:
        return all(f.done() for f in self._futures)

    def cancel(self):
        """Stop blocks that have not started yet; running blocks finish."""
        self.context.cancel()

    def wait(self, timeout: Optional[float] = None) -> TransferResult:
        """Block until every task has finished and return the aggregate result.

        Raises:
            TimeoutError: if ``timeout`` expires before all tasks finish
        """
        with self._lock:
            if self._result is not None:
                return self._result

            _, not_done = wait(self._futures, timeout=timeout)
            if not_done:
                raise TimeoutError(
                    f"{len(not_done)} of {len(self._futures)} blocks of "
                    f"'{self.name}' still running"
                )
            if self._executor is not None:
                self._executor.shutdown(wait=True)

            result = TransferResult(self.name, self.size, self._outcomes)
            if self._failed.is_set():
                failed = [o.index for o in self._outcomes if not o.ok]
                result.error = TransferError(
                    f"failed to {self._operation} '{self.name}': "
                    f"{len(failed)} of {len(self._outcomes)} blocks failed "
                    f"(blocks {', '.join(str(i) for i in failed)})",
                    errors=result.errors,
                    result=result,
                )
                logger.error(str(result.error))
            self._result = result
            return result


class TransferExecutor:
    """Runs block plans against a TransferAdapter with bounded concurrency."""

    def __init__(self, concurrency: int = 8):
        if concurrency <= 0:
            raise ValueError(f"concurrency must be positive, got {concurrency}")
        self.concurrency = concurrency

    def submit(self, name: str, size: int, blocks: List[BlockRange],
               block_fn: Callable[[BlockRange], int],
               context: Optional[TransferContext] = None,
               operation: str = 'transfer') -> PendingTransfer:
        """Start one task per block and return without waiting.

        ``block_fn`` moves one block and returns the number of bytes moved.
        """
        context = context or TransferContext()
        outcomes = [BlockOutcome(block.index) for block in blocks]
        failed = threading.Event()

        def run_block(block: BlockRange):
            outcome = outcomes[block.index]
            try:
                context.check()
                logger.debug(f"Starting block {block.index} of '{name}' "
                             f"at offset {block.offset} ({block.length} bytes)")
                outcome.size = block_fn(block)
            except Exception as e:
                if isinstance(e, (BlockTransferError, TransferCancelled)):
                    outcome.error = e
                else:
                    error = BlockTransferError(block.index, str(e))
                    error.__cause__ = e
                    outcome.error = error
                failed.set()
                logger.warning(f"Block {block.index} of '{name}' failed: {e}")

        if not blocks:
            return PendingTransfer(name, size, None, [], outcomes, failed, context, operation)

        executor = ThreadPoolExecutor(
            max_workers=min(self.concurrency, len(blocks)),
            thread_name_prefix='cloudstore-block',
        )
        futures = [executor.submit(run_block, block) for block in blocks]

        # release the workers once the last block is done, even if nobody waits
        remaining = [len(futures)]
        remaining_lock = threading.Lock()

        def release_workers(_future):
            with remaining_lock:
                remaining[0] -= 1
                last = remaining[0] == 0
            if last:
                executor.shutdown(wait=False)

        for future in futures:
            future.add_done_callback(release_workers)
        return PendingTransfer(name, size, executor, futures, outcomes, failed, context, operation)

    def download(self, adapter, name: str, sink, blocks: List[BlockRange], size: int,
                 context: Optional[TransferContext] = None) -> PendingTransfer:
        """Start ranged reads of every block of ``name`` into a positional sink."""
        def download_block(block: BlockRange) -> int:
            data = adapter.read_range(name, block.offset, block.length)
            if len(data) != block.length:
                raise BlockTransferError(
                    block.index,
                    f"short read of {len(data)} bytes, expected {block.length}",
                )
            sink.write_at(block.offset, data)
            return len(data)

        return self.submit(name, size, blocks, download_block, context, 'download')

    def upload(self, session, name: str, source, blocks: List[BlockRange], size: int,
               context: Optional[TransferContext] = None) -> TransferResult:
        """Stage every block into ``session`` and commit only if all succeeded.

        On any block failure, or if the context was cancelled meanwhile, the
        session is aborted and the returned result carries the error.
        """
        context = context or TransferContext()

        def upload_block(block: BlockRange) -> int:
            data = source.read_at(block.offset, block.length)
            if len(data) != block.length:
                raise BlockTransferError(
                    block.index,
                    f"source returned {len(data)} bytes, expected {block.length}",
                )
            session.stage(block, data)
            return len(data)

        result = self.submit(name, size, blocks, upload_block, context, 'upload').wait()
        if result.ok:
            try:
                context.check()
                session.commit()
                return result
            except Exception as e:
                logger.error(f"Failed to commit upload of '{name}': {e}")
                result.error = TransferError(
                    f"failed to upload '{name}': {e}", errors=result.errors, result=result
                )
                result.error.__cause__ = e

        try:
            session.abort()
        except Exception as e:
            logger.warning(f"Failed to abort upload of '{name}': {e}")
        return result


@dataclass
class RetryPolicy:
    """Backoff settings for retrying a whole transfer."""
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    mode: str = 'exponential'  # "exponential" or "fixed"


def retry_transfer(operation: Callable, *args, policy: Optional[RetryPolicy] = None, **kwargs):
    """Call ``operation`` until it stops raising TransferError.

    Block failures are never retried one by one; this repeats the entire
    chunked call. Other exceptions propagate immediately.
    """
    policy = policy or RetryPolicy()
    delay = policy.initial_delay

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return operation(*args, **kwargs)
        except TransferError as e:
            if attempt == policy.max_attempts:
                raise
            logger.warning(f"Transfer attempt {attempt} of {policy.max_attempts} failed: {e}; "
                           f"retrying in {delay:.1f}s")
            time.sleep(delay)
            if policy.mode == 'exponential':
                delay = min(delay * 2, policy.max_delay)
