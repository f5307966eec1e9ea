"""Unit tests for the concurrent transfer executor."""
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

from cloudstore.storage.errors import BlockTransferError, TransferCancelled, TransferError
from cloudstore.storage.io import BufferSink, BytesSource
from cloudstore.storage.plan import plan_blocks
from cloudstore.storage.transfer import (
    RetryPolicy,
    TransferContext,
    TransferExecutor,
    retry_transfer,
)
from tests.test_utils import InMemoryAdapter, make_data

BLOCK_SIZE = 16


class TestChunkedRoundTrip(unittest.TestCase):
    """Test cases for uploading and downloading through the executor"""

    def setUp(self):
        """Set up test environment"""
        self.adapter = InMemoryAdapter(BLOCK_SIZE)
        self.executor = TransferExecutor(concurrency=4)

    def upload(self, name, data, context=None):
        blocks = plan_blocks(len(data), BLOCK_SIZE)
        session = self.adapter.begin_upload(name, "application/test", blocks)
        result = self.executor.upload(session, name, BytesSource(data), blocks, len(data), context)
        return session, result

    def download(self, name, context=None):
        size = self.adapter.object_size(name)
        sink = BufferSink(size)
        pending = self.executor.download(
            self.adapter, name, sink, plan_blocks(size, BLOCK_SIZE), size, context
        )
        return sink, pending.wait()

    def test_round_trip_sizes(self):
        """Objects of 0, 1 and many blocks, even or not, come back unchanged"""
        for size in (0, 1, BLOCK_SIZE, BLOCK_SIZE + 1, 5 * BLOCK_SIZE - 3, 4 * BLOCK_SIZE):
            data = make_data(size)
            name = f"object-{size}"

            session, result = self.upload(name, data)
            self.assertTrue(result.ok, result.error)
            self.assertTrue(session.committed)
            self.assertEqual(result.bytes_transferred, size)

            sink, result = self.download(name)
            self.assertTrue(result.ok, result.error)
            self.assertEqual(result.size, size)
            self.assertEqual(sink.getvalue(), data)

    def test_content_type_committed(self):
        """Commit applies the content type"""
        self.upload("typed", make_data(40))
        self.assertEqual(self.adapter.content_types["typed"], "application/test")

    def test_download_block_failure(self):
        """One failed block fails the transfer while its siblings succeed"""
        data = make_data(5 * BLOCK_SIZE)
        self.upload("five", data)
        self.adapter.fail_blocks = {2}

        _, result = self.download("five")

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, TransferError)
        self.assertEqual(result.error.failed_blocks, [2])
        for index in (0, 1, 3, 4):
            self.assertTrue(result.outcomes[index].ok)
            self.assertEqual(result.outcomes[index].size, BLOCK_SIZE)
        self.assertIsInstance(result.errors[2], BlockTransferError)
        self.assertIsInstance(result.errors[2].__cause__, IOError)
        self.assertEqual(result.bytes_transferred, 4 * BLOCK_SIZE)
        with self.assertRaises(TransferError):
            result.raise_for_errors()

    def test_upload_block_failure_aborts(self):
        """A failed block leaves the upload uncommitted and aborted"""
        self.adapter.fail_blocks = {1}
        session, result = self.upload("broken", make_data(3 * BLOCK_SIZE))

        self.assertFalse(result.ok)
        self.assertFalse(session.committed)
        self.assertTrue(session.aborted)
        self.assertNotIn("broken", self.adapter.objects)
        self.assertIsNotNone(session.staged[0])
        self.assertIsNotNone(session.staged[2])

    def test_short_read_is_block_error(self):
        """A ranged read returning fewer bytes than asked fails that block"""
        self.adapter.objects["short"] = make_data(2 * BLOCK_SIZE)
        sink = BufferSink()
        pending = self.executor.download(
            self.adapter, "short", sink, plan_blocks(3 * BLOCK_SIZE, BLOCK_SIZE), 3 * BLOCK_SIZE
        )
        result = pending.wait()
        self.assertEqual(result.error.failed_blocks, [2])
        self.assertIn("short read", str(result.errors[2]))

    def test_concurrent_downloads_do_not_interfere(self):
        """Two downloads of the same object into separate sinks both match"""
        data = make_data(7 * BLOCK_SIZE + 5)
        self.upload("shared", data)
        sinks = []

        def run():
            sink, result = self.download("shared")
            result.raise_for_errors()
            sinks.append(sink)

        threads = [threading.Thread(target=run) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(sinks), 2)
        for sink in sinks:
            self.assertEqual(sink.getvalue(), data)


class TestExecutorScheduling(unittest.TestCase):
    """Test cases for concurrency bounds, joins and cancellation"""

    def test_concurrency_is_bounded(self):
        """No more than `concurrency` blocks run at once"""
        lock = threading.Lock()
        running = [0]
        peak = [0]

        def block_fn(block):
            with lock:
                running[0] += 1
                peak[0] = max(peak[0], running[0])
            time.sleep(0.01)
            with lock:
                running[0] -= 1
            return block.length

        blocks = plan_blocks(200, 10)
        result = TransferExecutor(concurrency=3).submit("bounded", 200, blocks, block_fn).wait()

        self.assertTrue(result.ok)
        self.assertLessEqual(peak[0], 3)
        self.assertEqual(result.bytes_transferred, 200)

    def test_all_blocks_run_despite_failures(self):
        """The join waits for every block, not the first failure"""
        calls = []

        def block_fn(block):
            calls.append(block.index)
            if block.index == 0:
                raise IOError("first block failed")
            return block.length

        result = TransferExecutor(concurrency=2).submit(
            "all", 100, plan_blocks(100, 10), block_fn
        ).wait()

        self.assertEqual(sorted(calls), list(range(10)))
        self.assertEqual(result.error.failed_blocks, [0])

    def test_cancelled_context_skips_blocks(self):
        """Blocks of a cancelled transfer never start"""
        context = TransferContext()
        context.cancel()
        calls = []

        result = TransferExecutor().submit(
            "cancelled", 40, plan_blocks(40, 10), calls.append, context
        ).wait()

        self.assertEqual(calls, [])
        self.assertTrue(all(isinstance(e, TransferCancelled) for e in result.errors))

    def test_deadline_expired(self):
        """A context past its deadline reports cancellation"""
        context = TransferContext(timeout=0)
        self.assertTrue(context.cancelled)
        with self.assertRaises(TransferCancelled):
            context.check()

    def test_cancel_during_upload_prevents_commit(self):
        """Cancelling mid-upload aborts instead of committing"""
        adapter = InMemoryAdapter(10)
        context = TransferContext()
        data = make_data(50)
        blocks = plan_blocks(50, 10)
        session = adapter.begin_upload("partial", "text/plain", blocks)

        original_stage = session.stage

        def stage_then_cancel(block, chunk):
            original_stage(block, chunk)
            context.cancel()

        session.stage = stage_then_cancel
        result = TransferExecutor(concurrency=1).upload(
            session, "partial", BytesSource(data), blocks, 50, context
        )

        self.assertFalse(result.ok)
        self.assertFalse(session.committed)
        self.assertTrue(session.aborted)
        self.assertTrue(result.outcomes[0].ok)
        self.assertIsInstance(result.errors[-1], TransferCancelled)

    def test_wait_timeout(self):
        """wait() with a timeout raises while blocks are still running"""
        release = threading.Event()

        def block_fn(block):
            release.wait(5)
            return block.length

        pending = TransferExecutor().submit("slow", 20, plan_blocks(20, 10), block_fn)
        self.assertEqual(pending.size, 20)
        with self.assertRaises(TimeoutError):
            pending.wait(timeout=0.05)
        self.assertFalse(pending.done())

        release.set()
        result = pending.wait()
        self.assertTrue(result.ok)
        self.assertTrue(pending.done())
        self.assertIs(pending.wait(), result)

    def test_empty_plan(self):
        """An empty plan completes at once with size 0"""
        result = TransferExecutor().submit("empty", 0, [], lambda block: 0).wait()
        self.assertTrue(result.ok)
        self.assertEqual(result.size, 0)
        self.assertEqual(result.outcomes, [])

    def test_workers_released_without_wait(self):
        """The pool shuts down after the last block even if nobody waits"""
        pools = []

        class RecordingPool(ThreadPoolExecutor):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                self.released = threading.Event()
                pools.append(self)

            def shutdown(self, *args, **kwargs):
                super().shutdown(*args, **kwargs)
                self.released.set()

        with patch("cloudstore.storage.transfer.ThreadPoolExecutor", RecordingPool):
            TransferExecutor(concurrency=2).submit(
                "unwaited", 30, plan_blocks(30, 10), lambda block: block.length
            )

        self.assertEqual(len(pools), 1)
        self.assertTrue(pools[0].released.wait(5))

    def test_invalid_concurrency(self):
        """Concurrency must be positive"""
        with self.assertRaises(ValueError):
            TransferExecutor(concurrency=0)


class TestRetryTransfer(unittest.TestCase):
    """Test cases for whole-transfer retries"""

    def setUp(self):
        """Set up test environment"""
        self.policy = RetryPolicy(max_attempts=3, initial_delay=0, max_delay=0)

    def test_retries_until_success(self):
        """Transfer errors are retried with the whole call"""
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransferError("block failed")
            return "done"

        self.assertEqual(retry_transfer(operation, policy=self.policy), "done")
        self.assertEqual(len(attempts), 3)

    def test_gives_up_after_max_attempts(self):
        """The last transfer error is raised when attempts run out"""
        def operation():
            raise TransferError("always fails")

        with self.assertRaises(TransferError):
            retry_transfer(operation, policy=self.policy)

    def test_other_errors_not_retried(self):
        """Errors other than TransferError propagate on the first attempt"""
        attempts = []

        def operation():
            attempts.append(1)
            raise PermissionError("denied")

        with self.assertRaises(PermissionError):
            retry_transfer(operation, policy=self.policy)
        self.assertEqual(len(attempts), 1)

    def test_positional_arguments_pass_through(self):
        """Positional and keyword arguments reach the operation"""
        calls = []

        def operation(name, path, content_type=None):
            calls.append((name, path, content_type))
            return "ok"

        result = retry_transfer(
            operation, "obj", "/tmp/obj", policy=self.policy, content_type="text/plain"
        )

        self.assertEqual(result, "ok")
        self.assertEqual(calls, [("obj", "/tmp/obj", "text/plain")])
