"""Position-addressable sources and sinks used by chunked transfers.

Blocks finish in any order, so every read and write names its own offset
and never relies on a shared file cursor.
"""
import os
import threading
from typing import BinaryIO, Union


class FileSource:
    """Reads byte ranges from an open binary file."""

    def __init__(self, file_obj: BinaryIO):
        self._file = file_obj
        self._fd = file_obj.fileno()
        self._lock = threading.Lock()

    @property
    def size(self) -> int:
        return os.fstat(self._fd).st_size

    def read_at(self, offset: int, length: int) -> bytes:
        if hasattr(os, 'pread'):
            chunks = []
            remaining = length
            while remaining > 0:
                chunk = os.pread(self._fd, remaining, offset + length - remaining)
                if not chunk:
                    break
                chunks.append(chunk)
                remaining -= len(chunk)
            return b''.join(chunks)

        with self._lock:
            self._file.seek(offset)
            return self._file.read(length)


class BytesSource:
    """Reads byte ranges from an in-memory buffer."""

    def __init__(self, data: Union[bytes, bytearray, memoryview]):
        self._data = memoryview(data)

    @property
    def size(self) -> int:
        return len(self._data)

    def read_at(self, offset: int, length: int) -> bytes:
        return bytes(self._data[offset:offset + length])


class FileSink:
    """Writes byte ranges into an open binary file."""

    def __init__(self, file_obj: BinaryIO):
        self._file = file_obj
        self._fd = file_obj.fileno()
        self._lock = threading.Lock()

    def write_at(self, offset: int, data: bytes) -> int:
        if hasattr(os, 'pwrite'):
            view = memoryview(data)
            written = 0
            while written < len(view):
                written += os.pwrite(self._fd, view[written:], offset + written)
            return written

        with self._lock:
            self._file.seek(offset)
            return self._file.write(data)

    def truncate(self, size: int):
        os.ftruncate(self._fd, size)


class BufferSink:
    """In-memory sink that grows to fit writes at any offset."""

    def __init__(self, size: int = 0):
        self._buffer = bytearray(size)
        self._lock = threading.Lock()

    def write_at(self, offset: int, data: bytes) -> int:
        end = offset + len(data)
        with self._lock:
            if end > len(self._buffer):
                self._buffer.extend(b'\x00' * (end - len(self._buffer)))
            self._buffer[offset:end] = data
        return len(data)

    def truncate(self, size: int):
        with self._lock:
            del self._buffer[size:]

    def getvalue(self) -> bytes:
        with self._lock:
            return bytes(self._buffer)


def as_source(data) -> Union[FileSource, BytesSource]:
    """Wrap bytes or a real file in a positional source."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        return BytesSource(data)
    if hasattr(data, 'read_at'):
        return data
    return FileSource(data)


def as_sink(target) -> Union[FileSink, BufferSink]:
    """Wrap a real file in a positional sink; pass positional sinks through."""
    if hasattr(target, 'write_at'):
        return target
    return FileSink(target)
