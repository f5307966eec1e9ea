"""Splitting an object into the byte ranges moved by a chunked transfer."""
import base64
import struct
from dataclasses import dataclass
from typing import List

from .errors import BlockPlanError


@dataclass(frozen=True)
class BlockRange:
    """A contiguous byte range of an object, transferred as one unit of work."""
    index: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        """Exclusive end offset."""
        return self.offset + self.length


def plan_blocks(size: int, block_size: int) -> List[BlockRange]:
    """Return the ordered ranges covering ``[0, size)`` in ``block_size`` steps.

    The final range holds the remainder when ``size`` is not a multiple of
    ``block_size``. A zero size yields an empty plan.

    Raises:
        BlockPlanError: if ``block_size`` is not positive or ``size`` is negative
    """
    if block_size <= 0:
        raise BlockPlanError(f"block size must be positive, got {block_size}")
    if size < 0:
        raise BlockPlanError(f"object size must not be negative, got {size}")

    num_blocks, partial = divmod(size, block_size)
    if partial > 0:
        num_blocks += 1

    blocks = []
    for index in range(num_blocks):
        offset = index * block_size
        blocks.append(BlockRange(index, offset, min(block_size, size - offset)))
    return blocks


def encode_block_id(index: int) -> str:
    """Render a block index as a fixed-length base64 block id."""
    return base64.b64encode(struct.pack('<Q', index)).decode('ascii')


def decode_block_id(block_id: str) -> int:
    return struct.unpack('<Q', base64.b64decode(block_id))[0]
