"""
Chunk framing codec.

Serialized documents are opaque byte blocks that share one physical byte
stream. The framing lets a reader recover exactly the blocks that were
written, whatever bytes they contain.

Wire format, per block:

    [guard] <escaped block> <delimiter>

    - delimiter: a single 0x0A byte terminates every block
    - escaping: every delimiter byte inside a block is doubled
    - guard: a single 0x00 byte is written before a block that is empty or
      starts with the delimiter or guard byte. Without it, a terminator
      followed by such a block would read as an escaped delimiter.

Readers accept input split at arbitrary boundaries and buffer undecided
trailing bytes between calls.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from mongovault.streams.base import ChunkDecodeError, Transform, maybe_await

logger = logging.getLogger(__name__)

DELIMITER = 0x0A
GUARD = 0x00

_DELIMITER_BYTES = bytes([DELIMITER])
_ESCAPED_DELIMITER = bytes([DELIMITER, DELIMITER])
_GUARD_BYTES = bytes([GUARD])


def encode_block(block: bytes) -> bytes:
    """
    Frame a single block.

    Args:
        block: Raw block content.

    Returns:
        The escaped block followed by its terminating delimiter.
    """
    block = bytes(block)
    escaped = block.replace(_DELIMITER_BYTES, _ESCAPED_DELIMITER)
    if not block or block[0] in (DELIMITER, GUARD):
        return _GUARD_BYTES + escaped + _DELIMITER_BYTES
    return escaped + _DELIMITER_BYTES


def encode_blocks(blocks: Iterable[bytes]) -> bytes:
    """Frame a sequence of blocks into one byte string."""
    return b"".join(encode_block(block) for block in blocks)


class ChunkDecoder:
    """
    Incremental decoder for the chunk framing format.

    Feed it input as it arrives; every call returns the blocks completed
    so far. Call flush() at end of stream to obtain a trailing block that
    was never terminated.

    Usage:
        decoder = ChunkDecoder()
        for data in chunks:
            for block in decoder.feed(data):
                handle(block)
        remainder = decoder.flush()
    """

    def __init__(self) -> None:
        self._block = bytearray()
        self._at_start = True
        # A delimiter seen as the last byte of the input; the next byte
        # decides whether it is escaped or a terminator
        self._pending = False

    def feed(self, data: bytes) -> list[bytes]:
        """
        Decode the next piece of input.

        Args:
            data: Bytes read from the stream.

        Returns:
            Blocks completed by this input, in order.
        """
        buffer = _DELIMITER_BYTES + bytes(data) if self._pending else bytes(data)
        self._pending = False

        blocks: list[bytes] = []
        position = 0
        end = len(buffer)

        while position < end:
            if self._at_start:
                self._at_start = False
                if buffer[position] == GUARD:
                    position += 1
                    continue

            index = buffer.find(DELIMITER, position)
            if index == -1:
                self._block += buffer[position:]
                break

            self._block += buffer[position:index]

            if index + 1 == end:
                self._pending = True
                break

            if buffer[index + 1] == DELIMITER:
                self._block.append(DELIMITER)
                position = index + 2
            else:
                blocks.append(self._take_block())
                position = index + 1

        return blocks

    def flush(self) -> bytes | None:
        """
        Finish decoding at end of stream.

        Returns:
            The last block if one was started or left unterminated,
            otherwise None.
        """
        if self._pending:
            self._pending = False
            return self._take_block()
        if not self._at_start:
            return self._take_block()
        return None

    def _take_block(self) -> bytes:
        block = bytes(self._block)
        self._block = bytearray()
        self._at_start = True
        return block


def decode_blocks(data: bytes) -> list[bytes]:
    """Decode a complete framed byte string into its blocks."""
    decoder = ChunkDecoder()
    blocks = decoder.feed(data)
    remainder = decoder.flush()
    if remainder is not None:
        blocks.append(remainder)
    return blocks


def chunk_writer(transformer: Callable[[Any], Any] | None = None) -> Transform:
    """
    Build a transform framing every incoming item as one block.

    Args:
        transformer: Optional sync or async function converting an item
            into bytes before it is framed. Items must already be bytes
            when omitted.

    Returns:
        A transform yielding framed bytes.
    """

    async def transform(source: AsyncIterator[Any]) -> AsyncIterator[bytes]:
        async for item in source:
            block = item if transformer is None else await maybe_await(transformer(item))
            yield encode_block(block)

    return transform


def chunk_reader(transformer: Callable[[bytes], Any] | None = None) -> Transform:
    """
    Build a transform recovering framed blocks from a byte stream.

    Args:
        transformer: Optional sync or async function converting each
            block into a value. Blocks are yielded as bytes when omitted.

    Returns:
        A transform yielding one item per decoded block.

    Raises:
        ChunkDecodeError: If the transformer rejects a block.
    """

    async def decode(block: bytes) -> Any:
        if transformer is None:
            return block
        try:
            return await maybe_await(transformer(block))
        except Exception as e:
            raise ChunkDecodeError(f"Cannot decode block of {len(block)} bytes: {e}") from e

    async def transform(source: AsyncIterator[bytes]) -> AsyncIterator[Any]:
        decoder = ChunkDecoder()
        async for data in source:
            for block in decoder.feed(data):
                yield await decode(block)

        remainder = decoder.flush()
        if remainder is not None:
            logger.debug(f"Flushing unterminated trailing block ({len(remainder)} bytes)")
            yield await decode(remainder)

    return transform
