"""
Compression stage.

Compresses the fully framed byte stream with a general-purpose codec. The
stage is boundary-agnostic: it neither knows nor needs to know where the
document blocks start or end.

Supported algorithms:
    - gzip: zlib with a gzip header
    - deflate: zlib stream
    - brotli: Google Brotli
"""

from __future__ import annotations

import logging
import zlib
from collections.abc import AsyncIterator, Callable
from functools import partial
from typing import TYPE_CHECKING

import brotli

from mongovault.config.settings import ConfigurationError
from mongovault.streams.base import RunType, Stage, StageTransforms, StreamDetails, StreamError

if TYPE_CHECKING:
    from mongovault.events import RunEvents

logger = logging.getLogger(__name__)

ALGORITHMS = ("gzip", "deflate", "brotli")

# zlib window bits: 15 is the largest window, +16 selects the gzip container
_WBITS = {
    "gzip": 16 + zlib.MAX_WBITS,
    "deflate": zlib.MAX_WBITS,
}

# (process, finish) pair driving one compressor or decompressor
Codec = tuple[Callable[[bytes], bytes], Callable[[], bytes]]


class CompressionStage(Stage):
    """
    Stage compressing streams on backup and decompressing them on restore.

    Usually registered as a post-serialization stage so that it sits
    between the serializer and the encryption stage.

    Attributes:
        algorithm: One of ALGORITHMS.
        level: Compression level (zlib 0-9, brotli quality 0-11), or None
            for the codec default.
    """

    name = "compression"

    def __init__(self, algorithm: str = "gzip", level: int | None = None) -> None:
        """
        Initialize the stage.

        Raises:
            ConfigurationError: If the algorithm or level is invalid.
        """
        algorithm = str(algorithm).lower()
        if algorithm not in ALGORITHMS:
            raise ConfigurationError(
                f"Invalid algorithm '{algorithm}'. Must be one of: {', '.join(ALGORITHMS)}"
            )
        if level is not None and not isinstance(level, int):
            raise ConfigurationError(f"Compression level must be an integer, got {level!r}")

        self.algorithm = algorithm
        self.level = level

    async def prepare(self, run_type: RunType, events: RunEvents) -> StageTransforms:
        logger.debug(f"Using {self.algorithm} compression for {run_type.value}")
        return StageTransforms(
            backup=lambda details: self.compress,
            restore=lambda details: partial(self.decompress, details),
        )

    def _compressor(self) -> Codec:
        if self.algorithm == "brotli":
            if self.level is None:
                compressor = brotli.Compressor()
            else:
                compressor = brotli.Compressor(quality=self.level)
            return compressor.process, compressor.finish

        level = zlib.Z_DEFAULT_COMPRESSION if self.level is None else self.level
        compressor = zlib.compressobj(level, zlib.DEFLATED, _WBITS[self.algorithm])
        return compressor.compress, compressor.flush

    async def compress(self, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """Transform compressing a byte stream."""
        process, finish = self._compressor()
        async for data in source:
            compressed = process(data)
            if compressed:
                yield compressed

        tail = finish()
        if tail:
            yield tail

    async def decompress(self, details: StreamDetails, source: AsyncIterator[bytes]) -> AsyncIterator[bytes]:
        """
        Transform decompressing a byte stream.

        Raises:
            StreamError: If the data is corrupt or the stream is truncated.
        """
        if self.algorithm == "brotli":
            decompressor = brotli.Decompressor()
            try:
                async for data in source:
                    decompressed = decompressor.process(data)
                    if decompressed:
                        yield decompressed
            except brotli.error as e:
                raise StreamError(f"Corrupt brotli data: {e}", details) from e

            if not decompressor.is_finished():
                raise StreamError("Compressed stream is truncated", details)
            return

        decompressor = zlib.decompressobj(_WBITS[self.algorithm])
        try:
            async for data in source:
                decompressed = decompressor.decompress(data)
                if decompressed:
                    yield decompressed
            tail = decompressor.flush()
        except zlib.error as e:
            raise StreamError(f"Corrupt {self.algorithm} data: {e}", details) from e

        if tail:
            yield tail
        if not decompressor.eof:
            raise StreamError("Compressed stream is truncated", details)
