"""
Filesystem output endpoint.

Layout of a backup directory:

    <output_path>/<collection>.<ext>            - document streams
    <output_path>/metadata/<collection>.<ext>   - index definitions
    <output_path>/metadata/$crypto.*.raw        - encryption bookkeeping

The directory is created on the first write of a run, and fully cleaned
first when requested.
"""

from __future__ import annotations

import asyncio
import logging
import shutil
from collections.abc import AsyncIterator
from pathlib import Path

import aiofiles

from mongovault.output.base import OutputEndpoint, RestoreEndpoint
from mongovault.streams.base import Sink, StreamDetails

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


def make_directory(path: Path, clean: bool = False) -> bool:
    """
    Ensure a directory exists.

    Args:
        path: Directory to create.
        clean: Remove any existing content first.

    Returns:
        True if the directory was created, False if it already existed.

    Raises:
        NotADirectoryError: If the path exists and is not a directory.
    """
    path = Path(path)

    if not path.exists():
        logger.info(f"Creating directory: {path}")
        path.mkdir(parents=True)
        return True

    if not path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {path}")

    if clean:
        logger.info(f"Cleaning directory: {path}")
        shutil.rmtree(path)
        path.mkdir()

    return False


class FileRestore(RestoreEndpoint):
    """Read side of a FileOutput."""

    def __init__(self, output: FileOutput) -> None:
        self._output = output

    async def get_collection(self, details: StreamDetails) -> AsyncIterator[bytes]:
        path = self._output.get_path(details)
        if not path.is_file():
            raise FileNotFoundError(f"No stored stream for '{details.key}': {path}")
        return self._read(path)

    async def _read(self, path: Path) -> AsyncIterator[bytes]:
        async with aiofiles.open(path, "rb") as f:
            while True:
                data = await f.read(READ_CHUNK_SIZE)
                if not data:
                    break
                yield data

    async def get_collection_names(self) -> list[StreamDetails]:
        streams: list[StreamDetails] = []
        for directory, is_metadata in (
            (self._output.output_path, False),
            (self._output.metadata_path, True),
        ):
            if not directory.is_dir():
                continue
            for entry in sorted(directory.iterdir()):
                if not entry.is_file() or "." not in entry.name:
                    continue
                name, extension = entry.name.rsplit(".", 1)
                streams.append(StreamDetails(name, extension, is_metadata=is_metadata))
        return streams


class FileOutput(OutputEndpoint):
    """
    Output endpoint storing every logical stream as a file.

    Usage:
        output = FileOutput("/backups/mydb", clean=True)
        sink = await output.backup(StreamDetails("users", "bson"))
        await sink(chunks)

    Attributes:
        output_path: Root directory of the backup.
        metadata_path: Directory holding metadata streams.
        clean: Whether the directories are emptied before the first write.
    """

    METADATA_DIR = "metadata"

    def __init__(self, output_path: str | Path, clean: bool = False) -> None:
        self.output_path = Path(output_path).resolve()
        self.metadata_path = self.output_path / self.METADATA_DIR
        self.clean = clean
        self.restore = FileRestore(self)
        self._prepared = False
        self._lock = asyncio.Lock()

    def get_path(self, details: StreamDetails) -> Path:
        """Path of the file backing a logical stream."""
        file_name = f"{details.collection_name}.{details.file_extension}"
        if details.is_metadata:
            return self.metadata_path / file_name
        return self.output_path / file_name

    async def prepare(self) -> None:
        """Create (and optionally clean) the output directories once."""
        async with self._lock:
            if self._prepared:
                return
            make_directory(self.output_path, clean=self.clean)
            make_directory(self.metadata_path, clean=self.clean)
            self._prepared = True

    async def backup(self, details: StreamDetails) -> Sink:
        await self.prepare()
        path = self.get_path(details)

        async def sink(chunks: AsyncIterator[bytes]) -> None:
            size = 0
            async with aiofiles.open(path, "wb") as f:
                async for chunk in chunks:
                    await f.write(chunk)
                    size += len(chunk)
            logger.debug(f"Wrote {size:,} bytes to {path}")

        return sink
