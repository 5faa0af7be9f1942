"""
Output endpoint interface.

An output endpoint is where backups are written to and restored from. Each
logical stream maps to exactly one physical byte stream in the endpoint.

    endpoint.backup(details)                   -> sink consuming bytes
    endpoint.restore.get_collection(details)   -> async iterator of bytes
    endpoint.restore.get_collection_names()    -> streams known to the store
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from mongovault.streams.base import Sink, StreamDetails


class RestoreEndpoint(ABC):
    """Read side of an output endpoint."""

    @abstractmethod
    async def get_collection(self, details: StreamDetails) -> AsyncIterator[bytes]:
        """
        Open a stream for reading.

        Args:
            details: The logical stream to read.

        Returns:
            Async iterator over the stream's bytes.
        """
        pass

    @abstractmethod
    async def get_collection_names(self) -> list[StreamDetails]:
        """
        List the logical streams known to the store.

        Returns:
            One StreamDetails per stored stream, data and metadata alike.
        """
        pass


class OutputEndpoint(ABC):
    """
    Abstract destination of a backup.

    Attributes:
        restore: The endpoint's read side.
    """

    restore: RestoreEndpoint

    @abstractmethod
    async def backup(self, details: StreamDetails) -> Sink:
        """
        Open a stream for writing.

        Args:
            details: The logical stream to write.

        Returns:
            Async callable consuming an async iterator of bytes.
        """
        pass
