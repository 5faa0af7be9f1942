"""
Stream primitives shared by every pipeline stage.

A transform is any callable that takes an async iterator and returns a new
async iterator, usually an async generator function. Because every step pulls
from its upstream, a slow consumer throttles its producer without any extra
buffering, and chunk order is preserved end-to-end.

A Stage is a pluggable, optional transform applied in a fixed position to
every logical stream of a run. Stages are prepared once per run into a
StageTransforms pair, whose factories produce a fresh transform per stream.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from mongovault.events import RunEvents

logger = logging.getLogger(__name__)

# Suffix appended to a collection name to build the key of its metadata stream
METADATA_SUFFIX = ".$meta"


# -----------------------------------------------------------------------------
# Error Classes
# -----------------------------------------------------------------------------


class StreamError(Exception):
    """Base exception for failures isolated to a single logical stream."""

    def __init__(self, message: str, stream: StreamDetails | None = None) -> None:
        self.message = message
        self.stream = stream
        super().__init__(f"[{stream.key}] {message}" if stream else message)


class ChunkDecodeError(StreamError):
    """Raised when a framed block cannot be converted back into a value."""

    pass


class DecryptionError(StreamError):
    """
    Raised when an encrypted stream cannot be decrypted.

    This covers truncated streams, malformed tags and failed
    authentication (wrong password or tampered data).
    """

    pass


class MissingAuthTagError(StreamError):
    """Raised when no authentication tag was recorded for a stream."""

    pass


# -----------------------------------------------------------------------------
# Data Structures
# -----------------------------------------------------------------------------


class RunType(str, Enum):
    """Direction of a run."""

    BACKUP = "backup"
    RESTORE = "restore"


@dataclass(frozen=True)
class StreamDetails:
    """
    Identifies one logical stream of a run.

    Attributes:
        collection_name: Name of the collection the stream belongs to.
        file_extension: Extension used by the output store for this stream.
        is_metadata: True for index definitions, False for documents.
    """

    collection_name: str
    file_extension: str
    is_metadata: bool = False

    @property
    def key(self) -> str:
        """Composite stream key, unique within a run."""
        return self.collection_name + (METADATA_SUFFIX if self.is_metadata else "")


Transform = Callable[[AsyncIterator[Any]], AsyncIterator[Any]]
TransformFactory = Callable[[StreamDetails], Optional[Transform]]
Sink = Callable[[AsyncIterator[Any]], Awaitable[Any]]


@dataclass
class StageTransforms:
    """
    Per-run transform factories of a prepared stage.

    A missing factory, or a factory returning None, means the stage
    passes the stream through untouched.
    """

    backup: TransformFactory | None = None
    restore: TransformFactory | None = None

    def get(self, run_type: RunType, details: StreamDetails) -> Transform | None:
        """Return the transform for a stream, or None for pass-through."""
        factory = self.backup if run_type is RunType.BACKUP else self.restore
        if factory is None:
            return None
        return factory(details)


class Stage(ABC):
    """
    Abstract base class for pipeline stages.

    Subclasses implement prepare(), which is awaited once at the start of
    every run and may perform run-scoped I/O (such as key derivation) or
    register finalization callbacks on the run's events.

    Example:
        class UpperCaseStage(Stage):
            name = "upper"

            async def prepare(self, run_type, events):
                return StageTransforms(backup=lambda details: upper_case)
    """

    name: str = "stage"

    @abstractmethod
    async def prepare(self, run_type: RunType, events: RunEvents) -> StageTransforms:
        """
        Resolve the stage for one run.

        Args:
            run_type: Whether the run is a backup or a restore.
            events: The run's finalization event registry.

        Returns:
            The transform factories to use for every stream of the run.
        """
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


async def maybe_await(value: Any) -> Any:
    """Await value if it is awaitable, otherwise return it unchanged."""
    if inspect.isawaitable(value):
        return await value
    return value


async def iterate(items: Iterable[Any] | AsyncIterable[Any]) -> AsyncIterator[Any]:
    """Turn a plain or async iterable into an async iterator."""
    if isinstance(items, AsyncIterable):
        async for item in items:
            yield item
    else:
        for item in items:
            yield item


def map_stream(callback: Callable[[Any], Any]) -> Transform:
    """Build a transform applying a sync or async callback to every item."""

    async def transform(source: AsyncIterator[Any]) -> AsyncIterator[Any]:
        async for item in source:
            yield await maybe_await(callback(item))

    return transform


def compose(source: AsyncIterator[Any], transforms: Iterable[Transform | None]) -> AsyncIterator[Any]:
    """Chain transforms onto a source in order, skipping missing ones."""
    stream = source
    for transform in transforms:
        if transform is not None:
            stream = transform(stream)
    return stream


async def run_pipeline(
    source: AsyncIterator[Any],
    transforms: Iterable[Transform | None],
    sink: Sink,
) -> None:
    """
    Drive a source through a chain of transforms into a sink.

    Any failure raised by the source, a transform or the sink
    propagates to the caller unchanged. Both the outermost stream and
    the source are closed afterwards.
    """
    stream = compose(source, transforms)
    try:
        await sink(stream)
    finally:
        iterators = [stream] if stream is source else [stream, source]
        for iterator in iterators:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()


async def collect(stream: AsyncIterable[Any]) -> list[Any]:
    """Drain an async iterable into a list."""
    return [item async for item in stream]
