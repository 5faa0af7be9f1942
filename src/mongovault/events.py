"""
Run-level events.

Each run owns one RunEvents registry. Stages register callbacks on it while
they are prepared, and the orchestrator emits the end event exactly once,
after every stream of the run has settled, awaiting all callbacks before
the database connection is released.

The main user is the encryption stage: authentication tags are only known
once each stream has finished, so the tag map can only be written once the
entire run is done.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Union

logger = logging.getLogger(__name__)

END = "end"

EventCallback = Callable[[], Union[Awaitable[None], None]]


async def _invoke(callback: EventCallback) -> None:
    result = callback()
    if inspect.isawaitable(result):
        await result


class FinalizationError(Exception):
    """
    Raised when a run finalization callback fails.

    This is run-fatal: the output of the run may be unusable (for example
    an encrypted backup without its authentication tags).
    """

    pass


@dataclass(frozen=True)
class EventHandle:
    """Handle returned by a registration, used to unregister the callback."""

    id: str
    _callbacks: dict[str, EventCallback] = field(repr=False, compare=False)

    def remove(self) -> None:
        """Unregister the callback. Removing twice is a no-op."""
        self._callbacks.pop(self.id, None)


class RunEvents:
    """
    Per-run registry of event callbacks.

    Usage:
        events = RunEvents()
        handle = events.on_end(write_summary)

        # ... run every stream ...

        await events.emit_end()
    """

    def __init__(self) -> None:
        self._handlers: dict[str, dict[str, EventCallback]] = {}
        self._emitted: set[str] = set()

    def on_end(self, callback: EventCallback) -> EventHandle:
        """
        Register a callback for the end of the run.

        Args:
            callback: Sync or async callable taking no arguments.

        Returns:
            Handle that can remove the registration.
        """
        return self._register(END, callback)

    def callbacks(self, name: str = END) -> list[EventCallback]:
        """Callbacks currently registered for an event."""
        return list(self._get_handlers(name).values())

    def has_emitted(self, name: str = END) -> bool:
        return name in self._emitted

    async def emit_end(self) -> None:
        """Emit the end event. See emit()."""
        await self.emit(END)

    async def emit(self, name: str) -> None:
        """
        Invoke every callback registered for an event and wait for all of them.

        All callbacks run to completion even if some fail.

        Raises:
            RuntimeError: If the event was already emitted for this run.
            FinalizationError: If any callback failed.
        """
        if name in self._emitted:
            raise RuntimeError(f"Event '{name}' was already emitted for this run")
        self._emitted.add(name)

        callbacks = self.callbacks(name)
        logger.debug(f"Emitting '{name}' to {len(callbacks)} callback(s)")

        results = await asyncio.gather(
            *(_invoke(callback) for callback in callbacks),
            return_exceptions=True,
        )

        errors = [result for result in results if isinstance(result, BaseException)]
        if not errors:
            return

        for error in errors[1:]:
            logger.error(f"Additional '{name}' callback failure: {error}")

        error = errors[0]
        if isinstance(error, FinalizationError):
            raise error
        raise FinalizationError(f"'{name}' callback failed: {error}") from error

    def _register(self, name: str, callback: EventCallback) -> EventHandle:
        if not callable(callback):
            raise TypeError(f"Event callback must be callable, got {type(callback).__name__}")

        callbacks = self._get_handlers(name)
        handle_id = str(uuid.uuid4())
        callbacks[handle_id] = callback
        return EventHandle(id=handle_id, _callbacks=callbacks)

    def _get_handlers(self, name: str) -> dict[str, EventCallback]:
        handlers = self._handlers.get(name)
        if handlers is None:
            handlers = {}
            self._handlers[name] = handlers
        return handlers
