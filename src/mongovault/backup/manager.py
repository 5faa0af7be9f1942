"""
Backup and restore orchestration.

BackupManager drives one run over every eligible collection of a database.
Each collection has a data stream and, optionally, an index metadata stream;
every stream gets its own pipeline composed from the registered stages:

    backup:  reader -> before_serialization -> serializer.serialize
                    -> after_serialization -> before_output -> output sink

    restore: output source -> before_output -> after_serialization
                    -> serializer.deserialize -> before_serialization -> writer

Restore applies each group of stages in registration order; every stage's
restore transform must undo its backup transform in that position.

All collections run concurrently and a failed collection never affects the
others. Once every pipeline has settled, the run's end event is emitted and
awaited, then the database connection is closed.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Union

from mongovault.config.settings import ConfigurationError
from mongovault.database import DEFAULT_BATCH_SIZE, DatabaseAccess, MotorDatabase
from mongovault.events import RunEvents
from mongovault.output.base import OutputEndpoint
from mongovault.streams.base import (
    RunType,
    Sink,
    Stage,
    StageTransforms,
    StreamDetails,
    Transform,
    run_pipeline,
)
from mongovault.streams.serializers import (
    Serializer,
    SerializerOption,
    check_serializer_option,
    resolve_serializer,
)

logger = logging.getLogger(__name__)

# Collection names that are never transferred: system and internal collections
DEFAULT_IGNORE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^system\."),
    re.compile(r"^__"),
)

IgnorePredicate = Union[re.Pattern[str], str, Callable[[str], bool]]


@dataclass
class TransformStages:
    """
    Stages applied to every stream, grouped by pipeline position.

    Attributes:
        before_serialization: Operate on documents before serialization.
        after_serialization: Operate on serialized bytes (e.g. compression).
        before_output: Outermost byte stages (e.g. encryption).
    """

    before_serialization: list[Stage] = field(default_factory=list)
    after_serialization: list[Stage] = field(default_factory=list)
    before_output: list[Stage] = field(default_factory=list)

    def all(self) -> list[Stage]:
        return [*self.before_serialization, *self.after_serialization, *self.before_output]


@dataclass
class BackupOptions:
    """
    Options of a BackupManager.

    Attributes:
        serializer: Built-in serializer name, Serializer or factory.
        stages: Optional transform stages.
        collections: Allow-list of collection names, or None for all.
        include_metadata: Also transfer index definitions.
        ignore_collections: Predicates excluding collection names. A name
            is excluded if any pattern matches or any callable returns True.
        query: Filter applied to documents on backup.
        insert_batch_size: Documents per insert on restore.
        logger: Logger receiving progress lines.
    """

    serializer: SerializerOption = "bson"
    stages: TransformStages = field(default_factory=TransformStages)
    collections: list[str] | None = None
    include_metadata: bool = False
    ignore_collections: Sequence[IgnorePredicate] = DEFAULT_IGNORE_PATTERNS
    query: dict[str, Any] = field(default_factory=dict)
    insert_batch_size: int = DEFAULT_BATCH_SIZE
    logger: logging.Logger = logger


@dataclass
class CollectionOutcome:
    """
    Settled result of one collection in a run.

    Attributes:
        collection_name: The collection.
        error: The failure, or None if every stream succeeded.
    """

    collection_name: str
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def status(self) -> str:
        return "fulfilled" if self.error is None else "rejected"


@dataclass
class ResolvedStages:
    """Stage transforms prepared for one run."""

    before_serialization: list[StageTransforms]
    after_serialization: list[StageTransforms]
    before_output: list[StageTransforms]


def split_outcomes(
    outcomes: Sequence[CollectionOutcome],
) -> tuple[list[CollectionOutcome], list[CollectionOutcome]]:
    """Split outcomes into (successful, failed)."""
    successful = [outcome for outcome in outcomes if outcome.succeeded]
    failed = [outcome for outcome in outcomes if not outcome.succeeded]
    return successful, failed


def is_ignored(name: str, predicates: Sequence[IgnorePredicate]) -> bool:
    """Check whether a collection name matches any ignore predicate."""
    for predicate in predicates:
        if isinstance(predicate, str):
            if re.search(predicate, name):
                return True
        elif isinstance(predicate, re.Pattern):
            if predicate.search(name):
                return True
        elif predicate(name):
            return True
    return False


def validate_options(options: BackupOptions) -> None:
    """
    Validate options before any I/O happens.

    Raises:
        ConfigurationError: If any option has an invalid shape or value.
    """
    check_serializer_option(options.serializer)

    if not isinstance(options.stages, TransformStages):
        raise ConfigurationError("'stages' must be a TransformStages instance")
    for stage in options.stages.all():
        if not isinstance(stage, Stage):
            raise ConfigurationError(f"Invalid stage: {stage!r}")

    if options.collections is not None:
        if isinstance(options.collections, str) or not all(
            isinstance(name, str) for name in options.collections
        ):
            raise ConfigurationError("'collections' must be a list of collection names")

    for predicate in options.ignore_collections:
        if isinstance(predicate, str):
            try:
                re.compile(predicate)
            except re.error as e:
                raise ConfigurationError(f"Invalid ignore pattern '{predicate}': {e}") from e
        elif not isinstance(predicate, re.Pattern) and not callable(predicate):
            raise ConfigurationError(f"Invalid ignore predicate: {predicate!r}")

    if not isinstance(options.query, dict):
        raise ConfigurationError("'query' must be a mapping")

    if not isinstance(options.insert_batch_size, int) or options.insert_batch_size < 1:
        raise ConfigurationError("'insert_batch_size' must be a positive integer")

    if not isinstance(options.logger, logging.Logger):
        raise ConfigurationError("'logger' must be a logging.Logger")


async def _settle_all(coroutines: Sequence[Any]) -> None:
    """Wait for every coroutine to settle, then raise the first failure."""
    results = await asyncio.gather(*coroutines, return_exceptions=True)
    for result in results:
        if isinstance(result, BaseException):
            raise result


class BackupManager:
    """
    Runs backups and restores of one database against one output endpoint.

    Usage:
        output = FileOutput("/backups/app", clean=True)
        manager = BackupManager.connect("mongodb://localhost/app", output)
        outcomes = await manager.backup()

    A manager closes its database connection at the end of a run, so each
    manager performs a single run.
    """

    def __init__(
        self,
        database: DatabaseAccess,
        output: OutputEndpoint,
        options: BackupOptions | None = None,
    ) -> None:
        """
        Initialize the manager.

        Args:
            database: Database endpoint of the run.
            output: Output endpoint of the run.
            options: Run options, defaults when omitted.

        Raises:
            ConfigurationError: If the options are invalid.
        """
        self.options = options or BackupOptions()
        validate_options(self.options)
        self.database = database
        self.output = output
        self.log = self.options.logger

    @classmethod
    def connect(
        cls,
        uri: str,
        output: OutputEndpoint,
        options: BackupOptions | None = None,
        database_name: str | None = None,
        **client_options: Any,
    ) -> BackupManager:
        """
        Create a manager backed by a MongoDB connection.

        Raises:
            ConfigurationError: If the URI or the options are invalid.
        """
        if not uri or not isinstance(uri, str):
            raise ConfigurationError("Missing 'uri' option")
        validate_options(options or BackupOptions())
        return cls(MotorDatabase(uri, database_name, **client_options), output, options)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    async def backup(self) -> list[CollectionOutcome]:
        """
        Back up every eligible collection.

        Returns:
            One settled outcome per collection.

        Raises:
            FinalizationError: If end-of-run bookkeeping failed.
        """
        return await self._run(RunType.BACKUP)

    async def restore(self) -> list[CollectionOutcome]:
        """
        Restore every eligible collection known to the output endpoint.

        Returns:
            One settled outcome per collection.

        Raises:
            FinalizationError: If end-of-run bookkeeping failed.
        """
        return await self._run(RunType.RESTORE)

    async def close(self) -> None:
        await self.database.close()
        self.log.info("Database closed")

    async def _run(self, run_type: RunType) -> list[CollectionOutcome]:
        action = "Backup" if run_type is RunType.BACKUP else "Restore"
        events = RunEvents()

        try:
            serializer = await resolve_serializer(self.options.serializer)
            self.log.info(f"{action} starting...")

            stages = await self._prepare_stages(run_type, events)

            if run_type is RunType.BACKUP:
                names = await self._backup_collection_names()
                runner = self._backup_collection
            else:
                names, metadata_names = await self._restore_collection_names(serializer)
                runner = partial(self._restore_collection, metadata_names)

            outcomes = await asyncio.gather(
                *(self._settle(run_type, name, runner(name, serializer, stages)) for name in names)
            )

            await events.emit_end()
        finally:
            await self.close()

        successful, failed = split_outcomes(outcomes)
        self.log.info(f"{action} finished: {len(successful)} succeeded, {len(failed)} failed")
        return list(outcomes)

    async def _prepare_stages(self, run_type: RunType, events: RunEvents) -> ResolvedStages:
        stages = self.options.stages

        async def prepare(group: list[Stage]) -> list[StageTransforms]:
            resolved = []
            for stage in group:
                resolved.append(await stage.prepare(run_type, events))
            return resolved

        return ResolvedStages(
            before_serialization=await prepare(stages.before_serialization),
            after_serialization=await prepare(stages.after_serialization),
            before_output=await prepare(stages.before_output),
        )

    async def _settle(self, run_type: RunType, name: str, run: Any) -> CollectionOutcome:
        self.log.info(f"Processing '{name}'")
        try:
            await run
        except Exception as e:
            self.log.error(f"Failed '{name}': {e}")
            return CollectionOutcome(name, error=e)

        self.log.info(f"Saved {name}" if run_type is RunType.BACKUP else f"Restored {name}")
        return CollectionOutcome(name)

    def _eligible(self, names: Sequence[str]) -> list[str]:
        return [name for name in names if not is_ignored(name, self.options.ignore_collections)]

    # -------------------------------------------------------------------------
    # Backup
    # -------------------------------------------------------------------------

    async def _backup_collection_names(self) -> list[str]:
        if self.options.collections is not None:
            return self._eligible(self.options.collections)
        return self._eligible(await self.database.list_collection_names())

    async def _backup_collection(self, name: str, serializer: Serializer, stages: ResolvedStages) -> None:
        streams = [
            self._backup_stream(
                StreamDetails(name, serializer.file_extension),
                self.database.find(name, self.options.query),
                serializer,
                stages,
            )
        ]
        if self.options.include_metadata:
            streams.append(
                self._backup_stream(
                    StreamDetails(name, serializer.file_extension, is_metadata=True),
                    self.database.list_indexes(name),
                    serializer,
                    stages,
                )
            )
        await _settle_all(streams)

    async def _backup_stream(
        self,
        details: StreamDetails,
        source: AsyncIterator[Any],
        serializer: Serializer,
        stages: ResolvedStages,
    ) -> None:
        transforms: list[Transform | None] = [
            *(stage.get(RunType.BACKUP, details) for stage in stages.before_serialization),
            serializer.serialize(details),
            *(stage.get(RunType.BACKUP, details) for stage in stages.after_serialization),
            *(stage.get(RunType.BACKUP, details) for stage in stages.before_output),
        ]
        sink = await self.output.backup(details)

        self.log.debug(f"Backing up stream '{details.key}'")
        await run_pipeline(source, transforms, sink)

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def _restore_collection_names(self, serializer: Serializer) -> tuple[list[str], set[str]]:
        known = await self.output.restore.get_collection_names()
        matching = [details for details in known if details.file_extension == serializer.file_extension]

        data_names = [details.collection_name for details in matching if not details.is_metadata]
        metadata_names = {details.collection_name for details in matching if details.is_metadata}
        if self.options.collections is not None:
            # Listed names missing from the store are skipped
            data_names = [name for name in data_names if name in self.options.collections]
        return self._eligible(data_names), metadata_names

    async def _restore_collection(
        self,
        metadata_names: set[str],
        name: str,
        serializer: Serializer,
        stages: ResolvedStages,
    ) -> None:
        batch_size = self.options.insert_batch_size

        def insert(documents: AsyncIterator[dict[str, Any]]) -> Any:
            return self.database.insert_documents(name, documents, batch_size)

        def create_indexes(specs: AsyncIterator[dict[str, Any]]) -> Any:
            return self.database.create_indexes(name, specs)

        streams = [
            self._restore_stream(StreamDetails(name, serializer.file_extension), insert, serializer, stages)
        ]
        if self.options.include_metadata:
            if name in metadata_names:
                streams.append(
                    self._restore_stream(
                        StreamDetails(name, serializer.file_extension, is_metadata=True),
                        create_indexes,
                        serializer,
                        stages,
                    )
                )
            else:
                self.log.warning(f"No index metadata stored for '{name}'")
        await _settle_all(streams)

    async def _restore_stream(
        self,
        details: StreamDetails,
        sink: Sink,
        serializer: Serializer,
        stages: ResolvedStages,
    ) -> None:
        transforms: list[Transform | None] = [
            *(stage.get(RunType.RESTORE, details) for stage in stages.before_output),
            *(stage.get(RunType.RESTORE, details) for stage in stages.after_serialization),
            serializer.deserialize(details),
            *(stage.get(RunType.RESTORE, details) for stage in stages.before_serialization),
        ]
        source = await self.output.restore.get_collection(details)

        self.log.debug(f"Restoring stream '{details.key}'")
        await run_pipeline(source, transforms, sink)

