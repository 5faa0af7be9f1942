"""
mongovault - MongoDB backup and restore through composable byte-stream pipelines

Every collection is streamed through a pipeline of transforms: a document
serializer, optional compression and optional authenticated encryption. The
same pipeline, inverted, restores a backup.

Key Features:
    - BSON, JSON and Extended JSON serializers sharing one framing codec
    - gzip, deflate and brotli compression
    - AES-256-GCM encryption with a password-derived key
    - Collections processed concurrently; one failing collection never
      affects the others
    - Optional index metadata backup and restore
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from mongovault.backup import BackupManager, BackupOptions, CollectionOutcome, TransformStages
from mongovault.config.settings import ConfigurationError, Settings, load_config
from mongovault.events import FinalizationError, RunEvents
from mongovault.output import FileOutput, OutputEndpoint
from mongovault.streams import (
    CompressionStage,
    EncryptionStage,
    bson_serializer,
    ejson_serializer,
    json_serializer,
    with_encryption,
)

__all__ = [
    "__version__",
    "BackupManager",
    "BackupOptions",
    "CollectionOutcome",
    "TransformStages",
    "Settings",
    "load_config",
    "ConfigurationError",
    "FinalizationError",
    "RunEvents",
    "FileOutput",
    "OutputEndpoint",
    "CompressionStage",
    "EncryptionStage",
    "with_encryption",
    "bson_serializer",
    "json_serializer",
    "ejson_serializer",
]
