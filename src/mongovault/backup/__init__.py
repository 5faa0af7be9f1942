"""
Backup and restore orchestration for mongovault.

Usage:
    from mongovault.backup import BackupManager, BackupOptions
    from mongovault.output import FileOutput

    # Back up every collection
    manager = BackupManager.connect(uri, FileOutput(path, clean=True))
    outcomes = await manager.backup()

    # Restore
    manager = BackupManager.connect(uri, FileOutput(path))
    outcomes = await manager.restore()
"""

from mongovault.backup.manager import (
    DEFAULT_IGNORE_PATTERNS,
    BackupManager,
    BackupOptions,
    CollectionOutcome,
    TransformStages,
    is_ignored,
    split_outcomes,
    validate_options,
)

__all__ = [
    "BackupManager",
    "BackupOptions",
    "CollectionOutcome",
    "TransformStages",
    "DEFAULT_IGNORE_PATTERNS",
    "is_ignored",
    "split_outcomes",
    "validate_options",
]
