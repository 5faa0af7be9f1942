"""
Command-line interface for mongovault.

Provides the backup and restore commands. Options come from the YAML
configuration file and environment, and are overridden by command-line
arguments.

Uses Python's argparse module (no external CLI libraries).
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import os
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import NoReturn

from mongovault import __version__
from mongovault.backup import BackupManager, BackupOptions, CollectionOutcome, TransformStages, split_outcomes
from mongovault.config.settings import (
    PASSWORD_ENV_VAR,
    ConfigurationError,
    Settings,
    load_config,
    validate_config,
)
from mongovault.events import FinalizationError
from mongovault.output import FileOutput, OutputEndpoint
from mongovault.streams import CompressionStage, with_encryption

# Set up logging
logger = logging.getLogger(__name__)

# Global verbosity settings (set during main() based on args)
_quiet_mode = False


def set_output_mode(quiet: bool = False) -> None:
    """
    Set the output mode for the CLI.

    Args:
        quiet: If True, suppress non-essential output.
    """
    global _quiet_mode
    _quiet_mode = quiet


def output(message: str = "", force: bool = False) -> None:
    """
    Print a message to stdout, respecting quiet mode.

    Args:
        message: The message to print.
        force: If True, print even in quiet mode.
    """
    if force or not _quiet_mode:
        print(message)


def output_error(message: str) -> None:
    """
    Print an error message (always shown, even in quiet mode).

    Args:
        message: The error message to print.
    """
    print(message, file=sys.stderr)


def _add_transfer_arguments(parser: argparse.ArgumentParser) -> None:
    """Arguments shared by backup and restore."""
    parser.add_argument(
        "--serializer",
        choices=["bson", "json", "ejson"],
        help="Document serializer (default: bson)",
    )
    parser.add_argument(
        "--meta",
        action="store_true",
        default=None,
        help="Include index metadata",
    )
    parser.add_argument(
        "--collections",
        metavar="NAMES",
        help="Comma-separated list of collections (default: all)",
    )
    parser.add_argument(
        "--compress",
        choices=["none", "gzip", "deflate", "brotli"],
        help="Compression algorithm (default: none)",
    )
    parser.add_argument(
        "--encrypt",
        action="store_true",
        default=None,
        help=f"Encrypt with a password (read from {PASSWORD_ENV_VAR} or prompted)",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        metavar="N",
        help="PBKDF2 iterations used for the encryption key (default: 120000)",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the mongovault CLI."""
    parser = argparse.ArgumentParser(
        prog="mongovault",
        description="Back up and restore MongoDB databases",
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"mongovault {__version__}",
    )

    parser.add_argument(
        "--config",
        metavar="PATH",
        help="Override config file location (default: ~/.mongovault/config.yaml)",
    )

    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase output verbosity (can be repeated)",
    )

    parser.add_argument(
        "-q", "--quiet",
        action="store_true",
        help="Suppress non-essential output",
    )

    subparsers = parser.add_subparsers(
        title="commands",
        dest="command",
        metavar="<command>",
    )

    # backup command
    backup_parser = subparsers.add_parser(
        "backup",
        help="Back up a database",
        description="Back up every collection of a database into a directory.",
    )
    backup_parser.add_argument(
        "uri", metavar="URI", nargs="?", help="The MongoDB connection URI (default: from config)"
    )
    backup_parser.add_argument("destination", metavar="DEST", help="The destination directory")
    _add_transfer_arguments(backup_parser)
    backup_parser.add_argument(
        "--no-clean",
        action="store_false",
        dest="clean",
        default=None,
        help="Keep existing files in the destination directory",
    )
    backup_parser.set_defaults(func=cmd_backup)

    # restore command
    restore_parser = subparsers.add_parser(
        "restore",
        help="Restore a database from a backup",
        description="Restore collections from a backup directory.",
    )
    restore_parser.add_argument(
        "uri", metavar="URI", nargs="?", help="The MongoDB connection URI (default: from config)"
    )
    restore_parser.add_argument("source", metavar="SOURCE", help="The backup directory")
    _add_transfer_arguments(restore_parser)
    restore_parser.set_defaults(func=cmd_restore)

    return parser


def setup_logging(verbose: int, quiet: bool) -> None:
    """Configure logging based on verbosity level."""
    if quiet:
        level = logging.WARNING
    elif verbose == 0:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def load_settings(args: argparse.Namespace) -> Settings:
    """
    Load settings and apply command-line overrides.

    Raises:
        ConfigurationError: If the resulting settings are invalid.
    """
    config_path = Path(args.config) if args.config else None
    settings = load_config(config_path)

    if args.uri:
        settings.uri = args.uri
    if args.serializer:
        settings.backup.serializer = args.serializer
    if args.meta is not None:
        settings.backup.include_metadata = args.meta
    if args.collections:
        settings.backup.collections = [
            name.strip() for name in args.collections.split(",") if name.strip()
        ]
    if args.compress:
        settings.compression.algorithm = args.compress
    if args.encrypt is not None:
        settings.encryption.enabled = args.encrypt
    if args.iterations is not None:
        settings.encryption.iterations = args.iterations
    if getattr(args, "clean", None) is not None:
        settings.backup.clean_destination = args.clean

    if not settings.uri:
        raise ConfigurationError(
            "No MongoDB URI given (pass URI, set MONGOVAULT_URI or mongovault.uri in the config file)"
        )

    validate_config(settings)

    # -v and -q take precedence over the configured level
    if not args.verbose and not args.quiet:
        logging.getLogger().setLevel(settings.log_level)

    return settings


def get_password(confirm: bool = False) -> str:
    """
    Get the encryption password from the environment or a prompt.

    Args:
        confirm: Ask twice when prompting (used for backups).

    Raises:
        ConfigurationError: If no password is given or confirmation fails.
    """
    password = os.environ.get(PASSWORD_ENV_VAR)
    if password:
        return password

    password = getpass.getpass("Encryption password: ")
    if not password:
        raise ConfigurationError("An encryption password is required")
    if confirm and getpass.getpass("Confirm password: ") != password:
        raise ConfigurationError("Passwords do not match")
    return password


def build_options(
    settings: Settings,
    output_endpoint: OutputEndpoint,
    password: str | None = None,
    run_logger: logging.Logger | None = None,
) -> BackupOptions:
    """
    Build manager options from settings.

    Compression is registered after serialization and encryption before
    output, so that encryption wraps the compressed bytes.

    Args:
        settings: Validated settings.
        output_endpoint: Endpoint the encryption stage stores its data in.
        password: Encryption password, required when encryption is enabled.
        run_logger: Logger for progress lines.

    Raises:
        ConfigurationError: If encryption is enabled without a password.
    """
    stages = TransformStages()

    if settings.compression.algorithm != "none":
        stages.after_serialization.append(
            CompressionStage(settings.compression.algorithm, settings.compression.level)
        )

    if settings.encryption.enabled:
        if not password:
            raise ConfigurationError("Encryption is enabled but no password was given")
        stages.before_output = with_encryption(
            password,
            output_endpoint,
            stages.before_output,
            iterations=settings.encryption.iterations,
        )

    return BackupOptions(
        serializer=settings.backup.serializer,
        stages=stages,
        collections=settings.backup.collections,
        include_metadata=settings.backup.include_metadata,
        query=settings.backup.query,
        insert_batch_size=settings.backup.insert_batch_size,
        logger=run_logger or logging.getLogger("mongovault"),
    )


def print_summary(outcomes: Sequence[CollectionOutcome]) -> bool:
    """
    Print successful and failed collections.

    Returns:
        True if every collection succeeded.
    """
    successful, failed = split_outcomes(outcomes)

    output("-" * 12)
    output("Successful:")
    for outcome in successful:
        output(f"\t{outcome.collection_name}")

    if failed:
        output_error("Errors:")
        for outcome in failed:
            output_error(f"\t{outcome.collection_name}: {outcome.error}")

    return not failed


def _run_manager(settings: Settings, output_endpoint: FileOutput, restore: bool) -> int:
    password = None
    if settings.encryption.enabled:
        password = get_password(confirm=not restore)

    options = build_options(settings, output_endpoint, password)

    async def execute() -> list[CollectionOutcome]:
        manager = BackupManager.connect(settings.uri, output_endpoint, options)
        return await (manager.restore() if restore else manager.backup())

    try:
        outcomes = asyncio.run(execute())
    except FinalizationError as e:
        output_error(f"Run finalization failed: {e}")
        return 2

    return 0 if print_summary(outcomes) else 1


def cmd_backup(args: argparse.Namespace) -> int:
    """Back up a database."""
    try:
        settings = load_settings(args)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        return 2

    destination = Path(args.destination)
    if destination.exists() and not destination.is_dir():
        output_error(f"Error: destination is not a directory: {destination}")
        return 2

    output(f"Destination: {destination.resolve()}")
    output_endpoint = FileOutput(destination, clean=settings.backup.clean_destination)
    return _run_manager(settings, output_endpoint, restore=False)


def cmd_restore(args: argparse.Namespace) -> int:
    """Restore a database from a backup directory."""
    try:
        settings = load_settings(args)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        return 2

    source = Path(args.source)
    if not source.is_dir():
        output_error(f"Error: backup directory not found: {source}")
        return 2

    output(f"Source: {source.resolve()}")
    return _run_manager(settings, FileOutput(source), restore=True)


def main() -> NoReturn:
    """Main entry point for the mongovault CLI."""
    parser = create_parser()
    args = parser.parse_args()

    setup_logging(args.verbose, args.quiet)
    set_output_mode(args.quiet)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    try:
        exit_code = args.func(args)
        sys.exit(exit_code)
    except KeyboardInterrupt:
        output("\nOperation cancelled.")
        sys.exit(130)
    except ConfigurationError as e:
        output_error(f"Configuration error: {e}")
        sys.exit(2)
    except Exception as e:
        if args.verbose > 0:
            raise
        output_error(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
