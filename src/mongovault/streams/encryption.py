"""
Authenticated encryption stage.

Encrypts every logical stream with AES-256-GCM, using one key per run
derived from a user password with PBKDF2.

Security Design:
    - Key derived with PBKDF2-HMAC-SHA512 (120,000 iterations by default)
      from the password and a random 256-bit salt
    - Backup: fresh salt per run, stored as the '$crypto.salt' stream
    - Fresh random 96-bit IV per stream, written in front of the ciphertext
    - 128-bit authentication tag per stream, kept out of band in a JSON map
      written to the '$crypto.auth' stream once the whole run has finished

Encrypted stream layout:
    <12-byte IV><ciphertext>

The tag map can only be written after every stream has finalized, so the
stage registers a single end-of-run callback instead of writing it
incrementally. Failing to write it is run-fatal: the backup could never be
decrypted.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from mongovault.config.settings import ConfigurationError
from mongovault.events import FinalizationError
from mongovault.streams.base import (
    DecryptionError,
    MissingAuthTagError,
    RunType,
    Stage,
    StageTransforms,
    StreamDetails,
    StreamError,
    Transform,
    collect,
    iterate,
)

if TYPE_CHECKING:
    from mongovault.events import RunEvents
    from mongovault.output.base import OutputEndpoint

logger = logging.getLogger(__name__)

# Security parameters
DEFAULT_ITERATIONS = 120_000
SALT_LENGTH = 32  # 256 bits
KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12  # 96 bits, recommended for GCM

SALT_STREAM = StreamDetails("$crypto.salt", "raw", is_metadata=True)
AUTH_STREAM = StreamDetails("$crypto.auth", "raw", is_metadata=True)


@dataclass
class EncryptionState:
    """
    Run-scoped encryption state.

    The key is immutable once derived and shared by every stream. The tag
    map is only written by each stream's own finalization, under its own
    composite key.

    Attributes:
        key: Derived AES-256 key.
        auth_tags: Composite stream key -> hex authentication tag.
    """

    key: bytes
    auth_tags: dict[str, str] = field(default_factory=dict)


class EncryptionStage(Stage):
    """
    Stage encrypting streams on backup and decrypting them on restore.

    Registered as the last pre-output stage, so it wraps the already
    serialized (and possibly compressed) bytes.

    Usage:
        output = FileOutput(path)
        stages = TransformStages(before_output=with_encryption("secret", output))
    """

    name = "encryption"

    def __init__(
        self,
        password: str,
        output: OutputEndpoint,
        iterations: int = DEFAULT_ITERATIONS,
    ) -> None:
        """
        Initialize the stage.

        Args:
            password: Password the key is derived from.
            output: Endpoint storing the salt and the tag map.
            iterations: PBKDF2 iteration count.

        Raises:
            ConfigurationError: If the password or iteration count is invalid.
        """
        if not isinstance(password, str) or not password:
            raise ConfigurationError("Encryption password must be a non-empty string")
        if not isinstance(iterations, int) or iterations < 1:
            raise ConfigurationError(f"Invalid iteration count: {iterations!r}")

        self._password = password
        self.output = output
        self.iterations = iterations

    def derive_key(self, salt: bytes) -> bytes:
        """
        Derive the run key from the password and a salt.

        Args:
            salt: Random salt bytes.

        Returns:
            32-byte AES key.
        """
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=self.iterations,
        )
        return kdf.derive(self._password.encode("utf-8"))

    async def prepare(self, run_type: RunType, events: RunEvents) -> StageTransforms:
        if run_type is RunType.BACKUP:
            state = await self.create_backup_state(events)
        else:
            state = await self.load_restore_state()

        return StageTransforms(
            backup=partial(self.encryptor, state),
            restore=partial(self.decryptor, state),
        )

    async def create_backup_state(self, events: RunEvents) -> EncryptionState:
        """
        Start a backup run: new salt, new key, tag map persisted at run end.

        Args:
            events: The run's events, used to defer tag map persistence.
        """
        salt = secrets.token_bytes(SALT_LENGTH)
        key = await asyncio.to_thread(self.derive_key, salt)

        await self._write_raw(SALT_STREAM, salt)

        state = EncryptionState(key=key)
        events.on_end(partial(self.persist_auth_tags, state))
        return state

    async def load_restore_state(self) -> EncryptionState:
        """
        Start a restore run: read the salt back and load the tag map.

        A missing tag map leaves the map empty; every encrypted stream
        then fails individually with MissingAuthTagError.
        """
        salt = await self._read_raw(SALT_STREAM)
        key = await asyncio.to_thread(self.derive_key, salt)

        try:
            auth_tags = json.loads(await self._read_raw(AUTH_STREAM))
        except (OSError, ValueError) as e:
            logger.warning(f"No usable authentication tags found: {e}")
            auth_tags = {}

        if not isinstance(auth_tags, dict):
            logger.warning("Authentication tag map is not a mapping, ignoring it")
            auth_tags = {}

        return EncryptionState(key=key, auth_tags=auth_tags)

    async def persist_auth_tags(self, state: EncryptionState) -> None:
        """
        Write the tag map. Registered as the run's end callback.

        Raises:
            FinalizationError: If the tag map cannot be written.
        """
        try:
            await self._write_raw(AUTH_STREAM, json.dumps(state.auth_tags).encode("utf-8"))
        except Exception as e:
            logger.critical(
                "Was unable to store the auth tags. This backup should be removed "
                "because it cannot be decrypted."
            )
            raise FinalizationError(f"Cannot store authentication tags: {e}") from e

        logger.debug(f"Stored {len(state.auth_tags)} authentication tag(s)")

    def encryptor(self, state: EncryptionState, details: StreamDetails) -> Transform:
        """Backup transform factory for one stream."""
        if details.key in state.auth_tags:
            raise StreamError("Stream was already encrypted in this run", details)
        return partial(self._encrypt, state, details)

    def decryptor(self, state: EncryptionState, details: StreamDetails) -> Transform:
        """
        Restore transform factory for one stream.

        Raises:
            MissingAuthTagError: If no tag is known for the stream.
            DecryptionError: If the stored tag is malformed.
        """
        auth_tag = state.auth_tags.get(details.key)
        if not auth_tag:
            raise MissingAuthTagError(f"No auth tag found for '{details.collection_name}'", details)

        try:
            tag = bytes.fromhex(auth_tag)
        except (TypeError, ValueError) as e:
            raise DecryptionError("Stored authentication tag is not valid hex", details) from e

        return partial(self._decrypt, state.key, tag, details)

    async def _encrypt(
        self,
        state: EncryptionState,
        details: StreamDetails,
        source: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        iv = secrets.token_bytes(IV_LENGTH)
        encryptor = Cipher(algorithms.AES(state.key), modes.GCM(iv)).encryptor()

        yield iv

        async for data in source:
            encrypted = encryptor.update(data)
            if encrypted:
                yield encrypted

        final = encryptor.finalize()
        state.auth_tags[details.key] = encryptor.tag.hex()

        if final:
            yield final

    async def _decrypt(
        self,
        key: bytes,
        tag: bytes,
        details: StreamDetails,
        source: AsyncIterator[bytes],
    ) -> AsyncIterator[bytes]:
        iv = bytearray()
        decryptor = None

        async for data in source:
            if decryptor is None:
                needed = IV_LENGTH - len(iv)
                iv += data[:needed]
                data = data[needed:]
                if len(iv) < IV_LENGTH:
                    continue
                try:
                    decryptor = Cipher(algorithms.AES(key), modes.GCM(bytes(iv), tag)).decryptor()
                except ValueError as e:
                    raise DecryptionError(f"Invalid authentication tag: {e}", details) from e

            if data:
                decrypted = decryptor.update(data)
                if decrypted:
                    yield decrypted

        if decryptor is None:
            raise DecryptionError(f"Stream too short. Required at least {IV_LENGTH} bytes", details)

        try:
            final = decryptor.finalize()
        except InvalidTag as e:
            raise DecryptionError(
                "Authentication failed (wrong password or tampered data)", details
            ) from e

        if final:
            yield final

    async def _write_raw(self, details: StreamDetails, data: bytes) -> None:
        sink = await self.output.backup(details)
        await sink(iterate([data]))

    async def _read_raw(self, details: StreamDetails) -> bytes:
        source = await self.output.restore.get_collection(details)
        return b"".join(await collect(source))


def with_encryption(
    password: str,
    output: OutputEndpoint,
    stages: list[Stage] | None = None,
    iterations: int = DEFAULT_ITERATIONS,
) -> list[Stage]:
    """
    Append an encryption stage to a list of pre-output stages.

    Args:
        password: Password the key is derived from.
        output: Endpoint storing the salt and the tag map.
        stages: Existing pre-output stages, kept in front.
        iterations: PBKDF2 iteration count.

    Returns:
        New list ending with the encryption stage.
    """
    return [*(stages or []), EncryptionStage(password, output, iterations=iterations)]
