"""
Tests for the encryption stage.

Tests cover:
- Key derivation and salt handling
- Encrypt/decrypt round trips with arbitrary chunking
- Authentication failures (wrong password, tampered data or tag)
- Missing and malformed authentication tags
- Tag map persistence at the end of a run
"""

import json
import unittest

from fakes import MemoryOutput

from mongovault.config.settings import ConfigurationError
from mongovault.events import FinalizationError, RunEvents
from mongovault.streams.base import (
    DecryptionError,
    MissingAuthTagError,
    RunType,
    StreamDetails,
    StreamError,
    collect,
    iterate,
)
from mongovault.streams.encryption import (
    AUTH_STREAM,
    IV_LENGTH,
    SALT_LENGTH,
    SALT_STREAM,
    EncryptionStage,
    with_encryption,
)

# Low iteration count keeps the tests fast
ITERATIONS = 1000

USERS = StreamDetails("users", "bson")
USERS_META = StreamDetails("users", "bson", is_metadata=True)


async def encrypt_streams(stage: EncryptionStage, streams: dict) -> dict:
    """Run a backup over several streams and emit the end event."""
    events = RunEvents()
    transforms = await stage.prepare(RunType.BACKUP, events)
    encrypted = {}
    for details, chunks in streams.items():
        transform = transforms.get(RunType.BACKUP, details)
        encrypted[details] = b"".join(await collect(transform(iterate(chunks))))
    await events.emit_end()
    return encrypted


async def decrypt_stream(stage: EncryptionStage, details: StreamDetails, data: bytes, chunk_size: int = 5) -> bytes:
    transforms = await stage.prepare(RunType.RESTORE, RunEvents())
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
    transform = transforms.get(RunType.RESTORE, details)
    return b"".join(await collect(transform(iterate(chunks))))


class TestEncryptionStage(unittest.IsolatedAsyncioTestCase):
    """Tests for EncryptionStage."""

    def setUp(self) -> None:
        self.output = MemoryOutput()
        self.stage = EncryptionStage("correct horse", self.output, iterations=ITERATIONS)

    async def test_round_trip(self) -> None:
        """Test data and metadata streams decrypt to the original bytes."""
        plain = {
            USERS: [b"first chunk", b"", b"second chunk" * 50],
            USERS_META: [b"index definitions"],
        }
        encrypted = await encrypt_streams(self.stage, plain)

        for details, chunks in plain.items():
            with self.subTest(stream=details.key):
                self.assertNotIn(b"first chunk", encrypted[details])
                restored = await decrypt_stream(self.stage, details, encrypted[details])
                self.assertEqual(restored, b"".join(chunks))

    async def test_single_byte_chunks(self) -> None:
        """Test an IV split over many chunks is reassembled."""
        encrypted = await encrypt_streams(self.stage, {USERS: [b"payload"]})
        restored = await decrypt_stream(self.stage, USERS, encrypted[USERS], chunk_size=1)
        self.assertEqual(restored, b"payload")

    async def test_empty_stream(self) -> None:
        """Test an empty stream encrypts to just the IV."""
        encrypted = await encrypt_streams(self.stage, {USERS: []})
        self.assertEqual(len(encrypted[USERS]), IV_LENGTH)
        self.assertEqual(await decrypt_stream(self.stage, USERS, encrypted[USERS]), b"")

    async def test_salt_and_tags_are_stored(self) -> None:
        """Test the salt and tag map are written to the output."""
        await encrypt_streams(self.stage, {USERS: [b"a"], USERS_META: [b"b"]})

        salt = self.output.get(SALT_STREAM.collection_name, "raw", True)
        self.assertEqual(len(salt), SALT_LENGTH)

        tags = json.loads(self.output.get(AUTH_STREAM.collection_name, "raw", True))
        self.assertEqual(set(tags), {"users", "users.$meta"})
        for tag in tags.values():
            self.assertEqual(len(bytes.fromhex(tag)), 16)

    async def test_fresh_salt_per_run(self) -> None:
        """Test each backup run uses a new salt and key."""
        await encrypt_streams(self.stage, {USERS: [b"a"]})
        first = self.output.get(SALT_STREAM.collection_name, "raw", True)
        await encrypt_streams(self.stage, {USERS: [b"a"]})
        second = self.output.get(SALT_STREAM.collection_name, "raw", True)
        self.assertNotEqual(first, second)

    async def test_same_data_encrypts_differently(self) -> None:
        """Test fresh IVs make identical streams differ."""
        other = StreamDetails("logs", "bson")
        encrypted = await encrypt_streams(self.stage, {USERS: [b"same"], other: [b"same"]})
        self.assertNotEqual(encrypted[USERS], encrypted[other])

    async def test_wrong_password(self) -> None:
        """Test a wrong password fails authentication."""
        encrypted = await encrypt_streams(self.stage, {USERS: [b"secret data"]})
        wrong = EncryptionStage("wrong horse", self.output, iterations=ITERATIONS)
        with self.assertRaises(DecryptionError):
            await decrypt_stream(wrong, USERS, encrypted[USERS])

    async def test_tampered_ciphertext(self) -> None:
        """Test modified ciphertext fails authentication."""
        encrypted = await encrypt_streams(self.stage, {USERS: [b"secret data"]})
        data = bytearray(encrypted[USERS])
        data[-1] ^= 0x01
        with self.assertRaises(DecryptionError):
            await decrypt_stream(self.stage, USERS, bytes(data))

    async def test_tampered_tag(self) -> None:
        """Test a modified tag fails authentication."""
        encrypted = await encrypt_streams(self.stage, {USERS: [b"secret data"]})
        key = (AUTH_STREAM.collection_name, "raw", True)
        tags = json.loads(self.output.files[key])
        tags["users"] = "00" * 16
        self.output.files[key] = json.dumps(tags).encode()

        with self.assertRaises(DecryptionError):
            await decrypt_stream(self.stage, USERS, encrypted[USERS])

    async def test_malformed_tag(self) -> None:
        """Test a non-hex tag raises DecryptionError."""
        await encrypt_streams(self.stage, {USERS: [b"a"]})
        key = (AUTH_STREAM.collection_name, "raw", True)
        self.output.files[key] = json.dumps({"users": "not hex"}).encode()

        transforms = await self.stage.prepare(RunType.RESTORE, RunEvents())
        with self.assertRaises(DecryptionError):
            transforms.get(RunType.RESTORE, USERS)

    async def test_missing_tag(self) -> None:
        """Test a stream without a recorded tag fails with MissingAuthTagError."""
        await encrypt_streams(self.stage, {USERS: [b"a"]})
        transforms = await self.stage.prepare(RunType.RESTORE, RunEvents())
        with self.assertRaises(MissingAuthTagError):
            transforms.get(RunType.RESTORE, StreamDetails("logs", "bson"))

    async def test_missing_tag_map(self) -> None:
        """Test a lost tag map turns into per-stream failures."""
        await encrypt_streams(self.stage, {USERS: [b"a"]})
        del self.output.files[(AUTH_STREAM.collection_name, "raw", True)]

        transforms = await self.stage.prepare(RunType.RESTORE, RunEvents())
        with self.assertRaises(MissingAuthTagError):
            transforms.get(RunType.RESTORE, USERS)

    async def test_short_stream(self) -> None:
        """Test a stream shorter than the IV raises DecryptionError."""
        await encrypt_streams(self.stage, {USERS: [b"a"]})
        with self.assertRaises(DecryptionError):
            await decrypt_stream(self.stage, USERS, b"\x01" * (IV_LENGTH - 1))

    async def test_duplicate_stream_in_run(self) -> None:
        """Test a stream key can only be encrypted once per run."""
        transforms = await self.stage.prepare(RunType.BACKUP, RunEvents())
        await collect(transforms.get(RunType.BACKUP, USERS)(iterate([b"a"])))
        with self.assertRaises(StreamError):
            transforms.get(RunType.BACKUP, USERS)

    async def test_tags_written_only_at_end_of_run(self) -> None:
        """Test the tag map is not written before the end event."""
        events = RunEvents()
        transforms = await self.stage.prepare(RunType.BACKUP, events)
        await collect(transforms.get(RunType.BACKUP, USERS)(iterate([b"a"])))

        self.assertNotIn((AUTH_STREAM.collection_name, "raw", True), self.output.files)
        self.assertEqual(len(events.callbacks()), 1)

        await events.emit_end()
        self.assertIn((AUTH_STREAM.collection_name, "raw", True), self.output.files)

    async def test_tag_persistence_failure_is_fatal(self) -> None:
        """Test a failed tag map write raises FinalizationError and logs CRITICAL."""
        output = MemoryOutput(fail_write={AUTH_STREAM.key})
        stage = EncryptionStage("pw", output, iterations=ITERATIONS)

        with self.assertLogs("mongovault.streams.encryption", level="CRITICAL"):
            with self.assertRaises(FinalizationError):
                await encrypt_streams(stage, {USERS: [b"a"]})

    async def test_restore_without_salt(self) -> None:
        """Test restoring without a stored salt fails."""
        with self.assertRaises(FileNotFoundError):
            await self.stage.prepare(RunType.RESTORE, RunEvents())


class TestEncryptionOptions(unittest.TestCase):
    """Tests for stage construction."""

    def test_empty_password(self) -> None:
        """Test an empty password is rejected."""
        with self.assertRaises(ConfigurationError):
            EncryptionStage("", MemoryOutput())

    def test_invalid_iterations(self) -> None:
        """Test a non-positive iteration count is rejected."""
        with self.assertRaises(ConfigurationError):
            EncryptionStage("pw", MemoryOutput(), iterations=0)

    def test_derive_key_is_deterministic(self) -> None:
        """Test the same password and salt derive the same key."""
        stage = EncryptionStage("pw", MemoryOutput(), iterations=ITERATIONS)
        salt = b"s" * SALT_LENGTH
        self.assertEqual(stage.derive_key(salt), stage.derive_key(salt))
        self.assertEqual(len(stage.derive_key(salt)), 32)
        self.assertNotEqual(stage.derive_key(salt), stage.derive_key(b"t" * SALT_LENGTH))

    def test_with_encryption_appends_stage(self) -> None:
        """Test with_encryption keeps existing stages in front."""
        output = MemoryOutput()
        first = EncryptionStage("a", output)
        stages = with_encryption("b", output, [first])
        self.assertEqual(len(stages), 2)
        self.assertIs(stages[0], first)
        self.assertIsInstance(stages[1], EncryptionStage)


if __name__ == "__main__":
    unittest.main()
