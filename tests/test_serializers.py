"""Tests for document serializers."""

import datetime
import unittest

from bson import ObjectId

from mongovault.config.settings import ConfigurationError
from mongovault.streams.base import StreamDetails, collect, iterate
from mongovault.streams.serializers import (
    Serializer,
    bson_serializer,
    check_serializer_option,
    ejson_serializer,
    json_serializer,
    make_serializer,
    resolve_serializer,
)

DETAILS = StreamDetails("users", "bson")


async def round_trip(serializer: Serializer, documents: list, chunk_size: int = 5) -> list:
    data = b"".join(await collect(serializer.serialize(DETAILS)(iterate(documents))))
    chunks = [data[i:i + chunk_size] for i in range(0, len(data), chunk_size)]
    return await collect(serializer.deserialize(DETAILS)(iterate(chunks)))


class TestBuiltinSerializers(unittest.IsolatedAsyncioTestCase):
    """Tests for the bson, json and ejson serializers."""

    async def test_bson_keeps_types(self) -> None:
        """Test BSON preserves ObjectId and datetimes."""
        document = {
            "_id": ObjectId(),
            "name": "line\nbreak",
            "created": datetime.datetime(2024, 1, 15, 10, 30),
        }
        self.assertEqual(await round_trip(bson_serializer(), [document]), [document])

    async def test_bson_many_documents(self) -> None:
        """Test document order is preserved."""
        documents = [{"n": i, "payload": "\n" * (i % 3)} for i in range(50)]
        self.assertEqual(await round_trip(bson_serializer(), documents), documents)

    async def test_json_stringifies_unknown_values(self) -> None:
        """Test JSON falls back to str() for non-JSON values."""
        object_id = ObjectId()
        result = await round_trip(json_serializer(), [{"_id": object_id, "tags": ["a", "b"]}])
        self.assertEqual(result, [{"_id": str(object_id), "tags": ["a", "b"]}])

    async def test_json_with_indent(self) -> None:
        """Test indented JSON containing newlines still frames correctly."""
        documents = [{"a": 1, "b": {"c": 2}}, {"d": [1, 2, 3]}]
        self.assertEqual(await round_trip(json_serializer(indent=2), documents), documents)

    async def test_ejson_keeps_object_ids(self) -> None:
        """Test Extended JSON preserves ObjectId."""
        document = {"_id": ObjectId(), "count": 3}
        self.assertEqual(await round_trip(ejson_serializer(), [document]), [document])

    def test_file_extensions(self) -> None:
        """Test each serializer reports its extension."""
        self.assertEqual(bson_serializer().file_extension, "bson")
        self.assertEqual(json_serializer().file_extension, "json")
        self.assertEqual(ejson_serializer().file_extension, "ejson")


class TestResolveSerializer(unittest.IsolatedAsyncioTestCase):
    """Tests for serializer option resolution."""

    async def test_resolve_by_name(self) -> None:
        """Test names are case-insensitive."""
        serializer = await resolve_serializer("EJSON")
        self.assertEqual(serializer.file_extension, "ejson")

    async def test_resolve_instance(self) -> None:
        """Test a Serializer instance is used as-is."""
        serializer = json_serializer()
        self.assertIs(await resolve_serializer(serializer), serializer)

    async def test_resolve_async_factory(self) -> None:
        """Test an async factory is awaited."""

        async def factory():
            return make_serializer("txt", lambda doc: doc.encode(), lambda data: data.decode())

        serializer = await resolve_serializer(factory)
        self.assertEqual(serializer.file_extension, "txt")

    async def test_factory_returning_wrong_type(self) -> None:
        """Test a factory must return a Serializer."""
        with self.assertRaises(ConfigurationError):
            await resolve_serializer(lambda: "bson")

    def test_unknown_name(self) -> None:
        """Test an unknown name is rejected."""
        with self.assertRaises(ConfigurationError):
            check_serializer_option("xml")

    def test_invalid_type(self) -> None:
        """Test a non-callable option is rejected."""
        with self.assertRaises(ConfigurationError):
            check_serializer_option(42)


if __name__ == "__main__":
    unittest.main()
