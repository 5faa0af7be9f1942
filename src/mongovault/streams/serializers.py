"""
Document serializers.

Every serializer converts documents to framed byte blocks on backup and
back on restore. The built-in variants only differ in the document <-> bytes
conversion; they all share the chunk framing codec.

    - bson: native MongoDB binary documents (default)
    - json: plain JSON, values without a JSON form are stringified
    - ejson: MongoDB Extended JSON, keeps BSON types such as ObjectId
"""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Union

import bson
from bson import json_util
from bson.codec_options import DEFAULT_CODEC_OPTIONS, CodecOptions
from bson.json_util import JSONOptions

from mongovault.config.settings import ConfigurationError
from mongovault.streams.base import StreamDetails, Transform, maybe_await
from mongovault.streams.chunking import chunk_reader, chunk_writer


@dataclass(frozen=True)
class Serializer:
    """
    Converts a document stream to bytes and back.

    Attributes:
        file_extension: Extension of the files the output store creates.
        serialize: Returns a documents -> bytes transform for a stream.
        deserialize: Returns a bytes -> documents transform for a stream.
    """

    file_extension: str
    serialize: Callable[[StreamDetails], Transform]
    deserialize: Callable[[StreamDetails], Transform]


SerializerFactory = Callable[[], Union[Serializer, Awaitable[Serializer]]]
SerializerOption = Union[str, Serializer, SerializerFactory]


def make_serializer(
    file_extension: str,
    encode: Callable[[Any], bytes],
    decode: Callable[[bytes], Any],
) -> Serializer:
    """
    Build a framed serializer from a pair of conversion functions.

    Args:
        file_extension: Extension for the produced files.
        encode: Converts one document into bytes (sync or async).
        decode: Converts bytes back into one document (sync or async).

    Returns:
        Serializer sharing the chunk framing codec.
    """
    return Serializer(
        file_extension=file_extension,
        serialize=lambda details: chunk_writer(encode),
        deserialize=lambda details: chunk_reader(decode),
    )


def bson_serializer(codec_options: CodecOptions | None = None) -> Serializer:
    """Serializer writing BSON documents."""
    options = codec_options or DEFAULT_CODEC_OPTIONS

    return make_serializer(
        "bson",
        lambda doc: bson.encode(doc, codec_options=options),
        lambda data: bson.decode(data, codec_options=options),
    )


def json_serializer(indent: int | str | None = None) -> Serializer:
    """
    Serializer writing plain JSON.

    Args:
        indent: Optional indentation passed to json.dumps.
    """
    return make_serializer(
        "json",
        lambda doc: json.dumps(doc, indent=indent, default=str).encode("utf-8"),
        lambda data: json.loads(data.decode("utf-8")),
    )


def ejson_serializer(json_options: JSONOptions | None = None) -> Serializer:
    """
    Serializer writing MongoDB Extended JSON.

    Args:
        json_options: bson.json_util options, relaxed mode by default.
    """
    options = json_options or json_util.RELAXED_JSON_OPTIONS

    return make_serializer(
        "ejson",
        lambda doc: json_util.dumps(doc, json_options=options).encode("utf-8"),
        lambda data: json_util.loads(data.decode("utf-8"), json_options=options),
    )


SERIALIZERS: dict[str, Callable[[], Serializer]] = {
    "bson": bson_serializer,
    "json": json_serializer,
    "ejson": ejson_serializer,
}


def check_serializer_option(option: SerializerOption) -> None:
    """
    Validate a serializer option without resolving it.

    Raises:
        ConfigurationError: If the option is not a known name, a
            Serializer or a callable factory.
    """
    if isinstance(option, str):
        if option.lower() not in SERIALIZERS:
            raise ConfigurationError(
                f"Invalid 'serializer' option ({option}). "
                f"Must be one of: {', '.join(SERIALIZERS)}"
            )
    elif not isinstance(option, Serializer) and not callable(option):
        raise ConfigurationError(f"Invalid 'serializer' option ({option!r})")


async def resolve_serializer(option: SerializerOption) -> Serializer:
    """
    Turn a serializer option into a Serializer.

    Args:
        option: A built-in name, a Serializer, or a zero-argument
            factory (sync or async) returning one.

    Returns:
        The resolved Serializer.

    Raises:
        ConfigurationError: If the option or the factory result is invalid.
    """
    check_serializer_option(option)

    if isinstance(option, str):
        return SERIALIZERS[option.lower()]()
    if isinstance(option, Serializer):
        return option

    serializer = await maybe_await(option())
    if not isinstance(serializer, Serializer):
        raise ConfigurationError(
            f"Serializer factory returned {type(serializer).__name__}, expected Serializer"
        )
    return serializer
