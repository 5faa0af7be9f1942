"""
Byte-stream transforms used by backup and restore pipelines.

This package provides the chunk framing codec, the document serializers and
the optional compression and encryption stages.

Usage:
    from mongovault.streams import CompressionStage, bson_serializer

    serializer = bson_serializer()
    stage = CompressionStage("gzip")
"""

from mongovault.streams.base import (
    METADATA_SUFFIX,
    ChunkDecodeError,
    DecryptionError,
    MissingAuthTagError,
    RunType,
    Stage,
    StageTransforms,
    StreamDetails,
    StreamError,
    Transform,
    run_pipeline,
)
from mongovault.streams.chunking import (
    ChunkDecoder,
    chunk_reader,
    chunk_writer,
    decode_blocks,
    encode_block,
    encode_blocks,
)
from mongovault.streams.compression import CompressionStage
from mongovault.streams.encryption import (
    EncryptionStage,
    EncryptionState,
    with_encryption,
)
from mongovault.streams.serializers import (
    Serializer,
    bson_serializer,
    ejson_serializer,
    json_serializer,
    make_serializer,
    resolve_serializer,
)

__all__ = [
    # Primitives
    "RunType",
    "Stage",
    "StageTransforms",
    "StreamDetails",
    "Transform",
    "METADATA_SUFFIX",
    "run_pipeline",
    # Errors
    "StreamError",
    "ChunkDecodeError",
    "DecryptionError",
    "MissingAuthTagError",
    # Framing
    "ChunkDecoder",
    "chunk_reader",
    "chunk_writer",
    "encode_block",
    "encode_blocks",
    "decode_blocks",
    # Serializers
    "Serializer",
    "bson_serializer",
    "json_serializer",
    "ejson_serializer",
    "make_serializer",
    "resolve_serializer",
    # Stages
    "CompressionStage",
    "EncryptionStage",
    "EncryptionState",
    "with_encryption",
]
