"""Binary framing for bulk float32 embedding transfer

Layout (little-endian, 16-byte header):

    0   4  magic "EMBD"
    4   1  version (1)
    5   2  batch count (uint16)
    7   2  dimensions (uint16)
    9   1  dtype (0 = float32)
    10  1  endianness (0 = little-endian)
    11  5  reserved, zero-filled
    16  *  row-major float32 payload
"""

import struct
from collections.abc import Sequence

from paper_rerank.errors import FormatError, InvalidInputError

MAGIC = b"EMBD"
VERSION = 1
DTYPE_FLOAT32 = 0
LITTLE_ENDIAN = 0
HEADER_SIZE = 16
MAX_UINT16 = 0xFFFF

_HEADER = struct.Struct("<4sBHHBB5x")
CONTENT_TYPE = "application/octet-stream"


def encode(vectors: Sequence[Sequence[float]]) -> bytes:
    """
    Encode a dimensionally homogeneous batch of vectors

    Raises:
        InvalidInputError: If the batch is empty, ragged, or exceeds uint16 limits
    """
    if not vectors:
        raise InvalidInputError("Cannot encode an empty batch")

    batch = len(vectors)
    dims = len(vectors[0])
    if dims == 0:
        raise InvalidInputError("Cannot encode zero-dimensional vectors")
    for i, vector in enumerate(vectors):
        if len(vector) != dims:
            raise InvalidInputError(
                f"Inconsistent embedding dimensions: vector {i} has {len(vector)}, expected {dims}"
            )
    if batch > MAX_UINT16 or dims > MAX_UINT16:
        raise InvalidInputError(f"Batch {batch}x{dims} exceeds the uint16 header limits")

    header = _HEADER.pack(MAGIC, VERSION, batch, dims, DTYPE_FLOAT32, LITTLE_ENDIAN)
    payload = struct.pack(f"<{batch * dims}f", *(value for vector in vectors for value in vector))
    return header + payload


def decode(data: bytes) -> list[list[float]]:
    """
    Decode a framed batch back into vectors

    Raises:
        FormatError: On bad magic, version, dtype, endianness or a length mismatch
    """
    if len(data) < HEADER_SIZE:
        raise FormatError(f"Frame too short: {len(data)} bytes, header needs {HEADER_SIZE}")

    magic, version, batch, dims, dtype, endian = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise FormatError(f"Bad magic bytes: {magic!r}")
    if version != VERSION:
        raise FormatError(f"Unsupported frame version: {version}")
    if dtype != DTYPE_FLOAT32:
        raise FormatError(f"Unsupported dtype: {dtype}")
    if endian != LITTLE_ENDIAN:
        raise FormatError(f"Unsupported endianness: {endian}")

    expected = HEADER_SIZE + 4 * batch * dims
    if len(data) != expected:
        raise FormatError(
            f"Frame length {len(data)} does not match header ({batch}x{dims} needs {expected})"
        )
    if batch and not dims:
        raise FormatError("Frame declares vectors with zero dimensions")

    values = struct.unpack_from(f"<{batch * dims}f", data, HEADER_SIZE)
    return [list(values[i * dims : (i + 1) * dims]) for i in range(batch)]
