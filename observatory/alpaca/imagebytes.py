"""Alpaca ImageBytes decoder.

Wire format: a 44-byte little-endian header of eleven int32 fields followed by
the pixel buffer, column-major (x varies slowest)::

    0  MetadataVersion        24 TransmissionElementType
    4  ErrorNumber            28 Rank
    8  ClientTransactionID    32 Dimension1 (width)
    12 ServerTransactionID    36 Dimension2 (height)
    16 DataStart              40 Dimension3 (planes, rank 3 only)
    20 ImageElementType

When ErrorNumber is non-zero the bytes after the header hold a UTF-8 error
message instead of pixels.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

import numpy as np

from observatory.errors import DecodeError, RemoteCallError, RemoteErrorKind

HEADER = struct.Struct("<11i")
HEADER_SIZE = HEADER.size
SUPPORTED_VERSIONS = (1,)


class ImageElementType(enum.IntEnum):
    UNKNOWN = 0
    INT16 = 1
    INT32 = 2
    DOUBLE = 3
    SINGLE = 4
    UINT64 = 5
    BYTE = 6
    INT64 = 7
    UINT16 = 8
    UINT32 = 9


_DTYPES: dict[ImageElementType, str] = {
    ImageElementType.INT16: "<i2",
    ImageElementType.INT32: "<i4",
    ImageElementType.DOUBLE: "<f8",
    ImageElementType.SINGLE: "<f4",
    ImageElementType.UINT64: "<u8",
    ImageElementType.BYTE: "u1",
    ImageElementType.INT64: "<i8",
    ImageElementType.UINT16: "<u2",
    ImageElementType.UINT32: "<u4",
}


@dataclass(frozen=True)
class ImageMetadata:
    metadata_version: int
    error_number: int
    client_transaction_id: int
    server_transaction_id: int
    data_start: int
    image_element_type: int
    transmission_element_type: int
    rank: int
    dimension1: int
    dimension2: int
    dimension3: int


@dataclass(frozen=True, eq=False)
class ImageArray:
    """A decoded image.  ``pixels`` has shape ``(width, height[, planes])``."""

    pixels: np.ndarray
    metadata: ImageMetadata
    element_type: ImageElementType

    @property
    def width(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def planes(self) -> int:
        return int(self.pixels.shape[2]) if self.pixels.ndim == 3 else 1

    @property
    def bits_per_pixel(self) -> int:
        return self.pixels.dtype.itemsize * 8

    @property
    def min(self) -> float:
        return float(self.pixels.min())

    @property
    def max(self) -> float:
        return float(self.pixels.max())

    @property
    def mean(self) -> float:
        return float(self.pixels.mean())

    def row_major(self) -> np.ndarray:
        """Pixels as ``(height, width[, planes])`` for display pipelines."""
        return np.swapaxes(self.pixels, 0, 1)


def parse_metadata(payload: bytes) -> ImageMetadata:
    if len(payload) < HEADER_SIZE:
        raise DecodeError(
            f"ImageBytes payload is {len(payload)} bytes, shorter than the {HEADER_SIZE}-byte header"
        )
    return ImageMetadata(*HEADER.unpack_from(payload, 0))


def decode_image_bytes(payload: bytes, url: str | None = None) -> ImageArray:
    """Decode *payload* into an :class:`ImageArray`.

    Raises:
        RemoteCallError: the device reported an error in the header.
        DecodeError:     the header is invalid or the declared dimensions do
                         not fit the buffer.
    """
    meta = parse_metadata(payload)

    if meta.error_number != 0:
        message = payload[HEADER_SIZE:].decode("utf-8", errors="replace").strip("\x00").strip()
        raise RemoteCallError(
            message or f"Device error {meta.error_number}",
            RemoteErrorKind.PROTOCOL,
            url=url,
            error_number=meta.error_number,
        )
    if meta.metadata_version not in SUPPORTED_VERSIONS:
        raise DecodeError(f"Unsupported ImageBytes metadata version {meta.metadata_version}")
    if meta.rank not in (2, 3):
        raise DecodeError(f"Unsupported image rank {meta.rank}")
    try:
        wire_type = ImageElementType(meta.transmission_element_type)
        image_type = ImageElementType(meta.image_element_type)
    except ValueError:
        raise DecodeError(
            f"Unknown element type {meta.image_element_type}/{meta.transmission_element_type}"
        ) from None
    if wire_type not in _DTYPES:
        raise DecodeError(f"Unsupported transmission element type {wire_type.name}")
    if meta.data_start < HEADER_SIZE or meta.data_start > len(payload):
        raise DecodeError(f"Invalid data start offset {meta.data_start}")

    shape: tuple[int, ...] = (meta.dimension1, meta.dimension2)
    if meta.rank == 3:
        shape += (meta.dimension3,)
    if any(d <= 0 for d in shape):
        raise DecodeError(f"Invalid image dimensions {shape}")

    dtype = np.dtype(_DTYPES[wire_type])
    count = int(np.prod(shape, dtype=np.int64))
    available = len(payload) - meta.data_start
    if count * dtype.itemsize > available:
        raise DecodeError(
            f"Declared dimensions {shape} need {count * dtype.itemsize} bytes, "
            f"only {available} available"
        )

    flat = np.frombuffer(payload, dtype=dtype, count=count, offset=meta.data_start)
    # Column-major on the wire: the first dimension varies slowest.
    pixels = flat.reshape(shape).copy()
    pixels.setflags(write=False)
    return ImageArray(pixels=pixels, metadata=meta, element_type=image_type)


def encode_image_bytes(
    pixels: np.ndarray,
    element_type: ImageElementType = ImageElementType.UINT16,
    image_element_type: ImageElementType | None = None,
    error_number: int = 0,
    message: str = "",
) -> bytes:
    """Build an ImageBytes payload (used by the simulated backend).

    *pixels* has shape ``(width, height[, planes])``.
    """
    image_type = image_element_type if image_element_type is not None else element_type
    if error_number:
        header = HEADER.pack(1, error_number, 0, 0, HEADER_SIZE, 0, 0, 0, 0, 0, 0)
        return header + message.encode("utf-8")
    dims = list(pixels.shape) + [0] * (3 - pixels.ndim)
    header = HEADER.pack(
        1, 0, 0, 0, HEADER_SIZE,
        int(image_type), int(element_type), pixels.ndim,
        dims[0], dims[1], dims[2] if pixels.ndim == 3 else 0,
    )
    body = np.ascontiguousarray(pixels, dtype=np.dtype(_DTYPES[element_type])).tobytes()
    return header + body
