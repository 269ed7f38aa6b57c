"""Minimal uncompressed baseline TIFF writer: one strip, 8-bit RGB, little-endian."""
import struct

from converter.conversion.models import PixelBuffer

# Field types
SHORT = 3
LONG = 4

# Tags
IMAGE_WIDTH = 256
IMAGE_LENGTH = 257
BITS_PER_SAMPLE = 258
COMPRESSION = 259
PHOTOMETRIC_INTERPRETATION = 262
STRIP_OFFSETS = 273
SAMPLES_PER_PIXEL = 277
ROWS_PER_STRIP = 278
STRIP_BYTE_COUNTS = 279
PLANAR_CONFIGURATION = 284

HEADER_SIZE = 8
ENTRY_COUNT = 10
ENTRY_SIZE = 12
IFD_SIZE = 2 + ENTRY_COUNT * ENTRY_SIZE + 4
BITS_PER_SAMPLE_OFFSET = HEADER_SIZE + IFD_SIZE
IMAGE_OFFSET = BITS_PER_SAMPLE_OFFSET + 6


def strip_alpha(data: bytearray) -> bytearray:
    """RGBA -> RGB by dropping every fourth byte."""
    rgb = bytearray(len(data) // 4 * 3)
    rgb[0::3] = data[0::4]
    rgb[1::3] = data[1::4]
    rgb[2::3] = data[2::4]
    return rgb


def directory_entries(width: int, height: int, byte_count: int) -> list[tuple[int, int, int, int]]:
    """IFD entries as (tag, type, count, value), in ascending tag order."""
    return [
        (IMAGE_WIDTH, LONG, 1, width),
        (IMAGE_LENGTH, LONG, 1, height),
        (BITS_PER_SAMPLE, SHORT, 3, BITS_PER_SAMPLE_OFFSET),
        (COMPRESSION, SHORT, 1, 1),
        (PHOTOMETRIC_INTERPRETATION, SHORT, 1, 2),
        (STRIP_OFFSETS, LONG, 1, IMAGE_OFFSET),
        (SAMPLES_PER_PIXEL, SHORT, 1, 3),
        (ROWS_PER_STRIP, LONG, 1, height),
        (STRIP_BYTE_COUNTS, LONG, 1, byte_count),
        (PLANAR_CONFIGURATION, SHORT, 1, 1),
    ]


def encode_tiff(pixels: PixelBuffer) -> bytes:
    width, height = pixels.width, pixels.height
    rgb = strip_alpha(pixels.data)
    entries = directory_entries(width, height, len(rgb))

    out = bytearray(IMAGE_OFFSET + len(rgb))
    struct.pack_into("<2sHI", out, 0, b"II", 42, HEADER_SIZE)
    struct.pack_into("<H", out, HEADER_SIZE, ENTRY_COUNT)
    for index, (tag, field_type, count, value) in enumerate(entries):
        # SHORT values sit in the low bytes of the 4-byte value field
        struct.pack_into("<HHII", out, HEADER_SIZE + 2 + index * ENTRY_SIZE, tag, field_type, count, value)
    struct.pack_into("<I", out, HEADER_SIZE + 2 + ENTRY_COUNT * ENTRY_SIZE, 0)
    struct.pack_into("<3H", out, BITS_PER_SAMPLE_OFFSET, 8, 8, 8)
    out[IMAGE_OFFSET:] = rgb
    return bytes(out)
