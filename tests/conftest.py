"""
Pytest configuration and fixtures for converter tests
"""

import io
import struct

import pytest
from PIL import Image

from converter.conversion.models import ConversionTask, PixelBuffer


def _png_bytes(width, height, color=(255, 0, 0, 255)):
    buf = io.BytesIO()
    Image.new("RGBA", (width, height), color).save(buf, format="PNG")
    return buf.getvalue()


def _jpeg_bytes(width, height, color=(200, 120, 40), icc_profile=None):
    buf = io.BytesIO()
    save_kw = {"format": "JPEG", "quality": 95}
    if icc_profile is not None:
        save_kw["icc_profile"] = icc_profile
    Image.new("RGB", (width, height), color).save(buf, **save_kw)
    return buf.getvalue()


def segment(marker, payload):
    """One JPEG marker segment: FF, marker, big-endian length (payload + 2), payload."""
    return bytes([0xFF, marker]) + struct.pack(">H", len(payload) + 2) + payload


@pytest.fixture
def png_bytes():
    """Factory for PNG-encoded solid images"""
    return _png_bytes


@pytest.fixture
def jpeg_bytes():
    """Factory for JPEG-encoded solid images, optionally carrying an ICC payload"""
    return _jpeg_bytes


@pytest.fixture
def crafted_jpeg():
    """Factory for minimal marker streams: SOI, APP0, optional APP2 ICC chunk, SOS"""

    def build(icc_text=None, identifier=b"ICC_PROFILE\x00\x01\x01"):
        data = b"\xff\xd8" + segment(0xE0, b"JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00")
        if icc_text is not None:
            data += segment(0xE2, identifier + b"\x00" * 16 + icc_text.encode("latin-1") + b"\x00" * 8)
        data += segment(0xDA, b"\x00" * 10) + b"\x12\x34" * 8 + b"\xff\xd9"
        return data

    return build


@pytest.fixture
def solid_pixels():
    """Factory for RGBA pixel buffers filled with one color"""

    def build(width, height, rgba=(255, 0, 0, 255)):
        return PixelBuffer(width, height, bytearray(bytes(rgba) * (width * height)))

    return build


@pytest.fixture
def make_task(png_bytes):
    """Factory for ConversionTask with PNG -> TIFF defaults"""

    def build(task_id, **overrides):
        fields = {
            "source_format": "image/png",
            "target_format": "image/tiff",
            "target_color_profile": "srgb",
            "target_quality": 80,
            "buffer": png_bytes(4, 4),
        }
        fields.update(overrides)
        return ConversionTask(task_id=task_id, **fields)

    return build
