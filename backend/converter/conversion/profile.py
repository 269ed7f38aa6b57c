"""Best-effort detection of the embedded color profile in a JPEG byte stream."""
import logging
import re

from converter.conversion.models import ColorProfile, SourceFormat

logger = logging.getLogger("converter.profile")

SOI = 0xD8
SOS = 0xDA
EOI = 0xD9
APP2 = 0xE2
ICC_IDENTIFIER = "ICC_PROFILE"

_ADOBE_RGB = re.compile(r"Adobe\s?RGB", re.IGNORECASE)
_SRGB = re.compile(r"sRGB|IEC61966", re.IGNORECASE)


def _profile_from_icc_segment(segment: bytes) -> ColorProfile:
    if len(segment) < 14 or not segment[:11].decode("latin-1").startswith(ICC_IDENTIFIER):
        return ColorProfile.UNKNOWN
    payload = segment.decode("latin-1")
    if _ADOBE_RGB.search(payload):
        return ColorProfile.ADOBE_RGB
    if _SRGB.search(payload):
        return ColorProfile.SRGB
    return ColorProfile.UNKNOWN


def detect_jpeg_profile(data: bytes) -> ColorProfile:
    """
    Walk JPEG marker segments up to start-of-scan looking for an APP2 ICC_PROFILE chunk.
    Malformed or truncated input yields UNKNOWN; this never raises.
    """
    if len(data) < 4 or data[0] != 0xFF or data[1] != SOI:
        return ColorProfile.UNKNOWN

    offset = 2
    while offset + 4 < len(data):
        if data[offset] != 0xFF:
            offset += 1
            continue

        marker = data[offset + 1]
        offset += 2
        if marker in (SOS, EOI):
            break

        length = (data[offset] << 8) | data[offset + 1]
        offset += 2
        if length < 2 or offset + length - 2 > len(data):
            logger.debug("Malformed segment 0x%02X (length %s) at offset %s", marker, length, offset - 4)
            break

        if marker == APP2:
            profile = _profile_from_icc_segment(bytes(data[offset:offset + length - 2]))
            if profile != ColorProfile.UNKNOWN:
                return profile

        offset += length - 2

    return ColorProfile.UNKNOWN


def detect_color_profile(source_format: SourceFormat, data: bytes) -> ColorProfile:
    """PNG is sRGB by definition; JPEG is scanned for an embedded ICC profile hint."""
    if source_format == SourceFormat.PNG:
        return ColorProfile.SRGB
    return detect_jpeg_profile(data)
