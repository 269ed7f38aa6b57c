"""Resize decoded pixels so the short edge matches a requested size."""
import logging
import math
from typing import Optional

from PIL import Image

from converter.conversion.errors import SurfaceError
from converter.conversion.models import PixelBuffer

logger = logging.getLogger("converter.resize")


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def target_size(width: int, height: int, short_edge: Optional[int]) -> tuple[int, int]:
    """
    Dimensions after scaling the shorter side to short_edge, keeping aspect ratio.
    Missing or non-positive short_edge keeps the current size.
    """
    if not short_edge or short_edge <= 0:
        return width, height
    current_short = min(width, height)
    if current_short == short_edge:
        return width, height
    scale = short_edge / current_short
    return max(1, _round_half_up(width * scale)), max(1, _round_half_up(height * scale))


def resize_short_edge(pixels: PixelBuffer, short_edge: Optional[int]) -> PixelBuffer:
    """
    Scale pixels so min(width, height) == short_edge.
    Returns the input object unchanged when no resampling is needed.
    """
    new_w, new_h = target_size(pixels.width, pixels.height, short_edge)
    if (new_w, new_h) == (pixels.width, pixels.height):
        return pixels

    try:
        img = Image.frombytes("RGBA", (pixels.width, pixels.height), bytes(pixels.data))
        resized = img.resize((new_w, new_h), Image.Resampling.LANCZOS)
        data = bytearray(resized.tobytes())
    except (MemoryError, ValueError, OSError) as e:
        logger.exception("Resize %sx%s -> %sx%s failed: %s", pixels.width, pixels.height, new_w, new_h, e)
        raise SurfaceError(f"Unable to allocate a {new_w}x{new_h} scaling surface: {e}") from e

    logger.debug("Resized %sx%s -> %sx%s", pixels.width, pixels.height, new_w, new_h)
    return PixelBuffer(new_w, new_h, data)
