"""Pillow-backed codecs: decode sources to RGBA pixels and encode pixels to target formats."""
import io
import logging
import threading
from typing import assert_never

from PIL import Image, UnidentifiedImageError, features

from converter.conversion.errors import DecodeError, EncodeError
from converter.conversion.models import PixelBuffer, SourceFormat, TargetFormat
from converter.conversion.tiff import encode_tiff

logger = logging.getLogger("converter.codecs")

# Multi-picture JPEGs open as MPO
PILLOW_SOURCE_FORMATS = {SourceFormat.JPEG: ("JPEG", "MPO"), SourceFormat.PNG: ("PNG",)}

AVIF_SPEED = 5
WEBP_METHOD = 6
WEBP_ALPHA_QUALITY = 90

_init_lock = threading.Lock()
_ready = False
_available: dict[str, bool] = {}


def ensure_codecs_ready() -> dict[str, bool]:
    """Initialise Pillow's format plugins once per process. Safe to call from any thread."""
    global _ready
    if _ready:
        return _available
    with _init_lock:
        if not _ready:
            Image.init()
            for name in ("jpg", "webp", "avif", "zlib"):
                _available[name] = bool(features.check(name))
            missing = [name for name, ok in _available.items() if not ok]
            if missing:
                logger.warning("Pillow built without codec support for: %s", ", ".join(missing))
            logger.debug("Codecs ready: %s", _available)
            _ready = True
    return _available


def codec_available(name: str) -> bool:
    return ensure_codecs_ready().get(name, False)


def decode(source_format: SourceFormat, data: bytes) -> PixelBuffer:
    """Decode source bytes to RGBA. The stream must actually be of the declared format."""
    expected = PILLOW_SOURCE_FORMATS[source_format]
    try:
        with Image.open(io.BytesIO(data)) as img:
            if img.format not in expected:
                raise DecodeError(f"Expected {source_format.label} data, got {img.format or 'unknown format'}")
            img.load()
            rgba = img.convert("RGBA")
            return PixelBuffer(rgba.width, rgba.height, bytearray(rgba.tobytes()))
    except DecodeError:
        raise
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError, EOFError) as e:
        raise DecodeError(f"Unable to decode {source_format.label} image: {e}") from e
    except Image.DecompressionBombError as e:
        raise DecodeError(str(e)) from e


def map_quality(target_format: TargetFormat, quality: int) -> int:
    """Map the 0-100 UI scale onto each encoder's accepted range."""
    normalized = min(100, max(0, int(quality)))
    if target_format == TargetFormat.JPEG:
        # libjpeg has no quality 0
        return max(1, normalized)
    return normalized


def _to_image(pixels: PixelBuffer) -> Image.Image:
    return Image.frombytes("RGBA", (pixels.width, pixels.height), bytes(pixels.data))


def _save(img: Image.Image, **save_kw) -> bytes:
    out = io.BytesIO()
    img.save(out, **save_kw)
    return out.getvalue()


def encode(target_format: TargetFormat, pixels: PixelBuffer, quality: int) -> bytes:
    """Encode pixels. Quality is ignored by formats without a quality parameter."""
    try:
        match target_format:
            case TargetFormat.AVIF:
                if not codec_available("avif"):
                    raise EncodeError("AVIF encoding is not supported by this Pillow build")
                return _save(_to_image(pixels), format="AVIF", quality=map_quality(target_format, quality), speed=AVIF_SPEED)
            case TargetFormat.WEBP:
                return _save(
                    _to_image(pixels),
                    format="WEBP",
                    quality=map_quality(target_format, quality),
                    method=WEBP_METHOD,
                    alpha_quality=WEBP_ALPHA_QUALITY,
                )
            case TargetFormat.JPEG:
                return _save(
                    _to_image(pixels).convert("RGB"),
                    format="JPEG",
                    quality=map_quality(target_format, quality),
                    optimize=True,
                    progressive=True,
                )
            case TargetFormat.PNG:
                return _save(_to_image(pixels), format="PNG", optimize=True)
            case TargetFormat.TIFF:
                return encode_tiff(pixels)
            case _:
                assert_never(target_format)
    except EncodeError:
        raise
    except (OSError, ValueError, KeyError) as e:
        raise EncodeError(f"Unable to encode {target_format.info.label}: {e}") from e
