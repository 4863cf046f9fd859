"""Lossy WebP encoding."""
import io
import logging

from media_proxy.conversion.models import HARD_MAX_DIMENSION, DecodedImage, EncodedOutput
from media_proxy.errors import EncodeError, EncodeErrorKind

logger = logging.getLogger("media_proxy.encode")


def encode_webp(image: DecodedImage, quality: int, method: int = 4) -> EncodedOutput:
    """
    Encode to lossy WebP. `quality` (0-100) is handed to libwebp unchanged, so
    output is deterministic and size grows with quality.
    """
    w, h = image.width, image.height
    if not (0 < w <= HARD_MAX_DIMENSION and 0 < h <= HARD_MAX_DIMENSION):
        raise EncodeError(EncodeErrorKind.INVALID_DIMENSIONS, f"Cannot encode {w}x{h} image")
    quality = max(0, min(100, int(quality)))
    buf = io.BytesIO()
    try:
        image.image.save(buf, format="WEBP", quality=quality, method=method, lossless=False)
    except (OSError, ValueError) as e:
        logger.error("WebP encoder failed for %sx%s image: %s", w, h, e)
        raise EncodeError(EncodeErrorKind.ENCODER_FAILURE, "WebP encoding failed")
    data = buf.getvalue()
    if not data:
        raise EncodeError(EncodeErrorKind.ENCODER_FAILURE, "WebP encoder produced no output")
    return EncodedOutput(data)
