"""Raster decoding (JPEG, PNG, GIF, WebP) into an RGBA buffer."""
import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

from media_proxy.conversion.models import DecodedImage, PixelCeiling, RasterFormat
from media_proxy.errors import DecodeError, DecodeErrorKind

logger = logging.getLogger("media_proxy.decode")


def decode_raster(data: bytes, fmt: RasterFormat, ceiling: PixelCeiling) -> DecodedImage:
    """
    Decode the first frame of `data`. The header size is checked against
    `ceiling` before any pixel data is loaded.
    """
    try:
        img = Image.open(io.BytesIO(data), formats=[fmt.pil_format])
    except Image.DecompressionBombError:
        raise DecodeError(DecodeErrorKind.DIMENSIONS_EXCEED_LIMIT, "Image dimensions exceed the limit")
    except (UnidentifiedImageError, SyntaxError, ValueError) as e:
        logger.info("Could not identify %s image: %s", fmt.value, e)
        raise DecodeError(DecodeErrorKind.INVALID_DATA, f"Invalid {fmt.value} data")
    except (EOFError, OSError) as e:
        raise _load_error(fmt, e)

    with img:
        w, h = img.size
        if not ceiling.allows(w, h):
            logger.info("Rejecting %sx%s %s image (ceiling %s)", w, h, fmt.value, ceiling)
            raise DecodeError(DecodeErrorKind.DIMENSIONS_EXCEED_LIMIT, f"Image dimensions {w}x{h} exceed the limit")
        try:
            img.seek(0)
            img.load()
            oriented = ImageOps.exif_transpose(img)
            rgba = oriented.convert("RGBA")
        except (EOFError, OSError, SyntaxError, ValueError) as e:
            raise _load_error(fmt, e)
    return DecodedImage(rgba)


def _load_error(fmt: RasterFormat, e: Exception) -> DecodeError:
    if isinstance(e, EOFError) or "truncated" in str(e).lower():
        return DecodeError(DecodeErrorKind.TRUNCATED, f"Truncated {fmt.value} data")
    logger.info("Failed to decode %s image: %s", fmt.value, e)
    return DecodeError(DecodeErrorKind.INVALID_DATA, f"Invalid {fmt.value} data")
