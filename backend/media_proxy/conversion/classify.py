"""Decide raster / vector / unsupported from the fetched bytes."""
import logging
import re
from typing import Optional

from media_proxy.conversion.models import Classification, RasterFormat

logger = logging.getLogger("media_proxy.classify")

_SNIFF_BYTES = 4096

_MAGIC = (
    (b"\xff\xd8\xff", RasterFormat.JPEG),
    (b"\x89PNG\r\n\x1a\n", RasterFormat.PNG),
    (b"GIF87a", RasterFormat.GIF),
    (b"GIF89a", RasterFormat.GIF),
)

_WHITESPACE = re.compile(rb"\s*")
_SVG_DOCTYPE = re.compile(rb"<!doctype\s+svg[^>\[]*>", re.IGNORECASE)
_SVG_TAG = re.compile(rb"<svg[\s>/]", re.IGNORECASE)


def _sniff_raster(data: bytes) -> Optional[RasterFormat]:
    for magic, fmt in _MAGIC:
        if data.startswith(magic):
            return fmt
    if len(data) >= 12 and data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return RasterFormat.WEBP
    return None


def _has_svg_root(head: bytes) -> bool:
    """
    Walk the XML prolog (declaration, processing instructions, comments, an
    svg doctype without internal subset) and check that <svg> comes next.
    Each step only moves forward, so the scan is linear in len(head).
    """
    pos = 0
    while True:
        pos = _WHITESPACE.match(head, pos).end()
        if head.startswith(b"<?", pos):
            end = head.find(b"?>", pos + 2)
            if end < 0:
                return False
            pos = end + 2
        elif head.startswith(b"<!--", pos):
            end = head.find(b"-->", pos + 4)
            if end < 0:
                return False
            pos = end + 3
        else:
            doctype = _SVG_DOCTYPE.match(head, pos)
            if doctype is None:
                return _SVG_TAG.match(head, pos) is not None
            pos = doctype.end()


def _is_svg_type(declared_type: Optional[str]) -> bool:
    if not declared_type:
        return False
    return declared_type.split(";", 1)[0].strip().lower() == "image/svg+xml"


def classify(data: bytes, declared_type: Optional[str] = None) -> Classification:
    """
    Classify by content sniffing. The declared Content-Type is only a hint:
    it can tip a body that contains an <svg> tag to vector, never anything else.
    """
    fmt = _sniff_raster(data)
    if fmt is not None:
        if declared_type and fmt.value not in declared_type.lower():
            logger.debug("Declared type %s disagrees with sniffed %s", declared_type, fmt.value)
        return Classification.raster(fmt)

    head = data[:_SNIFF_BYTES]
    if head.startswith(b"\xef\xbb\xbf"):
        head = head[3:]
    if _has_svg_root(head):
        return Classification.vector()
    if _is_svg_type(declared_type) and _SVG_TAG.search(head):
        return Classification.vector()

    logger.debug("Unrecognized media (declared %s, %s bytes)", declared_type, len(data))
    return Classification.unsupported()
