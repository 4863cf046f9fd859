"""
SVG rasterization through cairosvg.

Target size precedence:
1. the document's intrinsic size (width/height, completed from the viewBox);
   rejected if it breaks the pixel ceiling,
2. the caller-requested width/height, clamped into the ceiling,
3. the configured fallback size on the longer side.
External references are never fetched; only data: URLs are resolved.
"""
import io
import math
import logging
import re
from typing import Mapping, Optional

from PIL import Image

from media_proxy.conversion.models import DecodedImage, PixelCeiling
from media_proxy.errors import RenderError, RenderErrorKind

logger = logging.getLogger("media_proxy.vector")

Size = tuple[float, float]

# CSS px per unit at 96 dpi
_UNITS = {
    "": 1.0,
    "px": 1.0,
    "pt": 96 / 72,
    "pc": 16.0,
    "in": 96.0,
    "cm": 96 / 2.54,
    "mm": 96 / 25.4,
}
_LENGTH = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)\s*([a-zA-Z%]*)\s*$")


def parse_length(value: Optional[str]) -> Optional[float]:
    """Absolute length in px, or None for missing, relative (%, em), non-finite or non-positive values."""
    if not value:
        return None
    m = _LENGTH.match(value)
    if not m:
        return None
    unit = m.group(2).lower()
    if unit not in _UNITS:
        return None
    px = float(m.group(1)) * _UNITS[unit]
    return px if math.isfinite(px) and px > 0 else None


def parse_viewbox(value: Optional[str]) -> Optional[Size]:
    if not value:
        return None
    parts = value.replace(",", " ").split()
    if len(parts) != 4:
        return None
    try:
        w, h = float(parts[2]), float(parts[3])
    except ValueError:
        return None
    if not (math.isfinite(w) and math.isfinite(h)):
        return None
    return (w, h) if w > 0 and h > 0 else None


def intrinsic_size(attrs: Mapping[str, str]) -> Optional[Size]:
    """Size declared by the root <svg> attributes, or None when not determinable."""
    width = parse_length(attrs.get("width"))
    height = parse_length(attrs.get("height"))
    viewbox = parse_viewbox(attrs.get("viewBox"))
    if width and height:
        return width, height
    if viewbox:
        vw, vh = viewbox
        if width:
            return width, width * vh / vw
        if height:
            return height * vw / vh, height
        return vw, vh
    return None


def resolve_target_size(
    intrinsic: Optional[Size],
    aspect: Optional[float],
    width: Optional[int],
    height: Optional[int],
    ceiling: PixelCeiling,
    fallback_size: int,
) -> tuple[int, int]:
    """Pick the render resolution. `aspect` is width / height from the viewBox, if any."""
    if intrinsic is not None:
        if not all(math.isfinite(v) for v in intrinsic):
            raise RenderError(RenderErrorKind.DIMENSIONS_EXCEED_LIMIT, "Document size exceeds the limit")
        w, h = max(1, round(intrinsic[0])), max(1, round(intrinsic[1]))
        if not ceiling.allows(w, h):
            raise RenderError(
                RenderErrorKind.DIMENSIONS_EXCEED_LIMIT,
                f"Document size {w}x{h} exceeds the limit",
            )
        return w, h
    ratio = aspect if aspect and math.isfinite(aspect) else 1.0
    # nothing narrower than 1 x max_dimension can be produced anyway
    ratio = min(max(ratio, 1 / ceiling.max_dimension), ceiling.max_dimension)
    if width and height:
        w, h = width, height
    elif width:
        w, h = width, max(1, round(width / ratio))
    elif height:
        w, h = max(1, round(height * ratio)), height
    elif ratio >= 1:
        w, h = fallback_size, max(1, round(fallback_size / ratio))
    else:
        w, h = max(1, round(fallback_size * ratio)), fallback_size
    return ceiling.clamp(w, h)


def _local_only_fetcher(url: str, resource_type: str) -> bytes:
    """cairosvg URL fetcher that resolves embedded data: URLs and nothing else."""
    if url.startswith("data:"):
        from cairosvg.url import fetch

        return fetch(url, resource_type)
    logger.debug("Ignoring external reference %s", url[:200])
    return b""


def _parse_tree(data: bytes):
    from cairosvg.parser import Tree

    try:
        tree = Tree(bytestring=data, unsafe=False, url_fetcher=_local_only_fetcher)
    except SyntaxError as e:
        # xml.etree.ElementTree.ParseError derives from SyntaxError
        logger.info("Malformed SVG: %s", e)
        raise RenderError(RenderErrorKind.PARSE_ERROR, "Malformed SVG document")
    except ValueError as e:
        # defusedxml refuses entity declarations and external references
        logger.info("Refused SVG construct: %s", e)
        raise RenderError(RenderErrorKind.UNSUPPORTED_FEATURE, "SVG uses unsupported XML features")
    if tree.tag != "svg":
        raise RenderError(RenderErrorKind.PARSE_ERROR, "Document root is not <svg>")
    return tree


def render_vector(
    data: bytes,
    width: Optional[int],
    height: Optional[int],
    ceiling: PixelCeiling,
    fallback_size: int,
) -> DecodedImage:
    from cairosvg.surface import PNGSurface

    tree = _parse_tree(data)
    try:
        intrinsic = intrinsic_size(tree)
        viewbox = parse_viewbox(tree.get("viewBox"))
        if viewbox is None:
            # unusable viewBox values would otherwise reach cairo's transform
            tree.pop("viewBox", None)
        aspect = viewbox[0] / viewbox[1] if viewbox else None
        out_w, out_h = resolve_target_size(intrinsic, aspect, width, height, ceiling, fallback_size)
    except RenderError:
        raise
    except Exception as e:
        logger.info("Unusable SVG size attributes: %s", e)
        raise RenderError(RenderErrorKind.PARSE_ERROR, "SVG size attributes are invalid")
    tree["width"], tree["height"] = str(out_w), str(out_h)

    buf = io.BytesIO()
    try:
        surface = PNGSurface(tree, buf, 96, output_width=out_w, output_height=out_h)
        surface.finish()
        with Image.open(io.BytesIO(buf.getvalue()), formats=["PNG"]) as rendered:
            rgba = rendered.convert("RGBA")
    except Exception as e:
        logger.warning("SVG rendering failed: %s", e)
        raise RenderError(RenderErrorKind.UNSUPPORTED_FEATURE, "SVG could not be rendered")
    logger.debug("Rendered SVG at %sx%s", out_w, out_h)
    return DecodedImage(rgba)
