"""Resize decoded images, keeping the aspect ratio."""
import logging
from typing import Optional

from PIL import Image

from media_proxy.conversion.models import ConvertType, DecodedImage, MediaRequest, PixelCeiling

logger = logging.getLogger("media_proxy.resize")

STATIC_HEIGHT = 422

# preset -> (max width, max height); None leaves that side free
PRESET_BOXES: dict[ConvertType, tuple[Optional[int], Optional[int]]] = {
    ConvertType.EMOJI: (None, 128),
    ConvertType.AVATAR: (None, 320),
    ConvertType.PREVIEW: (200, 200),
    ConvertType.BADGE: (96, 96),
}


def _scaled(image: DecodedImage, new_w: int, new_h: int) -> DecodedImage:
    if (new_w, new_h) == (image.width, image.height):
        return image
    return DecodedImage(image.image.resize((new_w, new_h), Image.Resampling.LANCZOS))


def resize_keep_aspect(
    image: DecodedImage,
    target_width: Optional[int] = None,
    target_height: Optional[int] = None,
    ceiling: Optional[PixelCeiling] = None,
) -> DecodedImage:
    """
    Scale image to fit within target width and/or height, maintaining aspect ratio.
    If only one dimension is set, the other is computed from the image ratio.
    Upscaling is allowed up to `ceiling`.
    """
    w, h = image.width, image.height
    if target_width is None and target_height is None:
        return image
    if target_width is not None and target_height is not None:
        scale = min(target_width / w, target_height / h)
    elif target_width is not None:
        scale = target_width / w
    else:
        scale = target_height / h
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    if ceiling is not None:
        new_w, new_h = ceiling.clamp(new_w, new_h)
    return _scaled(image, new_w, new_h)


def fit_within(image: DecodedImage, max_width: Optional[int], max_height: Optional[int]) -> DecodedImage:
    """Shrink to fit the box; images already inside it are returned unchanged."""
    too_wide = max_width is not None and image.width > max_width
    too_tall = max_height is not None and image.height > max_height
    if not (too_wide or too_tall):
        return image
    return resize_keep_aspect(image, max_width, max_height)


def fit_height(image: DecodedImage, max_height: int) -> DecodedImage:
    return fit_within(image, None, max_height)


def apply_transform(image: DecodedImage, request: MediaRequest, ceiling: PixelCeiling) -> DecodedImage:
    """Explicit width/height win over the Misskey presets; no target means passthrough."""
    if request.width is not None or request.height is not None:
        return resize_keep_aspect(image, request.width, request.height, ceiling)
    if request.static:
        image = fit_height(image, STATIC_HEIGHT)
    box = PRESET_BOXES.get(request.convert_type)
    if box is not None:
        image = fit_within(image, *box)
    return image
