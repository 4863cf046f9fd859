from .models import (
    Classification,
    ConvertType,
    DecodedImage,
    EncodedOutput,
    FetchedResource,
    MediaKind,
    MediaRequest,
    PixelCeiling,
    RasterFormat,
)

__all__ = [
    "Classification",
    "ConvertType",
    "DecodedImage",
    "EncodedOutput",
    "FetchedResource",
    "MediaKind",
    "MediaRequest",
    "PixelCeiling",
    "RasterFormat",
]
