"""Per-request data carried between pipeline stages."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from PIL import Image

from media_proxy.errors import InvalidInputError

# Largest width or height a WebP bitstream can describe
HARD_MAX_DIMENSION = 16383


class PipelineStage(str, Enum):
    RECEIVED = "received"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    DECODING = "decoding"
    TRANSFORMING = "transforming"
    ENCODING = "encoding"
    RESPONDING = "responding"
    FAILED = "failed"


class MediaKind(str, Enum):
    RASTER = "raster"
    VECTOR = "vector"
    UNSUPPORTED = "unsupported"


class RasterFormat(str, Enum):
    JPEG = "jpeg"
    PNG = "png"
    GIF = "gif"
    WEBP = "webp"

    @property
    def pil_format(self) -> str:
        return self.value.upper()


class ConvertType(str, Enum):
    """Misskey media-proxy size presets."""

    EMOJI = "emoji"
    AVATAR = "avatar"
    PREVIEW = "preview"
    BADGE = "badge"
    ORIGINAL = "original"


@dataclass(frozen=True)
class Classification:
    kind: MediaKind
    raster_format: Optional[RasterFormat] = None

    @classmethod
    def raster(cls, fmt: RasterFormat) -> "Classification":
        return cls(MediaKind.RASTER, fmt)

    @classmethod
    def vector(cls) -> "Classification":
        return cls(MediaKind.VECTOR)

    @classmethod
    def unsupported(cls) -> "Classification":
        return cls(MediaKind.UNSUPPORTED)


@dataclass(frozen=True)
class PixelCeiling:
    """Upper bound on decoded image size: per side and for width * height."""

    max_dimension: int = HARD_MAX_DIMENSION
    max_pixels: int = 50_000_000

    def allows(self, width: int, height: int) -> bool:
        return (
            0 < width <= self.max_dimension
            and 0 < height <= self.max_dimension
            and width * height <= self.max_pixels
        )

    def clamp(self, width: int, height: int) -> tuple[int, int]:
        """Scale (width, height) down, keeping the ratio, until it fits."""
        if self.allows(width, height):
            return width, height
        scale = min(
            1.0,
            self.max_dimension / width,
            self.max_dimension / height,
            (self.max_pixels / (width * height)) ** 0.5,
        )
        new_w = max(1, min(self.max_dimension, int(width * scale)))
        new_h = max(1, min(self.max_dimension, int(height * scale)))
        return new_w, new_h


@dataclass(frozen=True)
class MediaRequest:
    url: str
    width: Optional[int] = None
    height: Optional[int] = None
    quality: Optional[int] = None
    convert_type: ConvertType = ConvertType.ORIGINAL
    static: bool = False

    @classmethod
    def from_query(
        cls,
        url: Optional[str],
        width: Optional[int] = None,
        height: Optional[int] = None,
        quality: Optional[int] = None,
        convert_type: ConvertType = ConvertType.ORIGINAL,
        static: bool = False,
    ) -> "MediaRequest":
        url = (url or "").strip()
        if not url:
            raise InvalidInputError("url is required")
        for name, value in (("width", width), ("height", height)):
            if value is not None and not 1 <= value <= HARD_MAX_DIMENSION:
                raise InvalidInputError(f"{name} must be within 1-{HARD_MAX_DIMENSION}")
        if quality is not None and not 0 <= quality <= 100:
            raise InvalidInputError("quality must be within 0-100")
        return cls(url, width, height, quality, convert_type, static)

    def effective_quality(self, default: int) -> int:
        return default if self.quality is None else self.quality


@dataclass(frozen=True)
class FetchedResource:
    data: bytes
    content_type: Optional[str] = None
    url: str = ""

    @property
    def length(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class DecodedImage:
    """An RGBA pixel buffer; the hand-off format between decode, resize and encode."""

    image: Image.Image

    def __post_init__(self):
        if self.image.mode != "RGBA":
            raise ValueError(f"DecodedImage requires RGBA, got {self.image.mode}")
        w, h = self.image.size
        if not (0 < w <= HARD_MAX_DIMENSION and 0 < h <= HARD_MAX_DIMENSION):
            raise ValueError(f"DecodedImage size out of range: {w}x{h}")

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    @property
    def pixels(self) -> bytes:
        return self.image.tobytes()


@dataclass(frozen=True)
class EncodedOutput:
    data: bytes

    @property
    def content_length(self) -> int:
        return len(self.data)
