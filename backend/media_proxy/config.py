"""Application configuration. Loads from environment and .env file."""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from media_proxy.conversion.models import HARD_MAX_DIMENSION, PixelCeiling

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("media_proxy")


@dataclass(frozen=True)
class ProxySettings:
    """Process-wide settings, fixed at startup and read-only afterwards."""

    host: str = "0.0.0.0"
    port: int = 3000
    default_quality: int = 80
    webp_method: int = 4
    fetch_timeout: float = 10.0
    fetch_max_bytes: int = 20 * 1024 * 1024
    fetch_max_redirects: int = 5
    request_timeout: float = 30.0
    max_dimension: int = HARD_MAX_DIMENSION
    max_pixels: int = 50_000_000
    svg_fallback_size: int = 512
    max_workers: int = 4
    http_proxy: Optional[str] = None
    cors_origins: tuple[str, ...] = field(default_factory=tuple)
    user_agent: str = "MisskeyMediaProxy/1.0"

    def __post_init__(self):
        if not 0 <= self.default_quality <= 100:
            raise ValueError(f"DEFAULT_QUALITY must be within 0-100, got {self.default_quality}")
        if not 0 <= self.webp_method <= 6:
            raise ValueError(f"WEBP_METHOD must be within 0-6, got {self.webp_method}")
        if not 1 <= self.max_dimension <= HARD_MAX_DIMENSION:
            raise ValueError(f"MAX_DIMENSION must be within 1-{HARD_MAX_DIMENSION}, got {self.max_dimension}")
        if self.max_pixels < 1 or self.fetch_max_bytes < 1 or self.max_workers < 1:
            raise ValueError("MAX_PIXELS, FETCH_MAX_MB and MAX_WORKERS must be positive")
        if not 1 <= self.svg_fallback_size <= self.max_dimension:
            raise ValueError(f"SVG_FALLBACK_SIZE must be within 1-{self.max_dimension}")
        if self.fetch_timeout <= 0 or self.request_timeout <= 0:
            raise ValueError("FETCH_TIMEOUT and REQUEST_TIMEOUT must be positive")

    @property
    def pixel_ceiling(self) -> PixelCeiling:
        return PixelCeiling(max_dimension=self.max_dimension, max_pixels=self.max_pixels)


def load_settings() -> ProxySettings:
    """Build settings from the environment (after .env files were loaded)."""
    fetch_max_mb = int(os.getenv("FETCH_MAX_MB", "20"))
    # CORS: comma-separated origins, e.g. "https://misskey.example"; empty allows any origin
    cors_origins = tuple(o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip())
    return ProxySettings(
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        default_quality=int(os.getenv("DEFAULT_QUALITY", "80")),
        webp_method=int(os.getenv("WEBP_METHOD", "4")),
        fetch_timeout=float(os.getenv("FETCH_TIMEOUT", "10")),
        fetch_max_bytes=fetch_max_mb * 1024 * 1024,
        fetch_max_redirects=int(os.getenv("FETCH_MAX_REDIRECTS", "5")),
        request_timeout=float(os.getenv("REQUEST_TIMEOUT", "30")),
        max_dimension=int(os.getenv("MAX_DIMENSION", str(HARD_MAX_DIMENSION))),
        max_pixels=int(os.getenv("MAX_PIXELS", "50000000")),
        svg_fallback_size=int(os.getenv("SVG_FALLBACK_SIZE", "512")),
        max_workers=int(os.getenv("MAX_WORKERS", str(min(32, (os.cpu_count() or 4) + 4)))),
        http_proxy=os.getenv("HTTP_PROXY_URL", "").strip() or None,
        cors_origins=cors_origins,
        user_agent=os.getenv("USER_AGENT", "MisskeyMediaProxy/1.0"),
    )
