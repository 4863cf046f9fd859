"""Download remote media into memory under a byte ceiling and timeout."""
import logging
from typing import Optional
from urllib.parse import urlparse

import httpx

from media_proxy.config import ProxySettings
from media_proxy.conversion.models import FetchedResource
from media_proxy.errors import FetchError, FetchErrorKind

logger = logging.getLogger("media_proxy.fetch")


def validate_url(url: str) -> str:
    """Reject anything that is not an absolute http(s) URL. Returns the stripped URL."""
    url = (url or "").strip()
    try:
        parsed = urlparse(url)
    except ValueError:
        raise FetchError(FetchErrorKind.INVALID_URL, "Invalid URL")
    if parsed.scheme not in ("http", "https"):
        raise FetchError(FetchErrorKind.INVALID_URL, "Only http and https URLs are supported")
    if not parsed.netloc or not parsed.hostname:
        raise FetchError(FetchErrorKind.INVALID_URL, "Invalid URL")
    return url


class ResourceFetcher:
    """Fetches one URL per call over a shared httpx connection pool. Never retries."""

    def __init__(self, settings: ProxySettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._max_bytes = settings.fetch_max_bytes
        kwargs: dict = {}
        if settings.http_proxy:
            kwargs["proxy"] = settings.http_proxy
        if transport is not None:
            kwargs["transport"] = transport
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.fetch_timeout),
            follow_redirects=True,
            max_redirects=settings.fetch_max_redirects,
            headers={"User-Agent": settings.user_agent},
            **kwargs,
        )

    async def fetch(self, url: str) -> FetchedResource:
        url = validate_url(url)
        max_mb = self._max_bytes / (1024 * 1024)
        try:
            async with self._client.stream("GET", url) as resp:
                if not resp.is_success:
                    raise FetchError(
                        FetchErrorKind.NON_SUCCESS_STATUS,
                        f"Origin returned status {resp.status_code}",
                        upstream_status=resp.status_code,
                    )
                declared = resp.headers.get("Content-Length", "")
                if declared.isdigit() and int(declared) > self._max_bytes:
                    raise FetchError(FetchErrorKind.TOO_LARGE, f"File too large (max {max_mb:g} MB)")
                body = bytearray()
                async for chunk in resp.aiter_bytes():
                    body += chunk
                    if len(body) > self._max_bytes:
                        raise FetchError(FetchErrorKind.TOO_LARGE, f"File too large (max {max_mb:g} MB)")
                content_type = resp.headers.get("Content-Type")
                final_url = str(resp.url)
        except httpx.TimeoutException:
            raise FetchError(FetchErrorKind.TIMEOUT, "Origin timed out")
        except (httpx.InvalidURL, httpx.UnsupportedProtocol):
            raise FetchError(FetchErrorKind.INVALID_URL, "Invalid URL")
        except httpx.TooManyRedirects:
            raise FetchError(FetchErrorKind.NETWORK_ERROR, "Too many redirects")
        except httpx.HTTPError as e:
            logger.info("Fetch failed for %s: %s", url, e)
            raise FetchError(FetchErrorKind.NETWORK_ERROR, "Failed to download URL")
        logger.debug("Fetched %s (%s bytes, %s)", final_url, len(body), content_type)
        return FetchedResource(data=bytes(body), content_type=content_type, url=final_url)

    async def aclose(self) -> None:
        await self._client.aclose()
