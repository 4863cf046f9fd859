"""HTTP routes: the proxy endpoint and failure-to-response mapping."""
import asyncio
import logging
import re
from pathlib import PurePosixPath
from typing import Optional
from urllib.parse import unquote, urlparse

from fastapi import APIRouter, Depends, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response

from media_proxy.conversion.models import ConvertType, EncodedOutput, MediaRequest
from media_proxy.conversion.service import MediaProxyService
from media_proxy.errors import (
    DeadlineExceededError,
    ErrorCategory,
    FetchErrorKind,
    InvalidInputError,
    ProxyError,
)

logger = logging.getLogger("media_proxy.api")
router = APIRouter(tags=["proxy"])

SUCCESS_CACHE_CONTROL = "max-age=31536000, immutable"
ERROR_CACHE_CONTROL = "max-age=300"
CONTENT_SECURITY_POLICY = "default-src 'none'; img-src 'self'; media-src 'self'; style-src 'unsafe-inline'"
DISCONNECT_POLL_SECONDS = 0.1
CLIENT_CLOSED_REQUEST = 499

_STATUS_BY_CATEGORY = {
    ErrorCategory.INVALID_INPUT: 400,
    ErrorCategory.UNSUPPORTED_MEDIA: 415,
    ErrorCategory.RESOURCE_EXCEEDED: 413,
    ErrorCategory.ORIGIN_FAULT: 502,
    ErrorCategory.DECODE_FAULT: 422,
    ErrorCategory.ENCODE_FAULT: 500,
}
_STATUS_BY_KIND = {
    FetchErrorKind.TIMEOUT: 504,
    DeadlineExceededError.Kind.DEADLINE_EXCEEDED: 504,
}


def error_status(exc: ProxyError) -> int:
    return _STATUS_BY_KIND.get(exc.kind, _STATUS_BY_CATEGORY[exc.category])


def error_response(exc: ProxyError) -> JSONResponse:
    """The single place where pipeline failures become HTTP responses."""
    status = error_status(exc)
    if exc.category is ErrorCategory.ENCODE_FAULT:
        logger.error("Encoder anomaly: %r", exc, exc_info=exc)
    else:
        logger.info("Responding %s (%s/%s): %s", status, exc.category.value, exc.kind.value, exc.message)
    return JSONResponse(
        status_code=status,
        content={"error": exc.category.value, "kind": exc.kind.value, "detail": exc.message},
        headers={"Cache-Control": ERROR_CACHE_CONTROL},
    )


async def proxy_error_handler(request: Request, exc: ProxyError) -> JSONResponse:
    return error_response(exc)


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({str(err.get("loc", ["", "?"])[-1]) for err in exc.errors()})
    return error_response(InvalidInputError(f"Invalid parameter: {', '.join(fields)}"))


def _flag(value: Optional[str]) -> bool:
    """Misskey flags are set by presence (`?static=1`, `?static=`)."""
    return value is not None


def parse_media_request(
    url: Optional[str] = Query(None, description="Remote media URL (http or https)"),
    width: Optional[int] = Query(None, description="Target width in pixels"),
    height: Optional[int] = Query(None, description="Target height in pixels"),
    quality: Optional[int] = Query(None, description="WebP quality 0-100"),
    emoji: Optional[str] = Query(None),
    avatar: Optional[str] = Query(None),
    preview: Optional[str] = Query(None),
    badge: Optional[str] = Query(None),
    static: Optional[str] = Query(None),
) -> MediaRequest:
    if _flag(emoji):
        convert_type = ConvertType.EMOJI
    elif _flag(avatar):
        convert_type = ConvertType.AVATAR
    elif _flag(preview):
        convert_type = ConvertType.PREVIEW
    elif _flag(badge):
        convert_type = ConvertType.BADGE
    else:
        convert_type = ConvertType.ORIGINAL
    return MediaRequest.from_query(url, width, height, quality, convert_type, _flag(static))


def output_filename(url: str) -> str:
    """`<stem>.webp` from the source URL path, restricted to header-safe characters."""
    stem = PurePosixPath(unquote(urlparse(url).path or "")).stem
    stem = re.sub(r"[^A-Za-z0-9._-]", "_", stem)[:64].strip("._")
    return f"{stem or 'image'}.webp"


def webp_response(output: EncodedOutput, url: str) -> Response:
    return Response(
        content=output.data,
        media_type="image/webp",
        headers={
            "Cache-Control": SUCCESS_CACHE_CONTROL,
            "Content-Security-Policy": CONTENT_SECURITY_POLICY,
            "Content-Disposition": f'inline; filename="{output_filename(url)}"',
        },
    )


async def _cancel_on_disconnect(request: Request, task: asyncio.Task) -> bool:
    while not task.done():
        if await request.is_disconnected():
            task.cancel()
            return True
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)
    return False


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/")
async def proxy_media(request: Request, media_request: MediaRequest = Depends(parse_media_request)):
    """Fetch `url`, convert it to WebP and return it."""
    service: MediaProxyService = request.app.state.proxy
    pipeline = asyncio.create_task(service.process(media_request))
    watcher = asyncio.create_task(_cancel_on_disconnect(request, pipeline))
    try:
        output = await pipeline
    except asyncio.CancelledError:
        if watcher.done() and watcher.result():
            logger.info("Client disconnected, abandoned %s", media_request.url)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        raise
    except ProxyError as e:
        return error_response(e)
    finally:
        watcher.cancel()
    return webp_response(output, media_request.url)


@router.get("/{param:path}")
async def proxy_media_with_param(
    param: str,
    request: Request,
    media_request: MediaRequest = Depends(parse_media_request),
):
    """Misskey form `/proxy/<name>.webp?url=...`; the path is ignored."""
    return await proxy_media(request, media_request)
