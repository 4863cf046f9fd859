from __future__ import annotations

import asyncio
import io
from types import SimpleNamespace

import httpx
import pytest
from PIL import Image
from starlette.testclient import TestClient

from conftest import make_image_bytes, mock_transport, requires_cairo
from media_proxy.api.routes import (
    CLIENT_CLOSED_REQUEST,
    _cancel_on_disconnect,
    error_status,
    output_filename,
    proxy_media,
)
from media_proxy.config import ProxySettings
from media_proxy.conversion.models import MediaRequest
from media_proxy.conversion.service import MediaProxyService
from media_proxy.errors import DeadlineExceededError, FetchError, FetchErrorKind
from media_proxy.main import create_app

JPEG_URL = "https://media.example/files/photo.jpg"


def _jpeg(request):
    return httpx.Response(200, content=make_image_bytes("JPEG", size=(500, 500)), headers={"Content-Type": "image/jpeg"})


def test_health(make_client):
    client = make_client({})
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_jpeg_is_served_as_webp(make_client):
    client = make_client({JPEG_URL: _jpeg})
    r = client.get("/", params={"url": JPEG_URL})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/webp"
    assert int(r.headers["content-length"]) == len(r.content)
    assert r.headers["cache-control"] == "max-age=31536000, immutable"
    assert "default-src 'none'" in r.headers["content-security-policy"]
    assert 'filename="photo.webp"' in r.headers["content-disposition"]
    with Image.open(io.BytesIO(r.content)) as img:
        assert img.format == "WEBP"
        assert img.size == (500, 500)


def test_path_is_ignored(make_client):
    client = make_client({JPEG_URL: _jpeg})
    r = client.get("/proxy/avatar.webp", params={"url": JPEG_URL, "avatar": "1"})
    assert r.status_code == 200
    with Image.open(io.BytesIO(r.content)) as img:
        assert img.size == (320, 320)


def test_width_and_quality(make_client):
    client = make_client({JPEG_URL: _jpeg})
    small = client.get("/", params={"url": JPEG_URL, "width": 250, "quality": 10})
    large = client.get("/", params={"url": JPEG_URL, "width": 250, "quality": 95})
    assert small.status_code == large.status_code == 200
    with Image.open(io.BytesIO(small.content)) as img:
        assert img.size == (250, 250)
    assert len(small.content) <= len(large.content)


def test_static_flag_is_presence_based(make_client):
    client = make_client({JPEG_URL: _jpeg})
    r = client.get(f"/?url={JPEG_URL}&static=")
    assert r.status_code == 200
    with Image.open(io.BytesIO(r.content)) as img:
        assert img.size == (422, 422)


def test_unreachable_origin_is_bad_gateway(make_client):
    client = make_client({})
    r = client.get("/", params={"url": "https://no-such-host.invalid/a.png"})
    assert r.status_code == 502
    body = r.json()
    assert body["error"] == "OriginFault"
    assert body["kind"] == "NetworkError"
    assert r.headers["cache-control"] == "max-age=300"


def test_origin_status_is_bad_gateway(make_client):
    client = make_client({JPEG_URL: lambda r: httpx.Response(403)})
    r = client.get("/", params={"url": JPEG_URL})
    assert r.status_code == 502
    assert r.json()["kind"] == "NonSuccessStatus"


def test_unsupported_media(make_client):
    url = "https://media.example/doc.pdf"
    client = make_client({url: lambda r: httpx.Response(200, content=b"%PDF-1.7 ...", headers={"Content-Type": "image/png"})})
    r = client.get("/", params={"url": url})
    assert r.status_code == 415
    assert r.json()["error"] == "UnsupportedMedia"


def test_oversized_body(make_client):
    url = "https://media.example/huge.png"
    client = make_client({url: lambda r: httpx.Response(200, content=b"\x89PNG" + b"\x00" * 4096)}, fetch_max_bytes=1024)
    r = client.get("/", params={"url": url})
    assert r.status_code == 413
    assert r.json()["kind"] == "TooLarge"


def test_corrupt_image_is_decode_fault(make_client):
    url = "https://media.example/broken.jpg"
    data = make_image_bytes("JPEG", size=(200, 200))
    client = make_client({url: lambda r: httpx.Response(200, content=data[: len(data) // 2])})
    r = client.get("/", params={"url": url})
    assert r.status_code == 422
    body = r.json()
    assert (body["error"], body["kind"]) == ("DecodeFault", "Truncated")


@requires_cairo
def test_svg_is_rasterized(make_client):
    url = "https://media.example/logo.svg"
    svg = b'<svg xmlns="http://www.w3.org/2000/svg" width="64" height="32"><rect width="64" height="32" fill="red"/></svg>'
    client = make_client({url: lambda r: httpx.Response(200, content=svg, headers={"Content-Type": "image/svg+xml"})})
    r = client.get("/", params={"url": url})
    assert r.status_code == 200
    with Image.open(io.BytesIO(r.content)) as img:
        assert img.size == (64, 32)


@requires_cairo
def test_oversized_svg_is_rejected(make_client):
    url = "https://media.example/huge.svg"
    svg = b'<svg xmlns="http://www.w3.org/2000/svg" width="100000" height="100000"></svg>'
    client = make_client({url: lambda r: httpx.Response(200, content=svg)})
    r = client.get("/", params={"url": url})
    assert r.status_code == 413
    assert r.json()["error"] == "ResourceExceeded"


@pytest.mark.parametrize(
    "params",
    [
        {},
        {"url": ""},
        {"url": JPEG_URL, "quality": 150},
        {"url": JPEG_URL, "width": "abc"},
        {"url": JPEG_URL, "height": 0},
        {"url": "ftp://media.example/a.jpg"},
    ],
)
def test_invalid_input(make_client, params):
    client = make_client({JPEG_URL: _jpeg})
    r = client.get("/", params=params)
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidInput"
    assert r.headers["cache-control"] == "max-age=300"


def test_cors_allows_get(make_client):
    client = make_client({})
    r = client.get("/health", headers={"Origin": "https://misskey.example"})
    assert r.headers["access-control-allow-origin"] == "*"


def test_timeouts_map_to_gateway_timeout():
    assert error_status(FetchError(FetchErrorKind.TIMEOUT, "timed out")) == 504
    assert error_status(DeadlineExceededError(30)) == 504
    assert error_status(FetchError(FetchErrorKind.TOO_LARGE, "too large")) == 413


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://a.example/x/cat.png", "cat.webp"),
        ("https://a.example/x/na%20me.gif?x=1", "na_me.webp"),
        ("https://a.example/", "image.webp"),
        ('https://a.example/"quoted".svg', "quoted.webp"),
    ],
)
def test_output_filename(url, expected):
    assert output_filename(url) == expected


@requires_cairo
def test_overflowing_svg_size_is_not_a_server_error(make_client):
    url = "https://media.example/odd.svg"
    svg = b'<svg xmlns="http://www.w3.org/2000/svg" width="1e400" height="10" viewBox="0 0 1e400 1"/>'
    client = make_client({url: lambda r: httpx.Response(200, content=svg)})
    r = client.get("/", params={"url": url})
    assert r.status_code == 200
    assert r.headers["content-type"] == "image/webp"


class _ClientStub:
    """Just enough of a Starlette Request for proxy_media."""

    def __init__(self, service: MediaProxyService):
        self.app = SimpleNamespace(state=SimpleNamespace(proxy=service))
        self.gone = asyncio.Event()

    async def is_disconnected(self) -> bool:
        return self.gone.is_set()


def _stalling_service(on_start):
    cancelled = asyncio.Event()

    async def stall(request):
        on_start()
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise
        return httpx.Response(200)

    service = MediaProxyService(ProxySettings(max_workers=1), transport=mock_transport({JPEG_URL: stall}))
    return service, cancelled


async def test_client_disconnect_cancels_pipeline():
    holder = {}
    service, cancelled = _stalling_service(lambda: holder["client"].gone.set())
    holder["client"] = _ClientStub(service)
    try:
        resp = await proxy_media(holder["client"], MediaRequest(url=JPEG_URL))
    finally:
        await service.aclose()
    assert resp.status_code == CLIENT_CLOSED_REQUEST
    assert cancelled.is_set()


async def test_foreign_cancellation_propagates():
    started = asyncio.Event()
    service, cancelled = _stalling_service(started.set)
    client = _ClientStub(service)
    handler = asyncio.ensure_future(proxy_media(client, MediaRequest(url=JPEG_URL)))
    try:
        await asyncio.wait_for(started.wait(), timeout=5)
        handler.cancel()
        with pytest.raises(asyncio.CancelledError):
            await handler
    finally:
        await service.aclose()
    assert cancelled.is_set()


async def test_watcher_returns_when_pipeline_finishes():
    client = _ClientStub(None)
    task = asyncio.ensure_future(asyncio.sleep(0))
    assert await _cancel_on_disconnect(client, task) is False
    assert task.done()


def test_service_lives_only_inside_lifespan(settings):
    app = create_app(settings, transport=mock_transport({}))
    assert not hasattr(app.state, "proxy")
    with TestClient(app) as client:
        service = app.state.proxy
        assert client.get("/health").status_code == 200
    assert service._fetcher._client.is_closed
