# tests/conftest.py
from __future__ import annotations

import asyncio
import dataclasses
import io
import sys
from pathlib import Path
from typing import Callable

import httpx
import pytest
from PIL import Image
from starlette.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from media_proxy.config import ProxySettings  # noqa: E402
from media_proxy.main import create_app  # noqa: E402


def _cairo_available() -> bool:
    try:
        import cairosvg  # noqa: F401
    except (ImportError, OSError):
        return False
    return True


requires_cairo = pytest.mark.skipif(not _cairo_available(), reason="cairosvg/libcairo not installed")


def make_image_bytes(fmt: str, size: tuple[int, int] = (64, 48), mode: str = "RGB") -> bytes:
    """A deterministic textured image, so lossy encoders have something to work on."""
    w, h = size
    img = Image.new(mode, size)
    img.putdata(
        [
            ((x * 7 + y * 3) % 256, (x * y) % 256, (x ^ y) % 256) + ((255,) if mode == "RGBA" else ())
            for y in range(h)
            for x in range(w)
        ]
    )
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


Routes = dict[str, Callable[[httpx.Request], httpx.Response]]


def mock_transport(routes: Routes) -> httpx.MockTransport:
    """Serve canned responses by full URL; unknown hosts fail like a DNS error."""

    def handler(request: httpx.Request) -> httpx.Response:
        fn = routes.get(str(request.url))
        if fn is None:
            raise httpx.ConnectError("Name or service not known", request=request)
        return fn(request)

    return httpx.MockTransport(handler)


@pytest.fixture()
def settings() -> ProxySettings:
    return ProxySettings(max_workers=2, fetch_max_bytes=1024 * 1024, request_timeout=10.0)


@pytest.fixture()
def make_client(settings):
    clients: list[TestClient] = []

    def _make(routes: Routes, **overrides) -> TestClient:
        cfg = dataclasses.replace(settings, **overrides)
        client = TestClient(create_app(cfg, transport=mock_transport(routes)))
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for c in clients:
        c.__exit__(None, None, None)


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Minimal asyncio support without requiring pytest-asyncio."""

    test_func = pyfuncitem.obj
    if asyncio.iscoroutinefunction(test_func):
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            call_kwargs = {
                name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
            }
            loop.run_until_complete(test_func(**call_kwargs))
        finally:
            asyncio.set_event_loop(None)
            loop.close()
        return True
    return None
