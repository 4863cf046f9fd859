"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from media_proxy import __version__
from media_proxy.api.routes import proxy_error_handler, router, validation_error_handler
from media_proxy.config import ProxySettings, load_settings, logger as config_logger
from media_proxy.conversion.service import MediaProxyService
from media_proxy.errors import ProxyError

logging.getLogger("uvicorn").setLevel(logging.INFO)


def create_app(
    settings: Optional[ProxySettings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """Build the app around an immutable settings value. `transport` replaces the network in tests."""
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # HTTP client and worker pool live exactly as long as the server
        service = MediaProxyService(settings, transport=transport)
        app.state.proxy = service
        config_logger.info(
            "Media proxy started (quality=%s, max_bytes=%s, ceiling=%s)",
            settings.default_quality, settings.fetch_max_bytes, settings.pixel_ceiling,
        )
        yield
        await service.aclose()
        config_logger.info("Media proxy shutting down")

    app = FastAPI(
        title="Misskey WebP Media Proxy",
        description="Fetch remote media and re-encode it as WebP.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins) if settings.cors_origins else ["*"],
        allow_methods=["GET"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ProxyError, proxy_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = app.state.settings
    uvicorn.run("media_proxy.main:app", host=settings.host, port=settings.port)
