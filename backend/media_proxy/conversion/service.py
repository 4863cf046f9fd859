"""Per-request transcoding pipeline: fetch, classify, decode, transform, encode."""
import asyncio
import functools
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, TypeVar

import httpx

from media_proxy.config import ProxySettings
from media_proxy.conversion.classify import classify
from media_proxy.conversion.decode import decode_raster
from media_proxy.conversion.encode import encode_webp
from media_proxy.conversion.fetch import ResourceFetcher
from media_proxy.conversion.models import (
    Classification,
    DecodedImage,
    EncodedOutput,
    FetchedResource,
    MediaKind,
    MediaRequest,
    PipelineStage,
)
from media_proxy.conversion.resize import apply_transform
from media_proxy.conversion.vector import render_vector
from media_proxy.errors import DeadlineExceededError, ProxyError, UnsupportedMediaError

logger = logging.getLogger("media_proxy.service")

T = TypeVar("T")


class PipelineRun:
    """Tracks which stage one request is in, for logging and failure reporting."""

    def __init__(self, request: MediaRequest):
        self.request = request
        self.stage = PipelineStage.RECEIVED
        self.failed_stage: Optional[PipelineStage] = None
        self.started = time.monotonic()

    def advance(self, stage: PipelineStage) -> None:
        self.stage = stage

    def fail(self) -> None:
        self.failed_stage = self.stage
        self.stage = PipelineStage.FAILED

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


class MediaProxyService:
    """Runs the pipeline; CPU-bound stages go to a bounded worker pool."""

    def __init__(self, settings: ProxySettings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self._fetcher = ResourceFetcher(settings, transport=transport)
        self._executor = ThreadPoolExecutor(max_workers=settings.max_workers, thread_name_prefix="media-proxy")
        logger.info("MediaProxyService initialized with max_workers=%s", settings.max_workers)

    async def _offload(self, fn: Callable[..., T], *args) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def process(self, request: MediaRequest) -> EncodedOutput:
        """Run all stages for one request. Raises ProxyError on any failure."""
        run = PipelineRun(request)
        try:
            output = await asyncio.wait_for(self._run(run), timeout=self.settings.request_timeout)
        except asyncio.TimeoutError:
            run.fail()
            logger.warning("Deadline exceeded in %s for %s", run.failed_stage.value, request.url)
            raise DeadlineExceededError(self.settings.request_timeout)
        except ProxyError as e:
            run.fail()
            logger.info("Request failed in %s for %s: %r", run.failed_stage.value, request.url, e)
            raise
        logger.info(
            "Converted %s -> %s bytes webp in %.3fs",
            request.url, output.content_length, run.elapsed,
        )
        return output

    async def _run(self, run: PipelineRun) -> EncodedOutput:
        settings = self.settings
        request = run.request

        run.advance(PipelineStage.FETCHING)
        resource = await self._fetcher.fetch(request.url)

        run.advance(PipelineStage.CLASSIFYING)
        classification = await self._offload(classify, resource.data, resource.content_type)

        run.advance(PipelineStage.DECODING)
        image = await self._decode(resource, classification, request)
        del resource

        run.advance(PipelineStage.TRANSFORMING)
        image = await self._offload(apply_transform, image, request, settings.pixel_ceiling)

        run.advance(PipelineStage.ENCODING)
        quality = request.effective_quality(settings.default_quality)
        output = await self._offload(encode_webp, image, quality, settings.webp_method)

        run.advance(PipelineStage.RESPONDING)
        return output

    async def _decode(
        self,
        resource: FetchedResource,
        classification: Classification,
        request: MediaRequest,
    ) -> DecodedImage:
        ceiling = self.settings.pixel_ceiling
        if classification.kind is MediaKind.RASTER:
            return await self._offload(decode_raster, resource.data, classification.raster_format, ceiling)
        if classification.kind is MediaKind.VECTOR:
            return await self._offload(
                render_vector,
                resource.data,
                request.width,
                request.height,
                ceiling,
                self.settings.svg_fallback_size,
            )
        raise UnsupportedMediaError()

    async def aclose(self) -> None:
        await self._fetcher.aclose()
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("MediaProxyService shut down")
