# backend/google_client.py

import logging
from typing import Any, Dict, List, Optional

import httpx

from config.settings import PROVIDER_ASPECT_RATIOS, PROVIDER_RESOLUTIONS, settings

from .errors import GenerationError, error_message_from_body
from .model import GenerationRequest, ProviderConfig
from .provider_base import GenerationSink, ImageProvider
from .stream_parser import SSEStreamParser, StreamEvent
from .utils import nearest_aspect_ratio

logger = logging.getLogger(__name__)


def map_image_size(resolution: str) -> str:
    """
    Đổi resolution token sang imageSize của Gemini (1K/2K/4K).
    'WxH' thì lấy theo cạnh dài nhất.
    """
    token = resolution.strip().upper()
    if token in PROVIDER_RESOLUTIONS["google"]:
        return token
    try:
        w, h = (int(v) for v in token.split("X", 1))
    except ValueError:
        return "1K"
    longest = max(w, h)
    if longest <= 1024:
        return "1K"
    if longest <= 2048:
        return "2K"
    return "4K"


def map_aspect_ratio(aspect_ratio: str) -> str:
    supported = PROVIDER_ASPECT_RATIOS["google"]
    if aspect_ratio in supported:
        return aspect_ratio
    try:
        return nearest_aspect_ratio(aspect_ratio, supported)
    except ValueError:
        return "1:1"


def build_request_body(request: GenerationRequest) -> Dict[str, Any]:
    """Body dùng lại được cho mọi lần retry."""
    parts: List[Dict[str, Any]] = [{"text": request.prompt}]
    for image_b64 in request.reference_images:
        parts.append({"inline_data": {"mime_type": "image/png", "data": image_b64}})

    return {
        "contents": [{"parts": parts}],
        "generationConfig": {
            "responseModalities": ["TEXT", "IMAGE"],
            "imageConfig": {
                "aspectRatio": map_aspect_ratio(request.aspect_ratio),
                "imageSize": map_image_size(request.resolution),
            },
        },
    }


class GoogleStreamingClient(ImageProvider):
    """
    Gemini streamGenerateContent (SSE).
    Thought parts -> on_thought / on_interim_image, ảnh không phải thought -> ảnh cuối.
    """

    provider = "google"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.endpoint = (endpoint or settings.GOOGLE_ENDPOINT).rstrip("/")
        self.timeout = timeout or settings.STREAM_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        timeout = httpx.Timeout(self.timeout, connect=30.0)
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def _generate(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        sink: GenerationSink,
    ) -> None:
        url = f"{self.endpoint}/{config.model}:streamGenerateContent"
        params = {"alt": "sse", "key": config.api_key}
        body = build_request_body(request)

        logger.info("[Google] API request started, model=%s, references=%d", config.model, len(request.reference_images))
        sink.on_progress(5, "Connecting to API...")

        parser = SSEStreamParser()

        async with self._client() as client:
            async with client.stream("POST", url, params=params, json=body) as r:
                if r.status_code != 200:
                    await r.aread()
                    try:
                        error_data = r.json()
                    except ValueError:
                        error_data = {}
                    message = error_message_from_body(error_data, r.status_code)
                    logger.error("[Google] API error: %s status=%s", message, r.status_code)
                    raise GenerationError("http", message, status_code=r.status_code)

                sink.on_accepted()
                logger.info("[Google] SSE stream connected")
                sink.on_progress(10, "Stream connected")

                async for chunk in r.aiter_bytes():
                    events = parser.feed(chunk)
                    logger.debug(
                        "[Google] Chunk %d received, size=%d, events=%d",
                        parser.chunk_count,
                        len(chunk),
                        len(events),
                    )
                    self._dispatch(events, sink)

                self._dispatch(parser.close(), sink)

        if not parser.has_final_image:
            logger.error(
                "[Google] Stream ended without a final image (chunks=%d, thoughts=%d, interim=%d, dropped=%d)",
                parser.chunk_count,
                parser.thought_count,
                parser.interim_count,
                parser.dropped_records,
            )
            raise GenerationError("no-artifact", "No image was generated")

        logger.info("[Google] Stream complete, total chunks=%d", parser.chunk_count)
        sink.on_progress(100, "Done!")

    @staticmethod
    def _dispatch(events: List[StreamEvent], sink: GenerationSink) -> None:
        for event in events:
            sink.on_progress(event.progress, event.message)
            if event.kind == "thought":
                sink.on_thought(event.data)
            elif event.kind == "interim_image":
                sink.on_interim_image(event.data)
            else:
                sink.on_final_images([event.data])
