# backend/byteplus_client.py

import logging
from typing import Any, Callable, Dict, List, Optional

import aiohttp

from config.settings import settings

from .errors import GenerationError, error_message_from_body
from .model import GenerationRequest, ProviderConfig
from .provider_base import GenerationSink, ImageProvider
from .utils import encode_image

logger = logging.getLogger(__name__)


def map_size(resolution: str) -> str:
    # Seedream: 2K (2048x2048) hoặc 4K (4096x4096)
    if resolution in ("4K", "4096x4096"):
        return "4096x4096"
    return "2048x2048"


def build_request_body(config: ProviderConfig, request: GenerationRequest) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "model": config.model,
        "prompt": request.prompt,
        "size": map_size(request.resolution),
        "response_format": "url",
    }
    if request.reference_images:
        body["image"] = [{"type": "base64", "data": img} for img in request.reference_images]
    return body


class BytePlusImageClient(ImageProvider):
    """
    BytePlus Seedream: một request JSON, một response JSON.
    Kết quả có thể là b64_json hoặc url -> url thì tải về rồi đổi sang base64.
    """

    provider = "byteplus"

    def __init__(
        self,
        endpoint: Optional[str] = None,
        request_timeout: Optional[float] = None,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self.endpoint = endpoint or settings.BYTEPLUS_ENDPOINT
        self.request_timeout = request_timeout or settings.REQUEST_TIMEOUT
        self._session_factory = session_factory or self._default_session

    def _default_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        return aiohttp.ClientSession(timeout=timeout)

    async def _generate(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        sink: GenerationSink,
    ) -> None:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.api_key}",
        }
        body = build_request_body(config, request)

        logger.info(
            "[BytePlus] API request started, model=%s, size=%s, references=%d",
            config.model,
            body["size"],
            len(request.reference_images),
        )
        sink.on_progress(10, "Request sent...")

        async with self._session_factory() as session:
            async with session.post(self.endpoint, headers=headers, json=body) as resp:
                if resp.status != 200:
                    body_text = await resp.text()
                    logger.error("[BytePlus] HTTP %s from %s: %s", resp.status, self.endpoint, body_text[:300])
                    try:
                        error_data = await resp.json(content_type=None)
                    except ValueError:
                        error_data = {}
                    message = error_message_from_body(error_data, resp.status)
                    raise GenerationError("http", message, status_code=resp.status)

                sink.on_accepted()
                try:
                    data = await resp.json(content_type=None)
                except ValueError as exc:
                    raise GenerationError("malformed-response", f"Malformed response body: {exc}") from exc

            sink.on_progress(80, "Receiving image...")
            images = await self._collect_images(session, data)

        if not images:
            logger.error("[BytePlus] No image was generated")
            raise GenerationError("no-artifact", "No image was generated")

        logger.info("[BytePlus] %d image(s) received", len(images))
        sink.on_final_images(images)
        sink.on_progress(100, "Done!")

    async def _collect_images(self, session: aiohttp.ClientSession, data: Any) -> List[str]:
        if not isinstance(data, dict):
            raise GenerationError("malformed-response", f"Response body is not a JSON object: {type(data).__name__}")
        entries = data.get("data")
        if entries is not None and not isinstance(entries, list):
            raise GenerationError("malformed-response", "Response field 'data' is not a list")

        images: List[str] = []
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            if entry.get("b64_json"):
                images.append(entry["b64_json"])
            elif entry.get("url"):
                images.append(await self._download_as_base64(session, entry["url"]))
        return images

    async def _download_as_base64(self, session: aiohttp.ClientSession, url: str) -> str:
        logger.info("[BytePlus] Downloading image from: %s", url[:120])
        async with session.get(url) as resp:
            if resp.status != 200:
                raise GenerationError("http", f"Failed to download image: {resp.status}", status_code=resp.status)
            raw = await resp.read()
        return encode_image(raw)
