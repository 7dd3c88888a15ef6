# backend/openai_client.py
#
# OpenAI Images:
#   - không có ảnh tham chiếu -> JSON tới /images/generations
#   - có ảnh tham chiếu -> multipart (mỗi ảnh một file `image[]`) tới /images/edits
# Size chỉ có 1024x1024, 1536x1024, 1024x1536; chọn theo tỉ lệ gần nhất.
# Progress chỉ có 2 mốc: lúc gửi request và lúc nhận response.

import logging
import math
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config.settings import PROVIDER_RESOLUTIONS, settings

from .errors import GenerationError, error_message_from_body
from .model import GenerationRequest, ProviderConfig
from .provider_base import GenerationSink, ImageProvider
from .utils import decode_image, encode_image, image_mime_type, parse_aspect_ratio

logger = logging.getLogger(__name__)

SUPPORTED_SIZES: Tuple[str, ...] = PROVIDER_RESOLUTIONS["openai"]


def map_size(resolution: str, aspect_ratio: str) -> str:
    """
    Size token khớp chính xác thì giữ nguyên, không thì chọn size có tỉ lệ
    gần với aspect_ratio nhất. Không parse được thì về hình vuông.
    """
    if resolution in SUPPORTED_SIZES:
        return resolution
    try:
        wanted = math.log(parse_aspect_ratio(aspect_ratio))
    except ValueError:
        return "1024x1024"
    return min(SUPPORTED_SIZES, key=lambda s: abs(math.log(parse_aspect_ratio(s)) - wanted))


def _wants_response_format(model: str) -> bool:
    # gpt-image-* luôn trả b64_json và từ chối tham số response_format
    return model.startswith("dall-e")


class OpenAIImageClient(ImageProvider):
    provider = "openai"

    def __init__(
        self,
        generations_endpoint: Optional[str] = None,
        edits_endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.generations_endpoint = generations_endpoint or settings.OPENAI_GENERATIONS_ENDPOINT
        self.edits_endpoint = edits_endpoint or settings.OPENAI_EDITS_ENDPOINT
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _build_json_body(self, config: ProviderConfig, request: GenerationRequest, size: str) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": config.model,
            "prompt": request.prompt,
            "n": 1,
            "size": size,
        }
        if _wants_response_format(config.model):
            body["response_format"] = "b64_json"
        else:
            body["output_format"] = "png"
        return body

    def _build_multipart(
        self, config: ProviderConfig, request: GenerationRequest, size: str
    ) -> Tuple[Dict[str, str], List[Tuple[str, Tuple[str, bytes, str]]]]:
        data = {
            "model": config.model,
            "prompt": request.prompt,
            "n": "1",
            "size": size,
        }
        files = []
        for idx, image_b64 in enumerate(request.reference_images):
            raw = decode_image(image_b64)
            mime = image_mime_type(raw)
            ext = mime.split("/")[-1]
            files.append(("image[]", (f"reference_{idx}.{ext}", raw, mime)))
        return data, files

    async def _generate(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        sink: GenerationSink,
    ) -> None:
        size = map_size(request.resolution, request.aspect_ratio)
        headers = {"Authorization": f"Bearer {config.api_key}"}
        is_edit = bool(request.reference_images)

        logger.info(
            "[OpenAI] API request started, model=%s, size=%s, mode=%s",
            config.model,
            size,
            "edit" if is_edit else "generate",
        )

        async with self._client() as client:
            sink.on_progress(10, "Request sent...")
            if is_edit:
                data, files = self._build_multipart(config, request, size)
                r = await client.post(self.edits_endpoint, headers=headers, data=data, files=files)
            else:
                body = self._build_json_body(config, request, size)
                r = await client.post(self.generations_endpoint, headers=headers, json=body)

            if r.status_code != 200:
                try:
                    error_data = r.json()
                except ValueError:
                    error_data = {}
                message = error_message_from_body(error_data, r.status_code)
                logger.error("[OpenAI] API error: %s status=%s", message, r.status_code)
                raise GenerationError("http", message, status_code=r.status_code)

            sink.on_accepted()
            logger.info("[OpenAI] Response received")
            sink.on_progress(80, "Receiving image...")

            try:
                payload = r.json()
            except ValueError as exc:
                raise GenerationError("malformed-response", f"Malformed response body: {exc}") from exc

            images = await self._collect_images(client, payload)

        if not images:
            logger.error("[OpenAI] No image was generated")
            raise GenerationError("no-artifact", "No image was generated")

        logger.info("[OpenAI] %d image(s) processed successfully", len(images))
        sink.on_final_images(images)
        sink.on_progress(100, "Done!")

    async def _collect_images(self, client: httpx.AsyncClient, payload: Any) -> List[str]:
        if not isinstance(payload, dict):
            raise GenerationError("malformed-response", f"Response body is not a JSON object: {type(payload).__name__}")
        entries = payload.get("data")
        if entries is not None and not isinstance(entries, list):
            raise GenerationError("malformed-response", "Response field 'data' is not a list")

        images: List[str] = []
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            if entry.get("b64_json"):
                images.append(entry["b64_json"])
            elif entry.get("url"):
                logger.info("[OpenAI] Converting URL result to base64")
                images.append(await fetch_as_base64(client, entry["url"]))
        return images


async def fetch_as_base64(client: httpx.AsyncClient, url: str) -> str:
    r = await client.get(url)
    if r.status_code != 200:
        raise GenerationError("http", f"Failed to download image: {r.status_code}", status_code=r.status_code)
    return encode_image(r.content)
