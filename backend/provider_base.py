# backend/provider_base.py

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import List, Protocol

import aiohttp
import httpx

from .errors import GenerationError
from .model import GenerationRequest, Provider, ProviderConfig

logger = logging.getLogger(__name__)


class GenerationSink(Protocol):
    """Callbacks nhận kết quả của MỘT lần gọi provider, theo đúng thứ tự stream."""

    def on_thought(self, text: str) -> None: ...

    def on_interim_image(self, image: str) -> None: ...

    def on_final_images(self, images: List[str]) -> None: ...

    def on_progress(self, progress: float, message: str) -> None: ...

    def on_accepted(self) -> None: ...

    def on_error(self, error: GenerationError) -> None: ...

    def on_settled(self) -> None: ...


def error_from_exception(exc: BaseException, accepted: bool = False) -> GenerationError:
    """Map transport-level exceptions of httpx/aiohttp to a GenerationError."""
    if isinstance(exc, GenerationError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return GenerationError("timeout", f"Request timed out: {exc!r}")
    if isinstance(exc, (httpx.TransportError, aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        # server đã nhận request nhưng stream bị đứt giữa chừng
        kind = "stream-aborted" if accepted else "network"
        return GenerationError(kind, f"Network error: {exc!r}")
    if isinstance(exc, (json.JSONDecodeError, aiohttp.ContentTypeError)):
        return GenerationError("malformed-response", f"Malformed response body: {exc}")
    return GenerationError("invalid-request", str(exc) or repr(exc))


class ImageProvider(ABC):
    """
    Một adapter = một giao thức của back end.
    generate() thực hiện đúng MỘT lần gọi mạng, không tự retry.
    """

    provider: Provider

    async def generate(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        sink: GenerationSink,
    ) -> None:
        try:
            if not config.api_key.strip():
                sink.on_error(GenerationError("missing-credential", f"No API key configured for {config.provider}"))
                return
            await self._generate(config, request, sink)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[%s] Attempt failed: %r", self.provider, exc)
            sink.on_error(error_from_exception(exc, accepted=getattr(sink, "accepted", False)))
        finally:
            sink.on_settled()

    @abstractmethod
    async def _generate(
        self,
        config: ProviderConfig,
        request: GenerationRequest,
        sink: GenerationSink,
    ) -> None:
        """Gửi request, đẩy event vào sink; lỗi thì raise GenerationError."""


def resolve_adapter(provider: Provider) -> ImageProvider:
    """Closed provider set: every tag maps to exactly one adapter class."""
    from .byteplus_client import BytePlusImageClient
    from .google_client import GoogleStreamingClient
    from .openai_client import OpenAIImageClient

    if provider == "google":
        return GoogleStreamingClient()
    if provider == "openai":
        return OpenAIImageClient()
    if provider == "byteplus":
        return BytePlusImageClient()
    raise ValueError(f"Unknown provider: {provider}")
