"""Shared fixtures: in-memory async Redis double, scripted providers, instant sleep."""

from __future__ import annotations

import asyncio
import base64
import inspect
from io import BytesIO
from typing import Any, Callable, Dict, List

import pytest
from PIL import Image

from backend.blob_store import RedisBlobStore
from backend.model import GenerationRequest, ProviderConfig
from backend.provider_base import ImageProvider
from backend.queue_store import RedisQueueStore
from backend.retry_policy import RetryPolicy


class FakeRedis:
    """Subset of redis.asyncio.Redis (decode_responses=True) kept in dicts."""

    def __init__(self) -> None:
        self.strings: Dict[str, str] = {}
        self.hashes: Dict[str, Dict[str, str]] = {}
        self.lists: Dict[str, List[str]] = {}

    async def set(self, key: str, value: str) -> bool:
        self.strings[key] = value
        return True

    async def get(self, key: str):
        return self.strings.get(key)

    async def exists(self, *keys: str) -> int:
        return sum(1 for k in keys if k in self.strings or k in self.hashes or k in self.lists)

    async def delete(self, *keys: str) -> int:
        removed = 0
        for k in keys:
            for store in (self.strings, self.hashes, self.lists):
                if k in store:
                    del store[k]
                    removed += 1
        return removed

    async def hset(self, key: str, mapping: Dict[str, str]) -> int:
        bucket = self.hashes.setdefault(key, {})
        added = sum(1 for f in mapping if f not in bucket)
        bucket.update(mapping)
        return added

    async def hgetall(self, key: str) -> Dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def rpush(self, key: str, *values: str) -> int:
        self.lists.setdefault(key, []).extend(values)
        return len(self.lists[key])

    async def lrange(self, key: str, start: int, end: int) -> List[str]:
        values = self.lists.get(key, [])
        return list(values[start:] if end == -1 else values[start : end + 1])

    async def lrem(self, key: str, count: int, value: str) -> int:
        values = self.lists.get(key, [])
        kept = [v for v in values if v != value]
        self.lists[key] = kept
        return len(values) - len(kept)


class ScriptedProvider(ImageProvider):
    """Adapter whose attempts follow a script.

    Each outcome is one of:
        - list of images: accepted + final images
        - GenerationError / Exception: raised from the attempt
        - callable(sink): free-form behaviour (may be async)
    The last outcome repeats once the script runs out.
    """

    provider = "google"

    def __init__(self, outcomes: List[Any]) -> None:
        self.outcomes = list(outcomes)
        self.calls = 0
        self.requests: List[GenerationRequest] = []
        self.active = 0
        self.max_active = 0

    async def _generate(self, config, request, sink) -> None:
        self.calls += 1
        self.requests.append(request)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            outcome = self.outcomes[min(self.calls - 1, len(self.outcomes) - 1)]
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                result = outcome(sink)
                if inspect.isawaitable(result):
                    await result
                return
            sink.on_accepted()
            sink.on_final_images(list(outcome))
        finally:
            self.active -= 1


class RecordingSink:
    """Ghi lại mọi callback theo thứ tự để test adapter."""

    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.accepted = False
        self.error = None
        self.final_images: List[str] = []
        self.settled = 0

    def kinds(self) -> List[str]:
        return [e[0] for e in self.events]

    def on_thought(self, text: str) -> None:
        self.events.append(("thought", text))

    def on_interim_image(self, image: str) -> None:
        self.events.append(("interim", image))

    def on_final_images(self, images: List[str]) -> None:
        self.final_images.extend(images)
        self.events.append(("final", list(images)))

    def on_progress(self, progress: float, message: str) -> None:
        self.events.append(("progress", progress, message))

    def on_accepted(self) -> None:
        self.accepted = True
        self.events.append(("accepted",))

    def on_error(self, error) -> None:
        self.error = error
        self.events.append(("error", error.kind))

    def on_settled(self) -> None:
        self.settled += 1
        self.events.append(("settled",))


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def blob_store(fake_redis) -> RedisBlobStore:
    return RedisBlobStore(fake_redis)


@pytest.fixture
def queue_store(fake_redis) -> RedisQueueStore:
    return RedisQueueStore(fake_redis)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def fast_policy() -> Callable[[str], RetryPolicy]:
    policy = RetryPolicy(name="bounded", interval_s=10.0, max_interval_s=10.0, max_attempts=3)
    return lambda provider: policy


@pytest.fixture
def google_config() -> ProviderConfig:
    return ProviderConfig(provider="google", model="gemini-3-pro-image-preview", api_key="test-key")


@pytest.fixture
def simple_request() -> GenerationRequest:
    return GenerationRequest(prompt="a realistic photo of a cat", resolution="2K", aspect_ratio="16:9")


def make_png(width: int = 8, height: int = 6, fmt: str = "PNG") -> bytes:
    buf = BytesIO()
    Image.new("RGB", (width, height), (200, 30, 30)).save(buf, fmt)
    return buf.getvalue()


@pytest.fixture
def png_b64() -> str:
    return base64.b64encode(make_png()).decode("ascii")
