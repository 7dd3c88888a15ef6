# backend/retry_policy.py
#
# Phân loại lỗi + tính thời gian chờ giữa các lần retry.
# Không đọc đồng hồ, không sleep: worker giữ RetryState và tự chờ.

import asyncio
from dataclasses import dataclass
from typing import NamedTuple, Optional

import aiohttp
import httpx
from pydantic import BaseModel, Field

from config.settings import settings

from .errors import GenerationError
from .model import Provider


class Classification(NamedTuple):
    retryable: bool
    tag: str


_RETRYABLE_KINDS = {
    "network": "network",
    "timeout": "timeout",
    "stream-aborted": "stream-aborted",
    "no-artifact": "no-artifact",
}


def classify(error: BaseException | None, status_code: Optional[int] = None) -> Classification:
    """Decide whether an attempt failure is worth retrying.

    Retryable: HTTP >= 500, HTTP 429, network-layer failures, stream aborts
    and timeouts, and a connection that produced zero artifacts. Anything
    else (other 4xx, malformed bodies, missing credentials) is fatal.

    Args:
        error: Exception raised or reported by the adapter (may be None when
            only a status code is known).
        status_code: HTTP status of the response, if one was received.

    Returns:
        Classification with a stable tag used to count same-kind failures.
    """
    if status_code is None and isinstance(error, GenerationError):
        status_code = error.status_code

    if status_code is not None and (status_code >= 500 or status_code == 429):
        return Classification(True, f"http_{status_code}")

    if isinstance(error, GenerationError):
        if error.kind in _RETRYABLE_KINDS:
            return Classification(True, _RETRYABLE_KINDS[error.kind])
        if error.kind == "http" and status_code is not None:
            return Classification(False, f"http_{status_code}")
        return Classification(False, error.kind)

    if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return Classification(True, "timeout")
    if isinstance(error, (httpx.TransportError, aiohttp.ClientConnectionError, aiohttp.ClientPayloadError)):
        return Classification(True, "network")
    if isinstance(error, ConnectionError):
        return Classification(True, "network")

    if status_code is not None:
        return Classification(False, f"http_{status_code}")
    return Classification(False, "fatal")


class RetryPolicy(BaseModel):
    """Backoff configuration for one provider class.

    Fixed `interval_s` until `backoff_threshold` consecutive same-tag
    failures, then `interval_s * multiplier ** (n - threshold)` capped at
    `max_interval_s`. `max_attempts` counts network attempts, the first one
    included.
    """

    model_config = {"frozen": True}

    name: str
    interval_s: float = Field(ge=0.0)
    backoff_threshold: int = Field(default=0, ge=0)
    backoff_multiplier: float = Field(default=1.0, ge=1.0)
    max_interval_s: float = Field(ge=0.0)
    max_attempts: int = Field(ge=1)

    def next_interval(self, consecutive_same_tag_failures: int) -> float:
        if self.backoff_multiplier <= 1.0 or consecutive_same_tag_failures <= self.backoff_threshold:
            return min(self.interval_s, self.max_interval_s)
        over = consecutive_same_tag_failures - self.backoff_threshold
        return min(self.interval_s * self.backoff_multiplier**over, self.max_interval_s)

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


CONSERVATIVE = RetryPolicy(
    name="conservative",
    interval_s=settings.CONSERVATIVE_INTERVAL,
    backoff_threshold=settings.CONSERVATIVE_BACKOFF_THRESHOLD,
    backoff_multiplier=settings.CONSERVATIVE_BACKOFF_MULTIPLIER,
    max_interval_s=settings.CONSERVATIVE_MAX_INTERVAL,
    max_attempts=settings.CONSERVATIVE_MAX_ATTEMPTS,
)

BOUNDED = RetryPolicy(
    name="bounded",
    interval_s=settings.BOUNDED_INTERVAL,
    max_interval_s=settings.BOUNDED_INTERVAL,
    max_attempts=settings.BOUNDED_MAX_ATTEMPTS,
)


def policy_for(provider: Provider) -> RetryPolicy:
    if provider == "google":
        return CONSERVATIVE
    return BOUNDED


@dataclass
class RetryState:
    """Counters for one item's processing lifetime. Never persisted."""

    attempt: int = 0
    last_tag: str = ""
    consecutive: int = 0

    def record_failure(self, tag: str) -> int:
        if tag == self.last_tag:
            self.consecutive += 1
        else:
            self.last_tag = tag
            self.consecutive = 1
        return self.consecutive

    def record_accepted(self) -> None:
        """The back end accepted the request; later failures start a fresh run."""
        self.last_tag = ""
        self.consecutive = 0
