import os
from pathlib import Path
from typing import Dict, Tuple

from dotenv import load_dotenv

# Load .env next to this module
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


class Settings:
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")

    GOOGLE_ENDPOINT: str = os.getenv(
        "GOOGLE_ENDPOINT", "https://generativelanguage.googleapis.com/v1beta/models"
    )
    OPENAI_GENERATIONS_ENDPOINT: str = os.getenv(
        "OPENAI_GENERATIONS_ENDPOINT", "https://api.openai.com/v1/images/generations"
    )
    OPENAI_EDITS_ENDPOINT: str = os.getenv(
        "OPENAI_EDITS_ENDPOINT", "https://api.openai.com/v1/images/edits"
    )
    BYTEPLUS_ENDPOINT: str = os.getenv(
        "BYTEPLUS_ENDPOINT",
        "https://ark.ap-southeast.bytepluses.com/api/v3/images/generations",
    )

    REQUEST_TIMEOUT: float = _env_float("REQUEST_TIMEOUT", 300.0)
    STREAM_TIMEOUT: float = _env_float("STREAM_TIMEOUT", 600.0)

    # Conservative policy (google): patient retries across hours
    CONSERVATIVE_INTERVAL: float = _env_float("CONSERVATIVE_INTERVAL", 60.0)
    CONSERVATIVE_BACKOFF_THRESHOLD: int = _env_int("CONSERVATIVE_BACKOFF_THRESHOLD", 10)
    CONSERVATIVE_BACKOFF_MULTIPLIER: float = _env_float("CONSERVATIVE_BACKOFF_MULTIPLIER", 1.5)
    CONSERVATIVE_MAX_INTERVAL: float = _env_float("CONSERVATIVE_MAX_INTERVAL", 24 * 60 * 60.0)
    CONSERVATIVE_MAX_ATTEMPTS: int = _env_int("CONSERVATIVE_MAX_ATTEMPTS", 100)

    # Bounded policy (openai, byteplus): fail fast
    BOUNDED_INTERVAL: float = _env_float("BOUNDED_INTERVAL", 10.0)
    BOUNDED_MAX_ATTEMPTS: int = _env_int("BOUNDED_MAX_ATTEMPTS", 5)

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR: Path = Path(os.getenv("LOG_DIR", "logs"))

    POLL_INTERVAL: float = 0.5  # giây, elapsed-time ticker


settings = Settings()


PROVIDERS: Tuple[str, ...] = ("google", "openai", "byteplus")

PROVIDER_LABELS: Dict[str, str] = {
    "google": "Google Nano Banana",
    "openai": "OpenAI Images",
    "byteplus": "BytePlus Seedream",
}

PROVIDER_MODELS: Dict[str, Tuple[str, ...]] = {
    "google": ("gemini-3-pro-image-preview", "gemini-2.5-flash-image"),
    "openai": ("gpt-image-1.5", "gpt-image-1", "dall-e-3"),
    "byteplus": ("seedream-4-5-251128", "seedream-4-0"),
}

PROVIDER_DEFAULT_MODEL: Dict[str, str] = {
    "google": "gemini-3-pro-image-preview",
    "openai": "gpt-image-1.5",
    "byteplus": "seedream-4-5-251128",
}

PROVIDER_RESOLUTIONS: Dict[str, Tuple[str, ...]] = {
    "google": ("1K", "2K", "4K"),
    "openai": ("1024x1024", "1536x1024", "1024x1536"),
    "byteplus": ("2K", "4K"),
}

PROVIDER_ASPECT_RATIOS: Dict[str, Tuple[str, ...]] = {
    "google": ("16:9", "9:16", "1:1", "4:3", "3:4", "21:9", "3:2", "2:3", "5:4", "4:5"),
    "openai": ("1:1", "3:2", "2:3"),
    "byteplus": ("1:1", "3:2", "4:3", "16:9", "21:9"),
}

MAX_REFERENCE_IMAGES: Dict[str, int] = {
    "google": 4,
    "openai": 4,
    "byteplus": 14,
}

# Longest edge accepted for a reference image before it is downscaled
MAX_IMAGE_DIMENSION: int = 4096
