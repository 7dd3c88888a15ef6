import base64
import binascii
import math
import time
import uuid
from io import BytesIO
from typing import Iterable

from PIL import Image, UnidentifiedImageError

from config.settings import MAX_IMAGE_DIMENSION


def gen_job_id() -> str:
    return str(uuid.uuid4())


def get_timestamp_ms() -> int:
    return int(time.time() * 1000)


def format_duration(seconds: float) -> str:
    """Text ngắn cho status message khi chờ retry: 45s, 3 min, 1.5 h."""
    if seconds < 60:
        return f"{round(seconds)}s"
    if seconds < 60 * 60:
        return f"{round(seconds / 60)} min"
    return f"{seconds / 3600:.1f} h"


def format_elapsed(ms: int | None) -> str:
    """
    - dưới 60s: "45.3s"
    - dưới 1h: "5m 30s"
    - từ 1h: "1h 23m"
    """
    if not ms:
        return "0.0s"
    total = ms / 1000
    if total < 60:
        return f"{total:.1f}s"
    hours = int(total // 3600)
    minutes = int((total % 3600) // 60)
    secs = int(total % 60)
    if hours >= 1:
        return f"{hours}h {minutes}m"
    return f"{minutes}m {secs}s"


def parse_aspect_ratio(value: str) -> float:
    """'16:9' -> 1.777..., 'WxH' cũng được chấp nhận."""
    sep = ":" if ":" in value else "x"
    try:
        w, h = (float(part) for part in value.lower().split(sep, 1))
    except ValueError as exc:
        raise ValueError(f"Invalid aspect ratio: {value!r}") from exc
    if w <= 0 or h <= 0:
        raise ValueError(f"Invalid aspect ratio: {value!r}")
    return w / h


def nearest_aspect_ratio(target: str, choices: Iterable[str]) -> str:
    """Chọn tỉ lệ gần nhất (so sánh trên thang log để 2:1 và 1:2 đối xứng)."""
    wanted = math.log(parse_aspect_ratio(target))
    return min(choices, key=lambda c: abs(math.log(parse_aspect_ratio(c)) - wanted))


def strip_data_url(text: str) -> str:
    """'data:image/png;base64,AAAA' -> 'AAAA'; base64 thuần thì giữ nguyên."""
    if text.startswith("data:") and "," in text:
        return text.split(",", 1)[1]
    return text


def to_data_url(b64: str, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{b64}"


def decode_image(b64: str) -> bytes:
    try:
        return base64.b64decode(strip_data_url(b64), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Reference image is not valid base64") from exc


def encode_image(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def image_mime_type(raw: bytes) -> str:
    """Đoán MIME type từ header ảnh, mặc định image/png."""
    try:
        with Image.open(BytesIO(raw)) as img:
            fmt = (img.format or "PNG").lower()
    except (UnidentifiedImageError, OSError):
        return "image/png"
    return "image/jpeg" if fmt == "jpeg" else f"image/{fmt}"


def normalize_reference_image(b64: str) -> str:
    """
    Chuẩn hoá ảnh tham chiếu trước khi đưa vào queue:
    - cạnh dài nhất > MAX_IMAGE_DIMENSION thì thu nhỏ, giữ tỉ lệ
    - luôn encode lại thành PNG (provider chờ image/png)
    """
    raw = decode_image(b64)
    try:
        img = Image.open(BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError("Reference image could not be decoded") from exc

    width, height = img.size
    if img.format == "PNG" and max(width, height) <= MAX_IMAGE_DIMENSION:
        return encode_image(raw)

    if max(width, height) > MAX_IMAGE_DIMENSION:
        scale = MAX_IMAGE_DIMENSION / max(width, height)
        new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
        img = img.resize(new_size, Image.Resampling.LANCZOS)

    if img.mode not in ("RGB", "RGBA", "L", "LA"):
        img = img.convert("RGBA")

    buf = BytesIO()
    img.save(buf, "PNG")
    return encode_image(buf.getvalue())
