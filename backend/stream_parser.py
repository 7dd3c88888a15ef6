# backend/stream_parser.py
#
# Parser SSE tăng dần cho stream của Google.
# Chunk có thể cắt ngang ký tự UTF-8 hoặc dòng `data:`, nên phần dòng dở dang
# được giữ lại trong buffer. Record hỏng bị bỏ qua; adapter sẽ báo no-artifact
# nếu stream kết thúc mà không có ảnh cuối.

import codecs
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Literal, Optional

logger = logging.getLogger(__name__)

EventKind = Literal["thought", "interim_image", "final_image"]

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class StreamEvent:
    kind: EventKind
    data: str
    progress: float
    message: str
    mime_type: Optional[str] = None


def _inline_data(part: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Trả về (data, mime_type) cho cả 2 dạng inlineData / inline_data."""
    inline = part.get("inlineData") or part.get("inline_data")
    if not isinstance(inline, dict):
        return None, None
    data = inline.get("data")
    mime = inline.get("mimeType") or inline.get("mime_type")
    return (data or None), mime


def _record_parts(record: Any) -> List[Dict[str, Any]]:
    if not isinstance(record, dict):
        return []
    candidates = record.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        return []
    content = candidates[0].get("content") or {}
    parts = content.get("parts") if isinstance(content, dict) else None
    return [p for p in parts or [] if isinstance(p, dict)]


class SSEStreamParser:
    """
    Đổi các chunk byte thô thành list StreamEvent theo đúng thứ tự.

    Progress chỉ là ước lượng: thought 20 -> 45, ảnh preview 60 -> 65,
    ảnh cuối nhảy lên 90. Trong một parser progress không bao giờ giảm.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.chunk_count = 0
        self.thought_count = 0
        self.interim_count = 0
        self.final_count = 0
        self.dropped_records = 0
        self._progress = 0.0

    @property
    def has_final_image(self) -> bool:
        return self.final_count > 0

    def feed(self, chunk: bytes) -> List[StreamEvent]:
        self.chunk_count += 1
        self._buffer += self._decoder.decode(chunk)
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return self._parse_lines(lines)

    def close(self) -> List[StreamEvent]:
        """Flush the decoder and any final line that arrived without a newline."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return self._parse_lines([tail]) if tail.strip() else []

    def _parse_lines(self, lines: Iterable[str]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        for line in lines:
            line = line.rstrip("\r")
            if not line.startswith(DATA_PREFIX):
                continue
            payload = line[len(DATA_PREFIX):].strip()
            if not payload or payload == DONE_SENTINEL:
                continue
            try:
                record = json.loads(payload)
            except json.JSONDecodeError:
                self.dropped_records += 1
                logger.debug("Dropping malformed SSE record (%d bytes)", len(payload))
                continue
            for part in _record_parts(record):
                events.extend(self._part_events(part))
        return events

    def _part_events(self, part: Dict[str, Any]) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        data, mime = _inline_data(part)

        if part.get("thought"):
            text = part.get("text")
            if text:
                self.thought_count += 1
                progress = self._advance(min(20 + self.thought_count * 2, 45))
                events.append(
                    StreamEvent("thought", text, progress, f"Thinking... ({self.thought_count})")
                )
            if data:
                self.interim_count += 1
                progress = self._advance(min(50 + self.interim_count * 10, 65))
                events.append(
                    StreamEvent(
                        "interim_image",
                        data,
                        progress,
                        f"Rendering preview... ({self.interim_count})",
                        mime,
                    )
                )
        elif data:
            self.final_count += 1
            progress = self._advance(90)
            events.append(StreamEvent("final_image", data, progress, "Processing final image...", mime))
        return events

    def _advance(self, value: float) -> float:
        self._progress = max(self._progress, value)
        return self._progress
