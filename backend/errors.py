# backend/errors.py

from typing import Any, Literal, Optional

ErrorKind = Literal[
    "network",
    "timeout",
    "stream-aborted",
    "http",
    "no-artifact",
    "malformed-response",
    "missing-credential",
    "invalid-request",
]

MAX_RETRIES_MESSAGE = (
    "Maximum retries reached ({attempts} attempts). Please try again later."
)


class GenerationError(Exception):
    """
    Lỗi duy nhất mà provider adapter báo qua sink.on_error.
    `kind` là tag ổn định (không phải message hiển thị), `detail` là text cho user.
    """

    def __init__(self, kind: ErrorKind, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.kind = kind
        self.detail = detail
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"GenerationError(kind={self.kind!r}, status={self.status_code}, detail={self.detail!r})"


def error_message_from_body(body: Any, status_code: int) -> str:
    """Lấy error.message từ JSON body của provider, fallback 'API error: <status>'."""
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
        if body.get("message"):
            return str(body["message"])
    return f"API error: {status_code}"
