# backend/model.py
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from config.settings import MAX_REFERENCE_IMAGES, PROVIDER_DEFAULT_MODEL, PROVIDER_MODELS

Provider = Literal["google", "openai", "byteplus"]

Status = Literal["pending", "generating", "completed", "error"]

ImageKind = Literal["reference", "interim", "final"]

MAX_INTERIM_IMAGES = 2
MAX_THOUGHT_TEXTS = 500


class GenerationRequest(BaseModel):
    """Một request sinh ảnh, bất biến, dùng lại nguyên vẹn cho mọi lần retry."""

    model_config = ConfigDict(frozen=True)

    prompt: str = ""
    reference_images: Tuple[str, ...] = ()  # base64
    resolution: str
    aspect_ratio: str

    @model_validator(mode="after")
    def _prompt_or_reference(self) -> "GenerationRequest":
        if not self.prompt.strip() and not self.reference_images:
            raise ValueError("Prompt không được để trống khi không có ảnh tham chiếu")
        return self


class ProviderConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: Provider
    model: str = ""
    api_key: str = ""

    @model_validator(mode="before")
    @classmethod
    def _default_model(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("model") and data.get("provider") in PROVIDER_DEFAULT_MODEL:
            data = {**data, "model": PROVIDER_DEFAULT_MODEL[data["provider"]]}
        return data

    @model_validator(mode="after")
    def _model_belongs_to_provider(self) -> "ProviderConfig":
        if self.model not in PROVIDER_MODELS[self.provider]:
            raise ValueError(f"Model {self.model!r} is not supported by provider {self.provider!r}")
        return self


def validate_submission(request: GenerationRequest, config: ProviderConfig) -> None:
    limit = MAX_REFERENCE_IMAGES[config.provider]
    if len(request.reference_images) > limit:
        raise ValueError(
            f"{config.provider} accepts at most {limit} reference images, got {len(request.reference_images)}"
        )


class QueueItem(BaseModel):
    """
    Trạng thái của một job trong queue. Chỉ GenerationQueue được phép sửa.

    Binary payloads (reference/interim/final) may be absent from memory after a
    restart; `images_loaded` tells whether they have to be hydrated from the
    blob store first.
    """

    id: str
    request: GenerationRequest
    config: ProviderConfig
    status: Status = "pending"
    progress: Optional[float] = None
    status_message: Optional[str] = None
    thought_texts: List[str] = Field(default_factory=list)
    interim_images: List[str] = Field(default_factory=list)
    final_images: List[str] = Field(default_factory=list)
    reference_count: int = 0
    images_loaded: bool = True
    error: Optional[str] = None
    attempt: int = 0
    created_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    elapsed_time: Optional[int] = None  # ms

    @property
    def settled(self) -> bool:
        return self.status in ("completed", "error")

    def add_thought(self, text: str) -> None:
        self.thought_texts.append(text)
        if len(self.thought_texts) > MAX_THOUGHT_TEXTS:
            del self.thought_texts[:-MAX_THOUGHT_TEXTS]

    def add_interim(self, image: str) -> None:
        self.interim_images.append(image)
        del self.interim_images[:-MAX_INTERIM_IMAGES]

    def to_record(self) -> Dict[str, Any]:
        """Persistable form: không lưu ảnh base64 và thought text (quá lớn)."""
        return self.model_dump(
            mode="json",
            exclude={
                "request": {"reference_images"},
                "thought_texts": True,
                "interim_images": True,
                "final_images": True,
                "images_loaded": True,
            },
        )

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "QueueItem":
        data = dict(record)
        # request was validated when first submitted; its images live in the blob store
        request = GenerationRequest.model_construct(**data.pop("request"))
        return cls.model_validate({**data, "request": request, "images_loaded": False})


# ===== HTTP schemas =====


class GenerateRequest(BaseModel):
    prompt: str = ""
    reference_images: List[str] = Field(default_factory=list)  # base64 hoặc data URL
    resolution: str
    aspect_ratio: str
    provider: Provider = "google"
    model: Optional[str] = None
    api_key: str = ""

    @field_validator("reference_images")
    @classmethod
    def _no_empty_images(cls, value: List[str]) -> List[str]:
        return [img for img in value if img]


class GenerateResponse(BaseModel):
    job_id: str
    status: Status


class QueueSummary(BaseModel):
    job_id: str
    status: Status
    provider: Provider
    model: str
    prompt: str
    progress: Optional[float] = None
    status_message: Optional[str] = None
    error_message: Optional[str] = None
    created_at: int
    elapsed_time: Optional[int] = None


class JobResult(BaseModel):
    job_id: str
    status: Status
    progress: Optional[float] = None
    status_message: Optional[str] = None
    thought_texts: List[str] = Field(default_factory=list)
    interim_images: List[str] = Field(default_factory=list)
    final_images: List[str] = Field(default_factory=list)
    error_message: Optional[str] = None
    attempt: int = 0
    created_at: int
    started_at: Optional[int] = None
    completed_at: Optional[int] = None
    elapsed_time: Optional[int] = None
    extra: Optional[Dict[str, Any]] = None
