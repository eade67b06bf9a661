"""
Pydantic models and enums for the request pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# ── Lifecycle axes ───────────────────────────────────────────────────────────

class GenerationStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class DeliveryStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"


class StatusAxis(str, Enum):
    GENERATION = "generation"
    DELIVERY = "delivery"

    @property
    def field(self) -> str:
        return f"{self.value}_status"

    def parse(self, value: str):
        enum_cls = GenerationStatus if self is StatusAxis.GENERATION else DeliveryStatus
        return enum_cls(value)


class LogType(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    WEBHOOK = "WEBHOOK"


# ── Provider vocabularies (parsed at the boundary) ───────────────────────────

class ProviderDeliveryStatus(str, Enum):
    """WhatsApp status strings. Anything else becomes UNRECOGNIZED."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "ProviderDeliveryStatus":
        value = (raw or "").strip().lower()
        if value == cls.UNRECOGNIZED.value:
            return cls.UNRECOGNIZED
        try:
            return cls(value)
        except ValueError:
            return cls.UNRECOGNIZED

    def to_delivery_status(self) -> Optional[DeliveryStatus]:
        if self is ProviderDeliveryStatus.UNRECOGNIZED:
            return None
        return DeliveryStatus(self.name)


class GenerationCallbackStatus(str, Enum):
    """SyncLabs callback status. Unknown strings are progress notifications."""
    COMPLETED = "completed"
    FAILED = "failed"
    PROGRESS = "progress"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "GenerationCallbackStatus":
        value = (raw or "").strip().lower()
        if value == cls.COMPLETED.value:
            return cls.COMPLETED
        if value == cls.FAILED.value:
            return cls.FAILED
        return cls.PROGRESS


class PollState(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class PollResult(BaseModel):
    """One observation of an external stage job."""
    state: PollState
    url: Optional[str] = None
    error: Optional[str] = None
    raw_status: str = ""


# ── Reference data ───────────────────────────────────────────────────────────

class Presenter(BaseModel):
    id: str
    name: str
    description: str = ""
    voice_id: str
    image_url: Optional[str] = None


# ── Aggregate root ───────────────────────────────────────────────────────────

class VideoRequest(BaseModel):
    id: str = Field(default_factory=new_id)
    user_name: str
    user_city: str
    user_phone: str
    actor_id: str
    voice_id: str
    generation_status: GenerationStatus = GenerationStatus.PROCESSING
    delivery_status: DeliveryStatus = DeliveryStatus.PENDING
    generation_job_id: Optional[str] = None
    delivery_message_id: Optional[str] = None
    artifact_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def status_for(self, axis: StatusAxis):
        return getattr(self, axis.field)


class RequestLog(BaseModel):
    id: str = Field(default_factory=new_id)
    request_id: str
    log_type: LogType
    message: str
    data: Optional[dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


# ── API request models ───────────────────────────────────────────────────────

class VideoGenerateRequest(BaseModel):
    """Client submission: who the clip is for and which presenter says it."""
    user_name: str = Field(..., min_length=1, max_length=120)
    user_city: str = Field(..., min_length=1, max_length=120)
    user_phone: str = Field(..., min_length=5, max_length=32)
    actor_id: str = Field(..., min_length=1)


class GenerationCallback(BaseModel):
    """SyncLabs job callback."""
    job_id: str = Field(..., min_length=1, validation_alias=AliasChoices("job_id", "jobId"))
    status: str = ""
    artifact_url: Optional[str] = Field(
        None, validation_alias=AliasChoices("video_url", "artifact_url", "videoUrl")
    )
    error: Optional[str] = None


class DeliveryStatusUpdate(BaseModel):
    """One entry of a WhatsApp `statuses` array."""
    message_id: str = Field(..., validation_alias=AliasChoices("id", "message_id"))
    status: str
    timestamp: Optional[str] = None
    recipient_id: Optional[str] = None
    errors: Optional[list[dict[str, Any]]] = None


class SendVideoRequest(BaseModel):
    phone_number: str = Field(..., min_length=5)
    video_url: str = Field(..., min_length=1)
    caption: Optional[str] = None


class SendTextRequest(BaseModel):
    phone_number: str = Field(..., min_length=5)
    message: str = Field(..., min_length=1)


# ── API responses ────────────────────────────────────────────────────────────

class GenerateResponse(BaseModel):
    success: bool = True
    request_id: str
    message: str = "Video generation started"
    status: GenerationStatus = GenerationStatus.PROCESSING


class RequestStatusResponse(BaseModel):
    id: str
    generation_status: GenerationStatus
    delivery_status: DeliveryStatus
    artifact_url: Optional[str] = None
    user_name: str
    user_city: str
    actor: Optional[Presenter] = None
    created_at: datetime
    updated_at: datetime
    logs: list[RequestLog] = Field(default_factory=list)
