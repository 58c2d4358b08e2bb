"""
Pydantic schemas for queue records, requests and provider webhooks.
Shared by the services, the HTTP surface and the worker.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class QueueStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    completed = "completed"
    failed = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.completed, QueueStatus.failed)


class ModelType(str, Enum):
    image = "image"
    video = "video"


class LedgerEventType(str, Enum):
    grant = "grant"
    reserve = "reserve"
    finalize = "finalize"
    refund = "refund"
    # operator jobs: reserved is held without debiting the balance
    hold_no_charge = "hold_no_charge"
    release_no_charge = "release_no_charge"


# ----------------------------------------------------------------------------
# Records (read from the database)
# ----------------------------------------------------------------------------


class CreditAccountRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    balance: int
    reserved: int
    total_used: int


class ConcurrencyLimitRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    model_id: str
    model_type: ModelType
    max_concurrent: int
    current_active: int


class QueueItemRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    model_id: str
    model_type: ModelType
    prompt: str
    params: dict[str, Any] = Field(default_factory=dict)
    ticket_cost: int
    priority: int = 0
    no_charge: bool = False
    status: QueueStatus
    queue_position: int | None = None
    queued_at: int
    started_at: int | None = None
    completed_at: int | None = None
    provider_request_id: str | None = None
    result_url: str | None = None
    result_id: str | None = None
    output: dict[str, Any] | None = None
    error_message: str | None = None
    cancelled: bool = False
    retry_of: int | None = None


class StoredArtifact(BaseModel):
    """Result of re-hosting one remote artifact."""

    artifact_id: str
    reference: str
    source_url: str
    size: int
    hash: str


# ----------------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------------


class GenerationRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    model_id: str = Field(..., min_length=1)
    prompt: str = ""
    params: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0


class OperatorGenerationRequest(GenerationRequest):
    """Admission on behalf of an operator; the user is not billed when ``no_charge`` is set."""

    no_charge: bool = True


class LimitCreate(BaseModel):
    model_id: str = Field(..., min_length=1)
    model_type: ModelType
    max_concurrent: int = Field(..., ge=0)


class LimitUpdate(BaseModel):
    model_id: str = Field(..., min_length=1)
    max_concurrent: int = Field(..., ge=0)


class ClearCompletedRequest(BaseModel):
    model_id: str | None = None


# ----------------------------------------------------------------------------
# Provider webhook
# ----------------------------------------------------------------------------

SUCCESS_STATUSES = frozenset({"OK", "COMPLETED"})
ERROR_STATUSES = frozenset({"ERROR", "FAILED"})


class WebhookPayload(BaseModel):
    """Inbound completion notification from the provider.

    The provider's schema is loose, so unknown keys are kept and the error
    may be a plain string or a structured object.
    """

    model_config = ConfigDict(extra="allow")

    request_id: str | None = None
    status: str | None = None
    payload: dict[str, Any] | None = None
    error: str | dict[str, Any] | None = None

    @field_validator("status")
    @classmethod
    def normalize_status(cls, v: str | None) -> str | None:
        return v.upper() if v else v

    @property
    def is_error(self) -> bool:
        return self.status in ERROR_STATUSES or bool(self.error)

    @property
    def is_success(self) -> bool:
        return not self.is_error and self.status in SUCCESS_STATUSES

    def error_message(self) -> str:
        if isinstance(self.error, dict):
            message = self.error.get("message") or self.error.get("detail")
            if message:
                return str(message)
        elif self.error:
            return self.error
        return "Provider generation failed"

    def artifact_urls(self) -> list[str]:
        """Locators of every result artifact in the payload, in order."""
        if not self.payload:
            return []

        urls: list[str] = []
        for key in ("images", "videos"):
            for entry in self.payload.get(key) or []:
                if isinstance(entry, dict) and entry.get("url"):
                    urls.append(entry["url"])
        video = self.payload.get("video")
        if isinstance(video, dict) and video.get("url"):
            urls.append(video["url"])
        return urls


# ----------------------------------------------------------------------------
# Views
# ----------------------------------------------------------------------------


class ArtifactRef(BaseModel):
    url: str
    id: str


class QueueStatusView(BaseModel):
    """What a polling client sees for one queue item."""

    status: QueueStatus
    position: int | None = None
    estimated_wait: int | None = None
    result_url: str | None = None
    result_id: str | None = None
    all_artifacts: list[ArtifactRef] | None = None
    error_message: str | None = None


class QueueStats(BaseModel):
    total_queued: int = 0
    total_processing: int = 0
    total_completed: int = 0
    total_failed: int = 0


class SweepResult(BaseModel):
    reset: int
    item_ids: list[int] = Field(default_factory=list)
    message: str
