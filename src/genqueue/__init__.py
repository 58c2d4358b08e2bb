"""Generation queue with credit escrow for paid AI generation jobs."""

# Public API - Configuration
from .catalog import DEFAULT_MODELS, ModelCatalog, ModelSpec
from .config import Config

# Public API - Services
from .engine import GenerationEngine
from .exceptions import (
    GenQueueError,
    InsufficientCreditsError,
    InvalidTransitionError,
    QueueItemNotFoundError,
    UnknownModelError,
)
from .schemas import (
    GenerationRequest,
    ModelType,
    QueueItemRecord,
    QueueStatus,
    QueueStatusView,
    WebhookPayload,
)

__all__ = [
    # Configuration
    "Config",
    "DEFAULT_MODELS",
    "ModelCatalog",
    "ModelSpec",
    # Services
    "GenerationEngine",
    # Errors
    "GenQueueError",
    "InsufficientCreditsError",
    "InvalidTransitionError",
    "QueueItemNotFoundError",
    "UnknownModelError",
    # Pydantic Models
    "GenerationRequest",
    "ModelType",
    "QueueItemRecord",
    "QueueStatus",
    "QueueStatusView",
    "WebhookPayload",
]
