"""Known generation models and their provider identifiers."""

from dataclasses import dataclass

from .config import Config
from .exceptions import UnknownModelError
from .schemas import ModelType


@dataclass(frozen=True)
class ModelSpec:
    model_id: str
    model_type: ModelType
    provider_model: str
    ticket_cost: int = 1


DEFAULT_MODELS: tuple[ModelSpec, ...] = (
    # Image models
    ModelSpec("nano-banana", ModelType.image, "fal-ai/nano-banana", 1),
    ModelSpec("nano-banana-pro", ModelType.image, "fal-ai/nano-banana-pro", 1),
    ModelSpec("seedream-4.5", ModelType.image, "fal-ai/bytedance/seedream/v4.5/text-to-image", 1),
    ModelSpec("flux-2", ModelType.image, "fal-ai/flux-2", 1),
    # Video models
    ModelSpec("wan-2.5", ModelType.video, "fal-ai/wan-25-preview/image-to-video", 20),
)


class ModelCatalog:
    """Lookup of models that may be admitted to the queue."""

    def __init__(
        self,
        models: tuple[ModelSpec, ...] | list[ModelSpec] = DEFAULT_MODELS,
        enabled: list[str] | None = None,
    ):
        if enabled is None:
            enabled = Config.ENABLED_MODELS
        self._models: dict[str, ModelSpec] = {
            m.model_id: m for m in models if not enabled or m.model_id in enabled
        }

    def get(self, model_id: str) -> ModelSpec:
        spec = self._models.get(model_id)
        if spec is None:
            raise UnknownModelError(model_id)
        return spec

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def all(self) -> list[ModelSpec]:
        return list(self._models.values())
