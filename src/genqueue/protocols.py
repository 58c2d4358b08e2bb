"""Protocols for the engine's external collaborators."""

from typing import Any, Protocol, runtime_checkable

from .schemas import StoredArtifact


@runtime_checkable
class ProviderClient(Protocol):
    """Asynchronous generation provider."""

    async def submit(
        self, model_identifier: str, payload: dict[str, Any], callback_url: str
    ) -> str:
        """Submit a job and return the provider's correlation token.

        Raises:
            ProviderSubmissionError: If the provider does not accept the job
        """
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Durable re-hosting of remotely hosted result artifacts."""

    async def store(self, item_id: int, source_url: str, index: int = 0) -> StoredArtifact:
        """Copy ``source_url`` into durable storage.

        Raises:
            ArtifactStorageError: If the artifact cannot be fetched or written
        """
        ...

    def delete(self, reference: str) -> bool:
        """Remove a previously stored artifact."""
        ...
