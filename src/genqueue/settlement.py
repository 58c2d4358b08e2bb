"""Settlement handler for provider completion webhooks.

Provider delivery is at-least-once: the same notification may arrive any
number of times, concurrently, and for jobs this process no longer knows
about. The handler never raises. Every outcome, including internal
errors, is logged and reported as a :class:`SettlementOutcome` so the HTTP
layer can always acknowledge the delivery.
"""

import logging
from enum import Enum

from .dispatcher import Dispatcher
from .escrow import EscrowSettlement
from .exceptions import ArtifactStorageError
from .protocols import ArtifactStore
from .queue_store import QueueStoreService
from .schemas import QueueItemRecord, StoredArtifact, WebhookPayload

logger = logging.getLogger(__name__)


class SettlementOutcome(str, Enum):
    completed = "completed"
    failed = "failed"
    duplicate = "duplicate"
    unknown = "unknown"
    ignored = "ignored"
    error = "error"


class SettlementHandler:
    def __init__(
        self,
        store: QueueStoreService,
        escrow: EscrowSettlement,
        dispatcher: Dispatcher,
        storage: ArtifactStore,
    ):
        self.store: QueueStoreService = store
        self.escrow: EscrowSettlement = escrow
        self.dispatcher: Dispatcher = dispatcher
        self.storage: ArtifactStore = storage

    async def handle(
        self, payload: WebhookPayload, item_hint: int | None = None
    ) -> SettlementOutcome:
        """Apply one webhook delivery.

        Args:
            payload: Parsed provider notification
            item_hint: Queue item id carried in the callback URL, used when the
                correlation token has not been persisted yet

        Returns:
            What the delivery did
        """
        try:
            return await self._handle(payload, item_hint)
        except Exception:
            logger.exception(f"Webhook processing failed for request_id {payload.request_id}")
            return SettlementOutcome.error

    async def _handle(self, payload: WebhookPayload, item_hint: int | None) -> SettlementOutcome:
        if not payload.request_id:
            logger.error("Webhook missing request_id")
            return SettlementOutcome.unknown

        item = self._lookup(payload.request_id, item_hint)
        if item is None:
            logger.error(f"No queue item found for request_id: {payload.request_id}")
            return SettlementOutcome.unknown

        if item.status.is_terminal:
            logger.info(
                f"Queue item #{item.id} already settled ({item.status.value}), skipping duplicate webhook"
            )
            return SettlementOutcome.duplicate

        if payload.is_error:
            return await self._fail(item, payload.error_message())

        if not payload.is_success:
            logger.warning(f"Unknown webhook status {payload.status!r} for queue item #{item.id}")
            return SettlementOutcome.ignored

        urls = payload.artifact_urls()
        if not urls:
            logger.error(f"Webhook payload for queue item #{item.id} has no artifacts")
            return await self._fail(item, "No artifacts in provider response")

        stored = await self._store_artifacts(item, urls)
        if not stored:
            return await self._fail(item, "Failed to store any artifact from provider response")

        if not self.escrow.complete(item, stored):
            # a concurrent delivery settled the item while we were downloading
            for artifact in stored:
                _ = self.storage.delete(artifact.reference)
            logger.info(f"Queue item #{item.id} settled concurrently, discarded duplicate artifacts")
            return SettlementOutcome.duplicate

        _ = await self.dispatcher.dispatch_next(item.model_id)
        return SettlementOutcome.completed

    def _lookup(self, request_id: str, item_hint: int | None) -> QueueItemRecord | None:
        item = self.store.get_by_provider_request_id(request_id)
        if item is not None or item_hint is None:
            return item

        hinted = self.store.get_item(item_hint)
        if hinted is None or hinted.provider_request_id not in (None, request_id):
            return None
        if hinted.provider_request_id is None:
            _ = self.store.set_provider_request_id(hinted.id, request_id)
        return hinted

    async def _fail(self, item: QueueItemRecord, error_message: str) -> SettlementOutcome:
        if not self.escrow.fail(item, error_message):
            return SettlementOutcome.duplicate
        _ = await self.dispatcher.dispatch_next(item.model_id)
        return SettlementOutcome.failed

    async def _store_artifacts(self, item: QueueItemRecord, urls: list[str]) -> list[StoredArtifact]:
        stored: list[StoredArtifact] = []
        for index, url in enumerate(urls):
            try:
                artifact = await self.storage.store(item.id, url, index)
            except ArtifactStorageError as e:
                logger.error(f"Artifact {index + 1}/{len(urls)} of queue item #{item.id} skipped: {e}")
                continue
            stored.append(artifact)
        return stored
