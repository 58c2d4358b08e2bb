"""Dispatcher: hands admissible queued items to the provider."""

import logging

from sqlalchemy.orm import Session, sessionmaker

from .catalog import ModelCatalog
from .escrow import EscrowSettlement
from .exceptions import ProviderSubmissionError, UnknownModelError
from .limiter import ConcurrencyLimiterService
from .mqtt import Broadcaster
from .protocols import ProviderClient
from .queue_store import QueueStoreService
from .schemas import QueueItemRecord, QueueStatus

logger = logging.getLogger(__name__)


class Dispatcher:
    """Pulls the next admissible item for a model and submits it.

    Claiming an item (``queued -> processing``) and taking its concurrency
    slot happen in one transaction. The claim is conditional on the item
    still being queued, so concurrent dispatchers for the same model never
    submit the same item twice, and the slot is only taken if the model is
    still under its cap. If either step loses a race, the transaction is
    rolled back and the item stays queued.

    The provider call happens after that commit. It only submits the job
    and returns; completion arrives later through the webhook.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: QueueStoreService,
        limiter: ConcurrencyLimiterService,
        escrow: EscrowSettlement,
        provider: ProviderClient,
        catalog: ModelCatalog,
        broadcaster: Broadcaster,
        webhook_url: str,
    ):
        self.session_factory: sessionmaker[Session] = session_factory
        self.store: QueueStoreService = store
        self.limiter: ConcurrencyLimiterService = limiter
        self.escrow: EscrowSettlement = escrow
        self.provider: ProviderClient = provider
        self.catalog: ModelCatalog = catalog
        self.broadcaster: Broadcaster = broadcaster
        self.webhook_url: str = webhook_url

    async def dispatch_next(self, model_id: str) -> QueueItemRecord | None:
        """Dispatch at most one queued item for ``model_id``.

        Items whose submission fails synchronously are failed (refund and
        release) and the next queued item is tried instead.

        Returns:
            The dispatched item, or None if nothing was dispatched
        """
        while True:
            if not self.limiter.is_admissible(model_id):
                return None

            item = self.store.next_admissible(model_id)
            if item is None:
                return None

            if not self._claim(item):
                # another dispatcher took this item or the last slot
                if self.limiter.is_admissible(model_id):
                    continue
                return None

            self.broadcaster.publish_event("processing", item.id, {"model_id": model_id})

            try:
                provider_model = self.catalog.get(model_id).provider_model
                request_id = await self.provider.submit(
                    provider_model, item.params, self._callback_url(item)
                )
            except (ProviderSubmissionError, UnknownModelError) as e:
                logger.error(f"Submission of queue item #{item.id} to {model_id} failed: {e}")
                _ = self.escrow.fail(item, f"Submission failed: {e}")
                continue
            except Exception as e:
                # the item already holds a slot and a reservation; settle it here
                logger.exception(f"Unexpected error submitting queue item #{item.id} to {model_id}")
                _ = self.escrow.fail(item, f"Submission failed: {e}")
                continue

            _ = self.store.set_provider_request_id(item.id, request_id)
            logger.info(
                f"Dispatched queue item #{item.id} for model {model_id}, request_id: {request_id}"
            )
            return self.store.get_item(item.id)

    async def dispatch_available(self, model_id: str) -> int:
        """Dispatch queued items for ``model_id`` until the cap or the queue is exhausted.

        Returns:
            Number of items dispatched
        """
        dispatched = 0
        while await self.dispatch_next(model_id) is not None:
            dispatched += 1
        return dispatched

    def _claim(self, item: QueueItemRecord) -> bool:
        with self.session_factory() as session:
            claimed = self.store.transition(
                item.id, QueueStatus.queued, QueueStatus.processing, session=session
            )
            if claimed and self.limiter.acquire(item.model_id, item.model_type, session=session):
                session.commit()
                return True
            session.rollback()
            return False

    def _callback_url(self, item: QueueItemRecord) -> str:
        # the item id lets the webhook match a job whose token is not saved yet
        separator = "&" if "?" in self.webhook_url else "?"
        return f"{self.webhook_url}{separator}item_id={item.id}"
