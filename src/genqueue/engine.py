"""Generation engine: wires the queue services together.

Usage:
    engine = GenerationEngine.from_config()
    item = await engine.submit(GenerationRequest(user_id="u1", model_id="nano-banana", prompt="a cat"))
    view = engine.status(item.id)
"""

import logging

from sqlalchemy.orm import Session, sessionmaker

from .artifact_storage import ArtifactStorageService
from .catalog import ModelCatalog
from .config import Config
from .database import create_db_engine, create_session_factory
from .dispatcher import Dispatcher
from .escrow import EscrowSettlement
from .exceptions import InvalidTransitionError, QueueItemNotFoundError
from .ledger import CreditLedgerService
from .limiter import ConcurrencyLimiterService
from .mqtt import Broadcaster, NoOpBroadcaster, get_broadcaster
from .protocols import ArtifactStore, ProviderClient
from .provider import HttpProviderClient
from .queue_store import QueueStoreService
from .schemas import (
    ArtifactRef,
    ConcurrencyLimitRecord,
    GenerationRequest,
    ModelType,
    OperatorGenerationRequest,
    QueueItemRecord,
    QueueStats,
    QueueStatus,
    QueueStatusView,
    SweepResult,
    WebhookPayload,
)
from .settlement import SettlementHandler, SettlementOutcome
from .sweeper import RecoverySweeper

logger = logging.getLogger(__name__)


class GenerationEngine:
    """Admission, dispatch, settlement and recovery for generation jobs.

    Admission reserves the user's tickets and enqueues the item in one
    transaction, so a queued item always corresponds to held credits and a
    rejected request leaves nothing behind.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        provider: ProviderClient,
        storage: ArtifactStore,
        catalog: ModelCatalog | None = None,
        broadcaster: Broadcaster | None = None,
        webhook_url: str | None = None,
        stale_minutes: int | None = None,
        unlimited: int | None = None,
    ):
        self.session_factory: sessionmaker[Session] = session_factory
        self.catalog: ModelCatalog = catalog or ModelCatalog()
        self.broadcaster: Broadcaster = broadcaster or NoOpBroadcaster()

        self.ledger: CreditLedgerService = CreditLedgerService(session_factory)
        self.limiter: ConcurrencyLimiterService = ConcurrencyLimiterService(session_factory, unlimited)
        self.store: QueueStoreService = QueueStoreService(session_factory)
        self.escrow: EscrowSettlement = EscrowSettlement(
            session_factory, self.store, self.ledger, self.limiter, self.broadcaster
        )
        self.dispatcher: Dispatcher = Dispatcher(
            session_factory,
            self.store,
            self.limiter,
            self.escrow,
            provider,
            self.catalog,
            self.broadcaster,
            webhook_url or Config.webhook_url(),
        )
        self.settlement: SettlementHandler = SettlementHandler(
            self.store, self.escrow, self.dispatcher, storage
        )
        self.sweeper: RecoverySweeper = RecoverySweeper(
            self.store, self.escrow, self.dispatcher, stale_minutes
        )

    @classmethod
    def from_config(cls) -> "GenerationEngine":
        """Build an engine from :class:`Config` (database, provider, storage, MQTT)."""
        session_factory = create_session_factory(create_db_engine(Config.DATABASE_URL))
        broadcaster = get_broadcaster(
            broadcast_type=Config.BROADCAST_TYPE,
            broker=Config.MQTT_BROKER,
            port=Config.MQTT_PORT,
            topic=Config.MQTT_TOPIC,
        )
        return cls(
            session_factory,
            provider=HttpProviderClient(),
            storage=ArtifactStorageService(),
            broadcaster=broadcaster,
        )

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    async def submit(
        self,
        request: GenerationRequest,
        *,
        ticket_cost: int | None = None,
        retry_of: int | None = None,
    ) -> QueueItemRecord:
        """Reserve tickets, enqueue the request and try to dispatch it.

        The cost is the catalog price of the model. ``ticket_cost`` overrides it
        for internal callers only (a retry keeps the price it was admitted at).
        Only an :class:`OperatorGenerationRequest` can skip billing.

        Raises:
            UnknownModelError: If the model is not in the catalog
            InsufficientCreditsError: If the user cannot cover the cost
        """
        spec = self.catalog.get(request.model_id)
        cost = ticket_cost if ticket_cost is not None else spec.ticket_cost
        no_charge = isinstance(request, OperatorGenerationRequest) and request.no_charge

        with self.session_factory() as session:
            if no_charge:
                entry = self.ledger.hold_no_charge(request.user_id, cost, session=session)
            else:
                entry = self.ledger.reserve(request.user_id, cost, session=session)
            item = self.store.enqueue(
                request.user_id,
                spec.model_id,
                spec.model_type,
                request.prompt,
                request.params,
                cost,
                request.priority,
                no_charge=no_charge,
                retry_of=retry_of,
                session=session,
            )
            entry.queue_item_id = item.id
            session.commit()

        self.broadcaster.publish_event(
            "queued", item.id, {"model_id": item.model_id, "position": item.queue_position}
        )
        _ = await self.dispatcher.dispatch_next(item.model_id)
        return self.store.get_item(item.id) or item

    async def retry(self, item_id: int) -> QueueItemRecord:
        """Run a fresh admission cycle for a failed item's request.

        The failed item keeps its state; the new item references it via ``retry_of``.
        """
        item = self._require(item_id)
        if item.status is not QueueStatus.failed:
            raise InvalidTransitionError(item.status.value, QueueStatus.queued.value)

        request = OperatorGenerationRequest(
            user_id=item.user_id,
            model_id=item.model_id,
            prompt=item.prompt,
            params=item.params,
            priority=item.priority,
            no_charge=item.no_charge,
        )
        logger.info(f"Retrying queue item #{item.id}")
        return await self.submit(request, ticket_cost=item.ticket_cost, retry_of=item.id)

    # -------------------------------------------------------------------------
    # Settlement and recovery
    # -------------------------------------------------------------------------

    async def handle_webhook(
        self, payload: WebhookPayload, item_hint: int | None = None
    ) -> SettlementOutcome:
        return await self.settlement.handle(payload, item_hint)

    async def sweep(self) -> SweepResult:
        return await self.sweeper.sweep()

    async def dispatch_all(self) -> int:
        """Dispatch queued work for every model that has some (timer-driven dispatch)."""
        dispatched = 0
        for model_id in self.store.queued_model_ids():
            dispatched += await self.dispatcher.dispatch_available(model_id)
        return dispatched

    async def cancel(self, item_id: int) -> QueueItemRecord:
        """Cancel a queued item or force-fail a processing one.

        Raises:
            QueueItemNotFoundError: If the item does not exist
            InvalidTransitionError: If the item is already terminal
        """
        # a queued item may be claimed by a dispatcher between read and cancel
        for _ in range(2):
            item = self._require(item_id)
            if item.status is QueueStatus.queued:
                if self.escrow.cancel_queued(item, "Generation was cancelled"):
                    return self._require(item_id)
            elif item.status is QueueStatus.processing:
                if self.escrow.fail(item, "Force-failed by administrator"):
                    _ = await self.dispatcher.dispatch_next(item.model_id)
                    return self._require(item_id)
            else:
                break
        raise InvalidTransitionError(item.status.value, QueueStatus.failed.value)

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def status(self, item_id: int) -> QueueStatusView:
        """What a polling client sees for one item."""
        item = self._require(item_id)

        if item.status is QueueStatus.queued:
            position = self.store.position(item)
            return QueueStatusView(
                status=item.status,
                position=position,
                estimated_wait=position * Config.ESTIMATED_SECONDS_PER_JOB,
            )

        if item.status is QueueStatus.completed:
            artifacts = [ArtifactRef(**a) for a in (item.output or {}).get("artifacts", [])]
            return QueueStatusView(
                status=item.status,
                result_url=item.result_url,
                result_id=item.result_id,
                all_artifacts=artifacts if len(artifacts) > 1 else None,
            )

        if item.status is QueueStatus.failed:
            message = "Generation was cancelled" if item.cancelled else item.error_message
            return QueueStatusView(status=item.status, error_message=message or "Generation failed")

        return QueueStatusView(status=item.status)

    async def stats(self, auto_sweep: bool | None = None) -> QueueStats:
        """Counts per status; stale items are swept first so the counts are accurate."""
        if auto_sweep is None:
            auto_sweep = Config.AUTO_SWEEP_ON_STATS
        if auto_sweep:
            result = await self.sweep()
            if result.reset:
                logger.info(f"Auto-reset {result.reset} stale processing job(s)")
        return self.store.stats()

    def list_items(
        self,
        status: QueueStatus | None = None,
        model_id: str | None = None,
        limit: int = 100,
    ) -> list[QueueItemRecord]:
        """Items in dispatch order, with advisory positions of queued items refreshed."""
        items = self.store.list_items(status, model_id, limit)
        queued_models = {i.model_id for i in items if i.status is QueueStatus.queued}
        if not queued_models:
            return items
        for queued_model in sorted(queued_models):
            self.store.refresh_positions(queued_model)
        return self.store.list_items(status, model_id, limit)

    def purge_completed(self, model_id: str | None = None) -> int:
        return self.store.purge_completed(model_id)

    # -------------------------------------------------------------------------
    # Limits
    # -------------------------------------------------------------------------

    def list_limits(self) -> list[ConcurrencyLimitRecord]:
        _ = self.limiter.ensure_defaults(self.catalog)
        return self.limiter.list_limits()

    def create_limit(
        self, model_id: str, model_type: ModelType, max_concurrent: int
    ) -> ConcurrencyLimitRecord:
        return self.limiter.create_limit(model_id, model_type, max_concurrent)

    async def set_limit(self, model_id: str, max_concurrent: int) -> ConcurrencyLimitRecord:
        """Change a model's cap and fill any newly opened slots."""
        limit = self.limiter.set_limit(model_id, max_concurrent)
        if await self.dispatcher.dispatch_available(model_id):
            limit = self.limiter.get_limit(model_id) or limit
        return limit

    def delete_limit(self, model_id: str) -> bool:
        return self.limiter.delete_limit(model_id)

    def _require(self, item_id: int) -> QueueItemRecord:
        item = self.store.get_item(item_id)
        if item is None:
            raise QueueItemNotFoundError(f"Queue item {item_id} not found")
        return item
