"""Terminal settlement of queue items.

Each operation here is one database transaction that

1. moves the item to its terminal status with a conditional update,
2. settles the item's reservation in the ledger, and
3. releases the model's concurrency slot if the item held one.

Step 1 is the idempotency gate: when the conditional update matches no row
(the item was already settled by a duplicate webhook, the sweeper or an
operator) nothing else happens and the call returns False. Steps 2 and 3
therefore run at most once per item.
"""

import logging

from sqlalchemy.orm import Session, sessionmaker

from .config import Config
from .database import session_scope
from .ledger import CreditLedgerService
from .limiter import ConcurrencyLimiterService
from .models import GeneratedArtifact
from .models.base import now_ms
from .mqtt import Broadcaster
from .queue_store import QueueStoreService
from .schemas import QueueItemRecord, QueueStatus, StoredArtifact

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000


class EscrowSettlement:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: QueueStoreService,
        ledger: CreditLedgerService,
        limiter: ConcurrencyLimiterService,
        broadcaster: Broadcaster,
        retention_days: int | None = None,
    ):
        self.session_factory: sessionmaker[Session] = session_factory
        self.store: QueueStoreService = store
        self.ledger: CreditLedgerService = ledger
        self.limiter: ConcurrencyLimiterService = limiter
        self.broadcaster: Broadcaster = broadcaster
        self.retention_days: int = (
            retention_days if retention_days is not None else Config.ARTIFACT_RETENTION_DAYS
        )

    def fail(self, item: QueueItemRecord, error_message: str) -> bool:
        """Fail a processing item: refund, mark failed, release its slot.

        Returns:
            True if this call settled the item
        """
        with session_scope(self.session_factory) as session:
            won = self.store.transition(
                item.id,
                QueueStatus.processing,
                QueueStatus.failed,
                session=session,
                error_message=error_message,
            )
            if not won:
                return False
            self._return_reservation(session, item)
            _ = self.limiter.release(item.model_id, session=session)

        logger.info(f"Queue item #{item.id} failed, tickets returned: {error_message}")
        self.broadcaster.publish_event("failed", item.id, {"error": error_message})
        return True

    def cancel_queued(self, item: QueueItemRecord, reason: str) -> bool:
        """Cancel an item that was never dispatched.

        The item never acquired a concurrency slot, so the limiter is not touched.

        Returns:
            True if this call cancelled the item
        """
        with session_scope(self.session_factory) as session:
            won = self.store.transition(
                item.id,
                QueueStatus.queued,
                QueueStatus.failed,
                session=session,
                error_message=reason,
                cancelled=True,
            )
            if not won:
                return False
            self._return_reservation(session, item)

        logger.info(f"Queue item #{item.id} cancelled before dispatch")
        self.broadcaster.publish_event("cancelled", item.id, {"error": reason})
        return True

    def complete(self, item: QueueItemRecord, artifacts: list[StoredArtifact]) -> bool:
        """Complete a processing item with its stored artifacts.

        The item's cost is consumed once, however many artifacts there are;
        the primary (first) artifact carries the charge as its line item.

        Returns:
            True if this call settled the item
        """
        if not artifacts:
            raise ValueError("complete() requires at least one stored artifact")

        primary = artifacts[0]
        output = {
            "artifacts": [{"url": a.reference, "id": a.artifact_id} for a in artifacts],
        }

        with session_scope(self.session_factory) as session:
            won = self.store.transition(
                item.id,
                QueueStatus.processing,
                QueueStatus.completed,
                session=session,
                result_url=primary.reference,
                result_id=primary.artifact_id,
                output=output,
            )
            if not won:
                return False

            created_at = now_ms()
            expires_at = created_at + self.retention_days * _DAY_MS
            for index, artifact in enumerate(artifacts):
                charge = item.ticket_cost if index == 0 and not item.no_charge else 0
                session.add(
                    GeneratedArtifact(
                        artifact_id=artifact.artifact_id,
                        queue_item_id=item.id,
                        user_id=item.user_id,
                        model_id=item.model_id,
                        prompt=item.params.get("save_prompt") or item.prompt,
                        reference=artifact.reference,
                        source_url=artifact.source_url,
                        size=artifact.size,
                        hash=artifact.hash,
                        ticket_cost=charge,
                        created_at=created_at,
                        expires_at=expires_at,
                    )
                )

            if item.no_charge:
                self.ledger.release_reservation_only(
                    item.user_id, item.ticket_cost, item.id, session=session
                )
            else:
                self.ledger.finalize_spent(item.user_id, item.ticket_cost, item.id, session=session)
            _ = self.limiter.release(item.model_id, session=session)

        logger.info(f"Queue item #{item.id} completed with {len(artifacts)} artifact(s)")
        self.broadcaster.publish_event(
            "completed", item.id, {"result_url": primary.reference, "artifacts": len(artifacts)}
        )
        return True

    def _return_reservation(self, session: Session, item: QueueItemRecord) -> None:
        if item.no_charge:
            self.ledger.release_reservation_only(item.user_id, item.ticket_cost, item.id, session=session)
        else:
            self.ledger.refund(item.user_id, item.ticket_cost, item.id, session=session)
