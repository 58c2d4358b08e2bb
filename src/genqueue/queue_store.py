"""Queue store: durable, ordered record of generation requests.

The lifecycle is a closed state machine::

    queued ──> processing ──> completed
       │            │
       └────────────┴──────> failed

``queued -> failed`` is only used to cancel an item that was never handed
to the provider. There is no edge back to ``queued``; a retry is a new item.
"""

import logging
from typing import Any

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .exceptions import InvalidTransitionError
from .models import QueueItem
from .models.base import now_ms
from .schemas import ModelType, QueueItemRecord, QueueStats, QueueStatus

logger = logging.getLogger(__name__)

# priority first, then strict FIFO; id breaks queued_at ties
_DISPATCH_ORDER = (QueueItem.priority.desc(), QueueItem.queued_at.asc(), QueueItem.id.asc())


TRANSITIONS: dict[QueueStatus, frozenset[QueueStatus]] = {
    QueueStatus.queued: frozenset({QueueStatus.processing, QueueStatus.failed}),
    QueueStatus.processing: frozenset({QueueStatus.completed, QueueStatus.failed}),
    QueueStatus.completed: frozenset(),
    QueueStatus.failed: frozenset(),
}


def check_transition(from_status: QueueStatus, to_status: QueueStatus) -> None:
    """Raise InvalidTransitionError unless ``from_status -> to_status`` is in the table."""
    if to_status not in TRANSITIONS[from_status]:
        raise InvalidTransitionError(from_status.value, to_status.value)


class QueueStoreService:
    """SQLAlchemy-backed queue of generation requests.

    Example:
        store = QueueStoreService(session_factory)
        item = store.enqueue("user-1", "nano-banana", ModelType.image, "a cat", {}, 1)
        nxt = store.next_admissible("nano-banana")
        store.transition(nxt.id, QueueStatus.queued, QueueStatus.processing)
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory: sessionmaker[Session] = session_factory

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        user_id: str,
        model_id: str,
        model_type: ModelType,
        prompt: str,
        params: dict[str, Any],
        ticket_cost: int,
        priority: int = 0,
        *,
        no_charge: bool = False,
        retry_of: int | None = None,
        session: Session | None = None,
    ) -> QueueItemRecord:
        """Insert a queued item. The caller must already hold the reservation.

        ``queue_position`` is advisory: the number of queued items for the
        same model that were queued no later than this one.
        """
        with session_scope(self.session_factory, session) as s:
            item = QueueItem(
                user_id=user_id,
                model_id=model_id,
                model_type=model_type.value,
                prompt=prompt,
                params=params,
                ticket_cost=ticket_cost,
                priority=priority,
                no_charge=no_charge,
                status=QueueStatus.queued.value,
                queued_at=now_ms(),
                retry_of=retry_of,
            )
            s.add(item)
            s.flush()

            item.queue_position = self._position(s, item)
            s.flush()

            logger.info(
                f"Queued item #{item.id} for user {user_id} on {model_id} "
                f"(cost={ticket_cost}, priority={priority}, position={item.queue_position})"
            )
            return QueueItemRecord.model_validate(item)

    def transition(
        self,
        item_id: int,
        from_status: QueueStatus,
        to_status: QueueStatus,
        session: Session | None = None,
        **fields: Any,
    ) -> bool:
        """Move an item along one edge of the state machine.

        The update is conditional on the item still being in ``from_status``,
        so of several racing callers exactly one wins.

        Args:
            item_id: Queue item id
            from_status: Status the item must currently have
            to_status: Target status
            **fields: Extra column values to set with the transition

        Returns:
            True if this call performed the transition, False if the item was
            missing or no longer in ``from_status``

        Raises:
            InvalidTransitionError: If the edge is not in the transition table
        """
        check_transition(from_status, to_status)

        values: dict[str, Any] = {"status": to_status.value, **fields}
        if to_status is QueueStatus.processing:
            values.setdefault("started_at", now_ms())
        elif to_status.is_terminal:
            values.setdefault("completed_at", now_ms())
            values.setdefault("queue_position", None)

        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(QueueItem)
                .where(QueueItem.id == item_id, QueueItem.status == from_status.value)
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
            return s.execute(stmt).rowcount == 1

    def set_provider_request_id(
        self, item_id: int, provider_request_id: str, session: Session | None = None
    ) -> bool:
        """Persist the provider's correlation token on a dispatched item."""
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(QueueItem)
                .where(QueueItem.id == item_id)
                .values(provider_request_id=provider_request_id)
                .execution_options(synchronize_session="fetch")
            )
            return s.execute(stmt).rowcount == 1

    def refresh_positions(self, model_id: str) -> None:
        """Renumber ``queue_position`` of queued items in dispatch order."""
        with session_scope(self.session_factory) as s:
            stmt = (
                select(QueueItem)
                .where(QueueItem.model_id == model_id, QueueItem.status == QueueStatus.queued.value)
                .order_by(*_DISPATCH_ORDER)
            )
            for position, item in enumerate(s.execute(stmt).scalars(), start=1):
                if item.queue_position != position:
                    item.queue_position = position

    def purge_completed(self, model_id: str | None = None) -> int:
        """Delete completed and cancelled items, optionally for one model only.

        Returns:
            Number of deleted rows
        """
        with session_scope(self.session_factory) as s:
            stmt = delete(QueueItem).where(
                or_(
                    QueueItem.status == QueueStatus.completed.value,
                    and_(QueueItem.status == QueueStatus.failed.value, QueueItem.cancelled.is_(True)),
                )
            )
            if model_id:
                stmt = stmt.where(QueueItem.model_id == model_id)
            deleted = s.execute(stmt.execution_options(synchronize_session=False)).rowcount
            logger.info(f"Purged {deleted} completed item(s){f' for {model_id}' if model_id else ''}")
            return deleted

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_item(self, item_id: int, session: Session | None = None) -> QueueItemRecord | None:
        with session_scope(self.session_factory, session) as s:
            item = s.get(QueueItem, item_id, populate_existing=True)
            return QueueItemRecord.model_validate(item) if item else None

    def get_by_provider_request_id(
        self, provider_request_id: str, session: Session | None = None
    ) -> QueueItemRecord | None:
        with session_scope(self.session_factory, session) as s:
            stmt = select(QueueItem).where(QueueItem.provider_request_id == provider_request_id)
            item = s.execute(stmt).scalar_one_or_none()
            return QueueItemRecord.model_validate(item) if item else None

    def next_admissible(self, model_id: str, session: Session | None = None) -> QueueItemRecord | None:
        """Highest-priority queued item for ``model_id``; oldest first within a priority."""
        with session_scope(self.session_factory, session) as s:
            stmt = (
                select(QueueItem)
                .where(QueueItem.model_id == model_id, QueueItem.status == QueueStatus.queued.value)
                .order_by(*_DISPATCH_ORDER)
                .limit(1)
            )
            item = s.execute(stmt).scalar_one_or_none()
            return QueueItemRecord.model_validate(item) if item else None

    def position(self, item: QueueItemRecord) -> int:
        """Live advisory position of a queued item."""
        with self.session_factory() as s:
            return self._position(s, item)

    def find_stale(self, cutoff_ms: int) -> list[QueueItemRecord]:
        """Processing items whose ``started_at`` is older than ``cutoff_ms``."""
        with self.session_factory() as s:
            stmt = (
                select(QueueItem)
                .where(
                    QueueItem.status == QueueStatus.processing.value,
                    QueueItem.started_at < cutoff_ms,
                )
                .order_by(QueueItem.started_at)
            )
            return [QueueItemRecord.model_validate(i) for i in s.execute(stmt).scalars()]

    def list_items(
        self,
        status: QueueStatus | None = None,
        model_id: str | None = None,
        limit: int = 100,
    ) -> list[QueueItemRecord]:
        with self.session_factory() as s:
            stmt = select(QueueItem)
            if status is not None:
                stmt = stmt.where(QueueItem.status == status.value)
            if model_id:
                stmt = stmt.where(QueueItem.model_id == model_id)
            stmt = stmt.order_by(*_DISPATCH_ORDER).limit(limit)
            return [QueueItemRecord.model_validate(i) for i in s.execute(stmt).scalars()]

    def queued_model_ids(self) -> list[str]:
        """Models that currently have at least one queued item."""
        with self.session_factory() as s:
            stmt = (
                select(QueueItem.model_id)
                .where(QueueItem.status == QueueStatus.queued.value)
                .distinct()
                .order_by(QueueItem.model_id)
            )
            return list(s.execute(stmt).scalars())

    def count_processing(self, model_id: str) -> int:
        with self.session_factory() as s:
            stmt = select(func.count(QueueItem.id)).where(
                QueueItem.model_id == model_id,
                QueueItem.status == QueueStatus.processing.value,
            )
            return s.execute(stmt).scalar_one()

    def stats(self) -> QueueStats:
        with self.session_factory() as s:
            stmt = select(QueueItem.status, func.count(QueueItem.id)).group_by(QueueItem.status)
            counts = {status: count for status, count in s.execute(stmt).all()}
        return QueueStats(
            total_queued=counts.get(QueueStatus.queued.value, 0),
            total_processing=counts.get(QueueStatus.processing.value, 0),
            total_completed=counts.get(QueueStatus.completed.value, 0),
            total_failed=counts.get(QueueStatus.failed.value, 0),
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _position(session: Session, item: QueueItem | QueueItemRecord) -> int:
        # ties on queued_at resolve by insertion order
        stmt = select(func.count(QueueItem.id)).where(
            QueueItem.model_id == item.model_id,
            QueueItem.status == QueueStatus.queued.value,
            or_(
                QueueItem.queued_at < item.queued_at,
                and_(QueueItem.queued_at == item.queued_at, QueueItem.id <= item.id),
            ),
        )
        return session.execute(stmt).scalar_one()
