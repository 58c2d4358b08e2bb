"""Per-model admission control backed by ``model_concurrency_limits`` rows."""

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .catalog import ModelCatalog
from .config import Config
from .database import session_scope
from .exceptions import InvalidLimitError, LimitNotFoundError
from .models import ConcurrencyLimit
from .models.base import now_ms
from .schemas import ConcurrencyLimitRecord, ModelType

logger = logging.getLogger(__name__)


class ConcurrencyLimiterService:
    """Admission gate for dispatching jobs to the provider.

    ``acquire`` is called once per job when it is handed to the provider and
    ``release`` once when it reaches a terminal state. Both are single
    conditional updates: ``acquire`` only succeeds while
    ``current_active < max_concurrent`` and ``release`` never takes the
    counter below zero.

    A model without a limit row is admitted (fail-open). The first acquire
    for such a model creates an unlimited row so that the matching release
    has something to decrement.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        unlimited: int | None = None,
    ):
        self.session_factory: sessionmaker[Session] = session_factory
        self.unlimited: int = unlimited if unlimited is not None else Config.UNLIMITED_CONCURRENCY

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def is_admissible(self, model_id: str, session: Session | None = None) -> bool:
        """True if another job for ``model_id`` may be dispatched right now."""
        with session_scope(self.session_factory, session) as s:
            limit = s.get(ConcurrencyLimit, model_id)
            if limit is None:
                logger.warning(f"No concurrency limit found for model: {model_id}")
                return True
            return limit.current_active < limit.max_concurrent

    def acquire(
        self,
        model_id: str,
        model_type: ModelType = ModelType.image,
        session: Session | None = None,
    ) -> bool:
        """Take one slot for ``model_id``.

        Returns:
            True if the slot was taken, False if the model is at capacity
        """
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(ConcurrencyLimit)
                .where(
                    ConcurrencyLimit.model_id == model_id,
                    ConcurrencyLimit.current_active < ConcurrencyLimit.max_concurrent,
                )
                .values(current_active=ConcurrencyLimit.current_active + 1, updated_at=now_ms())
            )
            if s.execute(stmt).rowcount == 1:
                return True

            if s.get(ConcurrencyLimit, model_id) is not None:
                return False

            # another dispatcher may create the row concurrently
            self._insert_unlimited(s, model_id, model_type)
            return s.execute(stmt).rowcount == 1

    def _insert_unlimited(self, session: Session, model_id: str, model_type: ModelType) -> None:
        """Insert an unlimited row for ``model_id`` unless one already exists."""
        values = {
            "model_id": model_id,
            "model_type": model_type.value,
            "max_concurrent": self.unlimited,
            "current_active": 0,
            "updated_at": now_ms(),
        }
        dialect = session.get_bind().dialect.name
        if dialect == "sqlite":
            _ = session.execute(sqlite_insert(ConcurrencyLimit).values(**values).on_conflict_do_nothing())
        elif dialect == "postgresql":
            _ = session.execute(pg_insert(ConcurrencyLimit).values(**values).on_conflict_do_nothing())
        else:
            try:
                with session.begin_nested():
                    session.add(ConcurrencyLimit(**values))
            except IntegrityError:
                logger.debug(f"Concurrency limit for {model_id} created concurrently")

    def release(self, model_id: str, session: Session | None = None) -> bool:
        """Give back one slot for ``model_id``.

        Returns:
            True if a slot was released, False if the counter was already zero
        """
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(ConcurrencyLimit)
                .where(ConcurrencyLimit.model_id == model_id, ConcurrencyLimit.current_active > 0)
                .values(current_active=ConcurrencyLimit.current_active - 1, updated_at=now_ms())
            )
            released = s.execute(stmt).rowcount == 1
            if not released:
                logger.warning(f"Release for {model_id} ignored: no active slot to release")
            return released

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def normalize_max(self, max_concurrent: int) -> int:
        """Map 0 to the unlimited sentinel and validate the range."""
        if max_concurrent == 0:
            return self.unlimited
        if max_concurrent < 1 or max_concurrent > self.unlimited:
            raise InvalidLimitError(f"maxConcurrent must be between 1 and {self.unlimited}")
        return max_concurrent

    def get_limit(self, model_id: str) -> ConcurrencyLimitRecord | None:
        with self.session_factory() as session:
            limit = session.get(ConcurrencyLimit, model_id)
            return ConcurrencyLimitRecord.model_validate(limit) if limit else None

    def list_limits(self) -> list[ConcurrencyLimitRecord]:
        with self.session_factory() as session:
            stmt = select(ConcurrencyLimit).order_by(
                ConcurrencyLimit.model_type, ConcurrencyLimit.model_id
            )
            return [ConcurrencyLimitRecord.model_validate(row) for row in session.execute(stmt).scalars()]

    def ensure_defaults(self, catalog: ModelCatalog) -> int:
        """Create unlimited rows for catalog models that have none. Existing rows are untouched.

        Returns:
            Number of rows created
        """
        created = 0
        with session_scope(self.session_factory) as session:
            for spec in catalog.all():
                if session.get(ConcurrencyLimit, spec.model_id) is None:
                    session.add(
                        ConcurrencyLimit(
                            model_id=spec.model_id,
                            model_type=spec.model_type.value,
                            max_concurrent=self.unlimited,
                            current_active=0,
                            updated_at=now_ms(),
                        )
                    )
                    created += 1
        return created

    def create_limit(
        self, model_id: str, model_type: ModelType, max_concurrent: int
    ) -> ConcurrencyLimitRecord:
        value = self.normalize_max(max_concurrent)
        with session_scope(self.session_factory) as session:
            if session.get(ConcurrencyLimit, model_id) is not None:
                raise InvalidLimitError("Model limit already exists")
            limit = ConcurrencyLimit(
                model_id=model_id,
                model_type=model_type.value,
                max_concurrent=value,
                current_active=0,
                updated_at=now_ms(),
            )
            session.add(limit)
            session.flush()
            return ConcurrencyLimitRecord.model_validate(limit)

    def set_limit(self, model_id: str, max_concurrent: int) -> ConcurrencyLimitRecord:
        """Change ``max_concurrent``; 0 means unlimited.

        Lowering the cap below ``current_active`` is allowed. In-flight jobs
        keep running and nothing new is admitted until the count drops.
        """
        value = self.normalize_max(max_concurrent)
        with session_scope(self.session_factory) as session:
            stmt = (
                update(ConcurrencyLimit)
                .where(ConcurrencyLimit.model_id == model_id)
                .values(max_concurrent=value, updated_at=now_ms())
            )
            if session.execute(stmt).rowcount == 0:
                raise LimitNotFoundError(f"No concurrency limit for model {model_id}")
            limit = session.get(ConcurrencyLimit, model_id, populate_existing=True)
            logger.info(f"Concurrency limit for {model_id} set to {value}")
            return ConcurrencyLimitRecord.model_validate(limit)

    def delete_limit(self, model_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            result = session.execute(delete(ConcurrencyLimit).where(ConcurrencyLimit.model_id == model_id))
            return result.rowcount > 0
