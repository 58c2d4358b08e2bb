"""Credit ledger: reservation and settlement of user tickets.

Every mutation is a single ``UPDATE ... WHERE`` whose guard predicate keeps
``balance`` and ``reserved`` non-negative, so two concurrent requests for
the same user can never both pass a read-then-write balance check. An
audit :class:`~genqueue.models.LedgerEntry` is written in the same
transaction.
"""

import logging

from sqlalchemy import Update, select, update
from sqlalchemy.orm import Session, sessionmaker

from .database import session_scope
from .exceptions import AccountNotFoundError, InsufficientCreditsError, LedgerError
from .models import CreditAccount, LedgerEntry
from .models.base import now_ms
from .schemas import CreditAccountRecord, LedgerEventType

logger = logging.getLogger(__name__)


class CreditLedgerService:
    """SQLAlchemy implementation of the credit ledger.

    Example:
        ledger = CreditLedgerService(session_factory)
        ledger.grant("user-1", 10)
        ledger.reserve("user-1", 2)          # balance 8, reserved 2
        ledger.finalize_spent("user-1", 2)   # reserved 0, total_used 2
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self.session_factory: sessionmaker[Session] = session_factory

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_account(self, user_id: str, session: Session | None = None) -> CreditAccountRecord:
        """Return the user's account.

        Raises:
            AccountNotFoundError: If the user has never been credited
        """
        with session_scope(self.session_factory, session) as s:
            account = s.get(CreditAccount, user_id)
            if account is None:
                raise AccountNotFoundError(f"No credit account for user {user_id}")
            return CreditAccountRecord.model_validate(account)

    def entries(self, user_id: str) -> list[LedgerEntry]:
        """Audit trail for a user, oldest first."""
        with self.session_factory() as session:
            stmt = (
                select(LedgerEntry)
                .where(LedgerEntry.user_id == user_id)
                .order_by(LedgerEntry.id)
            )
            return list(session.execute(stmt).scalars())

    # -------------------------------------------------------------------------
    # Billing collaborator entry point
    # -------------------------------------------------------------------------

    def grant(self, user_id: str, amount: int, session: Session | None = None) -> None:
        """Credit ``amount`` tickets to the user's balance, creating the account if needed."""
        _check_amount(amount)
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(balance=CreditAccount.balance + amount, updated_at=now_ms())
            )
            if s.execute(stmt).rowcount == 0:
                s.add(CreditAccount(user_id=user_id, balance=amount, reserved=0, total_used=0, updated_at=now_ms()))
                s.flush()
            self._record(s, user_id, LedgerEventType.grant, amount)

    # -------------------------------------------------------------------------
    # Escrow operations
    # -------------------------------------------------------------------------

    def reserve(
        self,
        user_id: str,
        amount: int,
        queue_item_id: int | None = None,
        session: Session | None = None,
    ) -> LedgerEntry:
        """Move ``amount`` from balance to reserved, atomically.

        Raises:
            InsufficientCreditsError: If balance < amount (nothing is changed)
        """
        _check_amount(amount)
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.balance >= amount)
                .values(
                    balance=CreditAccount.balance - amount,
                    reserved=CreditAccount.reserved + amount,
                    updated_at=now_ms(),
                )
            )
            if s.execute(stmt).rowcount == 0:
                available = s.execute(
                    select(CreditAccount.balance).where(CreditAccount.user_id == user_id)
                ).scalar_one_or_none()
                logger.info(
                    f"Reservation rejected for user {user_id}: need {amount}, have {available or 0}"
                )
                raise InsufficientCreditsError(user_id, amount, available or 0)
            return self._record(s, user_id, LedgerEventType.reserve, amount, queue_item_id)

    def hold_no_charge(
        self,
        user_id: str,
        amount: int,
        queue_item_id: int | None = None,
        session: Session | None = None,
    ) -> LedgerEntry:
        """Hold ``amount`` in reserved for an operator job without debiting the balance.

        The account is created with a zero balance if it does not exist yet.
        """
        _check_amount(amount)
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id)
                .values(reserved=CreditAccount.reserved + amount, updated_at=now_ms())
            )
            if s.execute(stmt).rowcount == 0:
                s.add(CreditAccount(user_id=user_id, balance=0, reserved=amount, total_used=0, updated_at=now_ms()))
                s.flush()
            return self._record(s, user_id, LedgerEventType.hold_no_charge, amount, queue_item_id)

    def finalize_spent(
        self,
        user_id: str,
        amount: int,
        queue_item_id: int | None = None,
        session: Session | None = None,
    ) -> None:
        """Consume a reservation: reserved -= amount, total_used += amount."""
        _check_amount(amount)
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.reserved >= amount)
                .values(
                    reserved=CreditAccount.reserved - amount,
                    total_used=CreditAccount.total_used + amount,
                    updated_at=now_ms(),
                )
            )
            self._apply(s, stmt, user_id, amount, "finalize")
            self._record(s, user_id, LedgerEventType.finalize, amount, queue_item_id)

    def refund(
        self,
        user_id: str,
        amount: int,
        queue_item_id: int | None = None,
        session: Session | None = None,
    ) -> None:
        """Return a reservation to the balance: reserved -= amount, balance += amount."""
        _check_amount(amount)
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.reserved >= amount)
                .values(
                    reserved=CreditAccount.reserved - amount,
                    balance=CreditAccount.balance + amount,
                    updated_at=now_ms(),
                )
            )
            self._apply(s, stmt, user_id, amount, "refund")
            self._record(s, user_id, LedgerEventType.refund, amount, queue_item_id)

    def release_reservation_only(
        self,
        user_id: str,
        amount: int,
        queue_item_id: int | None = None,
        session: Session | None = None,
    ) -> None:
        """Drop a reservation without touching balance or total_used (no-charge jobs)."""
        _check_amount(amount)
        with session_scope(self.session_factory, session) as s:
            stmt = (
                update(CreditAccount)
                .where(CreditAccount.user_id == user_id, CreditAccount.reserved >= amount)
                .values(reserved=CreditAccount.reserved - amount, updated_at=now_ms())
            )
            self._apply(s, stmt, user_id, amount, "release")
            self._record(s, user_id, LedgerEventType.release_no_charge, amount, queue_item_id)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply(session: Session, stmt: Update, user_id: str, amount: int, operation: str) -> None:
        if session.execute(stmt).rowcount == 0:
            raise LedgerError(
                f"Cannot {operation} {amount} for user {user_id}: "
                "account missing or reserved balance too low"
            )

    @staticmethod
    def _record(
        session: Session,
        user_id: str,
        event_type: LedgerEventType,
        amount: int,
        queue_item_id: int | None = None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            user_id=user_id,
            event_type=event_type.value,
            amount=amount,
            queue_item_id=queue_item_id,
            created_at=now_ms(),
        )
        session.add(entry)
        return entry


def _check_amount(amount: int) -> None:
    if amount < 0:
        raise ValueError(f"Ledger amounts must be non-negative, got {amount}")
