"""Credit account and ledger audit models."""

from typing_extensions import override

from sqlalchemy import BigInteger, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class CreditAccount(Base):
    """Per-user ticket balance.

    ``balance`` is what the user can still spend, ``reserved`` is held for
    in-flight jobs and ``total_used`` is the lifetime consumption counter.
    """

    __tablename__ = "credit_accounts"  # pyright: ignore[reportUnannotatedClassAttribute]

    user_id: Mapped[str] = mapped_column(String, primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint("reserved >= 0", name="ck_credit_reserved_non_negative"),
    )

    @override
    def __repr__(self) -> str:
        return (
            f"<CreditAccount(user_id={self.user_id}, balance={self.balance}, "
            f"reserved={self.reserved}, total_used={self.total_used})>"
        )


class LedgerEntry(Base):
    """Append-only audit row written with every ledger mutation."""

    __tablename__ = "ledger_entries"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    queue_item_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    @override
    def __repr__(self) -> str:
        return f"<LedgerEntry(user_id={self.user_id}, event_type={self.event_type}, amount={self.amount})>"
