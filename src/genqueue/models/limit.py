"""Per-model concurrency limit."""

from typing_extensions import override

from sqlalchemy import BigInteger, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class ConcurrencyLimit(Base):
    """Admission gate for one model.

    ``current_active`` counts jobs that were successfully handed to the
    provider and have not reached a terminal state yet.
    """

    __tablename__ = "model_concurrency_limits"  # pyright: ignore[reportUnannotatedClassAttribute]

    model_id: Mapped[str] = mapped_column(String, primary_key=True)
    model_type: Mapped[str] = mapped_column(String, nullable=False)
    max_concurrent: Mapped[int] = mapped_column(Integer, nullable=False)
    current_active: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        CheckConstraint("current_active >= 0", name="ck_limit_active_non_negative"),
    )

    @override
    def __repr__(self) -> str:
        return (
            f"<ConcurrencyLimit(model_id={self.model_id}, "
            f"active={self.current_active}/{self.max_concurrent})>"
        )
