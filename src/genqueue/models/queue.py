"""Queue item model: one row per generation request."""

from typing_extensions import override

from sqlalchemy import BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base


class QueueItem(Base):
    """Durable record of a generation request and its lifecycle.

    Rows are never deleted by the engine itself; they form the audit trail.
    Operators may purge completed rows through the administrative surface.

    Status changes go through conditional updates (``WHERE status = ...``)
    so that racing dispatchers, duplicate webhooks and the sweeper can each
    win a given edge at most once.
    """

    __tablename__ = "generation_queue"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    model_id: Mapped[str] = mapped_column(String, nullable=False)
    model_type: Mapped[str] = mapped_column(String, nullable=False)

    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")
    params: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    ticket_cost: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    no_charge: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    status: Mapped[str] = mapped_column(String, nullable=False, index=True)
    queue_position: Mapped[int | None] = mapped_column(Integer, nullable=True)

    queued_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    completed_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    provider_request_id: Mapped[str | None] = mapped_column(
        String, unique=True, nullable=True, index=True
    )

    result_url: Mapped[str | None] = mapped_column(String, nullable=True)
    result_id: Mapped[str | None] = mapped_column(String, nullable=True)
    output: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_of: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (Index("ix_generation_queue_model_status", "model_id", "status"),)

    @override
    def __repr__(self) -> str:
        return f"<QueueItem(id={self.id}, model_id={self.model_id}, status={self.status})>"
