"""Stored result artifacts of completed generations."""

from typing_extensions import override

from sqlalchemy import BigInteger, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class GeneratedArtifact(Base):
    """One re-hosted artifact produced by a completed queue item.

    Only the primary artifact of an item carries the item's ticket cost;
    secondary artifacts are recorded with a zero line-item charge.
    """

    __tablename__ = "generated_artifacts"  # pyright: ignore[reportUnannotatedClassAttribute]

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    artifact_id: Mapped[str] = mapped_column(String, unique=True, nullable=False, index=True)
    queue_item_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    model_id: Mapped[str] = mapped_column(String, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False, default="")

    reference: Mapped[str] = mapped_column(String, nullable=False)
    source_url: Mapped[str] = mapped_column(String, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hash: Mapped[str | None] = mapped_column(String, nullable=True)

    ticket_cost: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    @override
    def __repr__(self) -> str:
        return f"<GeneratedArtifact(artifact_id={self.artifact_id}, item={self.queue_item_id})>"
