"""Database models."""

from .artifact import GeneratedArtifact
from .base import Base
from .credit import CreditAccount, LedgerEntry
from .limit import ConcurrencyLimit
from .queue import QueueItem

__all__ = [
    "Base",
    "ConcurrencyLimit",
    "CreditAccount",
    "GeneratedArtifact",
    "LedgerEntry",
    "QueueItem",
]
