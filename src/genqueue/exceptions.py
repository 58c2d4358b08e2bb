"""Exceptions raised by the generation queue engine."""


class GenQueueError(Exception):
    """Base class for all engine errors."""


class InsufficientCreditsError(GenQueueError):
    """Reservation rejected because the available balance is too low."""

    def __init__(self, user_id: str, needed: int, available: int):
        self.user_id: str = user_id
        self.needed: int = needed
        self.available: int = available
        super().__init__(
            f"Insufficient tickets. Need {needed}, have {available} available."
        )


class UnknownModelError(GenQueueError):
    """Requested model is not in the catalog or is disabled."""

    def __init__(self, model_id: str):
        self.model_id: str = model_id
        super().__init__(f"Unknown model: {model_id}")


class AccountNotFoundError(GenQueueError):
    """No credit account exists for the user."""


class QueueItemNotFoundError(GenQueueError):
    """No queue item with the given id."""


class InvalidTransitionError(GenQueueError):
    """Attempted status change is not an edge of the transition table."""

    def __init__(self, from_status: str, to_status: str):
        self.from_status: str = from_status
        self.to_status: str = to_status
        super().__init__(f"Illegal queue transition: {from_status} -> {to_status}")


class InvalidLimitError(GenQueueError):
    """Administrative concurrency limit is out of range."""


class ProviderSubmissionError(GenQueueError):
    """The provider rejected or failed to accept a submission."""


class ArtifactStorageError(GenQueueError):
    """A result artifact could not be re-hosted."""


class LedgerError(GenQueueError):
    """A ledger update would break the non-negative invariants."""


class LimitNotFoundError(GenQueueError):
    """No concurrency limit row exists for the model."""
