"""Recovery sweeper for jobs whose completion webhook never arrived."""

import logging

from .config import Config
from .dispatcher import Dispatcher
from .escrow import EscrowSettlement
from .models.base import now_ms
from .queue_store import QueueStoreService
from .schemas import SweepResult

logger = logging.getLogger(__name__)


class RecoverySweeper:
    """Force-fails items stuck in ``processing`` past the staleness threshold.

    Each stale item is refunded and its concurrency slot released through
    :class:`EscrowSettlement`, so an item that settles concurrently (a late
    webhook) is never refunded twice.
    """

    def __init__(
        self,
        store: QueueStoreService,
        escrow: EscrowSettlement,
        dispatcher: Dispatcher,
        stale_minutes: int | None = None,
    ):
        self.store: QueueStoreService = store
        self.escrow: EscrowSettlement = escrow
        self.dispatcher: Dispatcher = dispatcher
        self.stale_minutes: int = stale_minutes if stale_minutes is not None else Config.STALE_MINUTES

    async def sweep(self, now: int | None = None, dispatch: bool = True) -> SweepResult:
        """Fail every stale processing item.

        Args:
            now: Current time in milliseconds (defaults to the wall clock)
            dispatch: Dispatch queued work into the released slots

        Returns:
            Items that were reset
        """
        cutoff = (now if now is not None else now_ms()) - self.stale_minutes * 60 * 1000
        error = f"Stale job reset after {self.stale_minutes}+ minutes in processing state"

        reset: list[int] = []
        models: set[str] = set()
        for item in self.store.find_stale(cutoff):
            if self.escrow.fail(item, error):
                reset.append(item.id)
                models.add(item.model_id)

        if not reset:
            return SweepResult(reset=0, message="No stale jobs found")

        logger.warning(f"Reset {len(reset)} stale job(s): {reset}")
        if dispatch:
            for model_id in sorted(models):
                _ = await self.dispatcher.dispatch_available(model_id)

        return SweepResult(reset=len(reset), item_ids=reset, message=f"Reset {len(reset)} stale job(s)")
