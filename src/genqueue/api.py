"""
HTTP surface: admission, status polling, the provider webhook and the
administrative queue routes.

Usage:
    app = create_app()  # engine built from Config
"""

import logging

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request

from .engine import GenerationEngine
from .exceptions import (
    InsufficientCreditsError,
    InvalidLimitError,
    InvalidTransitionError,
    LimitNotFoundError,
    QueueItemNotFoundError,
    UnknownModelError,
)
from .schemas import (
    ClearCompletedRequest,
    ConcurrencyLimitRecord,
    GenerationRequest,
    LimitCreate,
    LimitUpdate,
    OperatorGenerationRequest,
    QueueItemRecord,
    QueueStats,
    QueueStatus,
    QueueStatusView,
    SweepResult,
    WebhookPayload,
)

logger = logging.getLogger(__name__)


def create_router(engine: GenerationEngine) -> APIRouter:
    router = APIRouter()

    # ==========================================================================
    # User routes
    # ==========================================================================

    @router.post("/generations", response_model=QueueItemRecord)
    async def submit_generation(request: GenerationRequest) -> QueueItemRecord:
        try:
            return await engine.submit(request)
        except InsufficientCreditsError as e:
            raise HTTPException(status_code=402, detail=str(e))
        except UnknownModelError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @router.get("/queue/status/{item_id}", response_model=QueueStatusView)
    def queue_status(item_id: int) -> QueueStatusView:
        try:
            return engine.status(item_id)
        except QueueItemNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # ==========================================================================
    # Provider webhook
    # ==========================================================================

    @router.post("/api/webhooks/provider")
    async def provider_webhook(request: Request, item_id: int | None = None) -> dict[str, bool]:
        """Always acknowledged; the provider must not retry on our errors."""
        try:
            payload = WebhookPayload.model_validate(await request.json())
        except ValueError as e:
            logger.warning(f"Malformed webhook body ignored: {e}")
            return {"received": True}

        outcome = await engine.handle_webhook(payload, item_id)
        logger.debug(f"Webhook {payload.request_id} -> {outcome.value}")
        return {"received": True}

    # ==========================================================================
    # Admin: operator admission
    # ==========================================================================

    @router.post("/admin/generations", response_model=QueueItemRecord)
    async def submit_operator_generation(request: OperatorGenerationRequest) -> QueueItemRecord:
        try:
            return await engine.submit(request)
        except InsufficientCreditsError as e:
            raise HTTPException(status_code=402, detail=str(e))
        except UnknownModelError as e:
            raise HTTPException(status_code=404, detail=str(e))

    # ==========================================================================
    # Admin: concurrency limits
    # ==========================================================================

    @router.get("/admin/queue/limits", response_model=list[ConcurrencyLimitRecord])
    def list_limits() -> list[ConcurrencyLimitRecord]:
        return engine.list_limits()

    @router.post("/admin/queue/limits", response_model=ConcurrencyLimitRecord)
    def create_limit(body: LimitCreate) -> ConcurrencyLimitRecord:
        try:
            return engine.create_limit(body.model_id, body.model_type, body.max_concurrent)
        except InvalidLimitError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.put("/admin/queue/limits", response_model=ConcurrencyLimitRecord)
    async def update_limit(body: LimitUpdate) -> ConcurrencyLimitRecord:
        try:
            return await engine.set_limit(body.model_id, body.max_concurrent)
        except InvalidLimitError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LimitNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @router.delete("/admin/queue/limits")
    def delete_limit(model_id: str = Query(..., min_length=1)) -> dict[str, bool]:
        if not engine.delete_limit(model_id):
            raise HTTPException(status_code=404, detail=f"No limit for model {model_id}")
        return {"success": True}

    # ==========================================================================
    # Admin: queue
    # ==========================================================================

    @router.get("/admin/queue/stats", response_model=QueueStats)
    async def queue_stats(auto_sweep: bool | None = None) -> QueueStats:
        return await engine.stats(auto_sweep)

    @router.get("/admin/queue/items", response_model=list[QueueItemRecord])
    def list_items(
        status: QueueStatus | None = None,
        model_id: str | None = None,
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[QueueItemRecord]:
        return engine.list_items(status, model_id, limit)

    @router.delete("/admin/queue/items/{item_id}", response_model=QueueItemRecord)
    async def cancel_item(item_id: int) -> QueueItemRecord:
        try:
            return await engine.cancel(item_id)
        except QueueItemNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransitionError as e:
            raise HTTPException(status_code=400, detail=str(e))

    @router.post("/admin/queue/items/{item_id}/retry", response_model=QueueItemRecord)
    async def retry_item(item_id: int) -> QueueItemRecord:
        try:
            return await engine.retry(item_id)
        except QueueItemNotFoundError as e:
            raise HTTPException(status_code=404, detail=str(e))
        except InvalidTransitionError as e:
            raise HTTPException(status_code=400, detail="Only failed items can be retried") from e
        except InsufficientCreditsError as e:
            raise HTTPException(status_code=402, detail=str(e))
        except UnknownModelError as e:
            raise HTTPException(status_code=404, detail=str(e))

    @router.post("/admin/queue/reset-stale", response_model=SweepResult)
    async def reset_stale() -> SweepResult:
        return await engine.sweep()

    @router.post("/admin/queue/clear-completed")
    def clear_completed(body: ClearCompletedRequest | None = None) -> dict[str, int]:
        deleted = engine.purge_completed(body.model_id if body else None)
        return {"deleted": deleted}

    return router


def create_app(engine: GenerationEngine | None = None) -> FastAPI:
    app = FastAPI(title="genqueue")
    app.state.engine = engine or GenerationEngine.from_config()
    app.include_router(create_router(app.state.engine))
    return app
