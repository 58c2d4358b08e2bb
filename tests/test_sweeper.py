"""Tests for RecoverySweeper."""

from __future__ import annotations

from conftest import FakeProvider, success_payload

from genqueue.engine import GenerationEngine
from genqueue.models.base import now_ms
from genqueue.schemas import GenerationRequest, ModelType, QueueStatus, WebhookPayload
from genqueue.settlement import SettlementOutcome

_MINUTE_MS = 60 * 1000


async def _submit(engine: GenerationEngine) -> int:
    item = await engine.submit(
        GenerationRequest(user_id="alice", model_id="nano-banana", prompt="a cat"), ticket_cost=2
    )
    return item.id


async def test_stale_item_is_reset(engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    _ = engine.create_limit("nano-banana", ModelType.image, 1)
    item_id = await _submit(engine)

    result = await engine.sweeper.sweep(now=now_ms() + 45 * _MINUTE_MS)

    assert result.reset == 1
    assert result.item_ids == [item_id]
    assert result.message == "Reset 1 stale job(s)"

    item = engine.store.get_item(item_id)
    assert item is not None
    assert item.status == QueueStatus.failed
    assert item.error_message == "Stale job reset after 30+ minutes in processing state"
    account = engine.ledger.get_account("alice")
    assert (account.balance, account.reserved, account.total_used) == (10, 0, 0)
    limit = engine.limiter.get_limit("nano-banana")
    assert limit is not None
    assert limit.current_active == 0


async def test_fresh_item_is_kept(engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    item_id = await _submit(engine)

    result = await engine.sweeper.sweep(now=now_ms() + 10 * _MINUTE_MS)

    assert result.reset == 0
    assert result.message == "No stale jobs found"
    item = engine.store.get_item(item_id)
    assert item is not None
    assert item.status == QueueStatus.processing


async def test_sweep_dispatches_waiting_items(engine: GenerationEngine, provider: FakeProvider) -> None:
    engine.ledger.grant("alice", 10)
    _ = engine.create_limit("nano-banana", ModelType.image, 1)
    _ = await _submit(engine)
    waiting_id = await _submit(engine)

    _ = await engine.sweeper.sweep(now=now_ms() + 45 * _MINUTE_MS)

    waiting = engine.store.get_item(waiting_id)
    assert waiting is not None
    assert waiting.status == QueueStatus.processing
    assert len(provider.calls) == 2


async def test_late_webhook_after_sweep_is_duplicate(engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    item_id = await _submit(engine)
    _ = await engine.sweeper.sweep(now=now_ms() + 45 * _MINUTE_MS)
    item = engine.store.get_item(item_id)
    assert item is not None

    outcome = await engine.handle_webhook(
        WebhookPayload.model_validate(success_payload(item.provider_request_id, "https://cdn/a.png"))
    )

    assert outcome is SettlementOutcome.duplicate
    account = engine.ledger.get_account("alice")
    assert (account.balance, account.reserved, account.total_used) == (10, 0, 0)


async def test_sweep_twice_refunds_once(engine: GenerationEngine) -> None:
    engine.ledger.grant("alice", 10)
    _ = await _submit(engine)
    later = now_ms() + 45 * _MINUTE_MS

    first = await engine.sweeper.sweep(now=later)
    second = await engine.sweeper.sweep(now=later)

    assert first.reset == 1
    assert second.reset == 0
    assert engine.ledger.get_account("alice").balance == 10
