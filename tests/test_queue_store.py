"""Tests for QueueStoreService."""

from __future__ import annotations

import pytest

from genqueue.exceptions import InvalidTransitionError
from genqueue.queue_store import QueueStoreService, check_transition
from genqueue.schemas import ModelType, QueueItemRecord, QueueStatus


def _enqueue(store: QueueStoreService, model_id: str = "flux-2", priority: int = 0) -> QueueItemRecord:
    return store.enqueue("alice", model_id, ModelType.image, "a cat", {}, 1, priority)


# ============================================================================
# Ordering Tests
# ============================================================================


def test_enqueue_sets_queued_state(queue_store: QueueStoreService) -> None:
    item = _enqueue(queue_store)

    assert item.status == QueueStatus.queued
    assert item.queue_position == 1
    assert item.queued_at > 0
    assert item.started_at is None
    assert item.provider_request_id is None


def test_positions_are_per_model(queue_store: QueueStoreService) -> None:
    first = _enqueue(queue_store)
    second = _enqueue(queue_store)
    other = _enqueue(queue_store, model_id="nano-banana")

    assert first.queue_position == 1
    assert second.queue_position == 2
    assert other.queue_position == 1


def test_next_admissible_is_fifo(queue_store: QueueStoreService) -> None:
    first = _enqueue(queue_store)
    _ = _enqueue(queue_store)

    nxt = queue_store.next_admissible("flux-2")

    assert nxt is not None
    assert nxt.id == first.id


def test_next_admissible_prefers_priority(queue_store: QueueStoreService) -> None:
    _ = _enqueue(queue_store)
    urgent = _enqueue(queue_store, priority=5)

    nxt = queue_store.next_admissible("flux-2")

    assert nxt is not None
    assert nxt.id == urgent.id


def test_next_admissible_skips_other_states(queue_store: QueueStoreService) -> None:
    first = _enqueue(queue_store)
    second = _enqueue(queue_store)
    assert queue_store.transition(first.id, QueueStatus.queued, QueueStatus.processing)

    nxt = queue_store.next_admissible("flux-2")

    assert nxt is not None
    assert nxt.id == second.id
    assert queue_store.next_admissible("nano-banana") is None


def test_live_position_shrinks_as_queue_drains(queue_store: QueueStoreService) -> None:
    first = _enqueue(queue_store)
    second = _enqueue(queue_store)
    assert queue_store.position(second) == 2

    assert queue_store.transition(first.id, QueueStatus.queued, QueueStatus.processing)

    assert queue_store.position(second) == 1


def test_refresh_positions(queue_store: QueueStoreService) -> None:
    first = _enqueue(queue_store)
    second = _enqueue(queue_store)
    assert queue_store.transition(first.id, QueueStatus.queued, QueueStatus.processing)

    queue_store.refresh_positions("flux-2")

    refreshed = queue_store.get_item(second.id)
    assert refreshed is not None
    assert refreshed.queue_position == 1


# ============================================================================
# Transition Tests
# ============================================================================


def test_transition_to_processing_sets_started_at(queue_store: QueueStoreService) -> None:
    item = _enqueue(queue_store)

    assert queue_store.transition(item.id, QueueStatus.queued, QueueStatus.processing)

    updated = queue_store.get_item(item.id)
    assert updated is not None
    assert updated.status == QueueStatus.processing
    assert updated.started_at is not None


def test_terminal_transition_sets_completed_at(queue_store: QueueStoreService) -> None:
    item = _enqueue(queue_store)
    assert queue_store.transition(item.id, QueueStatus.queued, QueueStatus.processing)

    assert queue_store.transition(
        item.id, QueueStatus.processing, QueueStatus.failed, error_message="boom"
    )

    updated = queue_store.get_item(item.id)
    assert updated is not None
    assert updated.status == QueueStatus.failed
    assert updated.error_message == "boom"
    assert updated.completed_at is not None
    assert updated.queue_position is None


def test_transition_is_conditional(queue_store: QueueStoreService) -> None:
    item = _enqueue(queue_store)
    assert queue_store.transition(item.id, QueueStatus.queued, QueueStatus.processing)

    # second claim of the same item loses
    assert not queue_store.transition(item.id, QueueStatus.queued, QueueStatus.processing)


def test_transition_missing_item(queue_store: QueueStoreService) -> None:
    assert not queue_store.transition(999, QueueStatus.queued, QueueStatus.processing)


@pytest.mark.parametrize(
    ("from_status", "to_status"),
    [
        (QueueStatus.completed, QueueStatus.queued),
        (QueueStatus.completed, QueueStatus.failed),
        (QueueStatus.failed, QueueStatus.queued),
        (QueueStatus.failed, QueueStatus.completed),
        (QueueStatus.processing, QueueStatus.queued),
        (QueueStatus.queued, QueueStatus.completed),
    ],
)
def test_illegal_transitions_rejected(from_status: QueueStatus, to_status: QueueStatus) -> None:
    with pytest.raises(InvalidTransitionError):
        check_transition(from_status, to_status)


# ============================================================================
# Queries and Maintenance
# ============================================================================


def test_get_by_provider_request_id(queue_store: QueueStoreService) -> None:
    item = _enqueue(queue_store)
    assert queue_store.set_provider_request_id(item.id, "req-abc")

    found = queue_store.get_by_provider_request_id("req-abc")

    assert found is not None
    assert found.id == item.id
    assert queue_store.get_by_provider_request_id("req-unknown") is None


def test_stats(queue_store: QueueStoreService) -> None:
    _ = _enqueue(queue_store)
    processing = _enqueue(queue_store)
    assert queue_store.transition(processing.id, QueueStatus.queued, QueueStatus.processing)

    stats = queue_store.stats()

    assert stats.total_queued == 1
    assert stats.total_processing == 1
    assert stats.total_completed == 0
    assert stats.total_failed == 0


def test_purge_completed_keeps_real_failures(queue_store: QueueStoreService) -> None:
    done = _enqueue(queue_store)
    failed = _enqueue(queue_store)
    cancelled = _enqueue(queue_store)
    for item in (done, failed):
        assert queue_store.transition(item.id, QueueStatus.queued, QueueStatus.processing)
    assert queue_store.transition(done.id, QueueStatus.processing, QueueStatus.completed)
    assert queue_store.transition(failed.id, QueueStatus.processing, QueueStatus.failed)
    assert queue_store.transition(
        cancelled.id, QueueStatus.queued, QueueStatus.failed, cancelled=True
    )

    assert queue_store.purge_completed() == 2

    remaining = queue_store.list_items()
    assert [i.id for i in remaining] == [failed.id]


def test_queued_model_ids(queue_store: QueueStoreService) -> None:
    _ = _enqueue(queue_store, model_id="flux-2")
    _ = _enqueue(queue_store, model_id="nano-banana")

    assert queue_store.queued_model_ids() == ["flux-2", "nano-banana"]
