"""Shared test fixtures for genqueue tests."""

from __future__ import annotations

import asyncio
import os
import tempfile
from typing import TYPE_CHECKING, Any

# Config reads the environment at import time
_ = os.environ.setdefault("GENQUEUE_DIR", tempfile.mkdtemp(prefix="genqueue_test_"))
os.environ["BROADCAST_TYPE"] = "none"

import pytest
from sqlalchemy.orm import Session, sessionmaker

from genqueue.catalog import ModelCatalog
from genqueue.database import create_db_engine, create_session_factory
from genqueue.engine import GenerationEngine
from genqueue.exceptions import ArtifactStorageError, ProviderSubmissionError
from genqueue.ledger import CreditLedgerService
from genqueue.limiter import ConcurrencyLimiterService
from genqueue.queue_store import QueueStoreService
from genqueue.schemas import StoredArtifact

if TYPE_CHECKING:
    from collections.abc import Generator

    from sqlalchemy.engine import Engine


WEBHOOK_URL = "http://testserver/api/webhooks/provider"


# ============================================================================
# Fakes
# ============================================================================


class FakeProvider:
    """Provider that accepts every job and remembers what it was sent."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.fail_next: int = 0
        self.error: Exception = ProviderSubmissionError("provider unavailable")

    async def submit(self, model_identifier: str, payload: dict[str, Any], callback_url: str) -> str:
        # suspend like a real network call so concurrent callers interleave
        await asyncio.sleep(0)
        if self.fail_next > 0:
            self.fail_next -= 1
            raise self.error
        self.calls.append(
            {"model": model_identifier, "payload": payload, "callback_url": callback_url}
        )
        return f"req-{len(self.calls)}"


class FakeArtifactStore:
    """In-memory artifact store; URLs containing ``broken`` fail to download."""

    def __init__(self) -> None:
        self.stored: dict[str, StoredArtifact] = {}
        self.deleted: list[str] = []

    async def store(self, item_id: int, source_url: str, index: int = 0) -> StoredArtifact:
        await asyncio.sleep(0)
        if "broken" in source_url:
            raise ArtifactStorageError(f"Download of {source_url} failed with HTTP 404")
        artifact = StoredArtifact(
            artifact_id=f"art-{item_id}-{index}",
            reference=f"2026/01/01/{item_id}-{index}.png",
            source_url=source_url,
            size=128,
            hash="0" * 64,
        )
        self.stored[artifact.reference] = artifact
        return artifact

    def delete(self, reference: str) -> bool:
        self.deleted.append(reference)
        return self.stored.pop(reference, None) is not None


def success_payload(request_id: str, *urls: str) -> dict[str, Any]:
    return {
        "request_id": request_id,
        "status": "OK",
        "payload": {"images": [{"url": u} for u in urls]},
    }


# ============================================================================
# Database
# ============================================================================


@pytest.fixture
def in_memory_engine() -> Generator[Engine, None, None]:
    """SQLite in-memory engine shared by every session of a test."""
    engine = create_db_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(in_memory_engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(in_memory_engine)


# ============================================================================
# Services
# ============================================================================


@pytest.fixture
def ledger(session_factory: sessionmaker[Session]) -> CreditLedgerService:
    return CreditLedgerService(session_factory)


@pytest.fixture
def limiter(session_factory: sessionmaker[Session]) -> ConcurrencyLimiterService:
    return ConcurrencyLimiterService(session_factory, unlimited=999)


@pytest.fixture
def queue_store(session_factory: sessionmaker[Session]) -> QueueStoreService:
    return QueueStoreService(session_factory)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def artifact_store() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture
def engine(
    session_factory: sessionmaker[Session],
    provider: FakeProvider,
    artifact_store: FakeArtifactStore,
) -> GenerationEngine:
    """Engine over the in-memory database with fake provider and storage."""
    return GenerationEngine(
        session_factory,
        provider=provider,
        storage=artifact_store,
        catalog=ModelCatalog(enabled=[]),
        webhook_url=WEBHOOK_URL,
        stale_minutes=30,
        unlimited=999,
    )
