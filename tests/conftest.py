"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from tabtin.extraction.models import ColumnDefinition, FeatureFlags
from tabtin.llm.client import ModelReply, ModelRequest
from tabtin.llm.usage import TokenUsage
from tabtin.queue.job_store import JobStore
from tabtin.records.models import BatchView, ImageCreate, TenantSettings, TenantView
from tabtin.records.repository import RecordRepository

TENANT_ID = "acme"
MODEL_ENDPOINT = "https://model.test/v1/chat/completions"

INVOICE_COLUMNS = [
    ColumnDefinition(id="invoice_no", name="Invoice Number", description="Invoice id"),
    ColumnDefinition(id="date", name="Date", type="date"),
    ColumnDefinition(id="total", name="Total Amount", type="currency"),
]


class FakeClock:
    """Settable UTC clock for the job store."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeModelClient:
    """Returns scripted replies in order; an exception in the script is raised instead."""

    def __init__(self, replies: list[str | Exception] | None = None) -> None:
        self.replies: list[str | Exception] = list(replies or [])
        self.requests: list[ModelRequest] = []
        self.closed = False

    def queue(self, *replies: str | Exception) -> None:
        self.replies.extend(replies)

    def complete(self, request: ModelRequest) -> ModelReply:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError("FakeModelClient has no scripted reply left")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return ModelReply(
            content=reply,
            model=request.model,
            usage=TokenUsage(
                prompt_tokens=100,
                completion_tokens=20,
                total_tokens=120,
                usage_status="reported",
            ),
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "tabtin.db"


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def job_store(db_path: Path, clock: FakeClock, sleeps: list[float]) -> Iterator[JobStore]:
    store = JobStore(db_path, clock=clock, sleep=sleeps.append)
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def records(db_path: Path, job_store: JobStore) -> Iterator[RecordRepository]:
    repository = RecordRepository(db_path)
    yield repository
    repository.close()


@pytest.fixture()
def model_client() -> FakeModelClient:
    return FakeModelClient()


def tenant_settings(**overrides: object) -> TenantSettings:
    settings = TenantSettings(
        endpoint=MODEL_ENDPOINT,
        api_key="sk-test",
        model_name="vision-1",
        columns=[replace(column) for column in INVOICE_COLUMNS],
        feature_flags=FeatureFlags(bounding_boxes=True, confidence_scores=True),
        max_concurrency=2,
        requests_per_minute=0,
    )
    return replace(settings, **overrides)


@pytest.fixture()
def make_tenant(records: RecordRepository) -> Callable[..., TenantView]:
    def _make(tenant_id: str = TENANT_ID, **overrides: object) -> TenantView:
        return records.upsert_tenant(
            tenant_id=tenant_id,
            display_name=tenant_id.title(),
            settings=tenant_settings(**overrides),
        )

    return _make


@pytest.fixture()
def make_batch(records: RecordRepository) -> Callable[..., BatchView]:
    def _make(tenant_id: str = TENANT_ID, pages: int = 1) -> BatchView:
        return records.create_batch(
            tenant_id=tenant_id,
            images=[
                ImageCreate(
                    filename=f"page-{page}.png",
                    mime_type="image/png",
                    content=f"png-{page}".encode(),
                )
                for page in range(1, pages + 1)
            ],
        )

    return _make
