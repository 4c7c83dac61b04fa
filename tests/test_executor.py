from __future__ import annotations

import itertools
import json

import allure
import pytest
from conftest import TENANT_ID, FakeModelClient

from tabtin.config import WorkerSettings
from tabtin.errors import ModelCallError
from tabtin.extraction.models import FeatureFlags
from tabtin.llm.failure_classifier import FailureClass
from tabtin.pdf import PdfPage
from tabtin.queue.job_store import JobStore
from tabtin.queue.models import JobStatus, JobType, ProcessBatchPayload, ProcessRedoPayload
from tabtin.records.models import (
    PDF_MIME_TYPE,
    BatchStatus,
    ImageCreate,
    MetricStatus,
    PdfOptions,
)
from tabtin.records.repository import CANCELED_BY_USER_MESSAGE, RecordRepository
from tabtin.services import EnqueueRedo, QueueService
from tabtin.worker.executor import NO_COLUMNS_MATCHED, JobExecutor

pytestmark = [
    allure.epic("Job Execution"),
    allure.feature("Batch, Redo & Reprocess Jobs"),
]

MULTI_ROW = FeatureFlags(multi_row_extraction=True)


def _reply(*rows: dict[str, object]) -> str:
    extractions = []
    for row_index, row in enumerate(rows):
        for column_id, value in row.items():
            extractions.append(
                {
                    "row_index": row_index,
                    "column_id": column_id,
                    "value": value,
                    "image_index": 0,
                    "confidence": 0.9,
                },
            )
    return json.dumps({"extractions": extractions})


def _invoice(number: int) -> dict[str, object]:
    return {"invoice_no": f"INV-{number}", "date": f"2026-10-0{number}", "total": f"{number}0.00"}


def _enqueue_batch(job_store: JobStore, batch_id: str, tenant_id: str = TENANT_ID) -> str:
    return job_store.enqueue(
        JobType.PROCESS_BATCH,
        ProcessBatchPayload(batch_id=batch_id, tenant_id=tenant_id).to_payload(),
        tenant_id=TENANT_ID,
    ).job_id


class _FakePdfConverter:
    def __init__(self) -> None:
        self.calls: list[PdfOptions] = []

    def convert(self, pdf_bytes: bytes, options: PdfOptions) -> list[PdfPage]:
        self.calls.append(options)
        return [
            PdfPage(
                page_number=number,
                image_bytes=f"{pdf_bytes.decode()}-page-{number}".encode(),
                mime_type="image/png",
                extracted_text=f"text of page {number}",
                width=100,
                height=100,
            )
            for number in (1, 2)
        ]


class _BrokenMetrics:
    def record(self, metric) -> None:
        raise RuntimeError("metrics down")


@pytest.fixture()
def executor(
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    sleeps: list[float],
    monkeypatch: pytest.MonkeyPatch,
) -> JobExecutor:
    worker = JobExecutor(
        tenant_id=TENANT_ID,
        job_store=job_store,
        records=records,
        model_client=model_client,
        pdf_converter=_FakePdfConverter(),
        worker_settings=WorkerSettings(poll_interval_seconds=0.01, error_backoff_seconds=0),
    )
    monkeypatch.setattr(worker, "_sleep_with_stop", sleeps.append)
    return worker


def test_process_batch_stores_rows_and_metric(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch(pages=2)
    job_id = _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(_reply(_invoice(1)))

    summary = executor.run_once()

    assert (summary.processed, summary.completed, summary.failed) == (1, 1, 0)
    assert job_store.get_job(job_id).status == JobStatus.COMPLETED
    view = records.get_batch(batch.batch_id)
    assert view.status == BatchStatus.REVIEW
    assert view.row_count == 1
    assert len(view.processed_data["extractions"]) == 3
    [row] = records.list_rows(batch.batch_id)
    assert {result.column_id: result.value for result in row.row_data} == _invoice(1)
    assert row.row_data[0].column_name == "Invoice Number"

    [request] = model_client.requests
    assert request.model == "vision-1"
    assert request.timeout_seconds == 600
    assert [part["type"] for part in request.content] == ["text", "image_url", "image_url"]

    [metric] = records.list_metrics(batch_id=batch.batch_id)
    assert metric.status == MetricStatus.SUCCESS
    assert (metric.image_count, metric.extraction_count, metric.tokens_used) == (2, 3, 120)
    assert metric.model_used == "vision-1"


def test_multi_row_reply_becomes_one_row_per_item(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    make_tenant(feature_flags=MULTI_ROW)
    batch = make_batch()
    _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(_reply(_invoice(1), _invoice(2), _invoice(3)))

    executor.run_once()

    rows = records.list_rows(batch.batch_id)
    assert [row.row_index for row in rows] == [1, 2, 3]
    assert [row.row_data[0].row_index for row in rows] == [0, 1, 2]
    assert records.get_batch(batch.batch_id).row_count == 3


def test_retryable_model_error_requeues_and_fails_batch(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    sleeps: list[float],
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(
        ModelCallError("HTTP 503", status_code=503, failure_class=FailureClass.SERVER_ERROR),
        _reply(_invoice(1)),
    )

    first = executor.run_once()

    assert first.retried == 1
    assert job_store.get_job(job_id).status == JobStatus.QUEUED
    assert sleeps == [2.0]
    failed = records.get_batch(batch.batch_id)
    assert (failed.status, failed.error_message) == (BatchStatus.FAILED, "HTTP 503")
    assert records.list_metrics(batch_id=batch.batch_id)[0].status == MetricStatus.FAILED

    second = executor.run_once()

    assert second.completed == 1
    assert job_store.get_job(job_id).attempts == 2
    assert records.get_batch(batch.batch_id).status == BatchStatus.REVIEW


def test_non_retryable_model_error_fails_job(
    executor: JobExecutor,
    job_store: JobStore,
    model_client: FakeModelClient,
    sleeps: list[float],
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(
        ModelCallError("HTTP 401", status_code=401, failure_class=FailureClass.ACCESS_OR_AUTH),
    )

    summary = executor.run_once()

    assert summary.failed == 1
    job = job_store.get_job(job_id)
    assert (job.status, job.attempts, job.last_error) == (JobStatus.FAILED, 1, "HTTP 401")
    assert sleeps == []


def test_reply_without_known_columns_is_retried(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)
    model_client.queue('{"vendor": "Globex"}')

    summary = executor.run_once()

    assert summary.retried == 1
    assert job_store.get_job(job_id).last_error == NO_COLUMNS_MATCHED
    assert records.get_batch(batch.batch_id).error_message == NO_COLUMNS_MATCHED


def test_contract_violation_is_not_retried(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    make_tenant(columns=[])
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)

    summary = executor.run_once()

    assert summary.failed == 1
    assert job_store.get_job(job_id).status == JobStatus.FAILED
    assert records.get_batch(batch.batch_id).status == BatchStatus.FAILED
    assert model_client.requests == []


def test_payload_for_other_tenant_is_a_contract_violation(
    executor: JobExecutor,
    job_store: JobStore,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id, tenant_id="intruder")

    executor.run_once()

    assert job_store.get_job(job_id).status == JobStatus.FAILED


def test_missing_batch_completes_silently(
    executor: JobExecutor,
    job_store: JobStore,
    model_client: FakeModelClient,
    make_tenant,
) -> None:
    make_tenant()
    job_id = _enqueue_batch(job_store, "deleted-batch")

    summary = executor.run_once()

    assert summary.completed == 1
    assert job_store.get_job(job_id).status == JobStatus.COMPLETED
    assert model_client.requests == []


def test_deleted_tenant_leaves_batch_untouched(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)
    monkeypatch.setattr(records, "get_tenant_settings", lambda tenant_id: None)

    summary = executor.run_once()

    assert summary.completed == 1
    assert job_store.get_job(job_id).status == JobStatus.COMPLETED
    assert records.get_batch(batch.batch_id).status == BatchStatus.PENDING
    assert records.list_metrics(batch_id=batch.batch_id) == []
    assert model_client.requests == []


def test_result_of_batch_canceled_mid_call_is_discarded(
    job_store: JobStore,
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)

    class _CancelingClient(FakeModelClient):
        def complete(self, request):
            QueueService(job_store=job_store, records=records).cancel(TENANT_ID)
            return super().complete(request)

    executor = JobExecutor(
        tenant_id=TENANT_ID,
        job_store=job_store,
        records=records,
        model_client=_CancelingClient([_reply(_invoice(1))]),
    )

    summary = executor.run_once()

    assert summary.completed == 1
    assert job_store.get_job(job_id).status == JobStatus.COMPLETED
    view = records.get_batch(batch.batch_id)
    assert (view.status, view.error_message) == (BatchStatus.FAILED, CANCELED_BY_USER_MESSAGE)
    assert records.list_rows(batch.batch_id) == []


def test_pdf_pages_are_rendered_before_the_call(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
) -> None:
    make_tenant()
    batch = records.create_batch(
        tenant_id=TENANT_ID,
        images=[ImageCreate(filename="scan.pdf", mime_type=PDF_MIME_TYPE, content=b"pdf")],
    )
    _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(_reply(_invoice(1)))

    executor.run_once()

    [request] = model_client.requests
    assert [part["type"] for part in request.content] == [
        "text",
        "image_url",
        "text",
        "image_url",
        "text",
    ]
    assert request.content[4]["text"] == "[Extracted text from page 2]:\ntext of page 2"
    assert records.list_metrics(batch_id=batch.batch_id)[0].image_count == 1


def test_metric_sink_failure_does_not_fail_the_job(
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    job_id = _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(_reply(_invoice(1)))
    executor = JobExecutor(
        tenant_id=TENANT_ID,
        job_store=job_store,
        records=records,
        model_client=model_client,
        metrics=_BrokenMetrics(),
    )

    executor.run_once()

    assert job_store.get_job(job_id).status == JobStatus.COMPLETED


def _extract_five_rows(executor, job_store, records, model_client, make_tenant, make_batch):
    make_tenant(feature_flags=MULTI_ROW)
    batch = make_batch()
    _enqueue_batch(job_store, batch.batch_id)
    model_client.queue(_reply(*(_invoice(number) for number in range(1, 6))))
    executor.run_once()
    return batch


def _crop(records: RecordRepository, batch_id: str, name: str) -> str:
    return records.add_image(
        batch_id=batch_id,
        image=ImageCreate(
            filename=f"{name}.png",
            mime_type="image/png",
            content=name.encode(),
            is_cropped=True,
        ),
    ).image_id


def test_redo_replaces_only_selected_columns_of_one_row(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    batch = _extract_five_rows(executor, job_store, records, model_client, make_tenant, make_batch)
    before = {row.row_index: row.row_data for row in records.list_rows(batch.batch_id)}
    total_crop = _crop(records, batch.batch_id, "total-crop")
    date_crop = _crop(records, batch.batch_id, "date-crop")
    QueueService(job_store=job_store, records=records).enqueue_redo(
        EnqueueRedo(
            tenant_id=TENANT_ID,
            batch_id=batch.batch_id,
            row_index=3,
            redo_column_ids=("total", "date"),
            cropped_image_ids={"total": total_crop, "date": date_crop},
        ),
    )
    model_client.queue(
        json.dumps(
            [
                {"column_id": "date", "value": "2026-11-30", "image_index": 1},
                {"column_id": "total", "value": "999.00", "image_index": 0},
            ],
        ),
    )

    summary = executor.run_once()

    assert summary.completed == 1
    after = {row.row_index: row.row_data for row in records.list_rows(batch.batch_id)}
    for row_index in (1, 2, 4, 5):
        assert after[row_index] == before[row_index]
    redone = {result.column_id: result for result in after[3]}
    assert redone["invoice_no"] == before[3][0]
    assert redone["invoice_no"].redone is None
    assert (redone["total"].value, redone["total"].redone) == ("999.00", True)
    assert redone["date"].value == "2026-11-30"
    assert (redone["total"].image_index, redone["date"].image_index) == (1, 2)
    assert {result.row_index for result in after[3]} == {2}

    redo_request = model_client.requests[-1]
    image_urls = [part["image_url"]["url"] for part in redo_request.content[1:]]
    assert len(image_urls) == 2
    assert image_urls[0].endswith("dG90YWwtY3JvcA==")
    view = records.get_batch(batch.batch_id)
    assert view.status == BatchStatus.REVIEW
    assert view.redo_processed_at is not None
    assert records.list_metrics(batch_id=batch.batch_id)[-1].job_type == "process_redo"


def test_redo_of_missing_row_completes_without_call(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    batch = _extract_five_rows(executor, job_store, records, model_client, make_tenant, make_batch)
    crop = _crop(records, batch.batch_id, "crop")
    job = job_store.enqueue(
        JobType.PROCESS_REDO,
        ProcessRedoPayload(
            batch_id=batch.batch_id,
            tenant_id=TENANT_ID,
            row_index=42,
            redo_column_ids=("total",),
            cropped_image_ids={"total": crop},
        ).to_payload(),
        tenant_id=TENANT_ID,
    )
    calls = len(model_client.requests)

    executor.run_once()

    assert job_store.get_job(job.job_id).status == JobStatus.COMPLETED
    assert len(model_client.requests) == calls


def test_redo_without_cropped_image_fails_permanently(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    batch = _extract_five_rows(executor, job_store, records, model_client, make_tenant, make_batch)
    job = job_store.enqueue(
        JobType.PROCESS_REDO,
        ProcessRedoPayload(
            batch_id=batch.batch_id,
            tenant_id=TENANT_ID,
            row_index=1,
            redo_column_ids=("total",),
            cropped_image_ids={"total": "no-such-image"},
        ).to_payload(),
        tenant_id=TENANT_ID,
    )

    summary = executor.run_once()

    assert summary.failed == 1
    assert job_store.get_job(job.job_id).status == JobStatus.FAILED
    assert records.get_batch(batch.batch_id).status == BatchStatus.REVIEW


def test_reprocess_clears_rows_and_queues_extraction(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    batch = _extract_five_rows(executor, job_store, records, model_client, make_tenant, make_batch)
    job_store.enqueue(
        JobType.REPROCESS_BATCH,
        {"batchIds": [batch.batch_id, "vanished"], "tenantId": TENANT_ID},
        tenant_id=TENANT_ID,
    )

    executor.run_once()

    view = records.get_batch(batch.batch_id)
    assert (view.status, view.row_count) == (BatchStatus.PENDING, 0)
    assert records.list_rows(batch.batch_id) == []
    [queued] = job_store.list_jobs(status=JobStatus.QUEUED)
    assert queued.job_type == JobType.PROCESS_BATCH
    assert queued.batch_ids() == (batch.batch_id,)

    model_client.queue(_reply(_invoice(7)))
    executor.run_once()

    assert records.get_batch(batch.batch_id).row_count == 1


def test_recovery_requeues_stale_jobs_and_resets_orphaned_batches(
    executor: JobExecutor,
    job_store: JobStore,
    records: RecordRepository,
    clock,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    orphan = make_batch()
    records.mark_batch_processing(orphan.batch_id)
    stale_batch = make_batch()
    stale_job = _enqueue_batch(job_store, stale_batch.batch_id)
    job_store.claim_next(TENANT_ID)
    records.mark_batch_processing(stale_batch.batch_id)
    clock.advance(executor.queue_settings.stale_job_seconds + 1)

    recovery = executor.recover_stale_state()

    assert (recovery.requeued_jobs, recovery.reset_batches) == (1, 2)
    assert job_store.get_job(stale_job).status == JobStatus.QUEUED
    assert records.get_batch(orphan.batch_id).status == BatchStatus.PENDING


def test_run_loop_drains_queue_then_stops_when_idle(
    job_store: JobStore,
    records: RecordRepository,
    model_client: FakeModelClient,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    for number in (1, 2):
        _enqueue_batch(job_store, make_batch().batch_id)
        model_client.queue(_reply(_invoice(number)))
    stopped: list[str] = []
    ticks = itertools.count(step=100)
    executor = JobExecutor(
        tenant_id=TENANT_ID,
        job_store=job_store,
        records=records,
        model_client=model_client,
        worker_settings=WorkerSettings(poll_interval_seconds=0.001, idle_shutdown_seconds=300),
        on_stopped=stopped.append,
        monotonic=lambda: float(next(ticks)),
    )

    summary = executor.run_loop()

    assert (summary.processed, summary.completed) == (2, 2)
    assert summary.idle_polls >= 1
    assert stopped == [TENANT_ID]
    assert executor.stop_requested
    assert job_store.stats_for(TENANT_ID).completed == 2


def test_stopped_executor_claims_nothing(
    executor: JobExecutor,
    job_store: JobStore,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    job_id = _enqueue_batch(job_store, make_batch().batch_id)
    executor.stop()

    assert executor.run_once().idle_polls == 1
    assert executor.run_loop().processed == 0
    assert job_store.get_job(job_id).status == JobStatus.QUEUED
