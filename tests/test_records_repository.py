from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from tabtin.extraction.models import ExtractionResult
from tabtin.records.models import (
    BatchStatus,
    ImageCreate,
    MetricStatus,
    ProcessingMetric,
    RowStatus,
)
from tabtin.records.repository import RecordRepository

pytestmark = [
    allure.epic("Records"),
    allure.feature("Batches, Rows & Metrics"),
]


def _result(column_id: str, value: object, **kwargs) -> ExtractionResult:
    return ExtractionResult(
        column_id=column_id,
        column_name=column_id.title(),
        value=value,
        **kwargs,
    )


def test_tenant_settings_round_trip(records: RecordRepository, make_tenant) -> None:
    make_tenant(requests_per_minute=12)
    make_tenant(requests_per_minute=24)

    settings = records.get_tenant_settings("acme")

    assert settings.requests_per_minute == 24
    assert [column.id for column in settings.columns] == ["invoice_no", "date", "total"]
    assert records.get_tenant_settings("nobody") is None


def test_images_keep_upload_order_and_hide_crops(
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch(pages=3)
    crop = records.add_image(
        batch_id=batch.batch_id,
        image=ImageCreate(
            filename="crop.png",
            mime_type="image/png",
            content=b"c",
            is_cropped=True,
        ),
    )

    assert [image.filename for image in records.list_images(batch.batch_id)] == [
        "page-1.png",
        "page-2.png",
        "page-3.png",
    ]
    with_crops = records.list_images(batch.batch_id, include_cropped=True)
    assert [image.image_id for image in with_crops][-1] == crop.image_id
    assert crop.position == 3
    with pytest.raises(KeyError):
        records.add_image(batch_id="missing", image=ImageCreate("x.png", "image/png", b"x"))


def test_store_batch_result_writes_rows_and_moves_to_review(
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    records.mark_batch_processing(batch.batch_id)

    stored = records.store_batch_result(
        batch_id=batch.batch_id,
        rows=[[_result("total", "1")], [_result("total", "2")]],
        processed_data={"extractions": []},
    )

    assert stored is True
    view = records.get_batch(batch.batch_id)
    assert view.status == BatchStatus.REVIEW
    assert view.row_count == 2
    assert view.processing_completed is not None
    rows = records.list_rows(batch.batch_id)
    assert [row.row_index for row in rows] == [1, 2]
    assert rows[1].row_data[0].value == "2"
    assert rows[0].status == RowStatus.REVIEW


def test_store_batch_result_is_discarded_for_canceled_batch(
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    records.mark_batch_processing(batch.batch_id)
    assert records.cancel_batches(tenant_id="acme", batch_ids=[batch.batch_id]) == 1

    stored = records.store_batch_result(
        batch_id=batch.batch_id,
        rows=[[_result("total", "1")]],
        processed_data={},
    )

    assert stored is False
    assert records.list_rows(batch.batch_id) == []
    assert records.get_batch(batch.batch_id).status == BatchStatus.FAILED
    assert records.store_batch_result(batch_id="missing", rows=[], processed_data={}) is False


def test_mark_failed_only_if_processing_keeps_cancel_message(
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    records.cancel_batches(tenant_id="acme", message="Processing canceled by user")

    assert records.mark_batch_failed(batch.batch_id, "late", only_if_processing=True) is False
    assert records.get_batch(batch.batch_id).error_message == "Processing canceled by user"
    assert records.mark_batch_failed(batch.batch_id, "forced") is True


def test_reset_batch_clears_rows_and_results(
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    records.mark_batch_processing(batch.batch_id)
    records.store_batch_result(
        batch_id=batch.batch_id,
        rows=[[_result("total", "1")]],
        processed_data={"extractions": [{"column_id": "total"}]},
    )

    assert records.reset_batch(batch.batch_id) is True

    view = records.get_batch(batch.batch_id)
    assert view.status == BatchStatus.PENDING
    assert (view.row_count, view.processed_data, view.processing_started) == (0, None, None)
    assert records.list_rows(batch.batch_id) == []
    assert records.reset_batch("missing") is False


def test_update_row_touches_only_that_row(
    records: RecordRepository,
    make_tenant,
    make_batch,
) -> None:
    make_tenant()
    batch = make_batch()
    records.mark_batch_processing(batch.batch_id)
    records.store_batch_result(
        batch_id=batch.batch_id,
        rows=[[_result("total", "1")], [_result("total", "2")]],
        processed_data={},
    )
    second = records.get_row(batch.batch_id, 2)

    assert records.update_row(second.row_id, row_data=[_result("total", "9", redone=True)])

    assert records.get_row(batch.batch_id, 1).row_data[0].value == "1"
    updated = records.get_row(batch.batch_id, 2).row_data[0]
    assert (updated.value, updated.redone) == ("9", True)
    assert records.update_row("missing", row_data=[]) is False


def test_delete_batch_cascades(records: RecordRepository, make_tenant, make_batch) -> None:
    make_tenant()
    batch = make_batch(pages=2)

    assert records.delete_batch(batch.batch_id) is True

    assert records.get_batch(batch.batch_id) is None
    assert records.list_images(batch.batch_id) == []
    assert records.delete_batch(batch.batch_id) is False


def test_metrics_are_appended(records: RecordRepository) -> None:
    started = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
    records.record(
        ProcessingMetric(
            batch_id="b-1",
            tenant_id="acme",
            job_type="process_batch",
            started_at=started,
            finished_at=started + timedelta(seconds=2),
            status=MetricStatus.SUCCESS,
            image_count=2,
            extraction_count=6,
            model_used="vision-1",
            tokens_used=120,
        ),
    )

    [metric] = records.list_metrics(batch_id="b-1")

    assert metric.duration_ms == 2000
    assert metric.status == MetricStatus.SUCCESS
    assert (metric.image_count, metric.extraction_count, metric.tokens_used) == (2, 6, 120)
