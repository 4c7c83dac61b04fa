"""Record store for tenants, batches, images, extraction rows and processing metrics."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, delete, select

from tabtin.extraction.models import ExtractionResult
from tabtin.records.models import (
    BatchStatus,
    BatchView,
    ExtractionRowView,
    ImageCreate,
    ImageView,
    MetricStatus,
    ProcessingMetric,
    RowStatus,
    TenantSettings,
    TenantView,
)
from tabtin.storage.alembic_runner import upgrade_head
from tabtin.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from tabtin.storage.sqlmodel_models import (
    Batch,
    BatchImage,
    ExtractionRowRecord,
    ProcessingMetricRecord,
    Tenant,
)

logger = logging.getLogger(__name__)

CANCELED_BY_USER_MESSAGE = "Processing canceled by user"


class MetricsSink(Protocol):
    """Append-only destination for processing metrics."""

    def record(self, metric: ProcessingMetric) -> None: ...


class RecordRepository:
    """Persistence facade for everything the executor reads and writes besides jobs."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Tenants

    def upsert_tenant(
        self,
        *,
        tenant_id: str,
        display_name: str,
        settings: TenantSettings,
    ) -> TenantView:
        """Create a tenant or replace its name and settings."""

        with Session(self.engine) as session:
            row = session.exec(select(Tenant).where(Tenant.tenant_id == tenant_id)).one_or_none()
            if row is None:
                row = Tenant(
                    tenant_id=tenant_id,
                    display_name=display_name,
                    settings_json=dump_json(settings.to_dict()),
                    created_at=to_db_datetime(utc_now()),
                )
            else:
                row.display_name = display_name
                row.settings_json = dump_json(settings.to_dict())
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_tenant_view(row)

    def get_tenant(self, tenant_id: str) -> TenantView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Tenant).where(Tenant.tenant_id == tenant_id)).one_or_none()
            return _to_tenant_view(row) if row is not None else None

    def get_tenant_settings(self, tenant_id: str) -> TenantSettings | None:
        tenant = self.get_tenant(tenant_id)
        return tenant.settings if tenant is not None else None

    # Batches

    def create_batch(
        self,
        *,
        tenant_id: str,
        images: Sequence[ImageCreate] = (),
        batch_id: str | None = None,
    ) -> BatchView:
        """Create a pending batch together with its images."""

        now = to_db_datetime(utc_now())
        batch = Batch(
            batch_id=batch_id or uuid4().hex,
            tenant_id=tenant_id,
            status=BatchStatus.PENDING.value,
            row_count=0,
            created_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(batch)
            session.flush()
            for position, image in enumerate(images):
                session.add(_image_row(batch.batch_id, tenant_id, position, image))
            session.commit()
            session.refresh(batch)
            return _to_batch_view(batch)

    def add_image(self, *, batch_id: str, image: ImageCreate) -> ImageView:
        """Append one image (for example a cropped region) to an existing batch."""

        with Session(self.engine) as session:
            batch = self._get_batch_row(session, batch_id)
            if batch is None:
                raise KeyError(f"Batch not found: {batch_id}")
            last = session.exec(
                select(BatchImage.position)
                .where(BatchImage.batch_id == batch_id)
                .order_by(col(BatchImage.position).desc())
                .limit(1),
            ).first()
            position = (last + 1) if last is not None else 0
            row = _image_row(batch_id, batch.tenant_id, position, image)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_image_view(row)

    def get_batch(self, batch_id: str) -> BatchView | None:
        with Session(self.engine) as session:
            row = self._get_batch_row(session, batch_id)
            return _to_batch_view(row) if row is not None else None

    def list_batches(
        self,
        *,
        tenant_id: str,
        statuses: Iterable[BatchStatus] | None = None,
    ) -> list[BatchView]:
        with Session(self.engine) as session:
            query = select(Batch).where(Batch.tenant_id == tenant_id)
            if statuses is not None:
                query = query.where(col(Batch.status).in_([status.value for status in statuses]))
            rows = session.exec(query.order_by(col(Batch.created_at).asc())).all()
            return [_to_batch_view(row) for row in rows]

    def delete_batch(self, batch_id: str) -> bool:
        with Session(self.engine) as session:
            row = self._get_batch_row(session, batch_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def mark_batch_processing(self, batch_id: str) -> bool:
        """Move a batch into processing. Returns False when the batch is gone."""

        now = to_db_datetime(utc_now())
        return self._update_batch(
            batch_id,
            status=BatchStatus.PROCESSING.value,
            error_message=None,
            processing_started=now,
            updated_at=now,
        )

    def mark_batch_failed(
        self,
        batch_id: str,
        error_message: str,
        *,
        only_if_processing: bool = False,
    ) -> bool:
        """Fail a batch; with `only_if_processing` a canceled or reset batch is left alone."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            statement = sa_update(Batch).where(col(Batch.batch_id) == batch_id)
            if only_if_processing:
                statement = statement.where(col(Batch.status) == BatchStatus.PROCESSING.value)
            result = session.exec(
                statement.values(
                    status=BatchStatus.FAILED.value,
                    error_message=error_message,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_batch_pending(self, batch_id: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._update_batch(batch_id, status=BatchStatus.PENDING.value, updated_at=now)

    def mark_batch_redone(self, batch_id: str) -> bool:
        now = to_db_datetime(utc_now())
        return self._update_batch(
            batch_id,
            status=BatchStatus.REVIEW.value,
            error_message=None,
            redo_processed_at=now,
            updated_at=now,
        )

    def reset_batch(self, batch_id: str) -> bool:
        """Delete a batch's rows and return it to its pre-processing state in one transaction."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            batch = self._get_batch_row(session, batch_id)
            if batch is None:
                return False
            session.exec(
                delete(ExtractionRowRecord).where(col(ExtractionRowRecord.batch_id) == batch_id),
            )
            batch.status = BatchStatus.PENDING.value
            batch.processed_data_json = None
            batch.row_count = 0
            batch.processing_started = None
            batch.processing_completed = None
            batch.error_message = None
            batch.redo_processed_at = None
            batch.updated_at = now
            session.add(batch)
            session.commit()
            return True

    def cancel_batches(
        self,
        *,
        tenant_id: str,
        batch_ids: Iterable[str] | None = None,
        message: str = CANCELED_BY_USER_MESSAGE,
    ) -> int:
        """Fail pending/processing batches of a tenant after their queued jobs were dropped."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            statement = sa_update(Batch).where(
                col(Batch.tenant_id) == tenant_id,
                col(Batch.status).in_([BatchStatus.PENDING.value, BatchStatus.PROCESSING.value]),
            )
            if batch_ids is not None:
                statement = statement.where(col(Batch.batch_id).in_(list(batch_ids)))
            result = session.exec(
                statement.values(
                    status=BatchStatus.FAILED.value,
                    error_message=message,
                    updated_at=now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def store_batch_result(
        self,
        *,
        batch_id: str,
        rows: Sequence[Sequence[ExtractionResult]],
        processed_data: dict[str, Any],
    ) -> bool:
        """Write all rows of a batch and move it to review, atomically.

        The write is skipped and False returned when the batch was deleted or is no longer
        processing, i.e. it was canceled or reset while the model call was in flight.
        Rows left by an earlier attempt are replaced.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            batch = self._get_batch_row(session, batch_id)
            if batch is None or batch.status != BatchStatus.PROCESSING.value:
                return False
            session.exec(
                delete(ExtractionRowRecord).where(col(ExtractionRowRecord.batch_id) == batch_id),
            )
            for row_index, results in enumerate(rows, start=1):
                session.add(
                    ExtractionRowRecord(
                        row_id=uuid4().hex,
                        batch_id=batch_id,
                        tenant_id=batch.tenant_id,
                        row_index=row_index,
                        row_data_json=dump_json([result.to_dict() for result in results]),
                        status=RowStatus.REVIEW.value,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            batch.status = BatchStatus.REVIEW.value
            batch.row_count = len(rows)
            batch.processed_data_json = dump_json(processed_data)
            batch.processing_completed = now
            batch.error_message = None
            batch.updated_at = now
            session.add(batch)
            session.commit()
        logger.info("Stored %s row(s) for batch %s", len(rows), batch_id)
        return True

    # Images

    def list_images(self, batch_id: str, *, include_cropped: bool = False) -> list[ImageView]:
        """Images of a batch in upload order."""

        with Session(self.engine) as session:
            query = select(BatchImage).where(BatchImage.batch_id == batch_id)
            if not include_cropped:
                query = query.where(col(BatchImage.is_cropped).is_(False))
            rows = session.exec(
                query.order_by(col(BatchImage.position).asc(), col(BatchImage.created_at).asc()),
            ).all()
            return [_to_image_view(row) for row in rows]

    def get_image(self, image_id: str) -> ImageView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(BatchImage).where(BatchImage.image_id == image_id),
            ).one_or_none()
            return _to_image_view(row) if row is not None else None

    # Rows

    def list_rows(self, batch_id: str) -> list[ExtractionRowView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(ExtractionRowRecord)
                .where(ExtractionRowRecord.batch_id == batch_id)
                .order_by(col(ExtractionRowRecord.row_index).asc()),
            ).all()
            return [_to_row_view(row) for row in rows]

    def get_row(self, batch_id: str, row_index: int) -> ExtractionRowView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(ExtractionRowRecord).where(
                    ExtractionRowRecord.batch_id == batch_id,
                    ExtractionRowRecord.row_index == row_index,
                ),
            ).one_or_none()
            return _to_row_view(row) if row is not None else None

    def update_row(
        self,
        row_id: str,
        *,
        row_data: Sequence[ExtractionResult],
        status: RowStatus = RowStatus.REVIEW,
    ) -> bool:
        """Overwrite one row's results. Other rows of the batch are not touched."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ExtractionRowRecord)
                .where(col(ExtractionRowRecord.row_id) == row_id)
                .values(
                    row_data_json=dump_json([item.to_dict() for item in row_data]),
                    status=status.value,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # Metrics

    def record(self, metric: ProcessingMetric) -> None:
        """Append one processing metric."""

        with Session(self.engine) as session:
            session.add(
                ProcessingMetricRecord(
                    batch_id=metric.batch_id,
                    tenant_id=metric.tenant_id,
                    job_type=metric.job_type,
                    started_at=to_db_datetime(metric.started_at),
                    finished_at=to_db_datetime(metric.finished_at),
                    duration_ms=metric.duration_ms,
                    status=metric.status.value,
                    image_count=metric.image_count,
                    extraction_count=metric.extraction_count,
                    model_used=metric.model_used,
                    tokens_used=metric.tokens_used,
                    error_message=metric.error_message,
                ),
            )
            session.commit()

    def list_metrics(self, *, batch_id: str | None = None) -> list[ProcessingMetric]:
        with Session(self.engine) as session:
            query = select(ProcessingMetricRecord)
            if batch_id is not None:
                query = query.where(ProcessingMetricRecord.batch_id == batch_id)
            rows = session.exec(query.order_by(col(ProcessingMetricRecord.id).asc())).all()
            return [
                ProcessingMetric(
                    batch_id=row.batch_id,
                    tenant_id=row.tenant_id,
                    job_type=row.job_type,
                    started_at=to_utc_aware(row.started_at),
                    finished_at=to_utc_aware(row.finished_at),
                    status=MetricStatus(row.status),
                    image_count=row.image_count,
                    extraction_count=row.extraction_count,
                    model_used=row.model_used,
                    tokens_used=row.tokens_used,
                    error_message=row.error_message,
                )
                for row in rows
            ]

    def _get_batch_row(self, session: Session, batch_id: str) -> Batch | None:
        return session.exec(select(Batch).where(Batch.batch_id == batch_id)).one_or_none()

    def _update_batch(self, batch_id: str, **values: Any) -> bool:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Batch).where(col(Batch.batch_id) == batch_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True


def _image_row(batch_id: str, tenant_id: str, position: int, image: ImageCreate) -> BatchImage:
    return BatchImage(
        image_id=uuid4().hex,
        batch_id=batch_id,
        tenant_id=tenant_id,
        position=position,
        filename=image.filename,
        mime_type=image.mime_type,
        content=image.content,
        extracted_text=image.extracted_text,
        is_cropped=image.is_cropped,
        created_at=to_db_datetime(utc_now()),
    )


def _to_tenant_view(row: Tenant) -> TenantView:
    return TenantView(
        tenant_id=row.tenant_id,
        display_name=row.display_name,
        settings=TenantSettings.from_dict(load_json(row.settings_json, {})),
        created_at=to_utc_aware(row.created_at),
    )


def _to_batch_view(row: Batch) -> BatchView:
    return BatchView(
        batch_id=row.batch_id,
        tenant_id=row.tenant_id,
        status=BatchStatus(row.status),
        error_message=row.error_message,
        row_count=row.row_count,
        processed_data=load_json(row.processed_data_json),
        processing_started=optional_utc_aware(row.processing_started),
        processing_completed=optional_utc_aware(row.processing_completed),
        redo_processed_at=optional_utc_aware(row.redo_processed_at),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )


def _to_image_view(row: BatchImage) -> ImageView:
    return ImageView(
        image_id=row.image_id,
        batch_id=row.batch_id,
        tenant_id=row.tenant_id,
        position=row.position,
        filename=row.filename,
        mime_type=row.mime_type,
        content=row.content,
        extracted_text=row.extracted_text,
        is_cropped=row.is_cropped,
    )


def _to_row_view(row: ExtractionRowRecord) -> ExtractionRowView:
    return ExtractionRowView(
        row_id=row.row_id,
        batch_id=row.batch_id,
        tenant_id=row.tenant_id,
        row_index=row.row_index,
        row_data=[ExtractionResult.from_dict(item) for item in load_json(row.row_data_json, [])],
        status=RowStatus(row.status),
        updated_at=to_utc_aware(row.updated_at),
    )
