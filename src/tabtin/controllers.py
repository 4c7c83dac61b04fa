"""Controllers for tabtin CLI commands."""

from __future__ import annotations

import json
import logging
import mimetypes
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from tabtin.config import Settings
from tabtin.queue.job_store import JobStore
from tabtin.queue.models import JobStatus, QueueStats
from tabtin.records.models import ImageCreate, PDF_MIME_TYPE, TenantSettings
from tabtin.records.repository import RecordRepository
from tabtin.services import EnqueueRedo, QueueService
from tabtin.worker.executor import WorkerRunSummary
from tabtin.worker.orchestrator import PoolOrchestrator, build_executor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TenantAddCommand:
    """CLI input for creating or updating a tenant."""

    db_path: Path | None
    tenant_id: str
    name: str | None
    settings_file: Path


@dataclass(slots=True)
class BatchAddCommand:
    """CLI input for creating a batch from image files."""

    db_path: Path | None
    tenant_id: str
    images: tuple[Path, ...]


@dataclass(slots=True)
class BatchAddImageCommand:
    """CLI input for attaching one (usually cropped) image to a batch."""

    db_path: Path | None
    batch_id: str
    image: Path
    cropped: bool


@dataclass(slots=True)
class BatchRowsCommand:
    db_path: Path | None
    batch_id: str


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for batch extraction and reprocess requests."""

    db_path: Path | None
    tenant_id: str
    batch_ids: tuple[str, ...]
    priority: int | None


@dataclass(slots=True)
class QueueRedoCommand:
    """CLI input for a redo of selected columns of one row."""

    db_path: Path | None
    tenant_id: str
    batch_id: str
    row_index: int
    cropped: tuple[str, ...]
    source: tuple[str, ...]
    priority: int | None


@dataclass(slots=True)
class QueueCancelCommand:
    db_path: Path | None
    tenant_id: str
    batch_ids: tuple[str, ...]


@dataclass(slots=True)
class QueueRetryCommand:
    db_path: Path | None
    job_id: str | None
    retry_all: bool
    tenant_id: str | None


@dataclass(slots=True)
class QueueStatsCommand:
    db_path: Path | None
    tenant_id: str | None


@dataclass(slots=True)
class QueueListCommand:
    db_path: Path | None
    tenant_id: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueCleanupCommand:
    db_path: Path | None
    older_than_days: int | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    tenant_id: str | None
    once: bool


class TabtinCliController:
    """Coordinates tenant, batch, queue and worker CLI operations."""

    def add_tenant(self, command: TenantAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        raw = json.loads(command.settings_file.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"{command.settings_file} must contain a JSON object.")
        tenant_settings = TenantSettings.from_dict(raw)
        with _stores(settings) as (_, records):
            tenant = records.upsert_tenant(
                tenant_id=command.tenant_id,
                display_name=command.name or command.tenant_id,
                settings=tenant_settings,
            )
        return [
            f"Tenant saved: tenant_id={tenant.tenant_id} name={tenant.display_name}",
            f"Columns: {', '.join(column.id for column in tenant.settings.columns) or '-'}",
        ]

    def add_batch(self, command: BatchAddCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if not command.images:
            raise ValueError("At least one --image is required.")
        images = [_image_from_file(path, cropped=False) for path in command.images]
        with _stores(settings) as (_, records):
            if records.get_tenant(command.tenant_id) is None:
                raise ValueError(f"Unknown tenant: {command.tenant_id}")
            batch = records.create_batch(tenant_id=command.tenant_id, images=images)
            stored = records.list_images(batch.batch_id)
        lines = [f"Batch created: batch_id={batch.batch_id} images={len(stored)}"]
        lines.extend(f"  {image.image_id} {image.filename}" for image in stored)
        return lines

    def add_image(self, command: BatchAddImageCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (_, records):
            if records.get_batch(command.batch_id) is None:
                raise ValueError(f"Unknown batch: {command.batch_id}")
            image = records.add_image(
                batch_id=command.batch_id,
                image=_image_from_file(command.image, cropped=command.cropped),
            )
        return [
            f"Image added: image_id={image.image_id} position={image.position} "
            f"cropped={image.is_cropped}",
        ]

    def batch_rows(self, command: BatchRowsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (_, records):
            batch = records.get_batch(command.batch_id)
            rows = records.list_rows(command.batch_id)
        if batch is None:
            return [f"Batch not found: {command.batch_id}"]
        lines = [
            f"Batch: {batch.batch_id} status={batch.status.value} rows={batch.row_count}",
            f"Error: {batch.error_message or '-'}",
        ]
        for row in rows:
            values = ", ".join(
                f"{result.column_name or result.column_id}={result.value!r}"
                + (" (redone)" if result.redone else "")
                for result in row.row_data
            )
            lines.append(f"  row {row.row_index} [{row.status.value}] {values}")
        return lines

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (job_store, records):
            jobs = _service(settings, job_store, records).enqueue_batches(
                command.tenant_id,
                command.batch_ids,
                priority=command.priority,
            )
        return [
            f"Job enqueued: job_id={job.job_id} batches={','.join(job.batch_ids())}"
            for job in jobs
        ]

    def reprocess(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (job_store, records):
            job = _service(settings, job_store, records).enqueue_reprocess(
                command.tenant_id,
                command.batch_ids,
                priority=command.priority,
            )
        return [f"Reprocess enqueued: job_id={job.job_id} batches={','.join(job.batch_ids())}"]

    def redo(self, command: QueueRedoCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        cropped = parse_pairs(command.cropped)
        with _stores(settings) as (job_store, records):
            job = _service(settings, job_store, records).enqueue_redo(
                EnqueueRedo(
                    tenant_id=command.tenant_id,
                    batch_id=command.batch_id,
                    row_index=command.row_index,
                    redo_column_ids=tuple(cropped),
                    cropped_image_ids=cropped,
                    source_image_ids=parse_pairs(command.source),
                    priority=command.priority,
                ),
            )
        return [
            f"Redo enqueued: job_id={job.job_id} batch={command.batch_id} "
            f"row={command.row_index} columns={','.join(cropped)}",
        ]

    def cancel(self, command: QueueCancelCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (job_store, records):
            result = _service(settings, job_store, records).cancel(
                command.tenant_id,
                command.batch_ids or None,
            )
        return [
            f"Canceled queued jobs: {result.canceled_jobs}",
            f"Batches marked failed: {result.failed_batches}",
        ]

    def retry(self, command: QueueRetryCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.retry_all == (command.job_id is not None):
            raise ValueError("Pass exactly one of --job-id or --all.")
        with _stores(settings) as (job_store, records):
            service = _service(settings, job_store, records)
            if command.job_id is not None:
                if not service.retry_failed(command.job_id):
                    return [f"Job not found or not failed: {command.job_id}"]
                return [f"Job re-queued: {command.job_id}"]
            count = service.retry_all_failed(command.tenant_id)
        return [f"Failed jobs re-queued: {count}"]

    def stats(self, command: QueueStatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (job_store, records):
            service = _service(settings, job_store, records)
            stats = (
                service.stats_for(command.tenant_id)
                if command.tenant_id is not None
                else service.stats()
            )
        scope = f"tenant {command.tenant_id}" if command.tenant_id else "all tenants"
        return [f"Queue stats ({scope}):", *render_stats_lines(stats)]

    def list_jobs(self, command: QueueListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = JobStatus(command.status.strip().lower()) if command.status else None
        with _stores(settings) as (job_store, _):
            jobs = job_store.list_jobs(
                tenant_id=command.tenant_id,
                status=status,
                limit=command.limit,
            )
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} tenant={job.tenant_id} type={job.job_type.value} "
                f"status={job.status.value} priority={job.priority} "
                f"attempts={job.attempts}/{job.max_attempts} "
                f"queued_at={job.queued_at.isoformat()}"
                + (f" error={job.last_error}" if job.last_error else ""),
            )
        return lines

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _stores(settings) as (job_store, records):
            removed = _service(settings, job_store, records).clear_completed(
                command.older_than_days,
            )
        return [f"Completed jobs removed: {removed}"]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        with _stores(settings) as (job_store, _):
            if command.tenant_id is not None:
                summary = _run_tenant(settings, command.tenant_id, once=command.once)
                return [render_summary(command.tenant_id, summary)]
            if command.once:
                return [
                    render_summary(tenant_id, _run_tenant(settings, tenant_id, once=True))
                    for tenant_id in job_store.tenants_with_queued_jobs()
                ] or ["No queued jobs."]
            return _run_pool(settings, job_store)


def render_stats_lines(stats: QueueStats) -> list[str]:
    return [
        f"  queued: {stats.queued}",
        f"  processing: {stats.processing}",
        f"  retrying: {stats.retrying}",
        f"  completed: {stats.completed}",
        f"  failed: {stats.failed}",
        f"  total: {stats.total}",
    ]


def render_summary(tenant_id: str, summary: WorkerRunSummary) -> str:
    return (
        f"Worker summary [{tenant_id}]: processed={summary.processed} "
        f"completed={summary.completed} failed={summary.failed} "
        f"retried={summary.retried} idle_polls={summary.idle_polls}"
    )


def parse_pairs(pairs: Sequence[str]) -> dict[str, str]:
    """Parse repeated `key=value` options, keeping their order."""

    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip() or not value.strip():
            raise ValueError(f"Expected COLUMN_ID=IMAGE_ID, got {pair!r}")
        result[key.strip()] = value.strip()
    return result


def _run_tenant(settings: Settings, tenant_id: str, *, once: bool) -> WorkerRunSummary:
    executor = build_executor(settings, tenant_id)
    if once:
        try:
            executor.recover_stale_state()
            return executor.run_once()
        finally:
            executor.stop()
            executor.job_store.close()
            executor.records.close()
            executor.model_client.close()
    return executor.run_loop()


def _run_pool(settings: Settings, job_store: JobStore) -> list[str]:
    orchestrator = PoolOrchestrator(settings=settings, job_store=job_store)
    orchestrator.start()
    if not settings.worker.enable_discovery:
        orchestrator.discover()
    try:
        orchestrator.wait()
    except KeyboardInterrupt:
        logger.info("Interrupted, stopping workers")
    finally:
        stats = orchestrator.stats()
        orchestrator.stop()
    return [render_summary(item.tenant_id, item.summary) for item in stats] or [
        "Worker pool stopped.",
    ]


def _image_from_file(path: Path, *, cropped: bool) -> ImageCreate:
    mime_type, _ = mimetypes.guess_type(path.name)
    if path.suffix.lower() == ".pdf":
        mime_type = PDF_MIME_TYPE
    return ImageCreate(
        filename=path.name,
        mime_type=mime_type or "application/octet-stream",
        content=path.read_bytes(),
        is_cropped=cropped,
    )


def _service(settings: Settings, job_store: JobStore, records: RecordRepository) -> QueueService:
    return QueueService(
        job_store=job_store,
        records=records,
        queue_settings=settings.queue,
        limits=settings.limits,
    )


@contextmanager
def _stores(settings: Settings) -> Iterator[tuple[JobStore, RecordRepository]]:
    job_store = JobStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    records = RecordRepository(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    job_store.init_schema()
    try:
        yield job_store, records
    finally:
        records.close()
        job_store.close()
