"""Per-tenant job executor: claims jobs, calls the model, persists rows, routes failures."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from tabtin.config import InstanceLimits, QueueSettings, WorkerSettings
from tabtin.errors import (
    JobContractError,
    MalformedReplyError,
    ModelCallError,
    ResourceGoneError,
)
from tabtin.extraction.models import ColumnDefinition, ExtractionResult
from tabtin.extraction.normalizer import ResponseNormalizer
from tabtin.extraction.prompts import PAGE_TEXT_LABEL, build_extraction_prompt, build_redo_prompt
from tabtin.llm.client import ModelClient, ModelReply, ModelRequest, build_content
from tabtin.llm.limiter import LimiterStats, RateLimiter
from tabtin.pdf import PdfConverter
from tabtin.queue.job_store import JobStore
from tabtin.queue.models import (
    JobStatus,
    JobType,
    JobView,
    ProcessBatchPayload,
    ProcessRedoPayload,
    ReprocessBatchPayload,
)
from tabtin.records.models import (
    BatchStatus,
    ImageView,
    MetricStatus,
    ProcessingMetric,
    TenantSettings,
)
from tabtin.records.repository import MetricsSink, RecordRepository
from tabtin.storage.common import utc_now

logger = logging.getLogger(__name__)

NO_COLUMNS_MATCHED = "Model reply could not be mapped to any configured column (no columns matched)"


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate executor counters for CLI reporting and orchestrator stats."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class RecoverySummary:
    requeued_jobs: int
    reset_batches: int


class JobExecutor:
    """Runs one tenant's jobs one at a time; every model call goes through the tenant limiter."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        tenant_id: str,
        job_store: JobStore,
        records: RecordRepository,
        model_client: ModelClient,
        pdf_converter: PdfConverter | None = None,
        metrics: MetricsSink | None = None,
        limiter: RateLimiter | None = None,
        limits: InstanceLimits | None = None,
        queue_settings: QueueSettings | None = None,
        worker_settings: WorkerSettings | None = None,
        on_stopped: Callable[[str], None] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.tenant_id = tenant_id
        self.job_store = job_store
        self.records = records
        self.model_client = model_client
        self.pdf_converter = pdf_converter
        self.metrics = metrics if metrics is not None else records
        self.limits = limits or InstanceLimits()
        self.queue_settings = queue_settings or QueueSettings()
        self.worker_settings = worker_settings or WorkerSettings()
        self.limiter = limiter or RateLimiter(
            max_concurrency=1,
            requests_per_minute=self.limits.cap_requests_per_minute(0),
        )
        self._on_stopped = on_stopped
        self._monotonic = monotonic
        self._stop_event = threading.Event()
        self.summary = WorkerRunSummary()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        """Ask the loop to exit after the current job."""

        self._stop_event.set()

    def limiter_stats(self) -> LimiterStats:
        return self.limiter.stats()

    def recover_stale_state(self) -> RecoverySummary:
        """Re-queue abandoned jobs and release batches left in processing by a dead worker."""

        requeued = self.job_store.requeue_stale(
            self.tenant_id,
            stale_after_seconds=self.queue_settings.stale_job_seconds,
        )
        reset = 0
        for batch in self.records.list_batches(
            tenant_id=self.tenant_id,
            statuses=[BatchStatus.PROCESSING],
        ):
            if self.job_store.has_active_job_for_batch(batch.batch_id):
                continue
            if self.records.mark_batch_pending(batch.batch_id):
                reset += 1
                logger.info("Reset orphaned batch %s to pending", batch.batch_id)
        return RecoverySummary(requeued_jobs=requeued, reset_batches=reset)

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job of this tenant."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.job_store.claim_next(self.tenant_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        logger.info(
            "Claimed %s job %s (attempt %s/%s)",
            job.job_type.value,
            job.job_id,
            job.attempts,
            job.max_attempts,
        )
        try:
            self._dispatch(job)
        except ResourceGoneError as error:
            logger.info("Job %s target is gone, completing without result: %s", job.job_id, error)
            self.job_store.complete(job.job_id)
            summary.completed = 1
        except JobContractError as error:
            logger.exception("Job %s violates its contract", job.job_id)
            self._route_failure(job, error, retry=False, summary=summary)
        except ModelCallError as error:
            self._route_failure(job, error, retry=error.retryable, summary=summary)
        except Exception as error:  # noqa: BLE001
            logger.warning("Job %s failed: %s", job.job_id, error, exc_info=True)
            self._route_failure(job, error, retry=True, summary=summary)
        else:
            self.job_store.complete(job.job_id)
            summary.completed = 1
        return summary

    def run_loop(self, *, max_jobs: int | None = None) -> WorkerRunSummary:
        """Run until stopped, idle for `idle_shutdown_seconds`, or `max_jobs` were processed."""

        settings = self.worker_settings
        idle_since = self._monotonic()
        try:
            self.recover_stale_state()
            while not self.stop_requested:
                if max_jobs is not None and self.summary.processed >= max_jobs:
                    break
                try:
                    step = self.run_once()
                except Exception:
                    logger.exception("Executor loop error for tenant %s", self.tenant_id)
                    self._sleep_with_stop(settings.error_backoff_seconds)
                    continue
                self.summary.add(step)
                if step.processed:
                    idle_since = self._monotonic()
                    continue
                if (
                    settings.idle_shutdown_seconds > 0
                    and self._monotonic() - idle_since >= settings.idle_shutdown_seconds
                ):
                    logger.info(
                        "Executor for tenant %s idle for %.0fs, shutting down",
                        self.tenant_id,
                        settings.idle_shutdown_seconds,
                    )
                    break
                self._sleep_with_stop(settings.poll_interval_seconds)
        finally:
            self._stop_event.set()
            if self._on_stopped is not None:
                self._on_stopped(self.tenant_id)
        return self.summary

    def _dispatch(self, job: JobView) -> None:
        if job.job_type is JobType.PROCESS_BATCH:
            self.process_batch(job)
        elif job.job_type is JobType.PROCESS_REDO:
            self.process_redo(job)
        elif job.job_type is JobType.REPROCESS_BATCH:
            self.reprocess_batch(job)
        else:
            raise JobContractError(f"Unknown job type: {job.job_type}")

    def process_batch(self, job: JobView) -> None:
        """Extract rows for every image of a batch with one model call."""

        payload = ProcessBatchPayload.from_payload(job.payload)
        self._check_tenant(payload.tenant_id)
        started_at = utc_now()
        try:
            settings = self._load_settings()
        except JobContractError as error:
            self.records.mark_batch_failed(payload.batch_id, str(error))
            self._record_metric(
                job,
                batch_id=payload.batch_id,
                started_at=started_at,
                status=MetricStatus.FAILED,
                image_count=0,
                error_message=str(error),
            )
            raise
        if not self.records.mark_batch_processing(payload.batch_id):
            raise ResourceGoneError(f"Batch {payload.batch_id} not found")

        image_count = 0
        try:
            images = self.records.list_images(payload.batch_id)
            image_count = len(images)
            if not images:
                raise JobContractError(f"Batch {payload.batch_id} has no images")
            pages = self._expand_images(images, settings)
            prompt = settings.prompt_template or build_extraction_prompt(
                settings.columns,
                settings.feature_flags,
                settings.coordinate_format,
            )
            reply = self._call_model(
                settings,
                build_content(prompt, pages, page_label=PAGE_TEXT_LABEL),
            )
            normalized = ResponseNormalizer(settings.schema()).normalize(reply.content)
            rows = [row for row in normalized if row]
            if not rows:
                raise MalformedReplyError(NO_COLUMNS_MATCHED)
            extractions = [result.to_dict() for row in rows for result in row]
            stored = self.records.store_batch_result(
                batch_id=payload.batch_id,
                rows=rows,
                processed_data={"extractions": extractions},
            )
            if not stored:
                raise ResourceGoneError(
                    f"Batch {payload.batch_id} was canceled or deleted during processing; "
                    "result discarded",
                )
        except ResourceGoneError:
            raise
        except Exception as error:
            message = str(error) or error.__class__.__name__
            self.records.mark_batch_failed(payload.batch_id, message, only_if_processing=True)
            self._record_metric(
                job,
                batch_id=payload.batch_id,
                started_at=started_at,
                status=MetricStatus.FAILED,
                image_count=image_count,
                error_message=message,
            )
            raise

        logger.info("Batch %s extracted into %s row(s)", payload.batch_id, len(rows))
        self._record_metric(
            job,
            batch_id=payload.batch_id,
            started_at=started_at,
            status=MetricStatus.SUCCESS,
            image_count=image_count,
            extraction_count=len(extractions),
            model_used=settings.model_name,
            tokens_used=reply.total_tokens,
        )

    def process_redo(self, job: JobView) -> None:
        """Re-extract selected columns of one stored row from cropped region images."""

        payload = ProcessRedoPayload.from_payload(job.payload)
        self._check_tenant(payload.tenant_id)
        started_at = utc_now()
        image_count = 0
        try:
            if self.records.get_batch(payload.batch_id) is None:
                raise ResourceGoneError(f"Batch {payload.batch_id} not found")
            row = self.records.get_row(payload.batch_id, payload.row_index)
            if row is None:
                raise ResourceGoneError(
                    f"Row {payload.row_index} of batch {payload.batch_id} not found",
                )
            settings = self._load_settings()
            redo_columns = _redo_columns(settings.columns, payload.redo_column_ids)
            redo_ids = {column.id for column in redo_columns}
            kept = [result for result in row.row_data if result.column_id not in redo_ids]

            cropped: list[ImageView] = []
            for column in redo_columns:
                image_id = payload.cropped_image_ids.get(column.id)
                image = self.records.get_image(image_id) if image_id else None
                if image is None:
                    raise JobContractError(f"No cropped image found for column {column.id}")
                cropped.append(image)
            image_count = len(cropped)

            prompt = build_redo_prompt(
                settings.review_prompt_template,
                kept,
                redo_columns,
                settings.coordinate_format,
            )
            reply = self._call_model(
                settings,
                build_content(
                    prompt,
                    [(image.content, image.mime_type, None) for image in cropped],
                    page_label=PAGE_TEXT_LABEL,
                ),
            )
            normalized = ResponseNormalizer(settings.schema(redo_columns)).normalize(reply.content)
            batch_image_ids = [
                image.image_id
                for image in self.records.list_images(payload.batch_id, include_cropped=True)
            ]
            redone = _remap_redo_results(
                [result for results in normalized for result in results],
                cropped_ids=[image.image_id for image in cropped],
                batch_image_ids=batch_image_ids,
                row_index=_shared_row_index(row.row_data),
            )
            if not self.records.update_row(row.row_id, row_data=[*kept, *redone]):
                raise ResourceGoneError(
                    f"Row {payload.row_index} of batch {payload.batch_id} was deleted",
                )
            self.records.mark_batch_redone(payload.batch_id)
        except ResourceGoneError:
            raise
        except Exception as error:
            self._record_metric(
                job,
                batch_id=payload.batch_id,
                started_at=started_at,
                status=MetricStatus.FAILED,
                image_count=0,
                error_message=str(error) or error.__class__.__name__,
            )
            raise

        logger.info(
            "Redo of row %s in batch %s replaced %s value(s)",
            payload.row_index,
            payload.batch_id,
            len(redone),
        )
        self._record_metric(
            job,
            batch_id=payload.batch_id,
            started_at=started_at,
            status=MetricStatus.SUCCESS,
            image_count=image_count,
            extraction_count=len(redone),
            model_used=settings.model_name,
            tokens_used=reply.total_tokens,
        )

    def reprocess_batch(self, job: JobView) -> None:
        """Clear previous results of each batch and queue a fresh extraction for it."""

        payload = ReprocessBatchPayload.from_payload(job.payload)
        self._check_tenant(payload.tenant_id)
        for batch_id in payload.batch_ids:
            if not self.records.reset_batch(batch_id):
                logger.info("Batch %s no longer exists, not reprocessing it", batch_id)
                continue
            self.job_store.enqueue(
                JobType.PROCESS_BATCH,
                ProcessBatchPayload(batch_id=batch_id, tenant_id=self.tenant_id).to_payload(),
                tenant_id=self.tenant_id,
                priority=self.queue_settings.default_priority,
                max_attempts=self.queue_settings.default_max_attempts,
            )

    def _check_tenant(self, tenant_id: str) -> None:
        if tenant_id != self.tenant_id:
            raise JobContractError(
                f"Job payload targets tenant {tenant_id}, executor serves {self.tenant_id}",
            )

    def _load_settings(self) -> TenantSettings:
        settings = self.records.get_tenant_settings(self.tenant_id)
        if settings is None:
            raise ResourceGoneError(f"Tenant {self.tenant_id} not found")
        if not settings.endpoint or not settings.model_name:
            raise JobContractError(f"Tenant {self.tenant_id} has no model endpoint configured")
        if not settings.columns:
            raise JobContractError(f"Tenant {self.tenant_id} has no columns configured")
        self.limiter.reconfigure(
            max_concurrency=self.limits.cap_concurrency(settings.max_concurrency),
            requests_per_minute=self.limits.cap_requests_per_minute(settings.requests_per_minute),
        )
        return settings

    def _expand_images(
        self,
        images: Sequence[ImageView],
        settings: TenantSettings,
    ) -> list[tuple[bytes, str, str | None]]:
        pages: list[tuple[bytes, str, str | None]] = []
        for image in images:
            if not image.is_pdf:
                pages.append((image.content, image.mime_type, image.extracted_text))
                continue
            if self.pdf_converter is None:
                raise JobContractError(f"Image {image.filename} is a PDF but no converter is set")
            converted = self.pdf_converter.convert(image.content, settings.pdf)
            logger.info("Converted PDF %s into %s page image(s)", image.filename, len(converted))
            pages.extend(
                (page.image_bytes, page.mime_type, page.extracted_text) for page in converted
            )
        return pages

    def _call_model(self, settings: TenantSettings, content: list[dict[str, Any]]) -> ModelReply:
        request = ModelRequest(
            endpoint=settings.endpoint,
            api_key=settings.api_key,
            model=settings.model_name,
            content=content,
            timeout_seconds=settings.request_timeout_seconds,
        )
        return self.limiter.execute(lambda: self.model_client.complete(request))

    def _route_failure(
        self,
        job: JobView,
        error: Exception,
        *,
        retry: bool,
        summary: WorkerRunSummary,
    ) -> None:
        message = str(error) or error.__class__.__name__
        updated = self.job_store.fail(job.job_id, message, retry=retry, sleep=self._sleep_with_stop)
        if updated is None:
            return
        if updated.status is JobStatus.QUEUED:
            summary.retried = 1
        else:
            summary.failed = 1

    def _record_metric(  # noqa: PLR0913
        self,
        job: JobView,
        *,
        batch_id: str,
        started_at: datetime,
        status: MetricStatus,
        image_count: int,
        extraction_count: int | None = None,
        model_used: str | None = None,
        tokens_used: int | None = None,
        error_message: str | None = None,
    ) -> None:
        metric = ProcessingMetric(
            batch_id=batch_id,
            tenant_id=self.tenant_id,
            job_type=job.job_type.value,
            started_at=started_at,
            finished_at=utc_now(),
            status=status,
            image_count=image_count,
            extraction_count=extraction_count,
            model_used=model_used,
            tokens_used=tokens_used,
            error_message=error_message,
        )
        try:
            self.metrics.record(metric)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Failed to record processing metric for batch %s",
                batch_id,
                exc_info=True,
            )

    def _sleep_with_stop(self, seconds: float) -> None:
        self._stop_event.wait(timeout=max(0.0, seconds))


def _redo_columns(
    columns: Sequence[ColumnDefinition],
    redo_column_ids: Sequence[str],
) -> list[ColumnDefinition]:
    by_id = {column.id: column for column in columns}
    unknown = [column_id for column_id in redo_column_ids if column_id not in by_id]
    if unknown:
        raise JobContractError(f"Unknown redo column(s): {', '.join(unknown)}")
    return [by_id[column_id] for column_id in redo_column_ids]


def _remap_redo_results(
    results: Sequence[ExtractionResult],
    *,
    cropped_ids: Sequence[str],
    batch_image_ids: Sequence[str],
    row_index: int | None,
) -> list[ExtractionResult]:
    """Point each result's image_index at its cropped image's position among the batch images."""

    remapped: list[ExtractionResult] = []
    for result in results:
        image_index = result.image_index
        if 0 <= image_index < len(cropped_ids) and cropped_ids[image_index] in batch_image_ids:
            image_index = batch_image_ids.index(cropped_ids[image_index])
        else:
            logger.warning("No cropped image for reply image_index %s; keeping it", image_index)
        result.image_index = image_index
        result.redone = True
        if result.row_index is not None or row_index is not None:
            result.row_index = row_index
        remapped.append(result)
    return remapped


def _shared_row_index(results: Sequence[ExtractionResult]) -> int | None:
    for result in results:
        if result.row_index is not None:
            return result.row_index
    return None
