"""Use-case services for enqueueing, canceling and maintaining extraction jobs."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Protocol

from tabtin.config import InstanceLimits, QueueSettings
from tabtin.queue.job_store import JobStore
from tabtin.queue.models import (
    JobType,
    JobView,
    ProcessBatchPayload,
    ProcessRedoPayload,
    QueueStats,
    ReprocessBatchPayload,
)
from tabtin.records.repository import CANCELED_BY_USER_MESSAGE, RecordRepository

logger = logging.getLogger(__name__)


class WorkerNotifier(Protocol):
    def ensure_worker_for(self, tenant_id: str) -> bool: ...


@dataclass(slots=True)
class EnqueueRedo:
    """High-level command to re-extract some columns of one row."""

    tenant_id: str
    batch_id: str
    row_index: int
    redo_column_ids: tuple[str, ...]
    cropped_image_ids: dict[str, str]
    source_image_ids: dict[str, str] = field(default_factory=dict)
    priority: int | None = None


@dataclass(slots=True)
class CancelResult:
    canceled_jobs: int
    failed_batches: int


@dataclass(slots=True)
class LimitCheck:
    """Whether a tenant may start processing under the instance-wide tenant cap."""

    allowed: bool
    active_tenants: int
    max_concurrent_tenants: int
    reason: str | None = None


class QueueService:
    """Coordinates record validation, queue inserts and worker wake-ups."""

    def __init__(
        self,
        *,
        job_store: JobStore,
        records: RecordRepository,
        queue_settings: QueueSettings | None = None,
        limits: InstanceLimits | None = None,
        notifier: WorkerNotifier | None = None,
    ) -> None:
        self.job_store = job_store
        self.records = records
        self.queue_settings = queue_settings or QueueSettings()
        self.limits = limits or InstanceLimits()
        self.notifier = notifier

    def enqueue_batches(
        self,
        tenant_id: str,
        batch_ids: Sequence[str],
        *,
        priority: int | None = None,
    ) -> list[JobView]:
        """Queue one extraction job per batch, replacing jobs already queued for them."""

        self._require_batches(tenant_id, batch_ids)
        self._require_capacity(tenant_id)
        replaced = self.job_store.cancel_queued(tenant_id, batch_ids=batch_ids)
        if replaced:
            logger.info("Replaced %s queued job(s) for tenant %s", replaced, tenant_id)
        jobs = [
            self.job_store.enqueue(
                JobType.PROCESS_BATCH,
                ProcessBatchPayload(batch_id=batch_id, tenant_id=tenant_id).to_payload(),
                tenant_id=tenant_id,
                priority=self._priority(priority),
                max_attempts=self.queue_settings.default_max_attempts,
            )
            for batch_id in batch_ids
        ]
        self._notify(tenant_id)
        return jobs

    def enqueue_redo(self, command: EnqueueRedo) -> JobView:
        """Queue a redo of selected columns; every redo column needs a cropped image."""

        if not command.redo_column_ids:
            raise ValueError("At least one redo column is required.")
        missing = [
            column_id
            for column_id in command.redo_column_ids
            if not command.cropped_image_ids.get(column_id)
        ]
        if missing:
            raise ValueError(f"No cropped image given for column(s): {', '.join(missing)}")
        if command.row_index < 1:
            raise ValueError("row_index is 1-based and must be >= 1.")
        self._require_batches(command.tenant_id, [command.batch_id])
        self._require_capacity(command.tenant_id)

        payload = ProcessRedoPayload(
            batch_id=command.batch_id,
            tenant_id=command.tenant_id,
            row_index=command.row_index,
            redo_column_ids=tuple(command.redo_column_ids),
            cropped_image_ids=dict(command.cropped_image_ids),
            source_image_ids=dict(command.source_image_ids),
        )
        job = self.job_store.enqueue(
            JobType.PROCESS_REDO,
            payload.to_payload(),
            tenant_id=command.tenant_id,
            priority=(
                command.priority
                if command.priority is not None
                else self.queue_settings.redo_priority
            ),
            max_attempts=self.queue_settings.default_max_attempts,
        )
        self._notify(command.tenant_id)
        return job

    def enqueue_reprocess(
        self,
        tenant_id: str,
        batch_ids: Sequence[str],
        *,
        priority: int | None = None,
    ) -> JobView:
        """Queue one job that clears the batches and re-queues their extraction."""

        self._require_batches(tenant_id, batch_ids)
        self._require_capacity(tenant_id)
        job = self.job_store.enqueue(
            JobType.REPROCESS_BATCH,
            ReprocessBatchPayload(batch_ids=tuple(batch_ids), tenant_id=tenant_id).to_payload(),
            tenant_id=tenant_id,
            priority=self._priority(priority),
            max_attempts=self.queue_settings.default_max_attempts,
        )
        self._notify(tenant_id)
        return job

    def cancel(self, tenant_id: str, batch_ids: Sequence[str] | None = None) -> CancelResult:
        """Drop queued jobs and fail the affected batches that have not finished."""

        canceled = self.job_store.cancel_queued(tenant_id, batch_ids=batch_ids)
        failed = self.records.cancel_batches(
            tenant_id=tenant_id,
            batch_ids=batch_ids,
            message=CANCELED_BY_USER_MESSAGE,
        )
        logger.info(
            "Canceled %s queued job(s) and %s batch(es) for tenant %s",
            canceled,
            failed,
            tenant_id,
        )
        return CancelResult(canceled_jobs=canceled, failed_batches=failed)

    def retry_failed(self, job_id: str) -> bool:
        job = self.job_store.get_job(job_id)
        if job is None:
            return False
        self._require_capacity(job.tenant_id)
        retried = self.job_store.retry_failed(job_id)
        if retried:
            self._notify(job.tenant_id)
        return retried

    def retry_all_failed(self, tenant_id: str | None = None) -> int:
        if tenant_id is not None:
            self._require_capacity(tenant_id)
        count = self.job_store.retry_all_failed(tenant_id)
        if count and tenant_id is not None:
            self._notify(tenant_id)
        return count

    def stats_for(self, tenant_id: str) -> QueueStats:
        return self.job_store.stats_for(tenant_id)

    def stats(self) -> QueueStats:
        return self.job_store.stats()

    def clear_completed(self, older_than_days: int | None = None) -> int:
        return self.job_store.clear_completed(
            self.queue_settings.retention_days if older_than_days is None else older_than_days,
        )

    def check_processing_limits(self, tenant_id: str) -> LimitCheck:
        """Apply the instance cap on tenants with processing jobs."""

        active = self.job_store.active_tenant_ids()
        cap = self.limits.max_concurrent_tenants
        if tenant_id in active or len(active) < cap:
            return LimitCheck(allowed=True, active_tenants=len(active), max_concurrent_tenants=cap)
        return LimitCheck(
            allowed=False,
            active_tenants=len(active),
            max_concurrent_tenants=cap,
            reason=f"Instance is already processing {len(active)} tenant(s) (limit {cap}).",
        )

    def _require_batches(self, tenant_id: str, batch_ids: Sequence[str]) -> None:
        if self.records.get_tenant(tenant_id) is None:
            raise ValueError(f"Unknown tenant: {tenant_id}")
        if not batch_ids:
            raise ValueError("At least one batch id is required.")
        foreign: list[str] = []
        for batch_id in batch_ids:
            batch = self.records.get_batch(batch_id)
            if batch is None or batch.tenant_id != tenant_id:
                foreign.append(batch_id)
        if foreign:
            raise ValueError(f"Unknown batch id(s) for tenant {tenant_id}: {', '.join(foreign)}")

    def _require_capacity(self, tenant_id: str) -> None:
        check = self.check_processing_limits(tenant_id)
        if not check.allowed:
            logger.warning("Refusing work for tenant %s: %s", tenant_id, check.reason)
            raise ValueError(check.reason)

    def _priority(self, priority: int | None) -> int:
        return self.queue_settings.default_priority if priority is None else priority

    def _notify(self, tenant_id: str) -> None:
        if self.notifier is not None:
            self.notifier.ensure_worker_for(tenant_id)

