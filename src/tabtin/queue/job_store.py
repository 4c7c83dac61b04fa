"""Persistent job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Protocol
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, delete, select

from tabtin.queue.models import (
    JobStatus,
    JobType,
    JobView,
    QueueStats,
    referenced_batch_ids,
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
from tabtin.storage.sqlmodel_models import QueueJob

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 10
DEFAULT_MAX_ATTEMPTS = 3


class JobQueue(Protocol):
    """Minimal queue contract the executor depends on."""

    def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        tenant_id: str,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> JobView: ...

    def claim_next(self, tenant_id: str | None = None) -> JobView | None: ...

    def complete(self, job_id: str) -> bool: ...

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        retry: bool = True,
        sleep: Callable[[float], None] | None = None,
    ) -> JobView | None: ...


class JobStore:
    """Queue persistence facade with optimistic claim semantics."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._clock = clock
        self._sleep = sleep

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        tenant_id: str,
        priority: int = DEFAULT_PRIORITY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> JobView:
        """Insert one queued job and return its view."""

        now = to_db_datetime(self._clock())
        row = QueueJob(
            job_id=uuid4().hex,
            tenant_id=tenant_id,
            job_type=JobType(job_type).value,
            status=JobStatus.QUEUED.value,
            priority=priority,
            attempts=0,
            max_attempts=max_attempts,
            payload_json=dump_json(payload),
            created_at=now,
            queued_at=now,
            updated_at=now,
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                "Enqueued %s job %s for tenant %s (priority=%s)",
                row.job_type,
                row.job_id,
                tenant_id,
                priority,
            )
            return _to_job_view(row)

    def claim_next(self, tenant_id: str | None = None) -> JobView | None:
        """Claim the next queued job, or return None when there is none or a race was lost."""

        with Session(self.engine) as session:
            query = select(QueueJob).where(QueueJob.status == JobStatus.QUEUED.value)
            if tenant_id is not None:
                query = query.where(QueueJob.tenant_id == tenant_id)
            candidate = session.exec(
                query.order_by(
                    col(QueueJob.priority).asc(),
                    col(QueueJob.queued_at).asc(),
                    col(QueueJob.created_at).asc(),
                ).limit(1),
            ).one_or_none()
            if candidate is None:
                return None
            candidate_id = candidate.job_id
            session.expunge(candidate)

            fresh = session.exec(
                select(QueueJob).where(QueueJob.job_id == candidate_id),
            ).one_or_none()
            if fresh is None or fresh.status != JobStatus.QUEUED.value:
                logger.debug("Job %s was claimed elsewhere; abandoning", candidate_id)
                return None

            now = to_db_datetime(self._clock())
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == candidate_id,
                    col(QueueJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.PROCESSING.value,
                    attempts=fresh.attempts + 1,
                    started_at=now,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Job %s lost the claim race; abandoning", candidate_id)
                return None
            session.commit()

            claimed = session.exec(
                select(QueueJob).where(QueueJob.job_id == candidate_id).execution_options(
                    populate_existing=True,
                ),
            ).one()
            logger.info(
                "Claimed %s job %s for tenant %s (attempt %s/%s)",
                claimed.job_type,
                claimed.job_id,
                claimed.tenant_id,
                claimed.attempts,
                claimed.max_attempts,
            )
            return _to_job_view(claimed)

    def complete(self, job_id: str) -> bool:
        """Mark a job completed. A job deleted in the meantime is a no-op."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(col(QueueJob.job_id) == job_id)
                .values(
                    status=JobStatus.COMPLETED.value,
                    completed_at=now,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Job %s no longer exists; completion ignored", job_id)
                return False
            session.commit()
        logger.info("Job %s completed", job_id)
        return True

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        retry: bool = True,
        sleep: Callable[[float], None] | None = None,
    ) -> JobView | None:
        """Re-queue a failed job after exponential backoff, or fail it terminally.

        A retried job keeps its priority but gets a fresh `queued_at`, so it is served after
        jobs of the same priority that were already waiting.
        """

        job = self.get_job(job_id)
        if job is None:
            logger.debug("Job %s no longer exists; failure ignored", job_id)
            return None

        if retry and job.attempts < job.max_attempts:
            delay = self.backoff_seconds(job.attempts)
            logger.warning(
                "Job %s failed on attempt %s/%s, retrying in %.0fs: %s",
                job_id,
                job.attempts,
                job.max_attempts,
                delay,
                error,
            )
            (sleep or self._sleep)(delay)
            now = to_db_datetime(self._clock())
            values: dict[str, Any] = {
                "status": JobStatus.QUEUED.value,
                "last_error": error,
                "queued_at": now,
                "started_at": None,
                "updated_at": now,
            }
        else:
            logger.error(
                "Job %s failed permanently after %s attempt(s): %s",
                job_id,
                job.attempts,
                error,
            )
            now = to_db_datetime(self._clock())
            values = {
                "status": JobStatus.FAILED.value,
                "last_error": error,
                "completed_at": now,
                "updated_at": now,
            }

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob).where(col(QueueJob.job_id) == job_id).values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                logger.debug("Job %s deleted during backoff; failure ignored", job_id)
                return None
            session.commit()
        return self.get_job(job_id)

    @staticmethod
    def backoff_seconds(attempts: int) -> float:
        """Delay before re-queuing a job that has used `attempts` attempts."""

        return float(2 ** max(0, attempts))

    def cancel_queued(self, tenant_id: str, *, batch_ids: Iterable[str] | None = None) -> int:
        """Delete queued jobs of one tenant, optionally only those touching `batch_ids`."""

        wanted = set(batch_ids) if batch_ids is not None else None
        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob).where(
                    QueueJob.tenant_id == tenant_id,
                    QueueJob.status == JobStatus.QUEUED.value,
                ),
            ).all()
            doomed = [
                row.job_id
                for row in rows
                if wanted is None
                or wanted.intersection(referenced_batch_ids(load_json(row.payload_json, {})))
            ]
            if not doomed:
                return 0
            result = session.exec(
                delete(QueueJob).where(
                    col(QueueJob.job_id).in_(doomed),
                    col(QueueJob.status) == JobStatus.QUEUED.value,
                ),
            )
            session.commit()
            deleted = int(result.rowcount or 0)
        logger.info("Canceled %s queued job(s) for tenant %s", deleted, tenant_id)
        return deleted

    def stats_for(self, tenant_id: str) -> QueueStats:
        """Job counts by status for one tenant."""

        return self._stats(tenant_id=tenant_id)

    def stats(self) -> QueueStats:
        """Job counts by status across all tenants."""

        return self._stats(tenant_id=None)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(QueueJob).where(QueueJob.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def list_jobs(
        self,
        *,
        tenant_id: str | None = None,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List jobs newest first."""

        with Session(self.engine) as session:
            query = select(QueueJob)
            if tenant_id is not None:
                query = query.where(QueueJob.tenant_id == tenant_id)
            if status is not None:
                query = query.where(QueueJob.status == status.value)
            rows = session.exec(
                query.order_by(col(QueueJob.created_at).desc()).limit(limit),
            ).all()
            return [_to_job_view(row) for row in rows]

    def tenants_with_queued_jobs(self) -> list[str]:
        """Tenant ids that have at least one queued job."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob.tenant_id)
                .where(QueueJob.status == JobStatus.QUEUED.value)
                .distinct()
                .order_by(col(QueueJob.tenant_id).asc()),
            ).all()
            return list(rows)

    def active_tenant_ids(self) -> set[str]:
        """Tenant ids that currently have a job in processing."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob.tenant_id)
                .where(QueueJob.status == JobStatus.PROCESSING.value)
                .distinct(),
            ).all()
            return set(rows)

    def has_active_job_for_batch(self, batch_id: str) -> bool:
        """Whether a processing job references `batch_id`."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(QueueJob.payload_json).where(
                    QueueJob.status == JobStatus.PROCESSING.value,
                ),
            ).all()
        return any(batch_id in referenced_batch_ids(load_json(raw, {})) for raw in rows)

    def retry_failed(self, job_id: str) -> bool:
        """Put one failed job back in the queue with a fresh attempt budget."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.job_id) == job_id,
                    col(QueueJob.status) == JobStatus.FAILED.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    last_error=None,
                    queued_at=now,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
        logger.info("Job %s re-queued manually", job_id)
        return True

    def retry_all_failed(self, tenant_id: str | None = None) -> int:
        """Re-queue every failed job, optionally for one tenant."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            statement = sa_update(QueueJob).where(
                col(QueueJob.status) == JobStatus.FAILED.value,
            )
            if tenant_id is not None:
                statement = statement.where(col(QueueJob.tenant_id) == tenant_id)
            result = session.exec(
                statement.values(
                    status=JobStatus.QUEUED.value,
                    attempts=0,
                    last_error=None,
                    queued_at=now,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            session.commit()
            count = int(result.rowcount or 0)
        logger.info("Re-queued %s failed job(s)", count)
        return count

    def clear_completed(self, older_than_days: int = 7) -> int:
        """Delete completed jobs that finished more than `older_than_days` ago."""

        cutoff = to_db_datetime(self._clock() - timedelta(days=older_than_days))
        with Session(self.engine) as session:
            result = session.exec(
                delete(QueueJob).where(
                    col(QueueJob.status) == JobStatus.COMPLETED.value,
                    col(QueueJob.completed_at) < cutoff,
                ),
            )
            session.commit()
            count = int(result.rowcount or 0)
        logger.info("Removed %s completed job(s) older than %s day(s)", count, older_than_days)
        return count

    def requeue_stale(self, tenant_id: str, *, stale_after_seconds: int) -> int:
        """Return processing jobs abandoned by a dead process to the queue."""

        now = self._clock()
        cutoff = to_db_datetime(now - timedelta(seconds=stale_after_seconds))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueJob)
                .where(
                    col(QueueJob.tenant_id) == tenant_id,
                    col(QueueJob.status) == JobStatus.PROCESSING.value,
                    col(QueueJob.started_at) < cutoff,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    queued_at=to_db_datetime(now),
                    started_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            session.commit()
            count = int(result.rowcount or 0)
        if count:
            logger.warning("Re-queued %s stale processing job(s) for tenant %s", count, tenant_id)
        return count

    def _stats(self, *, tenant_id: str | None) -> QueueStats:
        with Session(self.engine) as session:
            query = select(QueueJob.status, func.count()).group_by(QueueJob.status)
            if tenant_id is not None:
                query = query.where(QueueJob.tenant_id == tenant_id)
            counts = dict(session.exec(query).all())
        return QueueStats(
            queued=counts.get(JobStatus.QUEUED.value, 0),
            processing=counts.get(JobStatus.PROCESSING.value, 0),
            completed=counts.get(JobStatus.COMPLETED.value, 0),
            failed=counts.get(JobStatus.FAILED.value, 0),
            retrying=counts.get(JobStatus.RETRYING.value, 0),
        )


def _to_job_view(row: QueueJob) -> JobView:
    return JobView(
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        job_type=JobType(row.job_type),
        status=JobStatus(row.status),
        payload=load_json(row.payload_json, {}),
        priority=row.priority,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        last_error=row.last_error,
        created_at=to_utc_aware(row.created_at),
        queued_at=to_utc_aware(row.queued_at),
        started_at=optional_utc_aware(row.started_at),
        completed_at=optional_utc_aware(row.completed_at),
    )
