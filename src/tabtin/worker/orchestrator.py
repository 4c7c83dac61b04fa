"""Dynamic pool of per-tenant executors, each on its own daemon thread."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

from tabtin.config import Settings
from tabtin.llm.client import ModelClient
from tabtin.llm.limiter import LimiterStats
from tabtin.pdf import PyMuPdfConverter
from tabtin.queue.job_store import JobStore
from tabtin.records.repository import RecordRepository
from tabtin.worker.executor import JobExecutor, WorkerRunSummary

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[[str, Callable[[str], None]], JobExecutor]


@dataclass(slots=True)
class WorkerHandle:
    """A live executor and the thread driving it."""

    tenant_id: str
    executor: JobExecutor
    thread: threading.Thread


@dataclass(slots=True)
class TenantWorkerStats:
    tenant_id: str
    alive: bool
    summary: WorkerRunSummary
    limiter: LimiterStats


class PoolOrchestrator:
    """Starts one executor per tenant with queued work and forgets it once it stops."""

    def __init__(
        self,
        *,
        settings: Settings,
        job_store: JobStore,
        executor_factory: ExecutorFactory | None = None,
    ) -> None:
        self.settings = settings
        self.job_store = job_store
        self._executor_factory = executor_factory or self._default_executor
        self._lock = threading.Lock()
        self._workers: dict[str, WorkerHandle] = {}
        self._stop = threading.Event()
        self._discovery_thread: threading.Thread | None = None

    def start(self) -> None:
        """Launch the discovery thread when discovery is enabled."""

        if not self.settings.worker.enable_discovery:
            logger.info("Worker discovery disabled; executors start on demand only")
            return
        if self._discovery_thread is not None:
            return
        self._stop.clear()
        self._discovery_thread = threading.Thread(
            target=self._discovery_loop,
            daemon=True,
            name="tabtin-discovery",
        )
        self._discovery_thread.start()
        logger.info(
            "Worker discovery started (interval %.1fs)",
            self.settings.worker.discovery_interval_seconds,
        )

    def discover(self) -> list[str]:
        """Start executors for tenants with queued jobs. Returns the tenants started."""

        started: list[str] = []
        for tenant_id in self.job_store.tenants_with_queued_jobs():
            if self.ensure_worker_for(tenant_id):
                started.append(tenant_id)
        return started

    def ensure_worker_for(self, tenant_id: str) -> bool:
        """Start an executor for `tenant_id` unless one is running or the tenant cap is hit."""

        with self._lock:
            if self._stop.is_set():
                return False
            handle = self._workers.get(tenant_id)
            if handle is not None and handle.thread.is_alive():
                return False
            running = sum(1 for item in self._workers.values() if item.thread.is_alive())
            if running >= self.settings.limits.max_concurrent_tenants:
                logger.debug(
                    "Instance tenant cap %s reached; tenant %s waits",
                    self.settings.limits.max_concurrent_tenants,
                    tenant_id,
                )
                return False

            executor = self._executor_factory(tenant_id, self._on_executor_stopped)
            thread = threading.Thread(
                target=self._run_executor,
                args=(executor,),
                daemon=True,
                name=f"tabtin-worker-{tenant_id}",
            )
            self._workers[tenant_id] = WorkerHandle(
                tenant_id=tenant_id,
                executor=executor,
                thread=thread,
            )
            thread.start()
        logger.info("Started executor for tenant %s", tenant_id)
        return True

    def active_tenants(self) -> list[str]:
        with self._lock:
            return sorted(self._workers)

    def stats(self) -> list[TenantWorkerStats]:
        with self._lock:
            handles = list(self._workers.values())
        return [
            TenantWorkerStats(
                tenant_id=handle.tenant_id,
                alive=handle.thread.is_alive(),
                summary=handle.executor.summary,
                limiter=handle.executor.limiter_stats(),
            )
            for handle in handles
        ]

    def stop(self, timeout: float = 30.0) -> None:
        """Stop discovery and every executor, then wait for their threads."""

        self._stop.set()
        if self._discovery_thread is not None:
            self._discovery_thread.join(timeout=timeout)
            self._discovery_thread = None
        with self._lock:
            handles = list(self._workers.values())
        for handle in handles:
            handle.executor.stop()
        for handle in handles:
            handle.thread.join(timeout=timeout)
            if handle.thread.is_alive():
                logger.warning("Executor for tenant %s did not stop in time", handle.tenant_id)
        logger.info("Worker pool stopped")

    def wait(self) -> None:
        """Block until `stop` is called."""

        self._stop.wait()

    def _discovery_loop(self) -> None:
        interval = self.settings.worker.discovery_interval_seconds
        while not self._stop.is_set():
            try:
                self.discover()
            except Exception:
                logger.exception("Worker discovery failed")
            self._stop.wait(timeout=interval)

    def _run_executor(self, executor: JobExecutor) -> None:
        try:
            executor.run_loop()
        except Exception:
            logger.exception("Executor for tenant %s crashed", executor.tenant_id)

    def _on_executor_stopped(self, tenant_id: str) -> None:
        with self._lock:
            handle = self._workers.get(tenant_id)
            if handle is not None and handle.thread is threading.current_thread():
                del self._workers[tenant_id]
        logger.info("Executor for tenant %s stopped", tenant_id)

    def _default_executor(
        self,
        tenant_id: str,
        on_stopped: Callable[[str], None],
    ) -> JobExecutor:
        return build_executor(self.settings, tenant_id, on_stopped=on_stopped)


def build_executor(
    settings: Settings,
    tenant_id: str,
    *,
    on_stopped: Callable[[str], None] | None = None,
) -> JobExecutor:
    """Executor with its own store connections, so threads never share a session."""

    job_store = JobStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    records = RecordRepository(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    model_client = ModelClient(
        transport_retries=settings.model_http.transport_retries,
        user_agent=settings.model_http.user_agent,
    )

    def _stopped(stopped_tenant: str) -> None:
        job_store.close()
        records.close()
        model_client.close()
        if on_stopped is not None:
            on_stopped(stopped_tenant)

    return JobExecutor(
        tenant_id=tenant_id,
        job_store=job_store,
        records=records,
        model_client=model_client,
        pdf_converter=PyMuPdfConverter(),
        limits=settings.limits,
        queue_settings=settings.queue,
        worker_settings=settings.worker,
        on_stopped=_stopped,
    )
