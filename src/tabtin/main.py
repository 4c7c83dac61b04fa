"""CLI entrypoint for tabtin."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from tabtin import __version__
from tabtin.controllers import (
    BatchAddCommand,
    BatchAddImageCommand,
    BatchRowsCommand,
    QueueCancelCommand,
    QueueCleanupCommand,
    QueueEnqueueCommand,
    QueueListCommand,
    QueueRedoCommand,
    QueueRetryCommand,
    QueueStatsCommand,
    TabtinCliController,
    TenantAddCommand,
    WorkerRunCommand,
)
from tabtin.queue.models import JobStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TabtinCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="tabtin")
@click.option(
    "--log-level",
    envvar="TABTIN_LOG_LEVEL",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def tabtin(log_level: str) -> None:
    """Document table extraction CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@tabtin.group()
def tenant() -> None:
    """Tenant commands."""


@tenant.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant identifier.")
@click.option("--name", default=None, help="Display name, defaults to the tenant id.")
@click.option(
    "--settings-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with endpoint, model, columns and limits.",
)
def tenant_add(
    db_path: Path | None,
    tenant_id: str,
    name: str | None,
    settings_file: Path,
) -> None:
    """Create or update a tenant and its extraction settings."""

    _run(
        CONTROLLER.add_tenant,
        TenantAddCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            name=name,
            settings_file=settings_file,
        ),
    )


@tabtin.group()
def batch() -> None:
    """Batch commands."""


@batch.command("add")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant identifier.")
@click.option(
    "--image",
    "images",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    multiple=True,
    required=True,
    help="Image or PDF file. Can be repeated; order is kept.",
)
def batch_add(db_path: Path | None, tenant_id: str, images: tuple[Path, ...]) -> None:
    """Create a batch from image files."""

    _run(
        CONTROLLER.add_batch,
        BatchAddCommand(db_path=db_path, tenant_id=tenant_id, images=images),
    )


@batch.command("add-image")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--batch-id", required=True, help="Batch identifier.")
@click.option(
    "--image",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Image file.",
)
@click.option("--cropped", is_flag=True, default=False, help="Store as a cropped region.")
def batch_add_image(db_path: Path | None, batch_id: str, image: Path, cropped: bool) -> None:
    """Attach one image to an existing batch."""

    _run(
        CONTROLLER.add_image,
        BatchAddImageCommand(db_path=db_path, batch_id=batch_id, image=image, cropped=cropped),
    )


@batch.command("rows")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--batch-id", required=True, help="Batch identifier.")
def batch_rows(db_path: Path | None, batch_id: str) -> None:
    """Print the extracted rows of a batch."""

    _run(CONTROLLER.batch_rows, BatchRowsCommand(db_path=db_path, batch_id=batch_id))


@tabtin.group()
def queue() -> None:
    """Extraction queue commands."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant identifier.")
@click.option(
    "--batch-id",
    "batch_ids",
    multiple=True,
    required=True,
    help="Batch identifier. Can be repeated.",
)
@click.option("--priority", type=int, default=None, help="Lower runs first.")
def queue_enqueue(
    db_path: Path | None,
    tenant_id: str,
    batch_ids: tuple[str, ...],
    priority: int | None,
) -> None:
    """Queue extraction of one or more batches."""

    _run(
        CONTROLLER.enqueue,
        QueueEnqueueCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            batch_ids=batch_ids,
            priority=priority,
        ),
    )


@queue.command("reprocess")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant identifier.")
@click.option(
    "--batch-id",
    "batch_ids",
    multiple=True,
    required=True,
    help="Batch identifier. Can be repeated.",
)
@click.option("--priority", type=int, default=None, help="Lower runs first.")
def queue_reprocess(
    db_path: Path | None,
    tenant_id: str,
    batch_ids: tuple[str, ...],
    priority: int | None,
) -> None:
    """Discard existing rows and extract the batches again."""

    _run(
        CONTROLLER.reprocess,
        QueueEnqueueCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            batch_ids=batch_ids,
            priority=priority,
        ),
    )


@queue.command("redo")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant identifier.")
@click.option("--batch-id", required=True, help="Batch identifier.")
@click.option("--row-index", type=click.IntRange(min=1), required=True, help="1-based row.")
@click.option(
    "--cropped",
    multiple=True,
    required=True,
    help="COLUMN_ID=IMAGE_ID of a cropped image. Can be repeated.",
)
@click.option(
    "--source",
    multiple=True,
    help="COLUMN_ID=IMAGE_ID of the image the crop was taken from.",
)
@click.option("--priority", type=int, default=None, help="Lower runs first.")
def queue_redo(  # noqa: PLR0913
    db_path: Path | None,
    tenant_id: str,
    batch_id: str,
    row_index: int,
    cropped: tuple[str, ...],
    source: tuple[str, ...],
    priority: int | None,
) -> None:
    """Re-extract selected columns of one row from cropped images."""

    _run(
        CONTROLLER.redo,
        QueueRedoCommand(
            db_path=db_path,
            tenant_id=tenant_id,
            batch_id=batch_id,
            row_index=row_index,
            cropped=cropped,
            source=source,
            priority=priority,
        ),
    )


@queue.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", required=True, help="Tenant identifier.")
@click.option(
    "--batch-id",
    "batch_ids",
    multiple=True,
    help="Batch identifier. Can be repeated; all tenant batches when omitted.",
)
def queue_cancel(db_path: Path | None, tenant_id: str, batch_ids: tuple[str, ...]) -> None:
    """Cancel queued jobs and fail unfinished batches."""

    _run(
        CONTROLLER.cancel,
        QueueCancelCommand(db_path=db_path, tenant_id=tenant_id, batch_ids=batch_ids),
    )


@queue.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Failed job to re-queue.")
@click.option("--all", "retry_all", is_flag=True, default=False, help="Re-queue all failed.")
@click.option("--tenant-id", default=None, help="Limit --all to one tenant.")
def queue_retry(
    db_path: Path | None,
    job_id: str | None,
    retry_all: bool,
    tenant_id: str | None,
) -> None:
    """Re-queue failed jobs with a fresh attempt budget."""

    _run(
        CONTROLLER.retry,
        QueueRetryCommand(
            db_path=db_path,
            job_id=job_id,
            retry_all=retry_all,
            tenant_id=tenant_id,
        ),
    )


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", default=None, help="Tenant identifier.")
def queue_stats(db_path: Path | None, tenant_id: str | None) -> None:
    """Show job counts by status."""

    _run(CONTROLLER.stats, QueueStatsCommand(db_path=db_path, tenant_id=tenant_id))


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--tenant-id", default=None, help="Tenant identifier.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus], case_sensitive=False),
    default=None,
    help="Filter by job status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of jobs.",
)
def queue_list(
    db_path: Path | None,
    tenant_id: str | None,
    status: str | None,
    limit: int,
) -> None:
    """List jobs, newest first."""

    _run(
        CONTROLLER.list_jobs,
        QueueListCommand(db_path=db_path, tenant_id=tenant_id, status=status, limit=limit),
    )


@queue.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Retention in days; TABTIN_QUEUE_RETENTION_DAYS when omitted.",
)
def queue_cleanup(db_path: Path | None, older_than_days: int | None) -> None:
    """Delete completed jobs past the retention window."""

    _run(
        CONTROLLER.cleanup,
        QueueCleanupCommand(db_path=db_path, older_than_days=older_than_days),
    )


@tabtin.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--tenant-id",
    default=None,
    help="Run a single tenant executor instead of the pool.",
)
@click.option("--once", is_flag=True, default=False, help="Process at most one job per tenant.")
def worker_run(db_path: Path | None, tenant_id: str | None, once: bool) -> None:
    """Run extraction workers until idle or interrupted."""

    _run(
        CONTROLLER.run_worker,
        WorkerRunCommand(db_path=db_path, tenant_id=tenant_id, once=once),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tabtin()
