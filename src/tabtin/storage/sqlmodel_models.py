"""SQLModel ORM tables for the queue and the extraction record store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    LargeBinary,
    Text,
    UniqueConstraint,
)
from sqlmodel import Field, SQLModel


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"  # type: ignore[bad-override]

    tenant_id: str = Field(primary_key=True)
    display_name: str = Field(index=True)
    settings_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class Batch(SQLModel, table=True):
    __tablename__ = "batches"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_batches_tenant_status", "tenant_id", "status"),)

    batch_id: str = Field(primary_key=True)
    tenant_id: str = Field(
        sa_column=Column(
            ForeignKey("tenants.tenant_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    status: str = Field(index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    row_count: int = Field(default=0)
    processed_data_json: str | None = Field(default=None, sa_column=Column(Text))
    processing_started: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    processing_completed: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    redo_processed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class BatchImage(SQLModel, table=True):
    __tablename__ = "images"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_images_batch_position", "batch_id", "position"),)

    image_id: str = Field(primary_key=True)
    batch_id: str = Field(
        sa_column=Column(
            ForeignKey("batches.batch_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str = Field(index=True)
    position: int = Field(default=0)
    filename: str
    mime_type: str
    content: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    extracted_text: str | None = Field(default=None, sa_column=Column(Text))
    is_cropped: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default="0"),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExtractionRowRecord(SQLModel, table=True):
    __tablename__ = "extraction_rows"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("batch_id", "row_index", name="uq_extraction_rows_batch_row"),
    )

    row_id: str = Field(primary_key=True)
    batch_id: str = Field(
        sa_column=Column(
            ForeignKey("batches.batch_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    tenant_id: str = Field(index=True)
    row_index: int
    row_data_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueueJob(SQLModel, table=True):
    __tablename__ = "queue_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_queue_jobs_claim", "tenant_id", "status", "priority", "queued_at"),
    )

    job_id: str = Field(primary_key=True)
    tenant_id: str = Field(index=True)
    job_type: str = Field(index=True)
    status: str = Field(index=True)
    priority: int = Field(default=10)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    queued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ProcessingMetricRecord(SQLModel, table=True):
    __tablename__ = "processing_metrics"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    batch_id: str = Field(index=True)
    tenant_id: str = Field(index=True)
    job_type: str = Field(index=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    duration_ms: int
    status: str = Field(index=True)
    image_count: int = Field(default=0)
    extraction_count: int | None = None
    model_used: str | None = None
    tokens_used: int | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
