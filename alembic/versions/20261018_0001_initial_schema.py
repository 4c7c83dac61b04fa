"""Initial schema: tenants, batches, images, extraction rows, queue jobs, metrics."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("settings_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id"),
    )
    op.create_index("ix_tenants_display_name", "tenants", ["display_name"], unique=False)

    op.create_table(
        "batches",
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_data_json", sa.Text(), nullable=True),
        sa.Column("processing_started", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processing_completed", sa.DateTime(timezone=True), nullable=True),
        sa.Column("redo_processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["tenant_id"], ["tenants.tenant_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("batch_id"),
    )
    op.create_index("ix_batches_tenant_id", "batches", ["tenant_id"], unique=False)
    op.create_index("ix_batches_status", "batches", ["status"], unique=False)
    op.create_index(
        "idx_batches_tenant_status",
        "batches",
        ["tenant_id", "status"],
        unique=False,
    )

    op.create_table(
        "images",
        sa.Column("image_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("filename", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("content", sa.LargeBinary(), nullable=False),
        sa.Column("extracted_text", sa.Text(), nullable=True),
        sa.Column("is_cropped", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("image_id"),
    )
    op.create_index("ix_images_batch_id", "images", ["batch_id"], unique=False)
    op.create_index("ix_images_tenant_id", "images", ["tenant_id"], unique=False)
    op.create_index(
        "idx_images_batch_position",
        "images",
        ["batch_id", "position"],
        unique=False,
    )

    op.create_table(
        "extraction_rows",
        sa.Column("row_id", sa.String(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("row_index", sa.Integer(), nullable=False),
        sa.Column("row_data_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["batch_id"], ["batches.batch_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("row_id"),
        sa.UniqueConstraint("batch_id", "row_index", name="uq_extraction_rows_batch_row"),
    )
    op.create_index("ix_extraction_rows_batch_id", "extraction_rows", ["batch_id"], unique=False)
    op.create_index(
        "ix_extraction_rows_tenant_id",
        "extraction_rows",
        ["tenant_id"],
        unique=False,
    )
    op.create_index("ix_extraction_rows_status", "extraction_rows", ["status"], unique=False)

    op.create_table(
        "queue_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default=sa.text("10")),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_queue_jobs_tenant_id", "queue_jobs", ["tenant_id"], unique=False)
    op.create_index("ix_queue_jobs_job_type", "queue_jobs", ["job_type"], unique=False)
    op.create_index("ix_queue_jobs_status", "queue_jobs", ["status"], unique=False)
    op.create_index(
        "idx_queue_jobs_claim",
        "queue_jobs",
        ["tenant_id", "status", "priority", "queued_at"],
        unique=False,
    )

    op.create_table(
        "processing_metrics",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.String(), nullable=False),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("job_type", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("image_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("extraction_count", sa.Integer(), nullable=True),
        sa.Column("model_used", sa.String(), nullable=True),
        sa.Column("tokens_used", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_processing_metrics_batch_id",
        "processing_metrics",
        ["batch_id"],
        unique=False,
    )
    op.create_index(
        "ix_processing_metrics_tenant_id",
        "processing_metrics",
        ["tenant_id"],
        unique=False,
    )
    op.create_index(
        "ix_processing_metrics_job_type",
        "processing_metrics",
        ["job_type"],
        unique=False,
    )
    op.create_index(
        "ix_processing_metrics_status",
        "processing_metrics",
        ["status"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_table("processing_metrics")
    op.drop_table("queue_jobs")
    op.drop_table("extraction_rows")
    op.drop_table("images")
    op.drop_table("batches")
    op.drop_index("ix_tenants_display_name", table_name="tenants")
    op.drop_table("tenants")
