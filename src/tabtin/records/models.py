"""Domain models for tenants, batches, images, extraction rows and metrics."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tabtin.extraction.models import (
    ColumnDefinition,
    CoordinateFormat,
    ExtractionResult,
    ExtractionSchema,
    FeatureFlags,
)

PDF_MIME_TYPE = "application/pdf"
UNLIMITED_TIMEOUT_SECONDS = 24 * 60 * 60


class BatchStatus(str, Enum):
    """Batch lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    REVIEW = "review"
    APPROVED = "approved"
    FAILED = "failed"


class RowStatus(str, Enum):
    """Extraction row review states."""

    PENDING = "pending"
    REVIEW = "review"
    APPROVED = "approved"
    DELETED = "deleted"


class MetricStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(slots=True)
class PdfOptions:
    """Rendering options handed to the PDF converter."""

    dpi: int = 600
    max_width: int = 7_100
    max_height: int = 7_100
    image_format: str = "png"
    quality: int = 100


@dataclass(slots=True)
class TenantSettings:
    """Per-tenant model endpoint, schema and worker limits."""

    endpoint: str = ""
    api_key: str = ""
    model_name: str = ""
    request_timeout_minutes: float = 10.0
    columns: list[ColumnDefinition] = field(default_factory=list)
    feature_flags: FeatureFlags = field(default_factory=FeatureFlags)
    coordinate_format: CoordinateFormat = CoordinateFormat.NORMALIZED_1000
    max_concurrency: int = 1
    requests_per_minute: int = 30
    pdf: PdfOptions = field(default_factory=PdfOptions)
    prompt_template: str | None = None
    review_prompt_template: str | None = None

    @property
    def request_timeout_seconds(self) -> float:
        """Model call timeout; 0 minutes means the 24 hour ceiling."""

        if self.request_timeout_minutes <= 0:
            return float(UNLIMITED_TIMEOUT_SECONDS)
        return self.request_timeout_minutes * 60.0

    def schema(self, columns: list[ColumnDefinition] | None = None) -> ExtractionSchema:
        """Normalization schema for all columns or a subset of them."""

        return ExtractionSchema(
            columns=list(self.columns if columns is None else columns),
            flags=self.feature_flags,
            coordinate_format=self.coordinate_format,
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TenantSettings:
        defaults = cls()
        pdf_raw = data.get("pdf") or {}
        return cls(
            endpoint=str(data.get("endpoint") or ""),
            api_key=str(data.get("api_key") or ""),
            model_name=str(data.get("model_name") or ""),
            request_timeout_minutes=float(
                data.get("request_timeout_minutes", defaults.request_timeout_minutes),
            ),
            columns=[ColumnDefinition.from_dict(column) for column in data.get("columns") or []],
            feature_flags=FeatureFlags.from_dict(data.get("feature_flags")),
            coordinate_format=CoordinateFormat(
                data.get("coordinate_format") or defaults.coordinate_format.value,
            ),
            max_concurrency=int(data.get("max_concurrency", defaults.max_concurrency)),
            requests_per_minute=int(
                data.get("requests_per_minute", defaults.requests_per_minute),
            ),
            pdf=PdfOptions(
                dpi=int(pdf_raw.get("dpi", defaults.pdf.dpi)),
                max_width=int(pdf_raw.get("max_width", defaults.pdf.max_width)),
                max_height=int(pdf_raw.get("max_height", defaults.pdf.max_height)),
                image_format=str(pdf_raw.get("image_format", defaults.pdf.image_format)),
                quality=int(pdf_raw.get("quality", defaults.pdf.quality)),
            ),
            prompt_template=data.get("prompt_template") or None,
            review_prompt_template=data.get("review_prompt_template") or None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "api_key": self.api_key,
            "model_name": self.model_name,
            "request_timeout_minutes": self.request_timeout_minutes,
            "columns": [column.to_dict() for column in self.columns],
            "feature_flags": self.feature_flags.to_dict(),
            "coordinate_format": self.coordinate_format.value,
            "max_concurrency": self.max_concurrency,
            "requests_per_minute": self.requests_per_minute,
            "pdf": {
                "dpi": self.pdf.dpi,
                "max_width": self.pdf.max_width,
                "max_height": self.pdf.max_height,
                "image_format": self.pdf.image_format,
                "quality": self.pdf.quality,
            },
            "prompt_template": self.prompt_template,
            "review_prompt_template": self.review_prompt_template,
        }


@dataclass(slots=True)
class TenantView:
    tenant_id: str
    display_name: str
    settings: TenantSettings
    created_at: datetime


@dataclass(slots=True)
class BatchView:
    batch_id: str
    tenant_id: str
    status: BatchStatus
    error_message: str | None
    row_count: int
    processed_data: dict[str, Any] | None
    processing_started: datetime | None
    processing_completed: datetime | None
    redo_processed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ImageView:
    image_id: str
    batch_id: str
    tenant_id: str
    position: int
    filename: str
    mime_type: str
    content: bytes
    extracted_text: str | None
    is_cropped: bool

    @property
    def is_pdf(self) -> bool:
        return self.mime_type == PDF_MIME_TYPE or self.filename.lower().endswith(".pdf")


@dataclass(slots=True)
class ImageCreate:
    """Input for adding one image to a batch."""

    filename: str
    mime_type: str
    content: bytes
    extracted_text: str | None = None
    is_cropped: bool = False


@dataclass(slots=True)
class ExtractionRowView:
    row_id: str
    batch_id: str
    tenant_id: str
    row_index: int
    row_data: list[ExtractionResult]
    status: RowStatus
    updated_at: datetime


@dataclass(slots=True)
class ProcessingMetric:
    """One append-only record of a batch or redo attempt."""

    batch_id: str
    tenant_id: str
    job_type: str
    started_at: datetime
    finished_at: datetime
    status: MetricStatus
    image_count: int
    extraction_count: int | None = None
    model_used: str | None = None
    tokens_used: int | None = None
    error_message: str | None = None

    @property
    def duration_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)
