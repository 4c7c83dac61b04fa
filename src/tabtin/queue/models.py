"""Domain models for the extraction job queue."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from tabtin.errors import JobContractError


class JobType(str, Enum):
    """Kinds of work an executor knows how to run."""

    PROCESS_BATCH = "process_batch"
    REPROCESS_BATCH = "reprocess_batch"
    PROCESS_REDO = "process_redo"


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


@dataclass(slots=True)
class JobView:
    """Readable job view for CLI and executor logic."""

    job_id: str
    tenant_id: str
    job_type: JobType
    status: JobStatus
    payload: dict[str, Any]
    priority: int
    attempts: int
    max_attempts: int
    last_error: str | None
    created_at: datetime
    queued_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    def batch_ids(self) -> tuple[str, ...]:
        """Batch ids referenced by the payload, whatever the job type."""

        return referenced_batch_ids(self.payload)


@dataclass(slots=True)
class QueueStats:
    """Job counts by status."""

    queued: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0

    @property
    def total(self) -> int:
        return self.queued + self.processing + self.completed + self.failed + self.retrying

    @property
    def pending(self) -> int:
        """Jobs that still need an executor."""

        return self.queued + self.retrying


@dataclass(slots=True)
class ProcessBatchPayload:
    """Payload of `process_batch` jobs."""

    batch_id: str
    tenant_id: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ProcessBatchPayload:
        return cls(
            batch_id=_require_str(payload, "batchId"),
            tenant_id=_require_str(payload, "tenantId"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {"batchId": self.batch_id, "tenantId": self.tenant_id}


@dataclass(slots=True)
class ReprocessBatchPayload:
    """Payload of `reprocess_batch` jobs."""

    batch_ids: tuple[str, ...]
    tenant_id: str

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ReprocessBatchPayload:
        return cls(
            batch_ids=_require_str_list(payload, "batchIds"),
            tenant_id=_require_str(payload, "tenantId"),
        )

    def to_payload(self) -> dict[str, Any]:
        return {"batchIds": list(self.batch_ids), "tenantId": self.tenant_id}


@dataclass(slots=True)
class ProcessRedoPayload:
    """Payload of `process_redo` jobs.

    `row_index` is the stored 1-based row index. `cropped_image_ids` maps each redo column
    id to the image id of the cropped region sent to the model for that column.
    """

    batch_id: str
    tenant_id: str
    row_index: int
    redo_column_ids: tuple[str, ...]
    cropped_image_ids: dict[str, str]
    source_image_ids: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ProcessRedoPayload:
        row_index = payload.get("rowIndex")
        if isinstance(row_index, bool) or not isinstance(row_index, int):
            raise JobContractError(
                f"Job payload field 'rowIndex' must be an integer: {row_index!r}",
            )
        cropped = payload.get("croppedImageIds")
        if not isinstance(cropped, Mapping):
            raise JobContractError("Job payload field 'croppedImageIds' must be an object.")
        source = payload.get("sourceImageIds") or {}
        if not isinstance(source, Mapping):
            raise JobContractError("Job payload field 'sourceImageIds' must be an object.")
        return cls(
            batch_id=_require_str(payload, "batchId"),
            tenant_id=_require_str(payload, "tenantId"),
            row_index=row_index,
            redo_column_ids=_require_str_list(payload, "redoColumnIds"),
            cropped_image_ids={str(key): str(value) for key, value in cropped.items()},
            source_image_ids={str(key): str(value) for key, value in source.items()},
        )

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "batchId": self.batch_id,
            "tenantId": self.tenant_id,
            "rowIndex": self.row_index,
            "redoColumnIds": list(self.redo_column_ids),
            "croppedImageIds": dict(self.cropped_image_ids),
        }
        if self.source_image_ids:
            payload["sourceImageIds"] = dict(self.source_image_ids)
        return payload


def referenced_batch_ids(payload: Mapping[str, Any]) -> tuple[str, ...]:
    """Collect `batchId` / `batchIds` values from a job payload."""

    ids: list[str] = []
    single = payload.get("batchId")
    if isinstance(single, str) and single:
        ids.append(single)
    many = payload.get("batchIds")
    if isinstance(many, list):
        ids.extend(item for item in many if isinstance(item, str) and item)
    return tuple(ids)


def _require_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise JobContractError(f"Job payload is missing required field {key!r}.")
    return value


def _require_str_list(payload: Mapping[str, Any], key: str) -> tuple[str, ...]:
    value = payload.get(key)
    if not isinstance(value, list) or not value:
        raise JobContractError(f"Job payload field {key!r} must be a non-empty list.")
    if not all(isinstance(item, str) and item for item in value):
        raise JobContractError(f"Job payload field {key!r} must contain only strings.")
    return tuple(value)
