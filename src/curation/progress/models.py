"""Pipeline and pipeline task models.

A document has exactly one Pipeline, which owns the PipelineTasks that
carry the document from extraction to approval. The counters and status
cached on a Pipeline are a denormalized view of its tasks and are only
ever written by recomputation (see compute_progress).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid.uuid4().hex


class PipelineStatus(str, Enum):
    """Derived status of a document pipeline.

    Attributes:
        PENDING: No tasks yet.
        PROCESSING: At least one task is pending or running.
        COMPLETED: Every task completed.
        FAILED: At least one task failed.
        CANCELLED: Stopped by an operator; never recomputed away.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    """Processing steps a document goes through."""

    EXTRACT = "extract"
    CHUNK = "chunk"
    MAP = "map"
    TRANSFORM = "transform"
    VALIDATE = "validate"
    APPROVE = "approve"


FINISHED_PIPELINE_STATUSES = frozenset(
    {PipelineStatus.COMPLETED, PipelineStatus.FAILED}
)


class Pipeline(BaseModel):
    """One document's processing pipeline with cached progress counters."""

    id: str = Field(default_factory=_new_id)

    document_id: str = Field(..., min_length=1)

    name: Optional[str] = None

    status: PipelineStatus = PipelineStatus.PENDING

    total_tasks: int = Field(default=0, ge=0)

    completed_tasks: int = Field(default=0, ge=0)

    failed_tasks: int = Field(default=0, ge=0)

    progress_percentage: int = Field(default=0, ge=0, le=100)

    error_message: Optional[str] = None

    metadata: Dict[str, Any] = Field(default_factory=dict)

    started_at: Optional[datetime] = Field(
        default=None,
        description="When the pipeline first reached processing",
    )

    completed_at: Optional[datetime] = Field(
        default=None,
        description="When the pipeline last reached completed or failed",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class PipelineTask(BaseModel):
    """One unit of work inside a pipeline."""

    id: str = Field(default_factory=_new_id)

    pipeline_id: str = Field(..., min_length=1)

    task_type: TaskType

    item_id: Optional[str] = Field(
        default=None,
        description="Chunk, mapping or curation item the task operates on",
    )

    status: TaskStatus = TaskStatus.PENDING

    error_message: Optional[str] = None

    retry_count: int = Field(default=0, ge=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class ProgressSnapshot(BaseModel):
    """The derived fields of a Pipeline, computed from its task statuses."""

    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    progress_percentage: int = 0
    status: PipelineStatus = PipelineStatus.PENDING


def compute_progress(
    statuses: Iterable[TaskStatus],
    current_status: Optional[PipelineStatus] = None,
) -> ProgressSnapshot:
    """Derive pipeline counters and status from its tasks' statuses.

    Args:
        statuses: Status of every task in the pipeline.
        current_status: The pipeline's present status. A cancelled
            pipeline stays cancelled.

    Returns:
        The recomputed snapshot. completed_tasks + failed_tasks never
        exceeds total_tasks.
    """
    statuses = list(statuses)
    total = len(statuses)
    completed = sum(1 for s in statuses if s == TaskStatus.COMPLETED)
    failed = sum(1 for s in statuses if s == TaskStatus.FAILED)

    if total == 0:
        percentage = 0
    else:
        percentage = min(100, (100 * completed) // total)

    if current_status == PipelineStatus.CANCELLED:
        status = PipelineStatus.CANCELLED
    elif total == 0:
        status = PipelineStatus.PENDING
    elif failed > 0:
        status = PipelineStatus.FAILED
    elif completed == total:
        status = PipelineStatus.COMPLETED
    else:
        status = PipelineStatus.PROCESSING

    return ProgressSnapshot(
        total_tasks=total,
        completed_tasks=completed,
        failed_tasks=failed,
        progress_percentage=percentage,
        status=status,
    )


def apply_snapshot(
    pipeline: Pipeline,
    snapshot: ProgressSnapshot,
    now: Optional[datetime] = None,
) -> Pipeline:
    """Return a copy of pipeline carrying snapshot's derived fields."""
    now = now or datetime.now(timezone.utc)
    started_at = pipeline.started_at
    if started_at is None and snapshot.status != PipelineStatus.PENDING:
        started_at = now

    completed_at = pipeline.completed_at
    if snapshot.status in FINISHED_PIPELINE_STATUSES:
        if pipeline.status != snapshot.status or completed_at is None:
            completed_at = now
    elif snapshot.status != PipelineStatus.CANCELLED:
        completed_at = None

    return pipeline.model_copy(
        update={
            "total_tasks": snapshot.total_tasks,
            "completed_tasks": snapshot.completed_tasks,
            "failed_tasks": snapshot.failed_tasks,
            "progress_percentage": snapshot.progress_percentage,
            "status": snapshot.status,
            "started_at": started_at,
            "completed_at": completed_at,
            "updated_at": now,
        }
    )
