"""Pipeline progress aggregation.

Keeps each document pipeline's task counters, progress percentage and
status consistent with its tasks by recomputing them on every change.
"""

from src.curation.progress.aggregator import (
    PipelineNotFoundError,
    PipelineProgressAggregator,
    PipelineRepository,
    PipelineStateError,
    TaskNotFoundError,
)
from src.curation.progress.memory import InMemoryPipelineRepository
from src.curation.progress.models import (
    Pipeline,
    PipelineStatus,
    PipelineTask,
    ProgressSnapshot,
    TaskStatus,
    TaskType,
    apply_snapshot,
    compute_progress,
)
from src.curation.progress.repository import PostgresPipelineRepository
from src.curation.progress.service import PipelineService

__all__ = [
    # Models
    "Pipeline",
    "PipelineStatus",
    "PipelineTask",
    "ProgressSnapshot",
    "TaskStatus",
    "TaskType",
    "apply_snapshot",
    "compute_progress",
    # Aggregation
    "PipelineNotFoundError",
    "PipelineProgressAggregator",
    "PipelineRepository",
    "PipelineStateError",
    "TaskNotFoundError",
    "PipelineService",
    # Repositories
    "InMemoryPipelineRepository",
    "PostgresPipelineRepository",
]
