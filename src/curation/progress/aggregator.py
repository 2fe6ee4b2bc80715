"""Pipeline progress aggregation.

Whenever a task's status changes, the owning pipeline's counters and
status are recomputed from the full set of its tasks. The recomputation
is a pure function of the task statuses (compute_progress) applied in a
single atomic read-then-write by the repository, so concurrent task
updates cannot leave the cached counters inconsistent with the tasks.
"""

import logging
from typing import List, Optional, Protocol, Tuple, runtime_checkable

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.progress.models import (
    Pipeline,
    PipelineStatus,
    PipelineTask,
    TaskStatus,
)


logger = logging.getLogger(__name__)


class PipelineNotFoundError(Exception):
    """Raised when a pipeline does not exist."""

    def __init__(self, pipeline_id: str):
        self.pipeline_id = pipeline_id
        super().__init__(f"Pipeline not found: {pipeline_id}")


class TaskNotFoundError(Exception):
    """Raised when a pipeline task does not exist."""

    def __init__(self, task_id: str):
        self.task_id = task_id
        super().__init__(f"Pipeline task not found: {task_id}")


class PipelineStateError(Exception):
    """Raised when an operation doesn't fit the pipeline's status.

    Attributes:
        pipeline_id: The pipeline.
        status: Its status at the time of the operation.
    """

    def __init__(self, pipeline_id: str, status: PipelineStatus, message: str):
        self.pipeline_id = pipeline_id
        self.status = status
        super().__init__(message)


@runtime_checkable
class PipelineRepository(Protocol):
    """Persistence for pipelines and their tasks."""

    async def create_pipeline(self, pipeline: Pipeline) -> bool:
        """Insert a pipeline. Returns False if the document already has one."""
        ...

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        ...

    async def get_pipeline_by_document(self, document_id: str) -> Optional[Pipeline]:
        ...

    async def list_pipelines(
        self, status: Optional[PipelineStatus] = None
    ) -> List[Pipeline]:
        ...

    async def add_task(self, task: PipelineTask) -> None:
        ...

    async def get_task(self, task_id: str) -> Optional[PipelineTask]:
        ...

    async def list_tasks(self, pipeline_id: str) -> List[PipelineTask]:
        ...

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: Optional[str] = None,
    ) -> Optional[PipelineTask]:
        ...

    async def reset_failed_tasks(self, pipeline_id: str) -> int:
        """Move failed tasks back to pending, bumping their retry_count."""
        ...

    async def set_pipeline_status(
        self,
        pipeline_id: str,
        status: PipelineStatus,
        error_message: Optional[str] = None,
    ) -> Optional[Pipeline]:
        ...

    async def recompute(self, pipeline_id: str) -> Optional[Tuple[Pipeline, Pipeline]]:
        """Atomically recompute a pipeline's derived fields from its tasks.

        Returns:
            (before, after), or None if the pipeline doesn't exist.
        """
        ...


class PipelineProgressAggregator:
    """Keeps each pipeline's cached progress in step with its tasks.

    Example:
        >>> aggregator = PipelineProgressAggregator(InMemoryPipelineRepository())
        >>> pipeline = await aggregator.on_task_status_changed(pipeline_id)
        >>> pipeline.progress_percentage
        50
    """

    def __init__(
        self,
        repository: PipelineRepository,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.repository = repository
        self.event_emitter = event_emitter or NullEventEmitter()

    async def on_task_status_changed(self, pipeline_id: str) -> Pipeline:
        """Recompute the pipeline that owns a changed task.

        Raises:
            PipelineNotFoundError: If the pipeline doesn't exist.
        """
        recomputed = await self.repository.recompute(pipeline_id)
        if recomputed is None:
            raise PipelineNotFoundError(pipeline_id)

        before, after = recomputed
        logger.debug(
            "Recomputed pipeline progress",
            extra={
                "pipeline_id": pipeline_id,
                "total_tasks": after.total_tasks,
                "completed_tasks": after.completed_tasks,
                "failed_tasks": after.failed_tasks,
                "progress_percentage": after.progress_percentage,
            },
        )

        if before.status != after.status:
            logger.info(
                "Pipeline status changed",
                extra={
                    "pipeline_id": pipeline_id,
                    "document_id": after.document_id,
                    "from_status": before.status.value,
                    "to_status": after.status.value,
                },
            )
            await self.event_emitter.emit(
                CurationEvent(
                    event_type=EventType.PIPELINE_STATUS_CHANGED,
                    entity_type="pipeline",
                    entity_id=pipeline_id,
                    details={
                        "from_status": before.status.value,
                        "to_status": after.status.value,
                        "progress_percentage": after.progress_percentage,
                    },
                )
            )
        return after

    async def recompute_all(self) -> int:
        """Recompute every pipeline. Used to repair or backfill counters.

        Returns:
            Number of pipelines recomputed.
        """
        pipelines = await self.repository.list_pipelines()
        for pipeline in pipelines:
            await self.on_task_status_changed(pipeline.id)
        logger.info("Recomputed all pipelines", extra={"count": len(pipelines)})
        return len(pipelines)
