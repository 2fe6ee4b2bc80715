"""Pipeline and task operations.

Every mutation of a task is followed by a recomputation of the owning
pipeline, so callers never touch the cached counters directly.
"""

import logging
from typing import Any, Dict, List, Optional

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.progress.aggregator import (
    PipelineNotFoundError,
    PipelineProgressAggregator,
    PipelineRepository,
    PipelineStateError,
    TaskNotFoundError,
)
from src.curation.progress.models import (
    Pipeline,
    PipelineStatus,
    PipelineTask,
    TaskStatus,
    TaskType,
)


logger = logging.getLogger(__name__)


class PipelineService:
    """Creates pipelines and tasks, and routes task updates to the aggregator.

    Attributes:
        repository: Pipeline and task persistence.
        aggregator: Recomputes pipeline progress after each change.
    """

    def __init__(
        self,
        repository: PipelineRepository,
        aggregator: Optional[PipelineProgressAggregator] = None,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.repository = repository
        self.event_emitter = event_emitter or NullEventEmitter()
        self.aggregator = aggregator or PipelineProgressAggregator(
            repository, self.event_emitter
        )

    async def create_pipeline(
        self,
        document_id: str,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Pipeline:
        """Create the pipeline for a document.

        A document has exactly one pipeline; if it already exists, that
        pipeline is returned unchanged.
        """
        pipeline = Pipeline(document_id=document_id, name=name, metadata=metadata or {})

        if not await self.repository.create_pipeline(pipeline):
            existing = await self.repository.get_pipeline_by_document(document_id)
            if existing is None:
                raise PipelineNotFoundError(pipeline.id)
            logger.debug(
                "Pipeline already exists for document",
                extra={"document_id": document_id, "pipeline_id": existing.id},
            )
            return existing

        logger.info(
            "Created pipeline",
            extra={"pipeline_id": pipeline.id, "document_id": document_id},
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.PIPELINE_STATUS_CHANGED,
                entity_type="pipeline",
                entity_id=pipeline.id,
                details={"from_status": None, "to_status": pipeline.status.value},
            )
        )
        return pipeline

    async def get_pipeline(self, pipeline_id: str) -> Pipeline:
        pipeline = await self.repository.get_pipeline(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return pipeline

    async def get_pipeline_for_document(self, document_id: str) -> Optional[Pipeline]:
        return await self.repository.get_pipeline_by_document(document_id)

    async def list_pipelines(
        self, status: Optional[PipelineStatus] = None
    ) -> List[Pipeline]:
        return await self.repository.list_pipelines(status)

    async def list_tasks(self, pipeline_id: str) -> List[PipelineTask]:
        await self.get_pipeline(pipeline_id)
        return await self.repository.list_tasks(pipeline_id)

    async def add_task(
        self,
        pipeline_id: str,
        task_type: TaskType,
        item_id: Optional[str] = None,
    ) -> PipelineTask:
        """Add a pending task to a pipeline.

        Raises:
            PipelineNotFoundError: If the pipeline doesn't exist.
            PipelineStateError: If the pipeline was cancelled.
        """
        pipeline = await self.get_pipeline(pipeline_id)
        if pipeline.status == PipelineStatus.CANCELLED:
            raise PipelineStateError(
                pipeline_id,
                pipeline.status,
                f"Cannot add tasks to cancelled pipeline {pipeline_id}",
            )

        task = PipelineTask(pipeline_id=pipeline_id, task_type=task_type, item_id=item_id)
        await self.repository.add_task(task)
        logger.debug(
            "Added pipeline task",
            extra={
                "pipeline_id": pipeline_id,
                "task_id": task.id,
                "task_type": task_type.value,
            },
        )
        await self.aggregator.on_task_status_changed(pipeline_id)
        return task

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: Optional[str] = None,
    ) -> PipelineTask:
        """Set a task's status and recompute its pipeline.

        Raises:
            TaskNotFoundError: If the task doesn't exist.
        """
        task = await self.repository.update_task_status(task_id, status, error_message)
        if task is None:
            raise TaskNotFoundError(task_id)

        log = logger.warning if status == TaskStatus.FAILED else logger.debug
        log(
            "Updated pipeline task",
            extra={
                "pipeline_id": task.pipeline_id,
                "task_id": task_id,
                "status": status.value,
                "error": error_message,
            },
        )
        await self.aggregator.on_task_status_changed(task.pipeline_id)
        return task

    async def retry_failed_tasks(self, pipeline_id: str, force: bool = False) -> int:
        """Move a failed pipeline's failed tasks back to pending.

        Args:
            pipeline_id: The pipeline.
            force: Retry even if the pipeline isn't in failed status.

        Returns:
            Number of tasks reset.

        Raises:
            PipelineNotFoundError: If the pipeline doesn't exist.
            PipelineStateError: If the pipeline isn't failed and force is
                False, or if it was cancelled.
        """
        pipeline = await self.get_pipeline(pipeline_id)
        if pipeline.status == PipelineStatus.CANCELLED:
            raise PipelineStateError(
                pipeline_id, pipeline.status, "Cannot retry a cancelled pipeline"
            )
        if pipeline.status != PipelineStatus.FAILED and not force:
            raise PipelineStateError(
                pipeline_id,
                pipeline.status,
                f"Pipeline is not in failed status. Current status: {pipeline.status.value}",
            )

        count = await self.repository.reset_failed_tasks(pipeline_id)
        logger.info(
            "Retried failed pipeline tasks",
            extra={"pipeline_id": pipeline_id, "count": count},
        )
        await self.aggregator.on_task_status_changed(pipeline_id)
        return count

    async def cancel_pipeline(self, pipeline_id: str) -> Pipeline:
        """Cancel a pipeline. Cancelled pipelines keep their status."""
        before = await self.get_pipeline(pipeline_id)
        if before.status == PipelineStatus.CANCELLED:
            return before

        pipeline = await self.repository.set_pipeline_status(
            pipeline_id, PipelineStatus.CANCELLED
        )
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)

        logger.info("Cancelled pipeline", extra={"pipeline_id": pipeline_id})
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.PIPELINE_STATUS_CHANGED,
                entity_type="pipeline",
                entity_id=pipeline_id,
                details={
                    "from_status": before.status.value,
                    "to_status": PipelineStatus.CANCELLED.value,
                },
            )
        )
        return pipeline

    async def recompute_all(self) -> int:
        return await self.aggregator.recompute_all()
