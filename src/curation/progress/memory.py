"""In-memory pipeline repository for tests and local development."""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from src.curation.progress.models import (
    Pipeline,
    PipelineStatus,
    PipelineTask,
    TaskStatus,
    apply_snapshot,
    compute_progress,
)


class InMemoryPipelineRepository:
    """Dict-backed implementation of PipelineRepository.

    recompute() reads the tasks and writes the pipeline without awaiting
    in between, which makes it atomic under asyncio.
    """

    def __init__(self) -> None:
        self._pipelines: Dict[str, Pipeline] = {}
        self._tasks: Dict[str, PipelineTask] = {}

    async def create_pipeline(self, pipeline: Pipeline) -> bool:
        if any(p.document_id == pipeline.document_id for p in self._pipelines.values()):
            return False
        self._pipelines[pipeline.id] = pipeline
        return True

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return self._pipelines.get(pipeline_id)

    async def get_pipeline_by_document(self, document_id: str) -> Optional[Pipeline]:
        for pipeline in self._pipelines.values():
            if pipeline.document_id == document_id:
                return pipeline
        return None

    async def list_pipelines(
        self, status: Optional[PipelineStatus] = None
    ) -> List[Pipeline]:
        pipelines = [
            p for p in self._pipelines.values()
            if status is None or p.status == status
        ]
        return sorted(pipelines, key=lambda p: p.created_at, reverse=True)

    async def add_task(self, task: PipelineTask) -> None:
        self._tasks[task.id] = task

    async def get_task(self, task_id: str) -> Optional[PipelineTask]:
        return self._tasks.get(task_id)

    async def list_tasks(self, pipeline_id: str) -> List[PipelineTask]:
        tasks = [t for t in self._tasks.values() if t.pipeline_id == pipeline_id]
        return sorted(tasks, key=lambda t: t.created_at)

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: Optional[str] = None,
    ) -> Optional[PipelineTask]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        updated = task.model_copy(
            update={
                "status": status,
                "error_message": error_message,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._tasks[task_id] = updated
        return updated

    async def reset_failed_tasks(self, pipeline_id: str) -> int:
        count = 0
        now = datetime.now(timezone.utc)
        for task_id, task in list(self._tasks.items()):
            if task.pipeline_id == pipeline_id and task.status == TaskStatus.FAILED:
                self._tasks[task_id] = task.model_copy(
                    update={
                        "status": TaskStatus.PENDING,
                        "error_message": None,
                        "retry_count": task.retry_count + 1,
                        "updated_at": now,
                    }
                )
                count += 1
        return count

    async def set_pipeline_status(
        self,
        pipeline_id: str,
        status: PipelineStatus,
        error_message: Optional[str] = None,
    ) -> Optional[Pipeline]:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            return None
        updated = pipeline.model_copy(
            update={
                "status": status,
                "error_message": error_message,
                "updated_at": datetime.now(timezone.utc),
            }
        )
        self._pipelines[pipeline_id] = updated
        return updated

    async def recompute(self, pipeline_id: str) -> Optional[Tuple[Pipeline, Pipeline]]:
        before = self._pipelines.get(pipeline_id)
        if before is None:
            return None
        statuses = [
            t.status for t in self._tasks.values() if t.pipeline_id == pipeline_id
        ]
        after = apply_snapshot(before, compute_progress(statuses, before.status))
        self._pipelines[pipeline_id] = after
        return before, after
