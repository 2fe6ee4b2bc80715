"""PostgreSQL repository for pipelines and pipeline tasks.

recompute() locks the pipeline row (SELECT ... FOR UPDATE), reads every
task status and writes the derived fields back in the same transaction.
Concurrent recomputations of one pipeline therefore serialize, and the
last writer always sees the latest task statuses.

Source:
- migrations/001_curation_core.sql (schema definition)
- src/curation/progress/aggregator.py (PipelineRepository protocol)
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

import asyncpg

from src.curation.db import (
    DatabaseError,
    PostgresDatabase,
    as_utc,
    dump_json,
    load_json,
    rows_affected,
)
from src.curation.progress.models import (
    Pipeline,
    PipelineStatus,
    PipelineTask,
    TaskStatus,
    TaskType,
    apply_snapshot,
    compute_progress,
)


logger = logging.getLogger(__name__)


PIPELINE_COLUMNS = """
    id, document_id, name, status, total_tasks, completed_tasks,
    failed_tasks, progress_percentage, error_message, metadata,
    started_at, completed_at, created_at, updated_at
"""

TASK_COLUMNS = """
    id, pipeline_id, task_type, item_id, status, error_message,
    retry_count, created_at, updated_at
"""


class PostgresPipelineRepository:
    """PostgreSQL implementation of the PipelineRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def create_pipeline(self, pipeline: Pipeline) -> bool:
        try:
            async with self.db.connection() as conn:
                result = await conn.execute(
                    f"""
                    INSERT INTO pipelines ({PIPELINE_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                    ON CONFLICT (document_id) DO NOTHING
                    """,
                    pipeline.id,
                    pipeline.document_id,
                    pipeline.name,
                    pipeline.status.value,
                    pipeline.total_tasks,
                    pipeline.completed_tasks,
                    pipeline.failed_tasks,
                    pipeline.progress_percentage,
                    pipeline.error_message,
                    dump_json(pipeline.metadata),
                    pipeline.started_at,
                    pipeline.completed_at,
                    pipeline.created_at,
                    pipeline.updated_at,
                )
                return rows_affected(result) == 1

        except Exception as e:
            logger.error(
                "Failed to create pipeline",
                extra={"document_id": pipeline.document_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to create pipeline: {e}",
                original_error=e,
            ) from e

    async def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        return await self._fetch_pipeline("id", pipeline_id)

    async def get_pipeline_by_document(self, document_id: str) -> Optional[Pipeline]:
        return await self._fetch_pipeline("document_id", document_id)

    async def _fetch_pipeline(self, column: str, value: str) -> Optional[Pipeline]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {PIPELINE_COLUMNS} FROM pipelines WHERE {column} = $1",
                    value,
                )
                return self._row_to_pipeline(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get pipeline: {e}",
                original_error=e,
            ) from e

    async def list_pipelines(
        self, status: Optional[PipelineStatus] = None
    ) -> List[Pipeline]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {PIPELINE_COLUMNS}
                    FROM pipelines
                    WHERE ($1::text IS NULL OR status = $1)
                    ORDER BY created_at DESC
                    """,
                    status.value if status else None,
                )
                return [self._row_to_pipeline(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list pipelines: {e}",
                original_error=e,
            ) from e

    async def add_task(self, task: PipelineTask) -> None:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO pipeline_tasks ({TASK_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    task.id,
                    task.pipeline_id,
                    task.task_type.value,
                    task.item_id,
                    task.status.value,
                    task.error_message,
                    task.retry_count,
                    task.created_at,
                    task.updated_at,
                )

        except Exception as e:
            logger.error(
                "Failed to add pipeline task",
                extra={"pipeline_id": task.pipeline_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to add pipeline task: {e}",
                original_error=e,
            ) from e

    async def get_task(self, task_id: str) -> Optional[PipelineTask]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {TASK_COLUMNS} FROM pipeline_tasks WHERE id = $1",
                    task_id,
                )
                return self._row_to_task(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get pipeline task: {e}",
                original_error=e,
            ) from e

    async def list_tasks(self, pipeline_id: str) -> List[PipelineTask]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {TASK_COLUMNS}
                    FROM pipeline_tasks
                    WHERE pipeline_id = $1
                    ORDER BY created_at ASC
                    """,
                    pipeline_id,
                )
                return [self._row_to_task(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list pipeline tasks: {e}",
                original_error=e,
            ) from e

    async def update_task_status(
        self,
        task_id: str,
        status: TaskStatus,
        error_message: Optional[str] = None,
    ) -> Optional[PipelineTask]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE pipeline_tasks
                    SET status = $2, error_message = $3, updated_at = $4
                    WHERE id = $1
                    RETURNING {TASK_COLUMNS}
                    """,
                    task_id,
                    status.value,
                    error_message,
                    datetime.now(timezone.utc),
                )
                return self._row_to_task(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to update pipeline task: {e}",
                original_error=e,
            ) from e

    async def reset_failed_tasks(self, pipeline_id: str) -> int:
        try:
            async with self.db.connection() as conn:
                result = await conn.execute(
                    """
                    UPDATE pipeline_tasks
                    SET status = 'pending', error_message = NULL,
                        retry_count = retry_count + 1, updated_at = $2
                    WHERE pipeline_id = $1 AND status = 'failed'
                    """,
                    pipeline_id,
                    datetime.now(timezone.utc),
                )
                return rows_affected(result)

        except Exception as e:
            raise DatabaseError(
                f"Failed to reset failed tasks: {e}",
                original_error=e,
            ) from e

    async def set_pipeline_status(
        self,
        pipeline_id: str,
        status: PipelineStatus,
        error_message: Optional[str] = None,
    ) -> Optional[Pipeline]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE pipelines
                    SET status = $2, error_message = $3, updated_at = $4
                    WHERE id = $1
                    RETURNING {PIPELINE_COLUMNS}
                    """,
                    pipeline_id,
                    status.value,
                    error_message,
                    datetime.now(timezone.utc),
                )
                return self._row_to_pipeline(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to set pipeline status: {e}",
                original_error=e,
            ) from e

    async def recompute(self, pipeline_id: str) -> Optional[Tuple[Pipeline, Pipeline]]:
        try:
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {PIPELINE_COLUMNS}
                    FROM pipelines
                    WHERE id = $1
                    FOR UPDATE
                    """,
                    pipeline_id,
                )
                if row is None:
                    return None
                before = self._row_to_pipeline(row)

                statuses = await conn.fetch(
                    "SELECT status FROM pipeline_tasks WHERE pipeline_id = $1",
                    pipeline_id,
                )
                after = apply_snapshot(
                    before,
                    compute_progress(
                        (TaskStatus(r["status"]) for r in statuses),
                        before.status,
                    ),
                )

                await conn.execute(
                    """
                    UPDATE pipelines
                    SET total_tasks = $2, completed_tasks = $3, failed_tasks = $4,
                        progress_percentage = $5, status = $6,
                        started_at = $7, completed_at = $8, updated_at = $9
                    WHERE id = $1
                    """,
                    pipeline_id,
                    after.total_tasks,
                    after.completed_tasks,
                    after.failed_tasks,
                    after.progress_percentage,
                    after.status.value,
                    after.started_at,
                    after.completed_at,
                    after.updated_at,
                )
                return before, after

        except Exception as e:
            logger.error(
                "Failed to recompute pipeline",
                extra={"pipeline_id": pipeline_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to recompute pipeline: {e}",
                original_error=e,
            ) from e

    def _row_to_pipeline(self, row: asyncpg.Record) -> Pipeline:
        return Pipeline(
            id=row["id"],
            document_id=row["document_id"],
            name=row["name"],
            status=PipelineStatus(row["status"]),
            total_tasks=row["total_tasks"],
            completed_tasks=row["completed_tasks"],
            failed_tasks=row["failed_tasks"],
            progress_percentage=row["progress_percentage"],
            error_message=row["error_message"],
            metadata=load_json(row["metadata"]),
            started_at=as_utc(row["started_at"]),
            completed_at=as_utc(row["completed_at"]),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )

    def _row_to_task(self, row: asyncpg.Record) -> PipelineTask:
        return PipelineTask(
            id=row["id"],
            pipeline_id=row["pipeline_id"],
            task_type=TaskType(row["task_type"]),
            item_id=row["item_id"],
            status=TaskStatus(row["status"]),
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )
