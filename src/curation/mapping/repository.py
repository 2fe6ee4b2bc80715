"""PostgreSQL repositories for topic mappings and transformation jobs.

Source:
- migrations/001_curation_core.sql (schema definition)
- src/curation/mapping/service.py (MappingRepository protocol)
- src/curation/mapping/transformation.py (TransformationJobRepository protocol)
"""

import json
import logging
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional

import asyncpg

from src.curation.db import DatabaseError, PostgresDatabase, as_utc, dump_json, load_json
from src.curation.mapping.models import (
    JobStatus,
    MappingStatus,
    TopicMapping,
    TransformationJob,
)
from src.curation.state.models import CEFRLevel


logger = logging.getLogger(__name__)


MAPPING_COLUMNS = """
    id, chunk_id, topic_id, confidence_score, status, reasoning,
    confirmed_by, confirmed_at, language, level, created_at
"""

JOB_COLUMNS = """
    id, mapping_id, status, parsed_result, tokens_input, tokens_output,
    cost_usd, duration_ms, error_message, retry_count, item_ids,
    created_at, completed_at
"""


class PostgresMappingRepository:
    """PostgreSQL implementation of the MappingRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def upsert_mapping(self, mapping: TopicMapping) -> TopicMapping:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO topic_mappings ({MAPPING_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                    ON CONFLICT (chunk_id, topic_id) DO UPDATE
                    SET confidence_score = EXCLUDED.confidence_score,
                        reasoning = EXCLUDED.reasoning,
                        status = CASE
                            WHEN topic_mappings.status IN ('pending', 'auto_mapped')
                              OR EXCLUDED.status = 'manual'
                            THEN EXCLUDED.status ELSE topic_mappings.status END,
                        confirmed_by = CASE
                            WHEN topic_mappings.status IN ('pending', 'auto_mapped')
                              OR EXCLUDED.status = 'manual'
                            THEN EXCLUDED.confirmed_by ELSE topic_mappings.confirmed_by END,
                        confirmed_at = CASE
                            WHEN topic_mappings.status IN ('pending', 'auto_mapped')
                              OR EXCLUDED.status = 'manual'
                            THEN EXCLUDED.confirmed_at ELSE topic_mappings.confirmed_at END
                    RETURNING {MAPPING_COLUMNS}
                    """,
                    mapping.id,
                    mapping.chunk_id,
                    mapping.topic_id,
                    mapping.confidence_score,
                    mapping.status.value,
                    mapping.reasoning,
                    mapping.confirmed_by,
                    mapping.confirmed_at,
                    mapping.language,
                    mapping.level.value if mapping.level else None,
                    mapping.created_at,
                )
                return self._row_to_mapping(row)

        except Exception as e:
            logger.error(
                "Failed to save topic mapping",
                extra={"chunk_id": mapping.chunk_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save topic mapping: {e}",
                original_error=e,
            ) from e

    async def get_mapping(self, mapping_id: str) -> Optional[TopicMapping]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {MAPPING_COLUMNS} FROM topic_mappings WHERE id = $1",
                    mapping_id,
                )
                return self._row_to_mapping(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get topic mapping: {e}",
                original_error=e,
            ) from e

    async def list_mappings(
        self,
        status: Optional[MappingStatus] = None,
        chunk_id: Optional[str] = None,
    ) -> List[TopicMapping]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {MAPPING_COLUMNS}
                    FROM topic_mappings
                    WHERE ($1::text IS NULL OR status = $1)
                      AND ($2::text IS NULL OR chunk_id = $2)
                    ORDER BY confidence_score DESC
                    """,
                    status.value if status else None,
                    chunk_id,
                )
                return [self._row_to_mapping(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list topic mappings: {e}",
                original_error=e,
            ) from e

    async def update_status(
        self,
        mapping_id: str,
        status: MappingStatus,
        allowed_from: FrozenSet[MappingStatus],
        operator_id: Optional[str] = None,
    ) -> Optional[TopicMapping]:
        confirming = status == MappingStatus.CONFIRMED
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE topic_mappings
                    SET status = $2,
                        confirmed_by = CASE WHEN $4 THEN $5 ELSE confirmed_by END,
                        confirmed_at = CASE WHEN $4 THEN $6 ELSE confirmed_at END
                    WHERE id = $1 AND status = ANY($3::text[])
                    RETURNING {MAPPING_COLUMNS}
                    """,
                    mapping_id,
                    status.value,
                    [s.value for s in allowed_from],
                    confirming,
                    operator_id,
                    datetime.now(timezone.utc),
                )
                return self._row_to_mapping(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to update topic mapping: {e}",
                original_error=e,
            ) from e

    def _row_to_mapping(self, row: asyncpg.Record) -> TopicMapping:
        return TopicMapping(
            id=row["id"],
            chunk_id=row["chunk_id"],
            topic_id=row["topic_id"],
            confidence_score=float(row["confidence_score"]),
            status=MappingStatus(row["status"]),
            reasoning=row["reasoning"],
            confirmed_by=row["confirmed_by"],
            confirmed_at=as_utc(row["confirmed_at"]),
            language=row["language"],
            level=CEFRLevel(row["level"]) if row["level"] else None,
            created_at=as_utc(row["created_at"]),
        )


class PostgresTransformationJobRepository:
    """PostgreSQL implementation of the TransformationJobRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def create_job(self, job: TransformationJob) -> None:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO transformation_jobs ({JOB_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
                    """,
                    *self._job_values(job),
                )

        except Exception as e:
            logger.error(
                "Failed to create transformation job",
                extra={"mapping_id": job.mapping_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to create transformation job: {e}",
                original_error=e,
            ) from e

    async def update_job(self, job: TransformationJob) -> None:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    """
                    UPDATE transformation_jobs
                    SET mapping_id = $2, status = $3, parsed_result = $4,
                        tokens_input = $5, tokens_output = $6, cost_usd = $7,
                        duration_ms = $8, error_message = $9, retry_count = $10,
                        item_ids = $11, created_at = $12, completed_at = $13
                    WHERE id = $1
                    """,
                    *self._job_values(job),
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to update transformation job: {e}",
                original_error=e,
            ) from e

    async def get_job(self, job_id: str) -> Optional[TransformationJob]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"SELECT {JOB_COLUMNS} FROM transformation_jobs WHERE id = $1",
                    job_id,
                )
                return self._row_to_job(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get transformation job: {e}",
                original_error=e,
            ) from e

    async def list_jobs(self, mapping_id: str) -> List[TransformationJob]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {JOB_COLUMNS}
                    FROM transformation_jobs
                    WHERE mapping_id = $1
                    ORDER BY created_at ASC
                    """,
                    mapping_id,
                )
                return [self._row_to_job(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list transformation jobs: {e}",
                original_error=e,
            ) from e

    def _job_values(self, job: TransformationJob) -> tuple:
        return (
            job.id,
            job.mapping_id,
            job.status.value,
            dump_json(job.parsed_result),
            job.tokens_input,
            job.tokens_output,
            job.cost_usd,
            job.duration_ms,
            job.error_message,
            job.retry_count,
            json.dumps(job.item_ids),
            job.created_at,
            job.completed_at,
        )

    def _row_to_job(self, row: asyncpg.Record) -> TransformationJob:
        item_ids = row["item_ids"]
        if isinstance(item_ids, str):
            item_ids = json.loads(item_ids)
        return TransformationJob(
            id=row["id"],
            mapping_id=row["mapping_id"],
            status=JobStatus(row["status"]),
            parsed_result=load_json(row["parsed_result"]) if row["parsed_result"] else None,
            tokens_input=row["tokens_input"],
            tokens_output=row["tokens_output"],
            cost_usd=float(row["cost_usd"]),
            duration_ms=row["duration_ms"],
            error_message=row["error_message"],
            retry_count=row["retry_count"],
            item_ids=list(item_ids or []),
            created_at=as_utc(row["created_at"]),
            completed_at=as_utc(row["completed_at"]),
        )
