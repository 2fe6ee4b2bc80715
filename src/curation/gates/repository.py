"""PostgreSQL repository for quality gate results.

record_result() assigns the attempt number inside the INSERT itself
(INSERT ... SELECT MAX(attempt_number) + 1), so concurrent evaluations
of the same gate cannot read the same maximum and then both write. If
two inserts still collide on the unique key, the loser recomputes.
"""

import logging
from typing import List, Optional

import asyncpg

from src.curation.db import DatabaseError, PostgresDatabase, as_utc, dump_json, load_json
from src.curation.gates.models import MAX_ATTEMPTS, GateStatus, QualityGateResult
from src.curation.state.models import ItemType


logger = logging.getLogger(__name__)


INSERT_CONFLICT_RETRIES = 3


class PostgresGateResultRepository:
    """PostgreSQL implementation of the GateResultRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def next_attempt_number(
        self, entity_type: ItemType, entity_id: str, gate_name: str
    ) -> int:
        try:
            async with self.db.connection() as conn:
                current = await conn.fetchval(
                    """
                    SELECT COALESCE(MAX(attempt_number), 0)
                    FROM quality_gate_results
                    WHERE entity_type = $1 AND entity_id = $2 AND gate_name = $3
                    """,
                    entity_type.value,
                    entity_id,
                    gate_name,
                )
                return int(current) + 1

        except Exception as e:
            raise DatabaseError(
                f"Failed to read gate attempts: {e}",
                original_error=e,
            ) from e

    async def record_result(
        self, result: QualityGateResult, max_attempts: int = MAX_ATTEMPTS
    ) -> Optional[QualityGateResult]:
        for conflict in range(INSERT_CONFLICT_RETRIES):
            try:
                async with self.db.connection() as conn:
                    attempt = await conn.fetchval(
                        """
                        INSERT INTO quality_gate_results (
                            entity_type, entity_id, gate_name, status,
                            attempt_number, error_message, score, metadata,
                            execution_time_ms, created_at
                        )
                        SELECT $1, $2, $3, $4,
                               COALESCE(MAX(attempt_number), 0) + 1,
                               $5, $6, $7, $8, $9
                        FROM quality_gate_results
                        WHERE entity_type = $1 AND entity_id = $2 AND gate_name = $3
                        HAVING COALESCE(MAX(attempt_number), 0) < $10
                        RETURNING attempt_number
                        """,
                        result.entity_type.value,
                        result.entity_id,
                        result.gate_name,
                        result.status.value,
                        result.error_message,
                        result.score,
                        dump_json(result.metadata),
                        result.execution_time_ms,
                        result.created_at,
                        max_attempts,
                    )
                    if attempt is None:
                        return None
                    return result.model_copy(update={"attempt_number": attempt})

            except asyncpg.UniqueViolationError:
                logger.warning(
                    "Gate attempt number collision; recomputing",
                    extra={
                        "entity_id": result.entity_id,
                        "gate_name": result.gate_name,
                        "conflict": conflict + 1,
                    },
                )
            except Exception as e:
                logger.error(
                    "Failed to record gate result",
                    extra={
                        "entity_id": result.entity_id,
                        "gate_name": result.gate_name,
                        "error": str(e),
                    },
                )
                raise DatabaseError(
                    f"Failed to record gate result: {e}",
                    original_error=e,
                ) from e

        raise DatabaseError(
            f"Could not assign an attempt number for {result.gate_name} "
            f"after {INSERT_CONFLICT_RETRIES} conflicts"
        )

    async def list_results(
        self,
        entity_type: ItemType,
        entity_id: str,
        gate_name: Optional[str] = None,
    ) -> List[QualityGateResult]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT entity_type, entity_id, gate_name, status, attempt_number,
                           error_message, score, metadata, execution_time_ms, created_at
                    FROM quality_gate_results
                    WHERE entity_type = $1 AND entity_id = $2
                      AND ($3::text IS NULL OR gate_name = $3)
                    ORDER BY gate_name ASC, attempt_number ASC
                    """,
                    entity_type.value,
                    entity_id,
                    gate_name,
                )
                return [
                    QualityGateResult(
                        entity_type=ItemType(row["entity_type"]),
                        entity_id=row["entity_id"],
                        gate_name=row["gate_name"],
                        status=GateStatus(row["status"]),
                        attempt_number=row["attempt_number"],
                        error_message=row["error_message"],
                        score=row["score"],
                        metadata=load_json(row["metadata"]),
                        execution_time_ms=row["execution_time_ms"],
                        created_at=as_utc(row["created_at"]),
                    )
                    for row in rows
                ]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list gate results: {e}",
                original_error=e,
            ) from e
