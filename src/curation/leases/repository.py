"""PostgreSQL repository for work leases.

Leases live in the work_in_progress table whose primary key is work_id.
Exclusivity comes from INSERT ... ON CONFLICT DO NOTHING: of any number
of concurrent inserters exactly one affects a row.
"""

import logging
from datetime import datetime
from typing import List, Optional

from src.curation.db import DatabaseError, PostgresDatabase, as_utc, rows_affected
from src.curation.leases.models import WorkLease


logger = logging.getLogger(__name__)


class PostgresLeaseRepository:
    """PostgreSQL implementation of the LeaseRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def insert(self, lease: WorkLease) -> bool:
        try:
            async with self.db.connection() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO work_in_progress (work_id, lease_token, started_at)
                    VALUES ($1, $2, $3)
                    ON CONFLICT (work_id) DO NOTHING
                    """,
                    lease.work_id,
                    lease.lease_token,
                    lease.started_at,
                )
                return rows_affected(result) == 1

        except Exception as e:
            logger.error(
                "Failed to insert work lease",
                extra={"work_id": lease.work_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to insert work lease: {e}",
                original_error=e,
            ) from e

    async def delete(self, work_id: str, lease_token: str) -> bool:
        try:
            async with self.db.connection() as conn:
                result = await conn.execute(
                    """
                    DELETE FROM work_in_progress
                    WHERE work_id = $1 AND lease_token = $2
                    """,
                    work_id,
                    lease_token,
                )
                return rows_affected(result) > 0

        except Exception as e:
            logger.error(
                "Failed to delete work lease",
                extra={"work_id": work_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to delete work lease: {e}",
                original_error=e,
            ) from e

    async def get(self, work_id: str) -> Optional[WorkLease]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT work_id, lease_token, started_at
                    FROM work_in_progress
                    WHERE work_id = $1
                    """,
                    work_id,
                )
                return self._row_to_lease(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get work lease: {e}",
                original_error=e,
            ) from e

    async def list_all(self) -> List[WorkLease]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT work_id, lease_token, started_at
                    FROM work_in_progress
                    ORDER BY started_at ASC
                    """
                )
                return [self._row_to_lease(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list work leases: {e}",
                original_error=e,
            ) from e

    async def delete_older_than(self, cutoff: datetime) -> List[str]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    DELETE FROM work_in_progress
                    WHERE started_at < $1
                    RETURNING work_id
                    """,
                    cutoff,
                )
                return [row["work_id"] for row in rows]

        except Exception as e:
            logger.error(
                "Failed to reclaim stale leases",
                extra={"cutoff": cutoff.isoformat(), "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to reclaim stale leases: {e}",
                original_error=e,
            ) from e

    @staticmethod
    def _row_to_lease(row) -> WorkLease:
        return WorkLease(
            work_id=row["work_id"],
            lease_token=row["lease_token"],
            started_at=as_utc(row["started_at"]),
        )
