"""PostgreSQL repository for operator feedback, versions and retries.

Version numbers and retry slots are assigned inside the INSERT
(INSERT ... SELECT MAX(...) + 1) and backed by unique keys on
(item_type, item_id, version_number) and (item_type, item_id, slot).
A slot collision is reported to the caller, which re-reads and retries.

Source:
- migrations/001_curation_core.sql (schema definition)
- src/curation/feedback/loop.py (FeedbackRepository protocol)
"""

import logging
from datetime import datetime
from typing import List, Optional

import asyncpg

from src.curation.db import (
    DatabaseError,
    PostgresDatabase,
    as_utc,
    dump_json,
    load_json,
)
from src.curation.feedback.models import (
    FeedbackAction,
    FeedbackCategory,
    ItemVersion,
    OperatorFeedback,
    RetryQueueEntry,
    RetryStatus,
)
from src.curation.state.models import ItemType


logger = logging.getLogger(__name__)


RETRY_COLUMNS = """
    id, item_id, item_type, feedback_id, status, slot, retry_count,
    max_retries, scheduled_at, processed_at, error_message, created_at
"""

VERSION_CONFLICT_RETRIES = 3


class PostgresFeedbackRepository:
    """PostgreSQL implementation of the FeedbackRepository protocol."""

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def add_feedback(self, feedback: OperatorFeedback) -> None:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO operator_feedback (
                        id, item_id, item_type, category, comment, action,
                        operator_id, suggested_correction, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    """,
                    feedback.id,
                    feedback.item_id,
                    feedback.item_type.value,
                    feedback.category.value,
                    feedback.comment,
                    feedback.action.value,
                    feedback.operator_id,
                    feedback.suggested_correction,
                    feedback.created_at,
                )

        except Exception as e:
            logger.error(
                "Failed to save feedback",
                extra={"item_id": feedback.item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save feedback: {e}",
                original_error=e,
            ) from e

    async def get_feedback(self, feedback_id: str) -> Optional[OperatorFeedback]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT id, item_id, item_type, category, comment, action,
                           operator_id, suggested_correction, created_at
                    FROM operator_feedback
                    WHERE id = $1
                    """,
                    feedback_id,
                )
                return self._row_to_feedback(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get feedback: {e}",
                original_error=e,
            ) from e

    async def list_feedback(
        self, item_id: str, item_type: ItemType
    ) -> List[OperatorFeedback]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT id, item_id, item_type, category, comment, action,
                           operator_id, suggested_correction, created_at
                    FROM operator_feedback
                    WHERE item_type = $1 AND item_id = $2
                    ORDER BY created_at ASC
                    """,
                    item_type.value,
                    item_id,
                )
                return [self._row_to_feedback(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list feedback: {e}",
                original_error=e,
            ) from e

    async def add_version(self, version: ItemVersion) -> ItemVersion:
        for _ in range(VERSION_CONFLICT_RETRIES):
            try:
                async with self.db.connection() as conn:
                    number = await conn.fetchval(
                        """
                        INSERT INTO item_versions (
                            item_id, item_type, version_number, data,
                            feedback_id, created_at
                        )
                        SELECT $1, $2, COALESCE(MAX(version_number), 0) + 1, $3, $4, $5
                        FROM item_versions
                        WHERE item_type = $2 AND item_id = $1
                        RETURNING version_number
                        """,
                        version.item_id,
                        version.item_type.value,
                        dump_json(version.data),
                        version.feedback_id,
                        version.created_at,
                    )
                    return version.model_copy(update={"version_number": number})

            except asyncpg.UniqueViolationError:
                logger.warning(
                    "Item version collision; recomputing",
                    extra={"item_id": version.item_id},
                )
            except Exception as e:
                raise DatabaseError(
                    f"Failed to save item version: {e}",
                    original_error=e,
                ) from e

        raise DatabaseError(
            f"Could not assign a version number for {version.item_id} "
            f"after {VERSION_CONFLICT_RETRIES} conflicts"
        )

    async def list_versions(self, item_id: str, item_type: ItemType) -> List[ItemVersion]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT item_id, item_type, version_number, data, feedback_id, created_at
                    FROM item_versions
                    WHERE item_type = $1 AND item_id = $2
                    ORDER BY version_number ASC
                    """,
                    item_type.value,
                    item_id,
                )
                return [
                    ItemVersion(
                        item_id=row["item_id"],
                        item_type=ItemType(row["item_type"]),
                        version_number=row["version_number"],
                        data=load_json(row["data"]),
                        feedback_id=row["feedback_id"],
                        created_at=as_utc(row["created_at"]),
                    )
                    for row in rows
                ]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list item versions: {e}",
                original_error=e,
            ) from e

    async def retry_slots_used(self, item_id: str, item_type: ItemType) -> int:
        try:
            async with self.db.connection() as conn:
                used = await conn.fetchval(
                    """
                    SELECT COALESCE(MAX(GREATEST(slot, retry_count)), 0)
                    FROM retry_queue
                    WHERE item_type = $1 AND item_id = $2
                    """,
                    item_type.value,
                    item_id,
                )
                return int(used)

        except Exception as e:
            raise DatabaseError(
                f"Failed to count retries: {e}",
                original_error=e,
            ) from e

    async def insert_retry_entry(self, entry: RetryQueueEntry) -> bool:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    f"""
                    INSERT INTO retry_queue ({RETRY_COLUMNS})
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    entry.id,
                    entry.item_id,
                    entry.item_type.value,
                    entry.feedback_id,
                    entry.status.value,
                    entry.slot,
                    entry.retry_count,
                    entry.max_retries,
                    entry.scheduled_at,
                    entry.processed_at,
                    entry.error_message,
                    entry.created_at,
                )
                return True

        except asyncpg.UniqueViolationError:
            logger.debug(
                "Retry slot already taken",
                extra={"item_id": entry.item_id, "slot": entry.slot},
            )
            return False
        except Exception as e:
            logger.error(
                "Failed to enqueue retry",
                extra={"item_id": entry.item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to enqueue retry: {e}",
                original_error=e,
            ) from e

    async def list_due(self, now: datetime, limit: int) -> List[RetryQueueEntry]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {RETRY_COLUMNS}
                    FROM retry_queue
                    WHERE status = 'pending'
                      AND retry_count < max_retries
                      AND scheduled_at <= $1
                    ORDER BY scheduled_at ASC
                    LIMIT $2
                    """,
                    now,
                    limit,
                )
                return [self._row_to_entry(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list due retries: {e}",
                original_error=e,
            ) from e

    async def claim_entry(self, entry_id: str) -> Optional[RetryQueueEntry]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE retry_queue
                    SET status = 'processing', retry_count = retry_count + 1
                    WHERE id = $1 AND status = 'pending'
                    RETURNING {RETRY_COLUMNS}
                    """,
                    entry_id,
                )
                return self._row_to_entry(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to claim retry: {e}",
                original_error=e,
            ) from e

    async def complete_entry(self, entry_id: str, processed_at: datetime) -> None:
        await self._set_status(entry_id, RetryStatus.COMPLETED, processed_at, None)

    async def fail_entry(
        self, entry_id: str, processed_at: datetime, error_message: str
    ) -> None:
        await self._set_status(entry_id, RetryStatus.FAILED, processed_at, error_message)

    async def _set_status(
        self,
        entry_id: str,
        status: RetryStatus,
        processed_at: datetime,
        error_message: Optional[str],
    ) -> None:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    """
                    UPDATE retry_queue
                    SET status = $2, processed_at = $3,
                        error_message = COALESCE($4, error_message)
                    WHERE id = $1
                    """,
                    entry_id,
                    status.value,
                    processed_at,
                    error_message,
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to update retry: {e}",
                original_error=e,
            ) from e

    async def reschedule_entry(
        self, entry_id: str, scheduled_at: datetime, error_message: str
    ) -> None:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    """
                    UPDATE retry_queue
                    SET status = 'pending', scheduled_at = $2, error_message = $3
                    WHERE id = $1
                    """,
                    entry_id,
                    scheduled_at,
                    error_message,
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to reschedule retry: {e}",
                original_error=e,
            ) from e

    async def list_entries(self, item_id: str, item_type: ItemType) -> List[RetryQueueEntry]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {RETRY_COLUMNS}
                    FROM retry_queue
                    WHERE item_type = $1 AND item_id = $2
                    ORDER BY slot ASC
                    """,
                    item_type.value,
                    item_id,
                )
                return [self._row_to_entry(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list retries: {e}",
                original_error=e,
            ) from e

    def _row_to_feedback(self, row: asyncpg.Record) -> OperatorFeedback:
        return OperatorFeedback(
            id=row["id"],
            item_id=row["item_id"],
            item_type=ItemType(row["item_type"]),
            category=FeedbackCategory(row["category"]),
            comment=row["comment"],
            action=FeedbackAction(row["action"]),
            operator_id=row["operator_id"],
            suggested_correction=row["suggested_correction"],
            created_at=as_utc(row["created_at"]),
        )

    def _row_to_entry(self, row: asyncpg.Record) -> RetryQueueEntry:
        return RetryQueueEntry(
            id=row["id"],
            item_id=row["item_id"],
            item_type=ItemType(row["item_type"]),
            feedback_id=row["feedback_id"],
            status=RetryStatus(row["status"]),
            slot=row["slot"],
            retry_count=row["retry_count"],
            max_retries=row["max_retries"],
            scheduled_at=as_utc(row["scheduled_at"]),
            processed_at=as_utc(row["processed_at"]),
            error_message=row["error_message"],
            created_at=as_utc(row["created_at"]),
        )
