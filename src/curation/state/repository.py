"""PostgreSQL repository for curation items and lifecycle records.

This module implements the ItemRepository protocol using asyncpg:
- Compare-and-set state updates keyed on (state, version, rejected)
- Transition events and approval records written in the same transaction
- Rejection records unique per item, written with the rejected flag

Source:
- migrations/001_curation_core.sql (schema definition)
- src/curation/state/machine.py (ItemRepository protocol)
"""

import logging
from typing import List, Optional

import asyncpg

from src.curation.db import (
    DatabaseError,
    PostgresDatabase,
    as_utc,
    dump_json,
    load_json,
    rows_affected,
)
from src.curation.state.models import (
    ApprovalEvent,
    ApprovalType,
    CEFRLevel,
    CurationItem,
    Deprecation,
    ItemType,
    LifecycleState,
    RejectedItem,
    StateTransitionEvent,
)


logger = logging.getLogger(__name__)


ITEM_COLUMNS = """
    item_id, item_type, state, data, language, level,
    version, rejected, created_at, updated_at
"""


class PostgresItemRepository:
    """PostgreSQL implementation of the ItemRepository protocol.

    Example:
        >>> async with PostgresDatabase("postgresql://...") as db:
        ...     engine = StateTransitionEngine(PostgresItemRepository(db))
    """

    def __init__(self, db: PostgresDatabase):
        self.db = db

    async def create(self, item: CurationItem) -> bool:
        try:
            async with self.db.connection() as conn:
                await conn.execute(
                    """
                    INSERT INTO curation_items (
                        item_id, item_type, state, data, language, level,
                        version, rejected, created_at, updated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    """,
                    item.item_id,
                    item.item_type.value,
                    item.state.value,
                    dump_json(item.data),
                    item.language,
                    item.level.value if item.level else None,
                    item.version,
                    item.rejected,
                    item.created_at,
                    item.updated_at,
                )
                logger.info(
                    "Saved curation item",
                    extra={"item_id": item.item_id, "item_type": item.item_type.value},
                )
                return True

        except asyncpg.UniqueViolationError:
            return False
        except Exception as e:
            logger.error(
                "Failed to save curation item",
                extra={"item_id": item.item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to save curation item: {e}",
                original_error=e,
            ) from e

    async def get(self, item_id: str, item_type: ItemType) -> Optional[CurationItem]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {ITEM_COLUMNS}
                    FROM curation_items
                    WHERE item_type = $1 AND item_id = $2
                    """,
                    item_type.value,
                    item_id,
                )
                return self._row_to_item(row) if row is not None else None

        except Exception as e:
            logger.error(
                "Failed to get curation item",
                extra={"item_id": item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to get curation item: {e}",
                original_error=e,
            ) from e

    async def list_by_state(
        self,
        state: LifecycleState,
        item_type: Optional[ItemType] = None,
        limit: Optional[int] = None,
    ) -> List[CurationItem]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {ITEM_COLUMNS}
                    FROM curation_items
                    WHERE state = $1
                      AND NOT rejected
                      AND ($2::text IS NULL OR item_type = $2)
                    ORDER BY updated_at ASC
                    LIMIT $3
                    """,
                    state.value,
                    item_type.value if item_type else None,
                    limit,
                )
                return [self._row_to_item(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list curation items by state: {e}",
                original_error=e,
            ) from e

    async def apply_transition(
        self,
        item: CurationItem,
        event: StateTransitionEvent,
        approval: Optional[ApprovalEvent] = None,
    ) -> bool:
        expected_version = item.version - 1

        try:
            async with self.db.transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE curation_items
                    SET state = $3, version = $4, updated_at = $5
                    WHERE item_type = $1 AND item_id = $2
                      AND state = $6 AND version = $7 AND NOT rejected
                    """,
                    item.item_type.value,
                    item.item_id,
                    item.state.value,
                    item.version,
                    item.updated_at,
                    event.from_state.value,
                    expected_version,
                )

                if rows_affected(result) == 0:
                    logger.warning(
                        "Compare-and-set conflict during transition",
                        extra={
                            "item_id": item.item_id,
                            "item_type": item.item_type.value,
                            "expected_version": expected_version,
                        },
                    )
                    return False

                await conn.execute(
                    """
                    INSERT INTO state_transitions (
                        item_id, item_type, from_state, to_state, metadata, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    event.item_id,
                    event.item_type.value,
                    event.from_state.value,
                    event.to_state.value,
                    dump_json(event.metadata),
                    event.created_at,
                )

                if approval is not None:
                    await conn.execute(
                        """
                        INSERT INTO approval_events (
                            item_id, item_type, approval_type, operator_id, notes, created_at
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        """,
                        approval.item_id,
                        approval.item_type.value,
                        approval.approval_type.value,
                        approval.operator_id,
                        approval.notes,
                        approval.created_at,
                    )

                return True

        except Exception as e:
            logger.error(
                "Failed to apply transition",
                extra={"item_id": item.item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to apply transition: {e}",
                original_error=e,
            ) from e

    async def update_data(self, item: CurationItem) -> bool:
        try:
            async with self.db.connection() as conn:
                result = await conn.execute(
                    """
                    UPDATE curation_items
                    SET data = $3, version = $4, updated_at = $5
                    WHERE item_type = $1 AND item_id = $2
                      AND state = $6 AND version = $7 AND NOT rejected
                    """,
                    item.item_type.value,
                    item.item_id,
                    dump_json(item.data),
                    item.version,
                    item.updated_at,
                    item.state.value,
                    item.version - 1,
                )
                return rows_affected(result) > 0

        except Exception as e:
            raise DatabaseError(
                f"Failed to update item data: {e}",
                original_error=e,
            ) from e

    async def list_events(
        self, item_id: str, item_type: ItemType
    ) -> List[StateTransitionEvent]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT item_id, item_type, from_state, to_state, metadata, created_at
                    FROM state_transitions
                    WHERE item_type = $1 AND item_id = $2
                    ORDER BY id ASC
                    """,
                    item_type.value,
                    item_id,
                )
                return [
                    StateTransitionEvent(
                        item_id=row["item_id"],
                        item_type=ItemType(row["item_type"]),
                        from_state=LifecycleState(row["from_state"]),
                        to_state=LifecycleState(row["to_state"]),
                        metadata=load_json(row["metadata"]),
                        created_at=as_utc(row["created_at"]),
                    )
                    for row in rows
                ]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list transition events: {e}",
                original_error=e,
            ) from e

    async def mark_rejected(self, rejection: RejectedItem) -> Optional[RejectedItem]:
        try:
            async with self.db.transaction() as conn:
                result = await conn.execute(
                    """
                    UPDATE curation_items
                    SET rejected = TRUE, version = version + 1, updated_at = $3
                    WHERE item_type = $1 AND item_id = $2
                      AND state <> 'approved' AND NOT rejected
                    """,
                    rejection.item_type.value,
                    rejection.item_id,
                    rejection.rejected_at,
                )

                if rows_affected(result) > 0:
                    await conn.execute(
                        """
                        INSERT INTO rejected_items (
                            item_id, item_type, reason, operator_id,
                            rejected_state, rejected_data, rejected_at
                        ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                        """,
                        rejection.item_id,
                        rejection.item_type.value,
                        rejection.reason,
                        rejection.operator_id,
                        rejection.rejected_state.value,
                        dump_json(rejection.rejected_data),
                        rejection.rejected_at,
                    )
                    return rejection

                row = await conn.fetchrow(
                    """
                    SELECT item_id, item_type, reason, operator_id,
                           rejected_state, rejected_data, rejected_at
                    FROM rejected_items
                    WHERE item_type = $1 AND item_id = $2
                    """,
                    rejection.item_type.value,
                    rejection.item_id,
                )
                return self._row_to_rejection(row) if row is not None else None

        except Exception as e:
            logger.error(
                "Failed to reject item",
                extra={"item_id": rejection.item_id, "error": str(e)},
            )
            raise DatabaseError(
                f"Failed to reject item: {e}",
                original_error=e,
            ) from e

    async def get_rejection(
        self, item_id: str, item_type: ItemType
    ) -> Optional[RejectedItem]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT item_id, item_type, reason, operator_id,
                           rejected_state, rejected_data, rejected_at
                    FROM rejected_items
                    WHERE item_type = $1 AND item_id = $2
                    """,
                    item_type.value,
                    item_id,
                )
                return self._row_to_rejection(row) if row is not None else None

        except Exception as e:
            raise DatabaseError(
                f"Failed to get rejection: {e}",
                original_error=e,
            ) from e

    async def list_rejections(
        self, item_type: Optional[ItemType] = None
    ) -> List[RejectedItem]:
        try:
            async with self.db.connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT item_id, item_type, reason, operator_id,
                           rejected_state, rejected_data, rejected_at
                    FROM rejected_items
                    WHERE $1::text IS NULL OR item_type = $1
                    ORDER BY rejected_at ASC
                    """,
                    item_type.value if item_type else None,
                )
                return [self._row_to_rejection(row) for row in rows]

        except Exception as e:
            raise DatabaseError(
                f"Failed to list rejections: {e}",
                original_error=e,
            ) from e

    async def get_approval(
        self, item_id: str, item_type: ItemType
    ) -> Optional[ApprovalEvent]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT item_id, item_type, approval_type, operator_id, notes, created_at
                    FROM approval_events
                    WHERE item_type = $1 AND item_id = $2
                    ORDER BY id DESC
                    LIMIT 1
                    """,
                    item_type.value,
                    item_id,
                )
                if row is None:
                    return None
                return ApprovalEvent(
                    item_id=row["item_id"],
                    item_type=ItemType(row["item_type"]),
                    approval_type=ApprovalType(row["approval_type"]),
                    operator_id=row["operator_id"],
                    notes=row["notes"],
                    created_at=as_utc(row["created_at"]),
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to get approval: {e}",
                original_error=e,
            ) from e

    async def add_deprecation(self, deprecation: Deprecation) -> bool:
        try:
            async with self.db.connection() as conn:
                result = await conn.execute(
                    """
                    INSERT INTO deprecations (
                        item_id, item_type, reason, operator_id,
                        replacement_id, deprecated_at
                    ) VALUES ($1, $2, $3, $4, $5, $6)
                    ON CONFLICT (item_type, item_id) DO NOTHING
                    """,
                    deprecation.item_id,
                    deprecation.item_type.value,
                    deprecation.reason,
                    deprecation.operator_id,
                    deprecation.replacement_id,
                    deprecation.deprecated_at,
                )
                return rows_affected(result) == 1

        except Exception as e:
            raise DatabaseError(
                f"Failed to add deprecation: {e}",
                original_error=e,
            ) from e

    async def get_deprecation(
        self, item_id: str, item_type: ItemType
    ) -> Optional[Deprecation]:
        try:
            async with self.db.connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT item_id, item_type, reason, operator_id,
                           replacement_id, deprecated_at
                    FROM deprecations
                    WHERE item_type = $1 AND item_id = $2
                    """,
                    item_type.value,
                    item_id,
                )
                if row is None:
                    return None
                return Deprecation(
                    item_id=row["item_id"],
                    item_type=ItemType(row["item_type"]),
                    reason=row["reason"],
                    operator_id=row["operator_id"],
                    replacement_id=row["replacement_id"],
                    deprecated_at=as_utc(row["deprecated_at"]),
                )

        except Exception as e:
            raise DatabaseError(
                f"Failed to get deprecation: {e}",
                original_error=e,
            ) from e

    @staticmethod
    def _row_to_item(row) -> CurationItem:
        return CurationItem(
            item_id=row["item_id"],
            item_type=ItemType(row["item_type"]),
            state=LifecycleState(row["state"]),
            data=load_json(row["data"]),
            language=row["language"],
            level=CEFRLevel(row["level"]) if row["level"] else None,
            version=row["version"],
            rejected=row["rejected"],
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )

    @staticmethod
    def _row_to_rejection(row) -> RejectedItem:
        return RejectedItem(
            item_id=row["item_id"],
            item_type=ItemType(row["item_type"]),
            reason=row["reason"],
            operator_id=row["operator_id"],
            rejected_state=LifecycleState(row["rejected_state"]),
            rejected_data=load_json(row["rejected_data"]),
            rejected_at=as_utc(row["rejected_at"]),
        )
