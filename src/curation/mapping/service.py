"""Chunk-to-topic mapping operations.

Mappings arrive from a semantic mapper with a confidence score. Weak
mappings are dropped, confident ones are auto-mapped, and everything in
between waits for an operator to confirm, reject or re-point it.
"""

import logging
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional, Protocol, runtime_checkable

from src.curation.mapping.models import (
    DEFAULT_AUTO_MAP_THRESHOLD,
    DEFAULT_MIN_CONFIDENCE,
    REVIEWABLE_STATUSES,
    MappingStatus,
    TopicMapping,
)
from src.curation.state.models import CEFRLevel


logger = logging.getLogger(__name__)


class MappingNotFoundError(Exception):
    """Raised when a topic mapping does not exist."""

    def __init__(self, mapping_id: str):
        self.mapping_id = mapping_id
        super().__init__(f"Topic mapping not found: {mapping_id}")


class MappingStateError(Exception):
    """Raised when a mapping's status doesn't allow the operation.

    Attributes:
        mapping_id: The mapping.
        status: Its status at the time of the operation.
    """

    def __init__(self, mapping_id: str, status: MappingStatus, operation: str):
        self.mapping_id = mapping_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} mapping {mapping_id} in status {status.value}"
        )


@runtime_checkable
class MappingRepository(Protocol):
    """Persistence for topic mappings."""

    async def upsert_mapping(self, mapping: TopicMapping) -> TopicMapping:
        """Insert, or update the existing mapping for (chunk_id, topic_id).

        On update the score and reasoning are replaced. The status is
        replaced only while the existing mapping is still reviewable
        (pending or auto_mapped), unless the new status is manual.

        Returns:
            The stored mapping.
        """
        ...

    async def get_mapping(self, mapping_id: str) -> Optional[TopicMapping]:
        ...

    async def list_mappings(
        self,
        status: Optional[MappingStatus] = None,
        chunk_id: Optional[str] = None,
    ) -> List[TopicMapping]:
        ...

    async def update_status(
        self,
        mapping_id: str,
        status: MappingStatus,
        allowed_from: FrozenSet[MappingStatus],
        operator_id: Optional[str] = None,
    ) -> Optional[TopicMapping]:
        """Set status if the current status is in allowed_from.

        Returns:
            The updated mapping, or None if it is missing or its status
            was not in allowed_from.
        """
        ...


class MappingService:
    """Records semantic mappings and applies operator decisions.

    Attributes:
        repository: Mapping persistence.
        auto_map_threshold: Scores at or above this are auto_mapped.
        min_confidence: Scores below this are discarded.
    """

    def __init__(
        self,
        repository: MappingRepository,
        auto_map_threshold: float = DEFAULT_AUTO_MAP_THRESHOLD,
        min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    ):
        self.repository = repository
        self.auto_map_threshold = auto_map_threshold
        self.min_confidence = min_confidence

    async def record_mapping(
        self,
        chunk_id: str,
        topic_id: str,
        confidence_score: float,
        reasoning: Optional[str] = None,
        language: Optional[str] = None,
        level: Optional[CEFRLevel] = None,
    ) -> Optional[TopicMapping]:
        """Record a mapper's proposal for a chunk.

        Returns:
            The stored mapping, or None if the score was too low to keep.

        Raises:
            ValueError: If confidence_score is outside [0, 1].
        """
        if not 0.0 <= confidence_score <= 1.0:
            raise ValueError("confidence_score must be between 0 and 1")

        if confidence_score < self.min_confidence:
            logger.debug(
                "Discarded low-confidence mapping",
                extra={
                    "chunk_id": chunk_id,
                    "topic_id": topic_id,
                    "confidence_score": confidence_score,
                },
            )
            return None

        status = (
            MappingStatus.AUTO_MAPPED
            if confidence_score >= self.auto_map_threshold
            else MappingStatus.PENDING
        )
        mapping = await self.repository.upsert_mapping(
            TopicMapping(
                chunk_id=chunk_id,
                topic_id=topic_id,
                confidence_score=confidence_score,
                status=status,
                reasoning=reasoning,
                language=language,
                level=level,
            )
        )
        logger.info(
            "Recorded topic mapping",
            extra={
                "mapping_id": mapping.id,
                "chunk_id": chunk_id,
                "topic_id": topic_id,
                "status": mapping.status.value,
            },
        )
        return mapping

    async def get_mapping(self, mapping_id: str) -> TopicMapping:
        mapping = await self.repository.get_mapping(mapping_id)
        if mapping is None:
            raise MappingNotFoundError(mapping_id)
        return mapping

    async def list_mappings(
        self,
        status: Optional[MappingStatus] = None,
        chunk_id: Optional[str] = None,
    ) -> List[TopicMapping]:
        return await self.repository.list_mappings(status, chunk_id)

    async def confirm_mapping(self, mapping_id: str, operator_id: str) -> TopicMapping:
        """Accept a pending or auto-mapped mapping.

        Raises:
            MappingNotFoundError: If the mapping doesn't exist.
            MappingStateError: If it was already confirmed, rejected or
                manually mapped.
        """
        return await self._review(mapping_id, MappingStatus.CONFIRMED, "confirm", operator_id)

    async def reject_mapping(self, mapping_id: str, operator_id: Optional[str] = None) -> TopicMapping:
        return await self._review(mapping_id, MappingStatus.REJECTED, "reject", operator_id)

    async def bulk_confirm(self, mapping_ids: List[str], operator_id: str) -> List[TopicMapping]:
        """Confirm several mappings, skipping any no longer reviewable."""
        confirmed = []
        for mapping_id in mapping_ids:
            mapping = await self.repository.update_status(
                mapping_id, MappingStatus.CONFIRMED, REVIEWABLE_STATUSES, operator_id
            )
            if mapping is not None:
                confirmed.append(mapping)
        logger.info(
            "Bulk confirmed mappings",
            extra={"requested": len(mapping_ids), "confirmed": len(confirmed)},
        )
        return confirmed

    async def manual_mapping(
        self,
        chunk_id: str,
        topic_id: str,
        operator_id: str,
        reasoning: Optional[str] = None,
    ) -> TopicMapping:
        """Map a chunk to a topic by hand, with full confidence."""
        mapping = await self.repository.upsert_mapping(
            TopicMapping(
                chunk_id=chunk_id,
                topic_id=topic_id,
                confidence_score=1.0,
                status=MappingStatus.MANUAL,
                reasoning=reasoning,
                confirmed_by=operator_id,
                confirmed_at=datetime.now(timezone.utc),
            )
        )
        logger.info(
            "Recorded manual mapping",
            extra={
                "mapping_id": mapping.id,
                "chunk_id": chunk_id,
                "topic_id": topic_id,
                "operator_id": operator_id,
            },
        )
        return mapping

    async def _review(
        self,
        mapping_id: str,
        status: MappingStatus,
        operation: str,
        operator_id: Optional[str],
    ) -> TopicMapping:
        mapping = await self.repository.update_status(
            mapping_id, status, REVIEWABLE_STATUSES, operator_id
        )
        if mapping is None:
            current = await self.get_mapping(mapping_id)
            raise MappingStateError(mapping_id, current.status, operation)

        logger.info(
            "Reviewed topic mapping",
            extra={
                "mapping_id": mapping_id,
                "status": status.value,
                "operator_id": operator_id,
            },
        )
        return mapping
