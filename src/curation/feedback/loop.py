"""Retry and feedback loop.

Turns operator rejections (and failed gate runs) into bounded, versioned
regeneration attempts:

1. record_feedback() stores the verdict. flag stops there. reject and
   revise enqueue a retry, then snapshot the item as a new ItemVersion.
2. enqueue_retry() schedules a RetryQueueEntry with exponential backoff,
   or permanently rejects the item once max_retries are consumed.
3. process_due_retries() claims due entries under the item's work lease,
   asks the Regenerator for new content, and either moves the item on,
   reschedules, or gives up and rejects.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.feedback.models import (
    DEFAULT_MAX_RETRIES,
    FeedbackAction,
    FeedbackCategory,
    FeedbackHistory,
    ItemVersion,
    OperatorFeedback,
    RetryPassResult,
    RetryQueueEntry,
    RetryStatus,
)
from src.curation.leases.manager import WorkLeaseManager
from src.curation.leases.models import item_work_id
from src.curation.state.machine import (
    ConcurrentModificationError,
    IllegalTransitionError,
    ImmutableItemError,
    StateTransitionEngine,
)
from src.curation.state.models import CurationItem, ItemType, LifecycleState


logger = logging.getLogger(__name__)


ENQUEUE_CONFLICT_RETRIES = 3


class RetryLimitExceededError(Exception):
    """Raised when an item has used all of its regeneration retries.

    The item has already been permanently rejected when this is raised.

    Attributes:
        item_id: The exhausted item.
        item_type: Kind of the item.
        retry_count: Retries consumed.
        max_retries: The configured limit.
    """

    def __init__(
        self,
        item_id: str,
        item_type: ItemType,
        retry_count: int,
        max_retries: int,
    ):
        self.item_id = item_id
        self.item_type = item_type
        self.retry_count = retry_count
        self.max_retries = max_retries
        super().__init__(
            f"Retry limit exceeded for {item_type.value}:{item_id} "
            f"({retry_count}/{max_retries})"
        )


class FeedbackError(Exception):
    """Raised when feedback cannot be applied to an item."""


@runtime_checkable
class FeedbackRepository(Protocol):
    """Persistence for feedback, item versions and the retry queue."""

    async def add_feedback(self, feedback: OperatorFeedback) -> None:
        ...

    async def get_feedback(self, feedback_id: str) -> Optional[OperatorFeedback]:
        ...

    async def list_feedback(
        self, item_id: str, item_type: ItemType
    ) -> List[OperatorFeedback]:
        ...

    async def add_version(self, version: ItemVersion) -> ItemVersion:
        """Insert a snapshot with version_number = 1 + the item's highest."""
        ...

    async def list_versions(self, item_id: str, item_type: ItemType) -> List[ItemVersion]:
        ...

    async def retry_slots_used(self, item_id: str, item_type: ItemType) -> int:
        """Return max(highest slot, highest retry_count) over the item's entries."""
        ...

    async def insert_retry_entry(self, entry: RetryQueueEntry) -> bool:
        """Insert an entry. Returns False if its slot is already taken."""
        ...

    async def list_due(self, now: datetime, limit: int) -> List[RetryQueueEntry]:
        """Pending entries with retry_count < max_retries and scheduled_at <= now."""
        ...

    async def claim_entry(self, entry_id: str) -> Optional[RetryQueueEntry]:
        """Move a pending entry to processing and increment retry_count.

        Returns:
            The claimed entry, or None if it was no longer pending.
        """
        ...

    async def complete_entry(self, entry_id: str, processed_at: datetime) -> None:
        ...

    async def reschedule_entry(
        self, entry_id: str, scheduled_at: datetime, error_message: str
    ) -> None:
        ...

    async def fail_entry(
        self, entry_id: str, processed_at: datetime, error_message: str
    ) -> None:
        ...

    async def list_entries(self, item_id: str, item_type: ItemType) -> List[RetryQueueEntry]:
        ...


@runtime_checkable
class Regenerator(Protocol):
    """External collaborator that produces new content for an item."""

    async def regenerate(
        self, item: CurationItem, feedback: Optional[OperatorFeedback]
    ) -> Dict[str, Any]:
        """Return the item's new data payload.

        Raises:
            Exception: Any failure; recorded on the retry entry.
        """
        ...


class RetryFeedbackLoop:
    """Bounded, versioned regeneration driven by operator feedback.

    Example:
        >>> loop = RetryFeedbackLoop(engine, InMemoryFeedbackRepository(), leases, regen)
        >>> feedback_id = await loop.record_feedback(
        ...     "u-1", ItemType.UTTERANCE, FeedbackCategory.WRONG_LEVEL,
        ...     "Too advanced for A1", FeedbackAction.REVISE, operator_id="op-7",
        ... )
        >>> await loop.process_due_retries()
    """

    def __init__(
        self,
        engine: StateTransitionEngine,
        repository: FeedbackRepository,
        lease_manager: WorkLeaseManager,
        regenerator: Optional[Regenerator] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = 60.0,
        backoff_max_seconds: float = 3600.0,
        event_emitter: Optional[EventEmitter] = None,
    ):
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        self.engine = engine
        self.repository = repository
        self.lease_manager = lease_manager
        self.regenerator = regenerator
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.event_emitter = event_emitter or NullEventEmitter()

    def backoff(self, retries_used: int) -> timedelta:
        """Delay before the next attempt after retries_used attempts."""
        delay = self.backoff_seconds * (2 ** retries_used)
        return timedelta(seconds=min(delay, self.backoff_max_seconds))

    async def record_feedback(
        self,
        item_id: str,
        item_type: ItemType,
        category: FeedbackCategory,
        comment: str,
        action: FeedbackAction,
        operator_id: Optional[str] = None,
        suggested_correction: Optional[str] = None,
    ) -> str:
        """Record feedback on an item and act on it.

        Returns:
            The feedback id.

        Raises:
            ItemNotFoundError: If the item doesn't exist.
            ImmutableItemError: If reject/revise targets an approved item.
            FeedbackError: If reject/revise targets a rejected item.
            RetryLimitExceededError: If the item's retries are used up;
                the item has been permanently rejected.
        """
        item = await self.engine.require(item_id, item_type)

        if action != FeedbackAction.FLAG:
            if item.state == LifecycleState.APPROVED:
                raise ImmutableItemError(item_id, item_type, action.value)
            if item.rejected:
                raise FeedbackError(f"Item {item.key} has already been rejected")

        feedback = OperatorFeedback(
            item_id=item_id,
            item_type=item_type,
            category=category,
            comment=comment,
            action=action,
            operator_id=operator_id,
            suggested_correction=suggested_correction,
        )
        await self.repository.add_feedback(feedback)

        logger.info(
            "Recorded feedback",
            extra={
                "item_id": item_id,
                "item_type": item_type.value,
                "feedback_id": feedback.id,
                "category": category.value,
                "action": action.value,
                "operator_id": operator_id,
            },
        )

        if action == FeedbackAction.FLAG:
            return feedback.id

        # Claim the retry slot before snapshotting; an exhausted budget writes no version
        await self.enqueue_retry(item_id, item_type, feedback.id)

        version = await self.repository.add_version(
            ItemVersion(
                item_id=item_id,
                item_type=item_type,
                data=item.data,
                feedback_id=feedback.id,
            )
        )
        logger.debug(
            "Snapshotted item version",
            extra={"item_id": item_id, "version_number": version.version_number},
        )
        return feedback.id

    async def enqueue_retry(
        self,
        item_id: str,
        item_type: ItemType,
        feedback_id: str,
    ) -> RetryQueueEntry:
        """Schedule a regeneration attempt for an item.

        Raises:
            ItemNotFoundError: If the item doesn't exist.
            ImmutableItemError: If the item is approved.
            FeedbackError: If the item has been rejected.
            RetryLimitExceededError: If max_retries are already consumed.
                No entry is created and the item is permanently rejected.
        """
        item = await self.engine.require(item_id, item_type)
        if item.state == LifecycleState.APPROVED:
            raise ImmutableItemError(item_id, item_type, "retry")
        if item.rejected:
            raise FeedbackError(f"Item {item.key} has already been rejected")

        for _ in range(ENQUEUE_CONFLICT_RETRIES):
            used = await self.repository.retry_slots_used(item_id, item_type)

            if used >= self.max_retries:
                await self._exhaust(
                    item_id,
                    item_type,
                    used,
                    f"Retry limit of {self.max_retries} reached",
                )
                raise RetryLimitExceededError(item_id, item_type, used, self.max_retries)

            entry = RetryQueueEntry(
                item_id=item_id,
                item_type=item_type,
                feedback_id=feedback_id,
                slot=used + 1,
                retry_count=used,
                max_retries=self.max_retries,
                scheduled_at=datetime.now(timezone.utc) + self.backoff(used),
            )
            if await self.repository.insert_retry_entry(entry):
                logger.info(
                    "Scheduled retry",
                    extra={
                        "item_id": item_id,
                        "item_type": item_type.value,
                        "retry_count": entry.retry_count,
                        "scheduled_at": entry.scheduled_at.isoformat(),
                    },
                )
                await self.event_emitter.emit(
                    CurationEvent(
                        event_type=EventType.RETRY_SCHEDULED,
                        entity_type=item_type.value,
                        entity_id=item_id,
                        details={
                            "retry_count": entry.retry_count,
                            "scheduled_at": entry.scheduled_at.isoformat(),
                        },
                    )
                )
                return entry

        raise ConcurrentModificationError(item_id, item_type, used)

    async def has_open_retry(self, item_id: str, item_type: ItemType) -> bool:
        """True while a regeneration for the item is pending or running."""
        entries = await self.repository.list_entries(item_id, item_type)
        return any(entry.is_open for entry in entries)

    async def process_due_retries(self, limit: int = 50) -> RetryPassResult:
        """Claim and process due retry entries.

        Entries whose item is leased by another worker are skipped and
        picked up on a later pass.
        """
        summary = RetryPassResult()
        if self.regenerator is None:
            logger.debug("No regenerator configured; skipping retry processing")
            return summary

        due = await self.repository.list_due(datetime.now(timezone.utc), limit)

        for entry in due:
            handle = await self.lease_manager.try_acquire(
                item_work_id(entry.item_type.value, entry.item_id)
            )
            if handle is None:
                summary.skipped += 1
                continue

            try:
                claimed = await self.repository.claim_entry(entry.id)
                if claimed is None:
                    summary.skipped += 1
                    continue
                outcome = await self._process_claimed(claimed)
            finally:
                await self.lease_manager.release(handle)

            if outcome == RetryStatus.COMPLETED:
                summary.completed += 1
            elif outcome == RetryStatus.PENDING:
                summary.rescheduled += 1
            else:
                summary.failed += 1

        if due:
            logger.info(
                "Processed due retries",
                extra=summary.model_dump(),
            )
        return summary

    async def _process_claimed(self, entry: RetryQueueEntry) -> RetryStatus:
        item = await self.engine.get(entry.item_id, entry.item_type)
        if item is None or item.rejected:
            await self.repository.fail_entry(
                entry.id,
                datetime.now(timezone.utc),
                "Item no longer exists or was rejected",
            )
            return RetryStatus.FAILED

        feedback = await self.repository.get_feedback(entry.feedback_id)

        try:
            data = await self.regenerator.regenerate(item, feedback)
            await self.engine.update_data(item.item_id, item.item_type, data)
            if item.state == LifecycleState.DRAFT:
                await self.engine.advance(
                    item.item_id,
                    item.item_type,
                    {"reason": "regenerated", "retry_count": entry.retry_count},
                )
        except (ConcurrentModificationError, IllegalTransitionError) as e:
            return await self._handle_failure(entry, str(e))
        except Exception as e:
            logger.warning(
                "Regeneration failed",
                extra={
                    "item_id": entry.item_id,
                    "retry_count": entry.retry_count,
                    "error": str(e),
                },
            )
            return await self._handle_failure(entry, f"{type(e).__name__}: {e}")

        await self.repository.complete_entry(entry.id, datetime.now(timezone.utc))
        logger.info(
            "Regenerated item",
            extra={
                "item_id": entry.item_id,
                "item_type": entry.item_type.value,
                "retry_count": entry.retry_count,
            },
        )
        return RetryStatus.COMPLETED

    async def _handle_failure(self, entry: RetryQueueEntry, error: str) -> RetryStatus:
        if entry.retry_count < entry.max_retries:
            scheduled_at = datetime.now(timezone.utc) + self.backoff(entry.retry_count)
            await self.repository.reschedule_entry(entry.id, scheduled_at, error)
            await self.event_emitter.emit(
                CurationEvent(
                    event_type=EventType.RETRY_SCHEDULED,
                    entity_type=entry.item_type.value,
                    entity_id=entry.item_id,
                    details={
                        "retry_count": entry.retry_count,
                        "scheduled_at": scheduled_at.isoformat(),
                        "error": error,
                    },
                )
            )
            return RetryStatus.PENDING

        await self.repository.fail_entry(entry.id, datetime.now(timezone.utc), error)
        await self._exhaust(
            entry.item_id,
            entry.item_type,
            entry.retry_count,
            f"Regeneration failed after {entry.retry_count} attempts: {error}",
        )
        return RetryStatus.FAILED

    async def _exhaust(
        self,
        item_id: str,
        item_type: ItemType,
        retries_used: int,
        reason: str,
    ) -> None:
        await self.engine.reject(item_id, item_type, reason)
        logger.warning(
            "Retry budget exhausted; item rejected",
            extra={
                "item_id": item_id,
                "item_type": item_type.value,
                "retry_count": retries_used,
                "max_retries": self.max_retries,
            },
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.RETRY_EXHAUSTED,
                entity_type=item_type.value,
                entity_id=item_id,
                details={"retry_count": retries_used, "reason": reason},
            )
        )

    async def history(self, item_id: str, item_type: ItemType) -> FeedbackHistory:
        return FeedbackHistory(
            item_id=item_id,
            item_type=item_type,
            feedback=await self.repository.list_feedback(item_id, item_type),
            versions=await self.repository.list_versions(item_id, item_type),
            retries=await self.repository.list_entries(item_id, item_type),
        )
