"""In-memory feedback repository for tests and local development."""

from datetime import datetime
from typing import Dict, List, Optional

from src.curation.feedback.models import (
    ItemVersion,
    OperatorFeedback,
    RetryQueueEntry,
    RetryStatus,
)
from src.curation.state.models import ItemType


class InMemoryFeedbackRepository:
    """Dict-backed implementation of FeedbackRepository.

    No method awaits between its read and its write, so version numbers,
    slots and claims are atomic under asyncio.
    """

    def __init__(self) -> None:
        self._feedback: Dict[str, OperatorFeedback] = {}
        self._versions: List[ItemVersion] = []
        self._entries: Dict[str, RetryQueueEntry] = {}

    async def add_feedback(self, feedback: OperatorFeedback) -> None:
        self._feedback[feedback.id] = feedback

    async def get_feedback(self, feedback_id: str) -> Optional[OperatorFeedback]:
        return self._feedback.get(feedback_id)

    async def list_feedback(
        self, item_id: str, item_type: ItemType
    ) -> List[OperatorFeedback]:
        feedback = [
            f for f in self._feedback.values()
            if f.item_id == item_id and f.item_type == item_type
        ]
        return sorted(feedback, key=lambda f: f.created_at)

    async def add_version(self, version: ItemVersion) -> ItemVersion:
        current = max(
            (
                v.version_number for v in self._versions
                if v.item_id == version.item_id and v.item_type == version.item_type
            ),
            default=0,
        )
        stored = version.model_copy(update={"version_number": current + 1})
        self._versions.append(stored)
        return stored

    async def list_versions(self, item_id: str, item_type: ItemType) -> List[ItemVersion]:
        versions = [
            v for v in self._versions
            if v.item_id == item_id and v.item_type == item_type
        ]
        return sorted(versions, key=lambda v: v.version_number)

    def _entries_for(self, item_id: str, item_type: ItemType) -> List[RetryQueueEntry]:
        return [
            e for e in self._entries.values()
            if e.item_id == item_id and e.item_type == item_type
        ]

    async def retry_slots_used(self, item_id: str, item_type: ItemType) -> int:
        entries = self._entries_for(item_id, item_type)
        return max(
            (max(e.slot, e.retry_count) for e in entries),
            default=0,
        )

    async def insert_retry_entry(self, entry: RetryQueueEntry) -> bool:
        if any(
            e.slot == entry.slot
            for e in self._entries_for(entry.item_id, entry.item_type)
        ):
            return False
        self._entries[entry.id] = entry
        return True

    async def list_due(self, now: datetime, limit: int) -> List[RetryQueueEntry]:
        due = [
            e for e in self._entries.values()
            if e.status == RetryStatus.PENDING
            and e.retry_count < e.max_retries
            and e.scheduled_at <= now
        ]
        due.sort(key=lambda e: e.scheduled_at)
        return due[:limit]

    async def claim_entry(self, entry_id: str) -> Optional[RetryQueueEntry]:
        entry = self._entries.get(entry_id)
        if entry is None or entry.status != RetryStatus.PENDING:
            return None
        claimed = entry.model_copy(
            update={
                "status": RetryStatus.PROCESSING,
                "retry_count": entry.retry_count + 1,
            }
        )
        self._entries[entry_id] = claimed
        return claimed

    def _update(self, entry_id: str, **changes) -> None:
        entry = self._entries.get(entry_id)
        if entry is not None:
            self._entries[entry_id] = entry.model_copy(update=changes)

    async def complete_entry(self, entry_id: str, processed_at: datetime) -> None:
        self._update(entry_id, status=RetryStatus.COMPLETED, processed_at=processed_at)

    async def reschedule_entry(
        self, entry_id: str, scheduled_at: datetime, error_message: str
    ) -> None:
        self._update(
            entry_id,
            status=RetryStatus.PENDING,
            scheduled_at=scheduled_at,
            error_message=error_message,
        )

    async def fail_entry(
        self, entry_id: str, processed_at: datetime, error_message: str
    ) -> None:
        self._update(
            entry_id,
            status=RetryStatus.FAILED,
            processed_at=processed_at,
            error_message=error_message,
        )

    async def list_entries(self, item_id: str, item_type: ItemType) -> List[RetryQueueEntry]:
        return sorted(self._entries_for(item_id, item_type), key=lambda e: e.slot)
