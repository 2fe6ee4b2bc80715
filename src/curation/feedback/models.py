"""Operator feedback, item version and retry queue models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.curation.state.models import ItemType


DEFAULT_MAX_RETRIES = 3


def _new_id() -> str:
    return uuid.uuid4().hex


class FeedbackCategory(str, Enum):
    INCORRECT_CONTENT = "incorrect_content"
    WRONG_LEVEL = "wrong_level"
    POOR_QUALITY = "poor_quality"
    MISSING_CONTEXT = "missing_context"
    GRAMMATICAL_ERROR = "grammatical_error"
    INAPPROPRIATE = "inappropriate"
    DUPLICATE = "duplicate"
    OFF_TOPIC = "off_topic"
    OTHER = "other"


class FeedbackAction(str, Enum):
    """What the operator wants done with the item.

    Attributes:
        REJECT: Discard this content and regenerate it.
        REVISE: Regenerate with the operator's comment as guidance.
        FLAG: Leave a note for a human; consumes no retry.
    """

    REJECT = "reject"
    REVISE = "revise"
    FLAG = "flag"


class RetryStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class OperatorFeedback(BaseModel):
    """An operator's (or a gate run's) verdict on an item."""

    id: str = Field(default_factory=_new_id)

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    category: FeedbackCategory

    comment: str = Field(
        ...,
        min_length=1,
        description="Reason for the feedback, used to guide regeneration",
    )

    action: FeedbackAction

    operator_id: Optional[str] = Field(
        default=None,
        description="Operator who gave the feedback, None for automated feedback",
    )

    suggested_correction: Optional[str] = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class ItemVersion(BaseModel):
    """Snapshot of an item's data taken before a regeneration attempt.

    version_number strictly increases per item, starting at 1.
    """

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    version_number: int = Field(default=1, ge=1)

    data: Dict[str, Any] = Field(default_factory=dict)

    feedback_id: Optional[str] = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class RetryQueueEntry(BaseModel):
    """One scheduled regeneration of an item.

    retry_count is cumulative for the item across entries: a new entry
    starts at the number of retries already consumed, and each claim
    increments it. slot is the entry's ordinal for the item and is
    unique per item, which linearizes concurrent enqueues.
    """

    id: str = Field(default_factory=_new_id)

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    feedback_id: str = Field(..., min_length=1)

    status: RetryStatus = RetryStatus.PENDING

    slot: int = Field(default=1, ge=1)

    retry_count: int = Field(default=0, ge=0)

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)

    scheduled_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    processed_at: Optional[datetime] = None

    error_message: Optional[str] = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def is_open(self) -> bool:
        return self.status in (RetryStatus.PENDING, RetryStatus.PROCESSING)


class FeedbackHistory(BaseModel):
    """Everything an operator needs to review an item's retry history."""

    item_id: str
    item_type: ItemType
    feedback: List[OperatorFeedback] = Field(default_factory=list)
    versions: List[ItemVersion] = Field(default_factory=list)
    retries: List[RetryQueueEntry] = Field(default_factory=list)


class RetryPassResult(BaseModel):
    """Counts from one pass over the due retry entries."""

    completed: int = 0
    rescheduled: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.completed + self.rescheduled + self.failed
