"""Topic mapping and transformation job models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from src.curation.state.models import CEFRLevel, ItemType


DEFAULT_AUTO_MAP_THRESHOLD = 0.3
DEFAULT_MIN_CONFIDENCE = 0.3


def _new_id() -> str:
    return uuid.uuid4().hex


class MappingStatus(str, Enum):
    """Review status of a chunk-to-topic mapping.

    Attributes:
        PENDING: Low-confidence mapping awaiting operator review.
        AUTO_MAPPED: Confident enough to transform without review.
        CONFIRMED: Accepted by an operator.
        REJECTED: Dismissed by an operator.
        MANUAL: Created or re-pointed by an operator.
    """

    PENDING = "pending"
    AUTO_MAPPED = "auto_mapped"
    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    MANUAL = "manual"


REVIEWABLE_STATUSES = frozenset({MappingStatus.PENDING, MappingStatus.AUTO_MAPPED})

TRANSFORMABLE_STATUSES = frozenset(
    {MappingStatus.AUTO_MAPPED, MappingStatus.CONFIRMED, MappingStatus.MANUAL}
)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class TopicMapping(BaseModel):
    """Association of a document chunk with a curriculum topic."""

    id: str = Field(default_factory=_new_id)

    chunk_id: str = Field(..., min_length=1, description="Opaque chunk identifier")

    topic_id: str = Field(..., min_length=1)

    confidence_score: float = Field(..., ge=0.0, le=1.0)

    status: MappingStatus = MappingStatus.PENDING

    reasoning: Optional[str] = None

    confirmed_by: Optional[str] = None

    confirmed_at: Optional[datetime] = None

    language: Optional[str] = None

    level: Optional[CEFRLevel] = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class TransformationResult(BaseModel):
    """What the transformation service returned for one mapping.

    parsed_result["items"] is a list of item payloads. Each payload
    should carry a "text" field; "item_type", "language" and "level" may
    be given per payload or at the top level of parsed_result.
    """

    parsed_result: Dict[str, Any] = Field(default_factory=dict)

    tokens_in: int = Field(default=0, ge=0)

    tokens_out: int = Field(default=0, ge=0)

    cost_usd: float = Field(default=0.0, ge=0.0)

    duration_ms: int = Field(default=0, ge=0)

    @property
    def items(self) -> List[Dict[str, Any]]:
        items = self.parsed_result.get("items") or []
        return [item for item in items if isinstance(item, dict)]


class TransformationJob(BaseModel):
    """One transformation run of a mapping, with its usage accounting."""

    id: str = Field(default_factory=_new_id)

    mapping_id: str = Field(..., min_length=1)

    status: JobStatus = JobStatus.PENDING

    parsed_result: Optional[Dict[str, Any]] = None

    tokens_input: int = 0

    tokens_output: int = 0

    cost_usd: float = 0.0

    duration_ms: int = 0

    error_message: Optional[str] = None

    retry_count: int = Field(default=0, ge=0)

    item_ids: List[str] = Field(
        default_factory=list,
        description="Curation items created from the parsed result",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    completed_at: Optional[datetime] = None


def draft_item_type(entry: Dict[str, Any], parsed_result: Dict[str, Any]) -> ItemType:
    """Resolve the item type of one transformed payload."""
    raw = entry.get("item_type") or parsed_result.get("item_type") or ItemType.MEANING.value
    return ItemType(raw)
