"""Curation event models for observability.

This module defines the data models for curation events:
- EventType: Enum of all event types emitted by the curation core
- CurationEvent: Structured event with subject and contextual details

Events make pipeline activity visible to log aggregation and metrics
without coupling the core services to any particular sink.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field, field_serializer


class EventType(str, Enum):
    """Types of events emitted by the curation core.

    Attributes:
        STATE_TRANSITION: Item moved along the lifecycle graph.
        ITEM_REJECTED: Item permanently rejected.
        ITEM_APPROVED: Item approved (automatic or manual).
        ITEM_DEPRECATED: Approved item marked obsolete.
        GATE_EVALUATED: A gate run finished (pass or fail).
        GATE_FAILED: A single gate returned failed.
        RETRY_SCHEDULED: A regeneration attempt was queued.
        RETRY_EXHAUSTED: Retry budget consumed; item rejected.
        LEASE_RECLAIMED: A stale work lease was deleted.
        PIPELINE_STATUS_CHANGED: Aggregated pipeline status changed.
        TRANSFORMATION_COMPLETED: A transformation job produced drafts.
        TRANSFORMATION_FAILED: A transformation job gave up.
        ERROR: Unexpected error during a runner pass.
    """

    STATE_TRANSITION = "state_transition"
    ITEM_REJECTED = "item_rejected"
    ITEM_APPROVED = "item_approved"
    ITEM_DEPRECATED = "item_deprecated"
    GATE_EVALUATED = "gate_evaluated"
    GATE_FAILED = "gate_failed"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_EXHAUSTED = "retry_exhausted"
    LEASE_RECLAIMED = "lease_reclaimed"
    PIPELINE_STATUS_CHANGED = "pipeline_status_changed"
    TRANSFORMATION_COMPLETED = "transformation_completed"
    TRANSFORMATION_FAILED = "transformation_failed"
    ERROR = "error"


class CurationEvent(BaseModel):
    """Structured event emitted by the curation core.

    Attributes:
        event_type: The category of event.
        entity_type: Kind of subject (item type, "lease", "pipeline", ...).
        entity_id: Identifier of the subject.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Details Field Conventions:
        STATE_TRANSITION: from_state, to_state
        GATE_FAILED: gate_name, attempt_number, error_message
        GATE_EVALUATED: all_passed, gates_run, duration_seconds
        RETRY_SCHEDULED: retry_count, scheduled_at
        PIPELINE_STATUS_CHANGED: from_status, to_status, progress_percentage
    """

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    entity_type: str = Field(
        ...,
        min_length=1,
        description="Kind of subject the event is about",
    )

    entity_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the subject",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    @field_serializer("timestamp")
    def serialize_timestamp(self, value: datetime) -> str:
        return value.isoformat()

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary for structured logging.

        Example:
            >>> event = CurationEvent(
            ...     event_type=EventType.ITEM_REJECTED,
            ...     entity_type="utterance",
            ...     entity_id="u-1",
            ... )
            >>> event.to_log_dict()["event_type"]
            'item_rejected'
        """
        return {
            "event_type": self.event_type.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
