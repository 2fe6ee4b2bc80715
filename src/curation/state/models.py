"""Curation item lifecycle models.

This module defines the data models for the item lifecycle, including:
- LifecycleState: The four lifecycle states of a curation item
- CurationItem: Any entity flowing through the pipeline
- StateTransitionEvent: Immutable record of one lifecycle move
- RejectedItem: Terminal rejection record
- ApprovalEvent / Deprecation: Approval and obsolescence records
- VALID_TRANSITIONS: The fixed lifecycle graph

Rejection is not a lifecycle state. A rejected item leaves the graph and
is represented by a RejectedItem record instead of a backward move.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ItemType(str, Enum):
    """Kinds of curated content."""

    MEANING = "meaning"
    UTTERANCE = "utterance"
    GRAMMAR_RULE = "grammar_rule"
    EXERCISE = "exercise"


class CEFRLevel(str, Enum):
    """CEFR proficiency tiers attached to curriculum content."""

    A0 = "A0"
    A1 = "A1"
    A2 = "A2"
    B1 = "B1"
    B2 = "B2"
    C1 = "C1"
    C2 = "C2"


class LifecycleState(str, Enum):
    """Lifecycle states of a curation item.

    Stage Flow:
        draft → candidate → validated → approved

    There are no skips, no cycles and no reverse moves. approved is
    terminal.

    Attributes:
        DRAFT: Freshly generated content awaiting promotion.
        CANDIDATE: Submitted for quality gate evaluation.
        VALIDATED: All quality gates passed; awaiting approval.
        APPROVED: Visible to learners; immutable from here on.
    """

    DRAFT = "draft"
    CANDIDATE = "candidate"
    VALIDATED = "validated"
    APPROVED = "approved"


class ApprovalType(str, Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


class CurationItem(BaseModel):
    """An entity flowing through the curation pipeline.

    The state field is a cache of the latest StateTransitionEvent's
    to_state. It only changes through the state transition engine, which
    uses the version field for optimistic concurrency.

    Attributes:
        item_id: Identifier unique within item_type.
        item_type: Kind of content.
        state: Cached current lifecycle state.
        data: Content payload (text, translation, explanation, ...).
        language: ISO language code of the content.
        level: CEFR level of the content.
        version: Optimistic concurrency counter.
        rejected: True once the item has a terminal RejectedItem record.
    """

    item_id: str = Field(
        ...,
        min_length=1,
        description="Identifier unique within item_type",
    )

    item_type: ItemType = Field(
        ...,
        description="Kind of curated content",
    )

    state: LifecycleState = Field(
        default=LifecycleState.DRAFT,
        description="Cached current lifecycle state",
    )

    data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Content payload",
    )

    language: Optional[str] = Field(
        default=None,
        description="ISO language code of the content",
    )

    level: Optional[CEFRLevel] = Field(
        default=None,
        description="CEFR level of the content",
    )

    version: int = Field(
        default=1,
        ge=1,
        description="Optimistic concurrency counter",
    )

    rejected: bool = Field(
        default=False,
        description="True once the item has been permanently rejected",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )

    @property
    def key(self) -> str:
        return f"{self.item_type.value}:{self.item_id}"


class StateTransitionEvent(BaseModel):
    """Immutable, append-only record of one lifecycle move."""

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    from_state: LifecycleState = Field(
        ...,
        description="The lifecycle state before this transition",
    )

    to_state: LifecycleState = Field(
        ...,
        description="The lifecycle state after this transition",
    )

    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Optional context about the transition",
    )

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class RejectedItem(BaseModel):
    """Terminal rejection record; at most one per item."""

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    reason: str = Field(
        ...,
        min_length=1,
        description="Why the item was permanently rejected",
    )

    operator_id: Optional[str] = Field(
        default=None,
        description="Operator who rejected the item, None for automatic rejection",
    )

    rejected_state: LifecycleState = Field(
        ...,
        description="Lifecycle state the item was in when rejected",
    )

    rejected_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Snapshot of the item's data at rejection time",
    )

    rejected_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class ApprovalEvent(BaseModel):
    """Record written alongside the validated → approved transition."""

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    approval_type: ApprovalType

    operator_id: Optional[str] = None

    notes: Optional[str] = None

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


class Deprecation(BaseModel):
    """Marks an approved item obsolete. Created once and never mutated."""

    item_id: str = Field(..., min_length=1)

    item_type: ItemType

    reason: str = Field(..., min_length=1)

    operator_id: str = Field(..., min_length=1)

    replacement_id: Optional[str] = Field(
        default=None,
        description="Item of the same type that supersedes this one",
    )

    deprecated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )


# Valid lifecycle transitions
#
# Each state has at most one successor. approved is terminal; rejection
# exits the graph through RejectedItem instead of a backward edge.
VALID_TRANSITIONS: Dict[LifecycleState, List[LifecycleState]] = {
    LifecycleState.DRAFT: [LifecycleState.CANDIDATE],
    LifecycleState.CANDIDATE: [LifecycleState.VALIDATED],
    LifecycleState.VALIDATED: [LifecycleState.APPROVED],
    LifecycleState.APPROVED: [],
}


LIFECYCLE_ORDER: List[LifecycleState] = [
    LifecycleState.DRAFT,
    LifecycleState.CANDIDATE,
    LifecycleState.VALIDATED,
    LifecycleState.APPROVED,
]


def is_valid_transition(from_state: LifecycleState, to_state: LifecycleState) -> bool:
    """Check whether from_state → to_state is an edge of the lifecycle graph."""
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def next_state(state: LifecycleState) -> Optional[LifecycleState]:
    """Return the single successor of a state, or None if terminal."""
    successors = VALID_TRANSITIONS.get(state, [])
    return successors[0] if successors else None
