"""Curation item lifecycle state engine and persistence.

Items progress through a fixed graph:
- draft → candidate → validated → approved

Terminal rejection leaves the graph through a separate RejectedItem
record. State changes use optimistic concurrency on the item's version.
"""

from src.curation.state.models import (
    LIFECYCLE_ORDER,
    VALID_TRANSITIONS,
    ApprovalEvent,
    ApprovalType,
    CEFRLevel,
    CurationItem,
    Deprecation,
    ItemType,
    LifecycleState,
    RejectedItem,
    StateTransitionEvent,
    is_valid_transition,
    next_state,
)
from src.curation.state.machine import (
    MAX_REPLACEMENT_DEPTH,
    ApprovalError,
    ConcurrentModificationError,
    DeprecationError,
    DuplicateItemError,
    IllegalTransitionError,
    ImmutableItemError,
    ItemNotFoundError,
    ItemRepository,
    StateTransitionEngine,
)
from src.curation.state.memory import InMemoryItemRepository
from src.curation.state.repository import PostgresItemRepository

__all__ = [
    # Models
    "ApprovalEvent",
    "ApprovalType",
    "CEFRLevel",
    "CurationItem",
    "Deprecation",
    "ItemType",
    "LIFECYCLE_ORDER",
    "LifecycleState",
    "RejectedItem",
    "StateTransitionEvent",
    "VALID_TRANSITIONS",
    "is_valid_transition",
    "next_state",
    # State engine
    "ApprovalError",
    "ConcurrentModificationError",
    "DeprecationError",
    "DuplicateItemError",
    "IllegalTransitionError",
    "ImmutableItemError",
    "ItemNotFoundError",
    "ItemRepository",
    "MAX_REPLACEMENT_DEPTH",
    "StateTransitionEngine",
    # Repositories
    "InMemoryItemRepository",
    "PostgresItemRepository",
]
