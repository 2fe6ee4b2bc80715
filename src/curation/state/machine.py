"""State transition engine for curation items.

This module implements the StateTransitionEngine, the only component
allowed to change an item's lifecycle state. Every move is validated
against the fixed lifecycle graph, then applied with a compare-and-set
on the item's cached state and version, and logged as an immutable
StateTransitionEvent in the same unit of work.

Writes are linearized per item through optimistic concurrency rather
than item-level locks: when two transitions race, the loser receives a
ConcurrentModificationError and must re-read before retrying.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple, runtime_checkable

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
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
    is_valid_transition,
    next_state,
)


logger = logging.getLogger(__name__)


MAX_REPLACEMENT_DEPTH = 10


class IllegalTransitionError(Exception):
    """Raised when a move is not an edge of the lifecycle graph.

    This is a programming or data error and is never retried.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_state: LifecycleState,
        to_state: LifecycleState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or (
            f"Illegal transition from {from_state.value} to {to_state.value}"
        )
        super().__init__(self.message)


class ConcurrentModificationError(Exception):
    """Raised when another writer changed the item between read and write.

    Attributes:
        item_id: The contended item.
        item_type: Kind of the contended item.
        expected_version: The version that was read.
    """

    def __init__(self, item_id: str, item_type: ItemType, expected_version: int):
        self.item_id = item_id
        self.item_type = item_type
        self.expected_version = expected_version
        super().__init__(
            f"Concurrent modification of {item_type.value}:{item_id} "
            f"(expected version {expected_version})"
        )


class ItemNotFoundError(Exception):
    """Raised when a curation item does not exist."""

    def __init__(self, item_id: str, item_type: ItemType):
        self.item_id = item_id
        self.item_type = item_type
        super().__init__(f"Curation item not found: {item_type.value}:{item_id}")


class DuplicateItemError(Exception):
    """Raised when creating an item whose (item_type, item_id) exists."""

    def __init__(self, item_id: str, item_type: ItemType):
        self.item_id = item_id
        self.item_type = item_type
        super().__init__(f"Curation item already exists: {item_type.value}:{item_id}")


class ImmutableItemError(Exception):
    """Raised when modifying an approved item.

    Approved content changes only through deprecation.
    """

    def __init__(self, item_id: str, item_type: ItemType, operation: str):
        self.item_id = item_id
        self.item_type = item_type
        self.operation = operation
        super().__init__(
            f"Cannot {operation} approved item {item_type.value}:{item_id}; "
            "deprecate it instead"
        )


class ApprovalError(Exception):
    """Raised when an approval request is invalid."""


class DeprecationError(Exception):
    """Raised when a deprecation request is invalid."""


@runtime_checkable
class ItemRepository(Protocol):
    """Protocol defining persistence for curation items and their records.

    apply_transition() and update_data() are compare-and-set operations:
    they succeed only if the stored item still has version
    item.version - 1 (and, for transitions, the event's from_state) and
    is not rejected.
    """

    async def create(self, item: CurationItem) -> bool:
        """Insert a new item. Returns False if it already exists."""
        ...

    async def get(self, item_id: str, item_type: ItemType) -> Optional[CurationItem]:
        ...

    async def list_by_state(
        self,
        state: LifecycleState,
        item_type: Optional[ItemType] = None,
        limit: Optional[int] = None,
    ) -> List[CurationItem]:
        """List non-rejected items in a state, oldest first."""
        ...

    async def apply_transition(
        self,
        item: CurationItem,
        event: StateTransitionEvent,
        approval: Optional[ApprovalEvent] = None,
    ) -> bool:
        """Atomically update the cached state and append the event.

        Returns:
            True if applied, False on a compare-and-set conflict.
        """
        ...

    async def update_data(self, item: CurationItem) -> bool:
        """Replace the item's data with a version check."""
        ...

    async def list_events(
        self, item_id: str, item_type: ItemType
    ) -> List[StateTransitionEvent]:
        """List the item's transition events in the order written."""
        ...

    async def mark_rejected(self, rejection: RejectedItem) -> Optional[RejectedItem]:
        """Write the rejection record and flag the item, atomically.

        Returns:
            The stored record (the existing one if already rejected), or
            None if the item is missing or approved.
        """
        ...

    async def get_rejection(
        self, item_id: str, item_type: ItemType
    ) -> Optional[RejectedItem]:
        ...

    async def list_rejections(
        self, item_type: Optional[ItemType] = None
    ) -> List[RejectedItem]:
        ...

    async def get_approval(
        self, item_id: str, item_type: ItemType
    ) -> Optional[ApprovalEvent]:
        ...

    async def add_deprecation(self, deprecation: Deprecation) -> bool:
        """Insert a deprecation. Returns False if one already exists."""
        ...

    async def get_deprecation(
        self, item_id: str, item_type: ItemType
    ) -> Optional[Deprecation]:
        ...


class StateTransitionEngine:
    """Validates and records lifecycle moves for curation items.

    The engine enforces these rules:
    - Only edges of VALID_TRANSITIONS are ever written
    - Every move appends exactly one StateTransitionEvent
    - Cached state and event log are written in the same unit of work
    - Rejected items never move again
    - Approved items are immutable; they can only be deprecated

    Example:
        >>> engine = StateTransitionEngine(InMemoryItemRepository())
        >>> await engine.create("u-1", ItemType.UTTERANCE, {"text": "Hola"})
        >>> await engine.transition("u-1", ItemType.UTTERANCE, LifecycleState.CANDIDATE)
    """

    def __init__(
        self,
        repository: ItemRepository,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.repository = repository
        self.event_emitter = event_emitter or NullEventEmitter()

    async def create(
        self,
        item_id: str,
        item_type: ItemType,
        data: Optional[Dict[str, Any]] = None,
        language: Optional[str] = None,
        level: Optional[CEFRLevel] = None,
    ) -> CurationItem:
        """Create a new item in the DRAFT state.

        Raises:
            ValueError: If item_id is empty.
            DuplicateItemError: If the item already exists.
        """
        if not item_id:
            raise ValueError("item_id cannot be empty")

        now = datetime.now(timezone.utc)
        item = CurationItem(
            item_id=item_id,
            item_type=item_type,
            state=LifecycleState.DRAFT,
            data=data or {},
            language=language,
            level=level,
            version=1,
            created_at=now,
            updated_at=now,
        )

        created = await self.repository.create(item)
        if not created:
            raise DuplicateItemError(item_id, item_type)

        logger.info(
            "Created curation item",
            extra={"item_id": item_id, "item_type": item_type.value},
        )
        return item

    async def get(self, item_id: str, item_type: ItemType) -> Optional[CurationItem]:
        return await self.repository.get(item_id, item_type)

    async def require(self, item_id: str, item_type: ItemType) -> CurationItem:
        """Get an item, raising ItemNotFoundError if it does not exist."""
        item = await self.repository.get(item_id, item_type)
        if item is None:
            raise ItemNotFoundError(item_id, item_type)
        return item

    async def list_by_state(
        self,
        state: LifecycleState,
        item_type: Optional[ItemType] = None,
        limit: Optional[int] = None,
    ) -> List[CurationItem]:
        return await self.repository.list_by_state(state, item_type, limit)

    async def transition(
        self,
        item_id: str,
        item_type: ItemType,
        to_state: LifecycleState,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CurationItem:
        """Move an item to the next lifecycle state.

        Args:
            item_id: Identifier of the item.
            item_type: Kind of the item.
            to_state: Target state; must be the successor of the current one.
            metadata: Optional context stored on the transition event.

        Returns:
            The updated item.

        Raises:
            ItemNotFoundError: If the item doesn't exist.
            IllegalTransitionError: If the edge is not in the graph or the
                item has been rejected.
            ConcurrentModificationError: If another writer won the race.
        """
        item = await self.require(item_id, item_type)
        updated, _ = await self._apply(item, to_state, metadata or {})
        return updated

    async def advance(
        self,
        item_id: str,
        item_type: ItemType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CurationItem:
        """Move an item to its single successor state."""
        item = await self.require(item_id, item_type)
        target = next_state(item.state)
        if target is None:
            raise IllegalTransitionError(
                item.state,
                item.state,
                f"{item.state.value} is terminal for {item.key}",
            )
        updated, _ = await self._apply(item, target, metadata or {})
        return updated

    async def _apply(
        self,
        item: CurationItem,
        to_state: LifecycleState,
        metadata: Dict[str, Any],
        approval: Optional[ApprovalEvent] = None,
    ) -> Tuple[CurationItem, StateTransitionEvent]:
        from_state = item.state

        if item.rejected:
            raise IllegalTransitionError(
                from_state,
                to_state,
                f"Item {item.key} has been rejected and left the pipeline",
            )

        if not is_valid_transition(from_state, to_state):
            logger.warning(
                "Illegal state transition attempted",
                extra={
                    "item_id": item.item_id,
                    "item_type": item.item_type.value,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                },
            )
            raise IllegalTransitionError(from_state, to_state)

        now = datetime.now(timezone.utc)
        event = StateTransitionEvent(
            item_id=item.item_id,
            item_type=item.item_type,
            from_state=from_state,
            to_state=to_state,
            metadata=metadata,
            created_at=now,
        )
        updated = item.model_copy(
            update={
                "state": to_state,
                "updated_at": now,
                "version": item.version + 1,
            }
        )

        applied = await self.repository.apply_transition(updated, event, approval)
        if not applied:
            logger.warning(
                "Concurrent modification during transition",
                extra={
                    "item_id": item.item_id,
                    "item_type": item.item_type.value,
                    "expected_version": item.version,
                },
            )
            raise ConcurrentModificationError(item.item_id, item.item_type, item.version)

        logger.info(
            "Transitioned curation item",
            extra={
                "item_id": item.item_id,
                "item_type": item.item_type.value,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "version": updated.version,
            },
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.STATE_TRANSITION,
                entity_type=item.item_type.value,
                entity_id=item.item_id,
                details={"from_state": from_state.value, "to_state": to_state.value},
            )
        )
        return updated, event

    async def update_data(
        self,
        item_id: str,
        item_type: ItemType,
        data: Dict[str, Any],
    ) -> CurationItem:
        """Replace an item's content without changing its state.

        Raises:
            ItemNotFoundError: If the item doesn't exist.
            ImmutableItemError: If the item is approved.
            IllegalTransitionError: If the item is rejected.
            ConcurrentModificationError: If another writer won the race.
        """
        item = await self.require(item_id, item_type)
        if item.state == LifecycleState.APPROVED:
            raise ImmutableItemError(item_id, item_type, "update")
        if item.rejected:
            raise IllegalTransitionError(
                item.state, item.state, f"Item {item.key} has been rejected"
            )

        updated = item.model_copy(
            update={
                "data": data,
                "updated_at": datetime.now(timezone.utc),
                "version": item.version + 1,
            }
        )
        if not await self.repository.update_data(updated):
            raise ConcurrentModificationError(item_id, item_type, item.version)
        return updated

    async def reject(
        self,
        item_id: str,
        item_type: ItemType,
        reason: str,
        operator_id: Optional[str] = None,
    ) -> RejectedItem:
        """Permanently reject an item.

        The item leaves the pipeline: a RejectedItem record is written and
        the item is flagged so no further transition is accepted. Calling
        reject on an already-rejected item returns the existing record.

        Raises:
            ValueError: If reason is empty.
            ItemNotFoundError: If the item doesn't exist.
            ImmutableItemError: If the item is approved.
        """
        if not reason or not reason.strip():
            raise ValueError("reason cannot be empty")

        item = await self.require(item_id, item_type)

        if item.rejected:
            existing = await self.repository.get_rejection(item_id, item_type)
            if existing is not None:
                return existing

        if item.state == LifecycleState.APPROVED:
            raise ImmutableItemError(item_id, item_type, "reject")

        rejection = RejectedItem(
            item_id=item_id,
            item_type=item_type,
            reason=reason,
            operator_id=operator_id,
            rejected_state=item.state,
            rejected_data=item.data,
        )
        stored = await self.repository.mark_rejected(rejection)
        if stored is None:
            # Approved between our read and the write
            raise ConcurrentModificationError(item_id, item_type, item.version)

        if stored.rejected_at == rejection.rejected_at:
            logger.warning(
                "Rejected curation item",
                extra={
                    "item_id": item_id,
                    "item_type": item_type.value,
                    "state": item.state.value,
                    "reason": reason,
                    "operator_id": operator_id,
                },
            )
            await self.event_emitter.emit(
                CurationEvent(
                    event_type=EventType.ITEM_REJECTED,
                    entity_type=item_type.value,
                    entity_id=item_id,
                    details={"reason": reason, "state": item.state.value},
                )
            )
        return stored

    async def list_rejections(
        self, item_type: Optional[ItemType] = None
    ) -> List[RejectedItem]:
        """Rejected items, oldest first, optionally of one type."""
        rejections = await self.repository.list_rejections(item_type)
        return sorted(rejections, key=lambda r: r.rejected_at)

    async def approve(
        self,
        item_id: str,
        item_type: ItemType,
        approval_type: ApprovalType = ApprovalType.MANUAL,
        operator_id: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> CurationItem:
        """Approve a validated item and record who approved it.

        Raises:
            ApprovalError: If a manual approval has no operator.
            IllegalTransitionError: If the item is not VALIDATED.
            ConcurrentModificationError: If another writer won the race.
        """
        if approval_type == ApprovalType.MANUAL and not operator_id:
            raise ApprovalError("Manual approval requires an operator_id")

        item = await self.require(item_id, item_type)
        approval = ApprovalEvent(
            item_id=item_id,
            item_type=item_type,
            approval_type=approval_type,
            operator_id=operator_id,
            notes=notes,
        )
        metadata: Dict[str, Any] = {"approval_type": approval_type.value}
        if operator_id:
            metadata["operator_id"] = operator_id

        updated, _ = await self._apply(
            item, LifecycleState.APPROVED, metadata, approval=approval
        )

        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.ITEM_APPROVED,
                entity_type=item_type.value,
                entity_id=item_id,
                details={"approval_type": approval_type.value},
            )
        )
        return updated

    async def deprecate(
        self,
        item_id: str,
        item_type: ItemType,
        reason: str,
        operator_id: str,
        replacement_id: Optional[str] = None,
    ) -> Deprecation:
        """Mark an approved item obsolete, optionally naming its replacement.

        Raises:
            DeprecationError: If the item is not approved, is already
                deprecated, or the replacement is invalid.
        """
        if not operator_id:
            raise DeprecationError("Deprecation requires an operator_id")

        item = await self.require(item_id, item_type)
        if item.state != LifecycleState.APPROVED:
            raise DeprecationError(
                f"Only approved items can be deprecated; {item.key} is {item.state.value}"
            )

        if replacement_id is not None:
            if replacement_id == item_id:
                raise DeprecationError("An item cannot replace itself")
            replacement = await self.repository.get(replacement_id, item_type)
            if replacement is None:
                raise DeprecationError(
                    f"Replacement {item_type.value}:{replacement_id} does not exist"
                )

        deprecation = Deprecation(
            item_id=item_id,
            item_type=item_type,
            reason=reason,
            operator_id=operator_id,
            replacement_id=replacement_id,
        )
        if not await self.repository.add_deprecation(deprecation):
            raise DeprecationError(f"Item {item.key} is already deprecated")

        logger.info(
            "Deprecated curation item",
            extra={
                "item_id": item_id,
                "item_type": item_type.value,
                "replacement_id": replacement_id,
            },
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.ITEM_DEPRECATED,
                entity_type=item_type.value,
                entity_id=item_id,
                details={"replacement_id": replacement_id},
            )
        )
        return deprecation

    async def replacement_chain(
        self,
        item_id: str,
        item_type: ItemType,
        max_depth: int = MAX_REPLACEMENT_DEPTH,
    ) -> List[str]:
        """Follow replacement links from a deprecated item.

        Returns:
            The ids of successive replacements, nearest first. Stops at
            an item that is not deprecated, at a cycle, or at max_depth.
        """
        chain: List[str] = []
        seen = {item_id}
        current = item_id

        for _ in range(max_depth):
            deprecation = await self.repository.get_deprecation(current, item_type)
            if deprecation is None or deprecation.replacement_id is None:
                break
            current = deprecation.replacement_id
            if current in seen:
                break
            seen.add(current)
            chain.append(current)

        return chain

    async def history(
        self, item_id: str, item_type: ItemType
    ) -> List[StateTransitionEvent]:
        return await self.repository.list_events(item_id, item_type)

    @staticmethod
    def derive_state(events: List[StateTransitionEvent]) -> LifecycleState:
        """Derive the current state from an item's event log."""
        if not events:
            return LifecycleState.DRAFT
        return events[-1].to_state
