"""In-memory item repository for tests and local development.

No method awaits between its read and its write, so each
compare-and-set is atomic under a single asyncio event loop.
"""

from typing import Dict, List, Optional, Tuple

from src.curation.state.models import (
    ApprovalEvent,
    CurationItem,
    Deprecation,
    ItemType,
    LifecycleState,
    RejectedItem,
    StateTransitionEvent,
)


Key = Tuple[ItemType, str]


class InMemoryItemRepository:
    """Dict-backed implementation of ItemRepository."""

    def __init__(self) -> None:
        self._items: Dict[Key, CurationItem] = {}
        self._events: Dict[Key, List[StateTransitionEvent]] = {}
        self._rejections: Dict[Key, RejectedItem] = {}
        self._approvals: Dict[Key, ApprovalEvent] = {}
        self._deprecations: Dict[Key, Deprecation] = {}

    async def create(self, item: CurationItem) -> bool:
        key = (item.item_type, item.item_id)
        if key in self._items:
            return False
        self._items[key] = item
        self._events[key] = []
        return True

    async def get(self, item_id: str, item_type: ItemType) -> Optional[CurationItem]:
        return self._items.get((item_type, item_id))

    async def list_by_state(
        self,
        state: LifecycleState,
        item_type: Optional[ItemType] = None,
        limit: Optional[int] = None,
    ) -> List[CurationItem]:
        items = [
            item
            for item in self._items.values()
            if item.state == state
            and not item.rejected
            and (item_type is None or item.item_type == item_type)
        ]
        items.sort(key=lambda i: i.updated_at)
        return items[:limit] if limit is not None else items

    def _matches(self, item: CurationItem) -> Optional[CurationItem]:
        stored = self._items.get((item.item_type, item.item_id))
        if stored is None or stored.rejected or stored.version != item.version - 1:
            return None
        return stored

    async def apply_transition(
        self,
        item: CurationItem,
        event: StateTransitionEvent,
        approval: Optional[ApprovalEvent] = None,
    ) -> bool:
        stored = self._matches(item)
        if stored is None or stored.state != event.from_state:
            return False
        key = (item.item_type, item.item_id)
        self._items[key] = item
        self._events[key].append(event)
        if approval is not None:
            self._approvals[key] = approval
        return True

    async def update_data(self, item: CurationItem) -> bool:
        stored = self._matches(item)
        if stored is None or stored.state != item.state:
            return False
        self._items[(item.item_type, item.item_id)] = item
        return True

    async def list_events(
        self, item_id: str, item_type: ItemType
    ) -> List[StateTransitionEvent]:
        return list(self._events.get((item_type, item_id), []))

    async def mark_rejected(self, rejection: RejectedItem) -> Optional[RejectedItem]:
        key = (rejection.item_type, rejection.item_id)
        existing = self._rejections.get(key)
        if existing is not None:
            return existing
        stored = self._items.get(key)
        if stored is None or stored.state == LifecycleState.APPROVED:
            return None
        self._rejections[key] = rejection
        self._items[key] = stored.model_copy(
            update={
                "rejected": True,
                "version": stored.version + 1,
                "updated_at": rejection.rejected_at,
            }
        )
        return rejection

    async def get_rejection(
        self, item_id: str, item_type: ItemType
    ) -> Optional[RejectedItem]:
        return self._rejections.get((item_type, item_id))

    async def list_rejections(
        self, item_type: Optional[ItemType] = None
    ) -> List[RejectedItem]:
        return [
            r for r in self._rejections.values()
            if item_type is None or r.item_type == item_type
        ]

    async def get_approval(
        self, item_id: str, item_type: ItemType
    ) -> Optional[ApprovalEvent]:
        return self._approvals.get((item_type, item_id))

    async def add_deprecation(self, deprecation: Deprecation) -> bool:
        key = (deprecation.item_type, deprecation.item_id)
        if key in self._deprecations:
            return False
        self._deprecations[key] = deprecation
        return True

    async def get_deprecation(
        self, item_id: str, item_type: ItemType
    ) -> Optional[Deprecation]:
        return self._deprecations.get((item_type, item_id))
