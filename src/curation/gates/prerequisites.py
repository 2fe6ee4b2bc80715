"""Prerequisite lookup used by the prerequisite validation gate.

An item lists the ids of the items a learner must know first under
data["prerequisites"]. The lookup resolves those ids to their level and
language, and exposes the edges the gate follows to find cycles.
"""

from typing import List, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from src.curation.state.machine import ItemRepository
from src.curation.state.models import CEFRLevel, CurationItem, ItemType


def prerequisite_ids(data: dict) -> List[str]:
    """Read the prerequisite ids from an item payload."""
    raw = data.get("prerequisites") or []
    if isinstance(raw, str):
        raw = [raw]
    return [str(p) for p in raw if p]


class PrerequisiteInfo(BaseModel):
    """What the gate needs to know about one prerequisite."""

    id: str = Field(..., min_length=1)
    level: Optional[CEFRLevel] = None
    language: Optional[str] = None


@runtime_checkable
class PrerequisiteLookup(Protocol):
    """Resolves prerequisite ids for the prerequisite validation gate."""

    async def find(self, ids: List[str], item_type: ItemType) -> List[PrerequisiteInfo]:
        """Return the prerequisites that exist. Unknown ids are left out."""
        ...

    async def prerequisites_of(self, item_id: str, item_type: ItemType) -> List[str]:
        ...


class ItemPrerequisiteLookup:
    """Prerequisite lookup over the curation item repository.

    Rejected items count as missing. Works with any ItemRepository, so the
    in-memory and PostgreSQL backends give the same answers.
    """

    def __init__(self, repository: ItemRepository):
        self.repository = repository

    async def _get(self, item_id: str, item_type: ItemType) -> Optional[CurationItem]:
        item = await self.repository.get(item_id, item_type)
        if item is None or item.rejected:
            return None
        return item

    async def find(self, ids: List[str], item_type: ItemType) -> List[PrerequisiteInfo]:
        found = []
        for item_id in dict.fromkeys(ids):
            item = await self._get(item_id, item_type)
            if item is not None:
                found.append(
                    PrerequisiteInfo(id=item.item_id, level=item.level, language=item.language)
                )
        return found

    async def prerequisites_of(self, item_id: str, item_type: ItemType) -> List[str]:
        item = await self._get(item_id, item_type)
        if item is None:
            return []
        return prerequisite_ids(item.data)
