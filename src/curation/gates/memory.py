"""In-memory gate result repository for tests and local development."""

from typing import Dict, List, Optional, Tuple

from src.curation.gates.models import MAX_ATTEMPTS, QualityGateResult
from src.curation.state.models import ItemType


class InMemoryGateResultRepository:
    """List-backed implementation of GateResultRepository.

    record_result() reads the highest attempt and appends without
    awaiting in between, so numbering is atomic under asyncio.
    """

    def __init__(self) -> None:
        self._results: Dict[Tuple[ItemType, str, str], List[QualityGateResult]] = {}

    async def next_attempt_number(
        self, entity_type: ItemType, entity_id: str, gate_name: str
    ) -> int:
        existing = self._results.get((entity_type, entity_id, gate_name), [])
        return max((r.attempt_number for r in existing), default=0) + 1

    async def record_result(
        self, result: QualityGateResult, max_attempts: int = MAX_ATTEMPTS
    ) -> Optional[QualityGateResult]:
        key = (result.entity_type, result.entity_id, result.gate_name)
        existing = self._results.setdefault(key, [])
        attempt = max((r.attempt_number for r in existing), default=0) + 1
        if attempt > max_attempts:
            return None
        stored = result.model_copy(update={"attempt_number": attempt})
        existing.append(stored)
        return stored

    async def list_results(
        self,
        entity_type: ItemType,
        entity_id: str,
        gate_name: Optional[str] = None,
    ) -> List[QualityGateResult]:
        results = [
            r
            for (etype, eid, gname), rs in self._results.items()
            if etype == entity_type and eid == entity_id
            and (gate_name is None or gname == gate_name)
            for r in rs
        ]
        results.sort(key=lambda r: (r.gate_name, r.attempt_number))
        return results
