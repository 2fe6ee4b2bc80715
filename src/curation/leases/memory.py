"""In-memory lease repository for tests and local development.

Each method completes without awaiting, so under a single asyncio event
loop every check-and-set is atomic.
"""

from datetime import datetime
from typing import Dict, List, Optional

from src.curation.leases.models import WorkLease


class InMemoryLeaseRepository:
    """Dict-backed implementation of LeaseRepository."""

    def __init__(self) -> None:
        self._leases: Dict[str, WorkLease] = {}

    async def insert(self, lease: WorkLease) -> bool:
        if lease.work_id in self._leases:
            return False
        self._leases[lease.work_id] = lease
        return True

    async def delete(self, work_id: str, lease_token: str) -> bool:
        existing = self._leases.get(work_id)
        if existing is None or existing.lease_token != lease_token:
            return False
        del self._leases[work_id]
        return True

    async def get(self, work_id: str) -> Optional[WorkLease]:
        return self._leases.get(work_id)

    async def list_all(self) -> List[WorkLease]:
        return sorted(self._leases.values(), key=lambda l: l.started_at)

    async def delete_older_than(self, cutoff: datetime) -> List[str]:
        stale = [
            work_id
            for work_id, lease in self._leases.items()
            if lease.started_at < cutoff
        ]
        for work_id in stale:
            del self._leases[work_id]
        return stale

    def clear(self) -> None:
        self._leases.clear()
