"""Work lease manager.

The lease manager is the only concurrency-control primitive in the
curation core. Workers may run in separate processes or on separate
machines, so exclusivity comes from a unique-key insert in shared
storage rather than from in-process locks.

- acquire() is non-blocking: it either creates the lease or raises
  AlreadyLeasedError immediately.
- release() is idempotent.
- reclaim_stale() deletes leases older than a staleness window. The
  window is time-based only; process liveness is not consulted.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, List, Optional, Protocol, runtime_checkable

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.leases.models import LeaseHandle, WorkLease


logger = logging.getLogger(__name__)


DEFAULT_STALE_AFTER = timedelta(hours=1)


class AlreadyLeasedError(Exception):
    """Raised when a work unit is already leased by another holder.

    This is expected under contention; callers back off and retry later.

    Attributes:
        work_id: The contended work unit.
    """

    def __init__(self, work_id: str):
        self.work_id = work_id
        super().__init__(f"Work unit already leased: {work_id}")


@runtime_checkable
class LeaseRepository(Protocol):
    """Storage contract for work leases.

    insert() must be atomic with respect to other inserters: when two
    callers insert the same work_id, exactly one returns True.
    """

    async def insert(self, lease: WorkLease) -> bool:
        """Create the lease if none exists for its work_id.

        Returns:
            True if the lease was created, False if one already exists.
        """
        ...

    async def delete(self, work_id: str, lease_token: str) -> bool:
        """Delete the lease if it is still held under lease_token.

        Returns:
            True if a lease was deleted.
        """
        ...

    async def get(self, work_id: str) -> Optional[WorkLease]:
        ...

    async def list_all(self) -> List[WorkLease]:
        ...

    async def delete_older_than(self, cutoff: datetime) -> List[str]:
        """Delete every lease started before cutoff.

        Returns:
            The work_ids of the deleted leases.
        """
        ...


class WorkLeaseManager:
    """Mutual-exclusion leases over named work units.

    Example:
        >>> manager = WorkLeaseManager(InMemoryLeaseRepository())
        >>> async with manager.hold("document:42") as lease:
        ...     await process_document("42")
    """

    def __init__(
        self,
        repository: LeaseRepository,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.repository = repository
        self.stale_after = stale_after
        self.event_emitter = event_emitter or NullEventEmitter()

    async def acquire(self, work_id: str) -> LeaseHandle:
        """Acquire an exclusive lease on a work unit.

        Args:
            work_id: Key of the work unit, e.g. "document:42".

        Returns:
            A handle proving ownership, to be passed to release().

        Raises:
            ValueError: If work_id is empty.
            AlreadyLeasedError: If another holder owns the lease.
        """
        if not work_id:
            raise ValueError("work_id cannot be empty")

        lease = WorkLease(work_id=work_id)
        created = await self.repository.insert(lease)
        if not created:
            logger.debug(
                "Lease acquisition refused",
                extra={"work_id": work_id},
            )
            raise AlreadyLeasedError(work_id)

        logger.debug(
            "Lease acquired",
            extra={"work_id": work_id, "lease_token": lease.lease_token},
        )
        return lease.to_handle()

    async def try_acquire(self, work_id: str) -> Optional[LeaseHandle]:
        """Acquire a lease, returning None instead of raising on contention."""
        try:
            return await self.acquire(work_id)
        except AlreadyLeasedError:
            return None

    async def release(self, handle: Optional[LeaseHandle]) -> None:
        """Release a lease.

        Releasing an unheld, already-released, or reclaimed lease is a
        no-op. A lease re-acquired by someone else after reclamation is
        left alone because its token differs.
        """
        if handle is None:
            return

        deleted = await self.repository.delete(handle.work_id, handle.lease_token)
        if deleted:
            logger.debug("Lease released", extra={"work_id": handle.work_id})
        else:
            logger.debug(
                "Release of lease not held; ignoring",
                extra={"work_id": handle.work_id},
            )

    @asynccontextmanager
    async def hold(self, work_id: str) -> AsyncIterator[LeaseHandle]:
        """Hold a lease for the duration of a block.

        Raises:
            AlreadyLeasedError: If the lease cannot be acquired.
        """
        handle = await self.acquire(work_id)
        try:
            yield handle
        finally:
            await self.release(handle)

    async def is_leased(self, work_id: str) -> bool:
        return await self.repository.get(work_id) is not None

    async def list_leases(self) -> List[WorkLease]:
        return await self.repository.list_all()

    async def reclaim_stale(self, max_age: Optional[timedelta] = None) -> List[str]:
        """Delete leases older than max_age so other workers can take them.

        Reclaiming does not roll back partial work. A worker that later
        acquires a reclaimed unit must re-read its state before acting.

        Args:
            max_age: Staleness window. Defaults to the manager's
                     configured stale_after.

        Returns:
            The reclaimed work_ids.
        """
        window = max_age if max_age is not None else self.stale_after
        if window <= timedelta(0):
            raise ValueError("max_age must be positive")

        cutoff = datetime.now(timezone.utc) - window
        reclaimed = await self.repository.delete_older_than(cutoff)

        for work_id in reclaimed:
            logger.warning(
                "Reclaimed stale lease",
                extra={"work_id": work_id, "max_age_seconds": window.total_seconds()},
            )
            await self.event_emitter.emit(
                CurationEvent(
                    event_type=EventType.LEASE_RECLAIMED,
                    entity_type="lease",
                    entity_id=work_id,
                    details={"max_age_seconds": window.total_seconds()},
                )
            )

        return reclaimed
