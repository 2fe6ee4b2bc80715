"""Work lease manager.

Mutual-exclusion leases over named work units, used by every worker
before it mutates a document, mapping, or curation item.
"""

from src.curation.leases.manager import (
    DEFAULT_STALE_AFTER,
    AlreadyLeasedError,
    LeaseRepository,
    WorkLeaseManager,
)
from src.curation.leases.memory import InMemoryLeaseRepository
from src.curation.leases.models import (
    LeaseHandle,
    WorkLease,
    document_work_id,
    item_work_id,
    mapping_work_id,
)
from src.curation.leases.repository import PostgresLeaseRepository

__all__ = [
    # Models
    "LeaseHandle",
    "WorkLease",
    "document_work_id",
    "item_work_id",
    "mapping_work_id",
    # Manager
    "AlreadyLeasedError",
    "DEFAULT_STALE_AFTER",
    "LeaseRepository",
    "WorkLeaseManager",
    # Repositories
    "InMemoryLeaseRepository",
    "PostgresLeaseRepository",
]
