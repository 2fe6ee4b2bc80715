"""Work lease models.

A lease is an exclusive, time-bounded claim on a named unit of work
such as "document:42" or "mapping:7". At most one live lease exists per
work_id; the lease_token identifies which holder owns it.
"""

import uuid
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class WorkLease(BaseModel):
    """Persisted lease record.

    Attributes:
        work_id: Unique key of the leased work unit.
        lease_token: Random token identifying the current holder.
        started_at: When the lease was acquired (UTC).
    """

    work_id: str = Field(
        ...,
        min_length=1,
        description="Unique key of the leased work unit",
    )

    lease_token: str = Field(
        default_factory=lambda: uuid.uuid4().hex,
        description="Random token identifying the current holder",
    )

    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the lease was acquired (UTC)",
    )

    def to_handle(self) -> "LeaseHandle":
        return LeaseHandle(
            work_id=self.work_id,
            lease_token=self.lease_token,
            started_at=self.started_at,
        )


class LeaseHandle(BaseModel):
    """Proof of lease ownership returned to the acquiring caller.

    Passing the handle back to release() deletes the lease only if it
    is still held under the same token.
    """

    work_id: str = Field(..., min_length=1)
    lease_token: str = Field(..., min_length=1)
    started_at: datetime


def document_work_id(document_id: str) -> str:
    return f"document:{document_id}"


def mapping_work_id(mapping_id: str) -> str:
    return f"mapping:{mapping_id}"


def item_work_id(item_type: str, item_id: str) -> str:
    return f"{item_type}:{item_id}"
