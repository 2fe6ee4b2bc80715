"""Transformation of mapped chunks into draft curation items.

TransformationService.run() takes the work lease for a mapping, records
a TransformationJob, asks the external transformation service for
structured items, and creates one DRAFT item per returned payload.

Failures of the external service are retried with exponential backoff,
independently of the gate retry loop, and then recorded on the job.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, runtime_checkable

from src.curation.events.emitter import EventEmitter, NullEventEmitter
from src.curation.events.models import CurationEvent, EventType
from src.curation.leases.manager import WorkLeaseManager
from src.curation.leases.models import mapping_work_id
from src.curation.mapping.models import (
    TRANSFORMABLE_STATUSES,
    JobStatus,
    TopicMapping,
    TransformationJob,
    TransformationResult,
    draft_item_type,
)
from src.curation.mapping.service import (
    MappingNotFoundError,
    MappingRepository,
    MappingStateError,
)
from src.curation.state.machine import DuplicateItemError, StateTransitionEngine
from src.curation.state.models import CEFRLevel


logger = logging.getLogger(__name__)


class ExternalServiceError(Exception):
    """Raised when the transformation or regeneration service fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code, if a response was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


@runtime_checkable
class TransformationClient(Protocol):
    """External service that turns a mapped chunk into learning items."""

    async def transform(self, mapping: TopicMapping) -> TransformationResult:
        """Raises ExternalServiceError on failure."""
        ...


@runtime_checkable
class TransformationJobRepository(Protocol):
    """Persistence for transformation jobs."""

    async def create_job(self, job: TransformationJob) -> None:
        ...

    async def update_job(self, job: TransformationJob) -> None:
        ...

    async def get_job(self, job_id: str) -> Optional[TransformationJob]:
        ...

    async def list_jobs(self, mapping_id: str) -> List[TransformationJob]:
        ...


class TransformationService:
    """Runs transformation jobs for mappings under their work lease.

    Example:
        >>> service = TransformationService(mappings, jobs, engine, leases, client)
        >>> job = await service.run(mapping_id)
        >>> job.status, job.item_ids
        (<JobStatus.COMPLETED: 'completed'>, ['...-0', '...-1'])
    """

    def __init__(
        self,
        mapping_repository: MappingRepository,
        job_repository: TransformationJobRepository,
        engine: StateTransitionEngine,
        lease_manager: WorkLeaseManager,
        client: TransformationClient,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 30.0,
        event_emitter: Optional[EventEmitter] = None,
    ):
        self.mapping_repository = mapping_repository
        self.job_repository = job_repository
        self.engine = engine
        self.lease_manager = lease_manager
        self.client = client
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.event_emitter = event_emitter or NullEventEmitter()

    def _backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * (2 ** attempt), self.backoff_max_seconds)

    async def run(self, mapping_id: str) -> Optional[TransformationJob]:
        """Transform one mapping into DRAFT items.

        Returns:
            The finished job (completed or failed), or None if another
            worker holds the mapping's lease.

        Raises:
            MappingNotFoundError: If the mapping doesn't exist.
            MappingStateError: If the mapping is pending review or rejected.
        """
        handle = await self.lease_manager.try_acquire(mapping_work_id(mapping_id))
        if handle is None:
            logger.info(
                "Mapping is already being transformed",
                extra={"mapping_id": mapping_id},
            )
            return None

        try:
            mapping = await self.mapping_repository.get_mapping(mapping_id)
            if mapping is None:
                raise MappingNotFoundError(mapping_id)
            if mapping.status not in TRANSFORMABLE_STATUSES:
                raise MappingStateError(mapping_id, mapping.status, "transform")

            job = TransformationJob(mapping_id=mapping_id, status=JobStatus.PROCESSING)
            await self.job_repository.create_job(job)
            return await self._execute(mapping, job)
        finally:
            await self.lease_manager.release(handle)

    async def _execute(
        self, mapping: TopicMapping, job: TransformationJob
    ) -> TransformationJob:
        result: Optional[TransformationResult] = None
        error: Optional[ExternalServiceError] = None

        for attempt in range(self.max_retries + 1):
            try:
                result = await self.client.transform(mapping)
                break
            except ExternalServiceError as e:
                error = e
                if attempt < self.max_retries:
                    delay = self._backoff(attempt)
                    job = job.model_copy(update={"retry_count": attempt + 1})
                    await self.job_repository.update_job(job)
                    logger.warning(
                        "Transformation failed, retrying",
                        extra={
                            "mapping_id": mapping.id,
                            "job_id": job.id,
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "status_code": e.status_code,
                        },
                    )
                    await asyncio.sleep(delay)

        if result is None:
            return await self._fail(job, str(error))

        item_ids = await self._create_drafts(mapping, job, result)

        job = job.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "parsed_result": result.parsed_result,
                "tokens_input": result.tokens_in,
                "tokens_output": result.tokens_out,
                "cost_usd": result.cost_usd,
                "duration_ms": result.duration_ms,
                "item_ids": item_ids,
                "completed_at": datetime.now(timezone.utc),
            }
        )
        await self.job_repository.update_job(job)

        logger.info(
            "Transformation completed",
            extra={
                "mapping_id": mapping.id,
                "job_id": job.id,
                "items_created": len(item_ids),
                "tokens_input": result.tokens_in,
                "tokens_output": result.tokens_out,
                "cost_usd": result.cost_usd,
            },
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.TRANSFORMATION_COMPLETED,
                entity_type="mapping",
                entity_id=mapping.id,
                details={"job_id": job.id, "items_created": len(item_ids)},
            )
        )
        return job

    async def _create_drafts(
        self,
        mapping: TopicMapping,
        job: TransformationJob,
        result: TransformationResult,
    ) -> List[str]:
        parsed = result.parsed_result
        item_ids: List[str] = []

        for index, entry in enumerate(result.items):
            try:
                item_type = draft_item_type(entry, parsed)
                raw_level = entry.get("level") or parsed.get("level") or mapping.level
                level = CEFRLevel(raw_level) if raw_level else None
            except ValueError as e:
                logger.warning(
                    "Skipping malformed transformed item",
                    extra={"job_id": job.id, "index": index, "error": str(e)},
                )
                continue

            data = {
                key: value
                for key, value in entry.items()
                if key not in ("item_type", "language", "level")
            }
            data["source"] = {
                "mapping_id": mapping.id,
                "chunk_id": mapping.chunk_id,
                "topic_id": mapping.topic_id,
                "job_id": job.id,
            }

            item_id = f"{job.id}-{index}"
            try:
                await self.engine.create(
                    item_id,
                    item_type,
                    data,
                    language=entry.get("language") or parsed.get("language") or mapping.language,
                    level=level,
                )
            except DuplicateItemError:
                logger.debug("Draft already exists", extra={"item_id": item_id})
            item_ids.append(item_id)

        return item_ids

    async def _fail(self, job: TransformationJob, error_message: str) -> TransformationJob:
        job = job.model_copy(
            update={
                "status": JobStatus.FAILED,
                "error_message": error_message,
                "completed_at": datetime.now(timezone.utc),
            }
        )
        await self.job_repository.update_job(job)

        logger.error(
            "Transformation failed after all retries",
            extra={
                "mapping_id": job.mapping_id,
                "job_id": job.id,
                "retry_count": job.retry_count,
                "error": error_message,
            },
        )
        await self.event_emitter.emit(
            CurationEvent(
                event_type=EventType.TRANSFORMATION_FAILED,
                entity_type="mapping",
                entity_id=job.mapping_id,
                details={"job_id": job.id, "error": error_message},
            )
        )
        return job

    async def list_jobs(self, mapping_id: str) -> List[TransformationJob]:
        return await self.job_repository.list_jobs(mapping_id)
